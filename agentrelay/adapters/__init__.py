"""Adapters package - units and collaborator protocols shared by the
engine and the chat front end.
"""
from __future__ import annotations

__all__ = [
    "RenderableUnit",
    "UpdateSink",
    "ApprovalNotifier",
    "post_unit",
    "replace_unit",
]

from agentrelay.adapters.events import (
    ApprovalNotifier,
    RenderableUnit,
    UpdateSink,
    post_unit,
    replace_unit,
)
