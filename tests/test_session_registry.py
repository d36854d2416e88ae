from __future__ import annotations

from unittest.mock import MagicMock

from agentrelay.engine.models import ChannelContext
from agentrelay.engine.registry import SessionRegistry
from agentrelay.shared.formatters.tool_summary import ToolSummary


def _handle() -> MagicMock:
    handle = MagicMock()
    handle.terminate.return_value = True
    return handle


class TestReservation:
    def test_try_reserve_blocks_second_reservation(self):
        registry = SessionRegistry()
        first = registry.try_reserve("c1", None)
        assert first is not None
        assert registry.has_active("c1")
        assert registry.try_reserve("c1", None) is None

    def test_reservation_is_per_channel(self):
        registry = SessionRegistry()
        assert registry.try_reserve("c1", None) is not None
        assert registry.try_reserve("c2", None) is not None
        assert sorted(registry.active_channels()) == ["c1", "c2"]

    def test_reserve_replaces_and_terminates_previous(self):
        registry = SessionRegistry()
        old = registry.reserve("c1", "s1")
        handle = _handle()
        assert registry.attach("c1", old.generation, handle)

        new = registry.reserve("c1", "s1")
        handle.terminate.assert_called_once()
        assert new.generation > old.generation
        assert registry.current("c1", old.generation) is None
        assert registry.current("c1", new.generation) is new

    def test_reserve_records_context_and_resets_run_state(self):
        registry = SessionRegistry()
        state = registry.channel("c1")
        state.response_text.append("old text")
        state.decoder.feed(b'{"partial": ')
        context = ChannelContext("c1", "backend", "u1")
        slot = registry.reserve("c1", "s9", context=context)
        assert slot.reserved_session_id == "s9"
        assert slot.context is context
        assert state.channel_name == "backend"
        assert state.response_text == []
        assert state.decoder.pending == ""

    def test_attach_after_release_reports_orphan(self):
        registry = SessionRegistry()
        slot = registry.reserve("c1", None)
        registry.release("c1", slot.generation)
        assert registry.attach("c1", slot.generation, _handle()) is False


class TestRelease:
    def test_release_is_idempotent(self):
        registry = SessionRegistry()
        slot = registry.reserve("c1", None)
        assert registry.release("c1", slot.generation) is True
        assert registry.release("c1", slot.generation) is False
        assert registry.release("c1") is False
        assert not registry.has_active("c1")

    def test_stale_generation_cannot_release_newer_slot(self):
        registry = SessionRegistry()
        old = registry.reserve("c1", None)
        new = registry.reserve("c1", None)
        assert registry.release("c1", old.generation) is False
        assert registry.current("c1", new.generation) is new

    def test_release_unknown_channel(self):
        assert SessionRegistry().release("missing") is False


class TestKillAndClear:
    def test_kill_terminates_and_frees(self):
        registry = SessionRegistry()
        slot = registry.reserve("c1", None)
        handle = _handle()
        registry.attach("c1", slot.generation, handle)
        assert registry.kill("c1") is True
        handle.terminate.assert_called_once()
        assert not registry.has_active("c1")
        assert registry.kill("c1") is False

    def test_kill_reserved_but_unspawned_slot(self):
        registry = SessionRegistry()
        registry.reserve("c1", None)
        assert registry.kill("c1") is True
        assert not registry.has_active("c1")

    def test_kill_keeps_tool_summaries(self):
        registry = SessionRegistry()
        registry.reserve("c1", None)
        state = registry.channel("c1")
        state.tool_summaries["t1"] = ToolSummary("Read", "read", "Read a.py")
        registry.kill("c1")
        assert "t1" in registry.channel("c1").tool_summaries

    def test_clear_forgets_everything(self):
        store = MagicMock()
        registry = SessionRegistry(store)
        slot = registry.reserve("c1", "s1")
        handle = _handle()
        registry.attach("c1", slot.generation, handle)
        state = registry.channel("c1")
        state.tool_summaries["t1"] = ToolSummary("Read", "read", "Read a.py")
        state.session_id = "s1"

        registry.clear("c1")

        handle.terminate.assert_called_once()
        store.clear_session.assert_called_once_with("c1")
        assert registry.get("c1") is None
        fresh = registry.channel("c1")
        assert fresh.tool_summaries == {}
        assert fresh.session_id is None

    def test_clear_idle_channel_still_clears_store(self):
        store = MagicMock()
        registry = SessionRegistry(store)
        registry.clear("never-used")
        store.clear_session.assert_called_once_with("never-used")

    def test_handles_lists_only_spawned_slots(self):
        registry = SessionRegistry()
        slot = registry.reserve("c1", None)
        registry.reserve("c2", None)
        handle = _handle()
        registry.attach("c1", slot.generation, handle)
        assert registry.handles() == [handle]
