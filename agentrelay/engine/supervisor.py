"""Agent process spawning and supervision.

Each spawn runs the agent command through a shell in its own process
group, closes stdin, pumps stdout/stderr into the caller's handlers and
arms a wall-clock watchdog. Handlers run on the event loop, one stream
reader each, so stdout chunks reach the decoder strictly in order.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable

from .errors import AgentSpawnError

logger = logging.getLogger(__name__)

_READ_SIZE = 64 * 1024

StdoutHandler = Callable[[bytes], Awaitable[None]]
StderrHandler = Callable[[str], Awaitable[None]]
ProcessHandler = Callable[["SupervisedProcess"], Awaitable[None]]


class SupervisedProcess:
    """Handle to one spawned agent process.

    ``terminate()`` sends SIGTERM and arms a reaper task that escalates to
    SIGKILL if the process group is still alive after the kill grace.
    """

    def __init__(
        self,
        channel_id: str,
        process: asyncio.subprocess.Process,
        timeout_seconds: float,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        self.channel_id = channel_id
        self.process = process
        self.timeout_seconds = timeout_seconds
        self.kill_grace_seconds = kill_grace_seconds
        self.started_at = time.monotonic()
        # Set once we have sent a termination signal ourselves.
        self.signalled = False
        self.timed_out = False
        self._task: asyncio.Task | None = None
        self._reaper: asyncio.Task | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    def _signal(self, sig: signal.Signals) -> bool:
        try:
            if hasattr(os, "killpg"):
                os.killpg(self.process.pid, sig)
            elif sig == signal.SIGTERM:
                self.process.terminate()
            else:
                self.process.kill()
        except ProcessLookupError:
            return False
        except PermissionError:
            self.process.send_signal(sig)
        return True

    def terminate(self) -> bool:
        """Send SIGTERM to the process group once; later calls are no-ops.

        Does not wait for the exit. The reaper task sends SIGKILL when the
        group outlives the kill grace.
        """
        if self.signalled or self.process.returncode is not None:
            return False
        self.signalled = True
        if not self._signal(signal.SIGTERM):
            return False
        logger.info(
            "Sent SIGTERM to agent for channel %s (pid=%s)",
            self.channel_id, self.process.pid,
        )
        self._reaper = asyncio.create_task(self._reap(self.kill_grace_seconds))
        return True

    def _group_alive(self) -> bool:
        if not hasattr(os, "killpg"):
            return self.process.returncode is None
        try:
            os.killpg(self.process.pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    async def _reap(self, grace_seconds: float) -> None:
        # The shell may exit on SIGTERM while a child in its group ignores
        # it and keeps the pipes open, so the whole group is watched.
        deadline = time.monotonic() + grace_seconds
        try:
            await asyncio.wait_for(self.process.wait(), timeout=grace_seconds)
        except asyncio.TimeoutError:
            pass
        while self._group_alive() and time.monotonic() < deadline:
            await asyncio.sleep(0.05)
        if not self._group_alive():
            return
        logger.warning(
            "Agent for channel %s ignored SIGTERM for %gs, killing (pid=%s)",
            self.channel_id, grace_seconds, self.process.pid,
        )
        self._signal(signal.SIGKILL)
        await self.process.wait()

    async def stop(self, grace_seconds: float | None = None) -> None:
        """Terminate and wait, escalating to SIGKILL after the grace period."""
        if grace_seconds is not None:
            self.kill_grace_seconds = grace_seconds
        self.terminate()
        if self._reaper is not None:
            await asyncio.shield(self._reaper)
        else:
            await self.process.wait()

    async def wait(self) -> None:
        """Wait until the exit handler has run."""
        if self._task is not None:
            await asyncio.shield(self._task)


class ProcessSupervisor:
    """Spawns agent processes and reports their output and exit."""

    def __init__(
        self,
        timeout_seconds: float = 300.0,
        shell: str = "/bin/bash",
        kill_grace_seconds: float = 5.0,
    ) -> None:
        self._timeout = timeout_seconds
        self._shell = shell
        self._kill_grace = kill_grace_seconds

    async def spawn(
        self,
        channel_id: str,
        command: str,
        *,
        on_stdout: StdoutHandler,
        on_exit: ProcessHandler,
        on_stderr: StderrHandler | None = None,
        on_timeout: ProcessHandler | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> SupervisedProcess:
        """Start *command* and supervise it in a background task."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self._shell, "-c", command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("Failed to spawn agent for channel %s: %s", channel_id, exc)
            raise AgentSpawnError(channel_id, str(exc)) from exc

        # The prompt is on the command line; nothing more is written.
        if proc.stdin is not None:
            proc.stdin.close()

        handle = SupervisedProcess(channel_id, proc, self._timeout, self._kill_grace)
        logger.info(
            "Spawned agent for channel %s (pid=%s, timeout=%gs)",
            channel_id, proc.pid, self._timeout,
        )
        handle._task = asyncio.create_task(
            self._supervise(handle, on_stdout, on_stderr, on_exit, on_timeout)
        )
        return handle

    async def _supervise(
        self,
        handle: SupervisedProcess,
        on_stdout: StdoutHandler,
        on_stderr: StderrHandler | None,
        on_exit: ProcessHandler,
        on_timeout: ProcessHandler | None,
    ) -> None:
        watchdog = asyncio.create_task(self._watchdog(handle, on_timeout))
        try:
            await asyncio.gather(
                self._pump_stdout(handle, on_stdout),
                self._pump_stderr(handle, on_stderr),
            )
            await handle.process.wait()
        finally:
            if not handle.timed_out:
                watchdog.cancel()
        if handle.timed_out:
            # Let the timeout notice land before the exit report.
            await watchdog

        elapsed = time.monotonic() - handle.started_at
        logger.info(
            "Agent for channel %s exited (pid=%s, code=%s, elapsed=%.1fs)",
            handle.channel_id, handle.pid, handle.returncode, elapsed,
        )
        try:
            await on_exit(handle)
        except Exception:
            logger.exception("Exit handler failed for channel %s", handle.channel_id)

    async def _watchdog(
        self, handle: SupervisedProcess, on_timeout: ProcessHandler | None,
    ) -> None:
        await asyncio.sleep(self._timeout)
        if not handle.running:
            return
        handle.timed_out = True
        logger.warning(
            "Agent for channel %s exceeded %gs, terminating (pid=%s)",
            handle.channel_id, self._timeout, handle.pid,
        )
        handle.terminate()
        if on_timeout is not None:
            try:
                await on_timeout(handle)
            except Exception:
                logger.exception(
                    "Timeout handler failed for channel %s", handle.channel_id,
                )

    async def _pump_stdout(
        self, handle: SupervisedProcess, on_stdout: StdoutHandler,
    ) -> None:
        stream = handle.process.stdout
        if stream is None:
            return
        while True:
            chunk = await stream.read(_READ_SIZE)
            if not chunk:
                break
            try:
                await on_stdout(chunk)
            except Exception:
                logger.exception(
                    "stdout handler failed for channel %s", handle.channel_id,
                )

    async def _pump_stderr(
        self, handle: SupervisedProcess, on_stderr: StderrHandler | None,
    ) -> None:
        stream = handle.process.stderr
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(_READ_SIZE)
            text = decoder.decode(chunk, final=not chunk)
            if on_stderr is not None and text:
                try:
                    await on_stderr(text)
                except Exception:
                    logger.exception(
                        "stderr handler failed for channel %s", handle.channel_id,
                    )
            if not chunk:
                break
