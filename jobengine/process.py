"""
External process handle.

Each backing command is started in its own session so that it leads a
fresh process group. Build and deploy tools fork helpers (compiler
servers, node workers), and signalling the group is the only way to make
sure none of them outlive the job.
"""

import asyncio
import logging
import os
import re
import signal
from collections import deque
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional

from .errors import OrphanProcessWarning, SpawnError
from .services.prometheus_metrics import prometheus_metrics

logger = logging.getLogger("jobengine.process")

LineCallback = Callable[[str], None]

ANSI_RE = re.compile(
    r"\x1b\[[0-9;?]*[ -/]*[@-~]"       # CSI: colours, cursor movement, erase
    r"|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC: window titles, hyperlinks
    r"|\x1b[PX^_][^\x1b]*\x1b\\"       # DCS/SOS/PM/APC
    r"|\x1b[@-Z\\-_]"                  # two-byte sequences
)

READ_CHUNK = 64 * 1024
POLL_INTERVAL = 0.05
KILL_CONFIRM_TIMEOUT = 2.0
TAIL_LINES = 5


def strip_ansi(text: str) -> str:
    """Strip ANSI escape codes (colours, cursor movement, line clearing)"""
    return ANSI_RE.sub("", text)


class ProcessHandle:
    """A running command, its output readers and its process group"""

    def __init__(
        self,
        argv: List[str],
        process: asyncio.subprocess.Process,
        on_line: Optional[LineCallback] = None,
        drain_timeout: float = 2.0,
    ):
        self.argv = argv
        self.process = process
        self.pid = process.pid
        # start_new_session makes the child its own group leader
        self.pgid = process.pid
        self.tail = deque(maxlen=TAIL_LINES)
        self._on_line = on_line
        self._drain_timeout = drain_timeout
        self._readers = [
            asyncio.ensure_future(self._pump(process.stdout, "stdout")),
            asyncio.ensure_future(self._pump(process.stderr, "stderr")),
        ]
        self._terminating: Optional[asyncio.Future] = None
        self._closed = False
        self.exit_code: Optional[int] = None

    @property
    def name(self) -> str:
        return os.path.basename(self.argv[0]) if self.argv else "?"

    @classmethod
    async def spawn(
        cls,
        argv: List[str],
        cwd: Optional[str] = None,
        env: Optional[Dict[str, str]] = None,
        on_line: Optional[LineCallback] = None,
        drain_timeout: float = 2.0,
    ) -> "ProcessHandle":
        """Start argv; raises SpawnError if it cannot be executed"""
        if not argv:
            raise SpawnError("<empty>", "no command given")
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            prometheus_metrics.increment_processes_spawned("error")
            reason = getattr(e, "strerror", None) or str(e)
            raise SpawnError(argv[0], reason) from e

        prometheus_metrics.increment_processes_spawned("ok")
        logger.info(f"Spawned {argv[0]} (pid {process.pid})", extra={
            "component": "process",
            "pid": process.pid,
            "argv": argv,
            "cwd": cwd,
        })
        return cls(argv, process, on_line=on_line, drain_timeout=drain_timeout)

    async def _pump(self, stream: Optional[asyncio.StreamReader], side: str):
        if stream is None:
            return
        pending = b""
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            pending += chunk
            *complete, pending = pending.split(b"\n")
            for raw in complete:
                self._emit(raw, side)
        if pending:
            self._emit(pending, side)

    def _emit(self, raw: bytes, side: str):
        line = strip_ansi(raw.decode("utf-8", errors="replace").rstrip("\r"))
        if not line.strip():
            return
        self.tail.append(line)
        if self._on_line is None:
            return
        try:
            self._on_line(line)
        except Exception:
            # keep draining, a full pipe would stall the child
            logger.exception(f"Line handler failed for pid {self.pid} ({side})")

    async def wait(self) -> int:
        """Wait for exit and for the output readers to drain"""
        exited = asyncio.ensure_future(self.process.wait())
        drained = asyncio.gather(*self._readers, return_exceptions=True)
        try:
            # returncode is set once the leader is reaped, even while a
            # leftover helper still holds the pipes open
            while self.process.returncode is None:
                await asyncio.wait({exited}, timeout=0.25)
            try:
                await asyncio.wait_for(asyncio.shield(drained), self._drain_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"{self.name} exited but its pipes are still open; stopping leftovers", extra={
                    "component": "process",
                    "pid": self.pid,
                })
                await self.terminate(0)
                await asyncio.wait({drained}, timeout=KILL_CONFIRM_TIMEOUT)
        finally:
            if not exited.done():
                exited.cancel()
        self.exit_code = self.process.returncode
        return self.exit_code

    def _group_alive(self) -> bool:
        if not hasattr(os, "killpg"):
            return self.process.returncode is None
        try:
            os.killpg(self.pgid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return self._has_live_member()

    def _has_live_member(self) -> bool:
        # killpg still succeeds while only unreaped zombies are left; an
        # orphan's zombie waits on init, which may never reap it
        if not os.path.isdir("/proc"):
            return True
        for entry in os.listdir("/proc"):
            if not entry.isdigit():
                continue
            try:
                with open(f"/proc/{entry}/stat", "r") as f:
                    fields = f.read().rsplit(")", 1)[1].split()
            except (OSError, IndexError):
                continue
            # fields: state, ppid, pgrp, ...
            if len(fields) > 2 and fields[2] == str(self.pgid) and fields[0] != "Z":
                return True
        return False

    def _signal_group(self, sig: int):
        try:
            if hasattr(os, "killpg"):
                os.killpg(self.pgid, sig)
            else:
                self.process.send_signal(sig)
        except ProcessLookupError:
            pass

    async def _wait_group_gone(self, timeout: float) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while self._group_alive():
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(POLL_INTERVAL)
        return True

    async def terminate(self, grace: float) -> bool:
        """SIGTERM the whole group, SIGKILL whatever is left after grace.

        Safe to call any number of times and from several tasks; the
        signals are sent once. Returns True when no member of the group
        is left alive.
        """
        if self._terminating is None:
            self._terminating = asyncio.ensure_future(self._terminate(grace))
        return await asyncio.shield(self._terminating)

    async def _terminate(self, grace: float) -> bool:
        if not self._group_alive():
            return True
        logger.info(f"Terminating process group {self.pgid}", extra={
            "component": "process",
            "pid": self.pid,
            "grace_sec": grace,
        })
        self._signal_group(signal.SIGTERM)
        if grace > 0 and await self._wait_group_gone(grace):
            return True

        kill = getattr(signal, "SIGKILL", signal.SIGTERM)
        self._signal_group(kill)
        if await self._wait_group_gone(KILL_CONFIRM_TIMEOUT):
            return True

        warning = OrphanProcessWarning(self.pgid)
        prometheus_metrics.increment_orphan_warnings()
        logger.warning(str(warning), extra={
            "component": "process",
            "pid": self.pid,
            "event": "orphan_process",
        })
        return False

    async def aclose(self, grace: float = 0):
        """Single cleanup path: nothing in the group survives the handle"""
        if self._closed:
            return
        self._closed = True
        try:
            await self.terminate(grace)
        finally:
            for reader in self._readers:
                if not reader.done():
                    reader.cancel()


@asynccontextmanager
async def spawned(
    argv: List[str],
    cwd: Optional[str] = None,
    env: Optional[Dict[str, str]] = None,
    on_line: Optional[LineCallback] = None,
    drain_timeout: float = 2.0,
    close_grace: float = 0,
):
    """Spawn argv and guarantee the group is torn down on every exit route"""
    handle = await ProcessHandle.spawn(argv, cwd=cwd, env=env, on_line=on_line, drain_timeout=drain_timeout)
    try:
        yield handle
    finally:
        await handle.aclose(close_grace)
