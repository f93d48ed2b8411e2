"""
Child process management on top of asyncio subprocesses.

Every child runs in its own session so that signals reach the whole
process group (a benchmark started through a shell script included).
Captured stdout is drained by a reader task into a line buffer which the
sampler empties once per tick.
"""

import asyncio
import enum
import os
import signal as _signal
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from thermobench.errors import SpawnError
from thermobench.log import log_warn

# Long KEY=value lines are legal, asyncio's default is 64 KiB.
LINE_LIMIT = 1 << 20


class ProcState(enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"
    KILLED = "killed"


class Signal(enum.Enum):
    TERM = _signal.SIGTERM
    KILL = _signal.SIGKILL


def shell_argv(command: str) -> List[str]:
    return ["/bin/sh", "-c", command]


@dataclass
class ChildProcess:
    argv: List[str]
    process: Optional[asyncio.subprocess.Process] = None
    state: ProcState = ProcState.STARTING
    lines: List[str] = field(default_factory=list)
    reader: Optional[asyncio.Task] = None
    signalled: bool = False

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    @property
    def running(self) -> bool:
        return self.state in (ProcState.STARTING, ProcState.RUNNING)

    def exit_status(self) -> Optional[int]:
        """Shell-style status: negative return codes become ``128 + signum``."""
        code = self.returncode
        if code is not None and code < 0:
            return 128 - code
        return code


class ProcessSupervisor:
    def __init__(self):
        self.children: List[ChildProcess] = []

    async def spawn(self, argv: Sequence[str], capture_stdout: bool = False,
                    stdout=None) -> ChildProcess:
        child = ChildProcess(list(argv))
        try:
            child.process = await asyncio.create_subprocess_exec(
                *child.argv,
                stdout=asyncio.subprocess.PIPE if capture_stdout else stdout,
                start_new_session=True,
                limit=LINE_LIMIT,
            )
        except OSError as e:
            # FileNotFoundError and PermissionError included
            raise SpawnError(f"cannot start '{' '.join(child.argv)}': {e}") from e

        child.state = ProcState.RUNNING
        if capture_stdout:
            child.reader = asyncio.ensure_future(self._read_lines(child))
        self.children.append(child)
        return child

    async def _read_lines(self, child: ChildProcess):
        stream = child.process.stdout
        # set while the rest of an overlong line is still arriving
        discarding = False
        while True:
            try:
                raw = await stream.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                # EOF, keep an unterminated last line
                if e.partial and not discarding:
                    child.lines.append(e.partial.decode(errors="replace").rstrip("\r"))
                break
            except asyncio.LimitOverrunError as e:
                if not discarding:
                    log_warn(f"overlong output line from '{child.argv[-1]}' discarded")
                await stream.readexactly(e.consumed)
                discarding = True
                continue
            if discarding:
                discarding = False
                continue
            child.lines.append(raw.decode(errors="replace").rstrip("\r\n"))

    def poll(self, child: ChildProcess) -> List[str]:
        """Take the complete lines buffered since the previous poll."""
        lines, child.lines = child.lines, []
        if child.process and child.process.returncode is not None and child.running:
            self._mark_exited(child)
        return lines

    def forget(self, child: ChildProcess):
        """Stop tracking a child that has exited and whose output is drained."""
        if child.running or (child.reader is not None and not child.reader.done()):
            raise ValueError(f"'{' '.join(child.argv)}' is still active")
        if child in self.children:
            self.children.remove(child)

    def signal(self, child: ChildProcess, kind: Signal):
        if child.process is None or child.process.returncode is not None:
            return
        child.signalled = True
        try:
            os.killpg(child.process.pid, kind.value)
        except ProcessLookupError:
            pass
        except PermissionError:
            child.process.send_signal(kind.value)

    def _mark_exited(self, child: ChildProcess):
        code = child.process.returncode
        child.state = ProcState.KILLED if (child.signalled and code < 0) else ProcState.EXITED

    async def wait(self, child: ChildProcess, timeout: Optional[float] = None) -> ProcState:
        if child.process is None:
            return child.state
        try:
            await asyncio.wait_for(asyncio.shield(child.process.wait()), timeout)
        except asyncio.TimeoutError:
            return child.state
        if child.reader is not None:
            # the pipe may outlive the process when a grandchild keeps it open
            try:
                await asyncio.wait_for(asyncio.shield(child.reader), 0.5)
            except asyncio.TimeoutError:
                pass
        self._mark_exited(child)
        return child.state

    async def terminate(self, child: ChildProcess, grace: float) -> ProcState:
        """TERM the child's group, KILL it if still alive after ``grace`` seconds."""
        if not child.running:
            return child.state
        self.signal(child, Signal.TERM)
        state = await self.wait(child, grace)
        if state in (ProcState.STARTING, ProcState.RUNNING):
            log_warn(f"'{' '.join(child.argv)}' ignored SIGTERM, killing it")
            self.signal(child, Signal.KILL)
            state = await self.wait(child)
        return state

    async def reap_all(self, grace: float):
        for child in self.children:
            if child.process is not None and child.process.returncode is None:
                await self.terminate(child, grace)
            elif child.running:
                await self.wait(child)
            if child.reader is not None and not child.reader.done():
                child.reader.cancel()
                await asyncio.gather(child.reader, return_exceptions=True)
