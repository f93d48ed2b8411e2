"""
Probes fed by the stdout of a child process.

Lines are drained from the child's buffer once per tick. For every
column the most recent line of the interval wins; a column without any
line in the interval stays empty for that tick.
"""

from typing import Dict, List, Optional, Set

from thermobench.columns import Column, ColumnRegistry
from thermobench.errors import ExecSensorError
from thermobench.log import log_warn
from thermobench.probes.file_probe import parse_number
from thermobench.sensors import Sensor
from thermobench.supervisor import ChildProcess, ProcessSupervisor, shell_argv

EXEC_MODES = ("persistent", "tick")


def split_key_value(line: str):
    key, sep, value = line.partition("=")
    if not sep:
        return None, line.strip()
    return key.strip(), value.strip()


class LineProbe:
    def __init__(self, supervisor: ProcessSupervisor, label: str):
        self.supervisor = supervisor
        self.label = label
        self.keys: Dict[str, Column] = {}
        self._reported: Set[str] = set()

    def warn_once(self, key: str, msg: str):
        if key not in self._reported:
            self._reported.add(key)
            log_warn(msg)

    def children(self) -> List[ChildProcess]:
        raise NotImplementedError

    def parse(self, line: str, cells: Dict[Column, str]):
        raise NotImplementedError

    def take(self) -> Dict[Column, str]:
        cells: Dict[Column, str] = {}
        for child in self.children():
            for line in self.supervisor.poll(child):
                if line.strip():
                    self.parse(line, cells)
        return cells


class ExecProbe(LineProbe):
    """
    Sensor backed by a shell command.

    With declared keys, ``KEY=value`` lines fill the matching column and bare
    lines the first one. Without keys the command has a single column and
    each line (or the value part of a ``KEY=value`` line) is its value.
    Values must be numeric.

    ``mode`` selects the cadence: ``persistent`` starts the command once for
    the whole run, ``tick`` starts a new instance after every tick once the
    previous one has exited.
    """

    def __init__(self, sensor: Sensor, registry: ColumnRegistry,
                 supervisor: ProcessSupervisor, mode: str = "persistent"):
        super().__init__(supervisor, sensor.name)
        if sensor.is_file:
            raise ValueError(f"sensor '{sensor.name}' is not command backed")
        if mode not in EXEC_MODES:
            raise ValueError(f"unknown exec mode '{mode}'")
        self.sensor = sensor
        self.mode = mode
        self.columns = [registry.add(name, f"exec sensor '{sensor.source.command}'")
                        for name in sensor.column_names]
        if sensor.source.keys:
            self.keys = dict(zip(sensor.source.keys, self.columns))
        self.default_column = self.columns[0]
        self._running: List[ChildProcess] = []

    @property
    def command(self) -> str:
        return self.sensor.source.command

    async def start(self):
        child = await self.supervisor.spawn(shell_argv(self.command), capture_stdout=True)
        self._running.append(child)

    def children(self) -> List[ChildProcess]:
        return list(self._running)

    def _check(self, text: str) -> str:
        try:
            parse_number(text)
        except ValueError as e:
            raise ExecSensorError(f"exec sensor '{self.command}': unparsable value {text!r}") from e
        return text

    def parse(self, line: str, cells: Dict[Column, str]):
        key, value = split_key_value(line)
        if key is None or not self.keys:
            column = self.default_column
        else:
            column = self.keys.get(key)
            if column is None:
                self.warn_once(f"key:{key}", f"exec sensor '{self.command}': unknown key '{key}' ignored")
                return
        try:
            cells[column] = self._check(value)
        except ExecSensorError as e:
            cells.pop(column, None)
            self.warn_once(f"nan:{value}", str(e))

    def take(self) -> Dict[Column, str]:
        cells = super().take()
        for child in list(self._running):
            if child.running:
                continue
            if child.returncode:
                self.warn_once(f"exit:{child.returncode}",
                               f"exec sensor '{self.command}' exited with status {child.returncode}")
            if child.reader is None or child.reader.done():
                self._running.remove(child)
                self.supervisor.forget(child)
        return cells

    async def rearm(self):
        """Start the next instance in ``tick`` mode."""
        if self.mode != "tick":
            return
        if any(c.process.returncode is None for c in self._running):
            return
        await self.start()


class StdoutProbe(LineProbe):
    """
    The benchmark's own stdout: ``KEY=value`` lines fill columns declared
    with ``--column``; with ``--stdout`` every line also lands in the
    ``stdout`` column.
    """

    def __init__(self, registry: ColumnRegistry, supervisor: ProcessSupervisor,
                 columns: List[str], stdout_column: Optional[str] = None):
        super().__init__(supervisor, "benchmark")
        # repeated --column declarations name the same column
        self.keys = {name: registry.add(name, "the benchmark") for name in dict.fromkeys(columns)}
        self.stdout_column = registry.add(stdout_column, "the benchmark") if stdout_column else None
        self.child: Optional[ChildProcess] = None

    def attach(self, child: ChildProcess):
        self.child = child

    def children(self) -> List[ChildProcess]:
        return [self.child] if self.child is not None else []

    def parse(self, line: str, cells: Dict[Column, str]):
        if self.stdout_column is not None:
            cells[self.stdout_column] = line
        key, value = split_key_value(line)
        if key is None:
            return
        column = self.keys.get(key)
        if column is not None:
            cells[column] = value
        elif self.keys and self.stdout_column is None:
            self.warn_once(key, f"benchmark printed undeclared column '{key}', declare it with --column")
