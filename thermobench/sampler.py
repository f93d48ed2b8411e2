import time
from typing import Callable, List, Optional

from thermobench.columns import ColumnRegistry, Row
from thermobench.log import log_warn
from thermobench.probes import CpuProbe, FileProbe, LineProbe

TIME_COLUMN = "time_ms"


class Sampler:
    """
    Builds one row per tick from every probe.

    Timestamps are the elapsed monotonic time since ``start``, not the tick
    index times the period, so a late tick never shifts the later ones.
    """

    def __init__(self, registry: ColumnRegistry, period_s: float,
                 file_probes: Optional[List[FileProbe]] = None,
                 line_probes: Optional[List[LineProbe]] = None,
                 cpu_probe: Optional[CpuProbe] = None,
                 clock: Callable[[], float] = time.monotonic):
        if period_s <= 0:
            raise ValueError("sampling period must be positive")
        self.registry = registry
        self.period_s = period_s
        self.file_probes = file_probes or []
        self.line_probes = line_probes or []
        self.cpu_probe = cpu_probe
        self.clock = clock
        self.time_column = registry.column_for(TIME_COLUMN)
        self.start_time: Optional[float] = None
        self.next_deadline: Optional[float] = None
        self.last_ms = 0
        self.ticks = 0
        self.missed_periods = 0

    def start(self, now: Optional[float] = None):
        self.start_time = self.clock() if now is None else now
        self.next_deadline = self.start_time
        if self.cpu_probe is not None:
            self.cpu_probe.start()

    def due(self, now: Optional[float] = None) -> bool:
        now = self.clock() if now is None else now
        return now >= self.next_deadline

    def tick(self, now: Optional[float] = None) -> Row:
        if self.start_time is None:
            self.start()
        now = self.clock() if now is None else now

        row = Row(self.registry)
        elapsed_ms = max(self.last_ms, int(round((now - self.start_time) * 1000)))
        self.last_ms = elapsed_ms
        row.set(self.time_column, elapsed_ms)

        for probe in self.file_probes:
            row.set(probe.column, probe.sample())
        for probe in self.line_probes:
            for column, value in probe.take().items():
                row.set(column, value)
        if self.cpu_probe is not None:
            for column, value in self.cpu_probe.sample().items():
                row.set(column, value)

        self.ticks += 1
        self._advance(now)
        return row

    def _advance(self, now: float):
        self.next_deadline += self.period_s
        behind = now - self.next_deadline
        if behind >= self.period_s:
            missed = int(behind // self.period_s)
            self.missed_periods += missed
            self.next_deadline += missed * self.period_s
            log_warn(f"sampling fell behind by {missed} period(s), resynchronizing")
