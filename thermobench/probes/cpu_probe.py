import psutil
from typing import Dict, List

from thermobench.columns import Column, ColumnRegistry

TOTAL_COLUMN = "cpu_usage_%"


class CpuProbe:
    """
    CPU utilization between consecutive samples.

    psutil computes ``cpu_percent(interval=None)`` from the accounting
    counters since its previous call, so calling it once per tick yields the
    utilization over exactly the last sampling interval. ``start`` primes
    the counters.
    """

    def __init__(self):
        self.cpu_count = psutil.cpu_count(logical=True) or 1
        self.columns: List[Column] = []
        self.total_column = None

    def register(self, registry: ColumnRegistry):
        self.columns = [registry.add(f"cpu{i}_usage_%", "CPU usage") for i in range(self.cpu_count)]
        self.total_column = registry.add(TOTAL_COLUMN, "CPU usage")

    def start(self):
        psutil.cpu_percent(interval=None, percpu=True)

    def sample(self) -> Dict[Column, float]:
        per_cpu = psutil.cpu_percent(interval=None, percpu=True)
        cells = {}
        for column, value in zip(self.columns, per_cpu):
            cells[column] = value
        if per_cpu and self.total_column is not None:
            cells[self.total_column] = round(sum(per_cpu) / len(per_cpu), 1)
        return cells
