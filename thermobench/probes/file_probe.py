from pathlib import Path
from typing import Optional, Union

from thermobench.columns import Column
from thermobench.errors import SensorReadError
from thermobench.log import log_info, log_warn
from thermobench.sensors import Sensor

Number = Union[int, float]


def parse_number(text: str) -> Number:
    text = text.strip()
    try:
        return int(text)
    except ValueError:
        return float(text)


class FileProbe:
    """Reads one number from a sysfs-style file per tick"""

    def __init__(self, sensor: Sensor, column: Optional[Column] = None):
        if not sensor.is_file:
            raise ValueError(f"sensor '{sensor.name}' is not file backed")
        self.sensor = sensor
        self.column = column
        self.path = Path(sensor.source.path)
        self.failing = False
        self.failures = 0

    def read(self) -> Number:
        try:
            text = self.path.read_text()
        except OSError as e:
            raise SensorReadError(f"cannot read {self.path}: {e.strerror or e}") from e
        try:
            return parse_number(text)
        except ValueError as e:
            raise SensorReadError(f"{self.path}: not a number: {text.strip()!r}") from e

    def sample(self) -> Optional[Number]:
        """Return the current value, or ``None`` when the file can't be read."""
        try:
            value = self.read()
        except SensorReadError as e:
            self.failures += 1
            # Only the first failure of a streak is reported
            if not self.failing:
                log_warn(f"sensor '{self.sensor.name}': {e}")
            self.failing = True
            return None
        if self.failing:
            log_info(f"sensor '{self.sensor.name}' readable again")
            self.failing = False
        return value
