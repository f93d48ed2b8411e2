"""
Sensor definitions and their resolution into an ordered SensorSet.

A sensor is either a file holding one number (sysfs style) or a shell
command whose stdout lines carry the values. Sensors come from ``-S``
specs, a sensors file, ``--exec`` specs or, when none of these is given,
from the thermal zones present on the host.
"""

import re
import shlex
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

from thermobench.errors import ConfigError

THERMAL_ROOT = "/sys/class/thermal"
MILLI_CELSIUS = "m°C"

_EXEC_RE = re.compile(r"^\((?P<keys>[^)]*)\)(?P<cmd>.*)$")
_ZONE_RE = re.compile(r"thermal_zone(\d+)$")


@dataclass(frozen=True)
class FileSource:
    path: str


@dataclass(frozen=True)
class CommandSource:
    command: str
    keys: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Sensor:
    id: int
    source: Union[FileSource, CommandSource]
    name: str
    unit: Optional[str] = None

    @property
    def is_file(self) -> bool:
        return isinstance(self.source, FileSource)

    @property
    def column_names(self) -> Tuple[str, ...]:
        if isinstance(self.source, CommandSource) and self.source.keys:
            return self.source.keys
        if self.unit:
            return (f"{self.name}_{self.unit}",)
        return (self.name,)

    def to_celsius(self, value: float) -> float:
        """Scale a reading to °C for threshold comparisons."""
        if self.unit in (MILLI_CELSIUS, "mC"):
            return value / 1000.0
        return value


def normalize_name(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9_]+", "_", name.strip()).strip("_")


def _zone_type(zone_dir: Path) -> str:
    try:
        return normalize_name((zone_dir / "type").read_text())
    except OSError:
        return ""


def _zone_name(zone_dir: Path, numbered: bool = False) -> str:
    """``<type>_temp``, or ``<type><N>_temp`` when several zones share a type."""
    zone_type = _zone_type(zone_dir)
    if not zone_type:
        return zone_dir.name
    if numbered:
        return f"{zone_type}{_zone_number(zone_dir)}_temp"
    return f"{zone_type}_temp"


def _zone_number(path: Path) -> int:
    m = _ZONE_RE.search(path.name)
    return int(m.group(1)) if m else -1


def discover_thermal_zones(thermal_root: str = THERMAL_ROOT) -> List[Tuple[str, str]]:
    """Return ``(temp_path, name)`` for every thermal zone currently present."""
    root = Path(thermal_root)
    if not root.is_dir():
        return []
    zones = [z for z in sorted(root.glob("thermal_zone*"), key=_zone_number) if (z / "temp").exists()]
    types = Counter(_zone_type(z) for z in zones)
    return [(str(z / "temp"), _zone_name(z, numbered=types[_zone_type(z)] > 1)) for z in zones]


def parse_sensor_spec(spec: str, sensor_id: int = 0) -> Sensor:
    """Parse ``FILE [NAME [UNIT]]``."""
    try:
        tokens = shlex.split(spec)
    except ValueError as e:
        raise ConfigError(f"malformed sensor spec '{spec}': {e}") from e
    if not 1 <= len(tokens) <= 3:
        raise ConfigError(f"malformed sensor spec '{spec}': expected FILE [NAME [UNIT]]")

    path = tokens[0]
    name = tokens[1] if len(tokens) > 1 else None
    unit = tokens[2] if len(tokens) > 2 else None
    if name is None:
        p = Path(path)
        if p.name == "temp" and _ZONE_RE.search(p.parent.name):
            name = _zone_name(p.parent)
            unit = MILLI_CELSIUS
        else:
            name = normalize_name(p.name) or path
    return Sensor(sensor_id, FileSource(path), name, unit)


def parse_exec_spec(spec: str, sensor_id: int = 0) -> Sensor:
    """Parse ``[(COL[,COL...])]CMD``."""
    keys: Tuple[str, ...] = ()
    command = spec
    m = _EXEC_RE.match(spec.strip())
    if m:
        keys = tuple(k.strip() for k in m.group("keys").split(","))
        if not all(keys):
            raise ConfigError(f"malformed exec spec '{spec}': empty column name")
        command = m.group("cmd")
    command = command.strip()
    if not command:
        raise ConfigError(f"malformed exec spec '{spec}': missing command")
    return Sensor(sensor_id, CommandSource(command, keys), command)


def parse_sensors_file(path: str, first_id: int = 0) -> List[Sensor]:
    try:
        lines = Path(path).read_text().splitlines()
    except OSError as e:
        raise ConfigError(f"cannot read sensors file {path}: {e}") from e

    sensors = []
    for lineno, line in enumerate(lines, 1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        sensor_id = first_id + len(sensors)
        try:
            if line.startswith("!"):
                sensors.append(parse_exec_spec(line[1:], sensor_id))
            else:
                sensors.append(parse_sensor_spec(line, sensor_id))
        except ConfigError as e:
            raise ConfigError(f"{path}:{lineno}: {e}") from e
    return sensors


@dataclass
class SensorSet:
    sensors: List[Sensor] = field(default_factory=list)

    @classmethod
    def resolve(cls, explicit: Sequence[str] = (), sensors_file: Optional[str] = None,
                exec_specs: Sequence[str] = (), thermal_root: str = THERMAL_ROOT) -> "SensorSet":
        sensors: List[Sensor] = []
        for spec in explicit:
            sensors.append(parse_sensor_spec(spec, len(sensors)))
        if sensors_file:
            sensors.extend(parse_sensors_file(sensors_file, len(sensors)))
        for spec in exec_specs:
            sensors.append(parse_exec_spec(spec, len(sensors)))

        if not sensors:
            for path, name in discover_thermal_zones(thermal_root):
                sensors.append(Sensor(len(sensors), FileSource(path), name, MILLI_CELSIUS))
        return cls(sensors)

    @property
    def file_sensors(self) -> List[Sensor]:
        return [s for s in self.sensors if s.is_file]

    @property
    def command_sensors(self) -> List[Sensor]:
        return [s for s in self.sensors if not s.is_file]

    def __iter__(self):
        return iter(self.sensors)

    def __len__(self) -> int:
        return len(self.sensors)
