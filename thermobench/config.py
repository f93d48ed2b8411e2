"""
Run configuration.

A run is described by a ``Config``. It can be loaded from a YAML file
whose keys are the field names below; options given on the command line
override the file.

    command: [./bench, --size, "1024"]
    sensors: ["/sys/class/thermal/thermal_zone0/temp CPU_0_temp m°C"]
    exec_specs: ["(power_W)ssh board read-power"]
    columns: [work_done]
    period_ms: 100
    timeout_s: 600
    wait_temp: 45
    fan_cmd: "fanctl"
"""

import shlex
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from thermobench.errors import ConfigError
from thermobench.probes.exec_probe import EXEC_MODES
from thermobench.sensors import THERMAL_ROOT


@dataclass
class Config:
    command: List[str] = field(default_factory=list)
    sensors: List[str] = field(default_factory=list)
    sensors_file: Optional[str] = None
    exec_specs: List[str] = field(default_factory=list)
    columns: List[str] = field(default_factory=list)
    stdout_column: bool = False
    period_ms: float = 100.0
    timeout_s: Optional[float] = None
    wait_temp: Optional[float] = None
    fan_cmd: Optional[str] = None
    cpu_usage: bool = False
    output: Optional[str] = None
    output_dir: Optional[str] = None
    name: Optional[str] = None
    grace_s: float = 2.0
    exec_mode: str = "persistent"
    thermal_root: str = THERMAL_ROOT

    @property
    def period_s(self) -> float:
        return self.period_ms / 1000.0

    @property
    def capture_stdout(self) -> bool:
        return bool(self.columns) or self.stdout_column

    def validate(self) -> "Config":
        if not self.command:
            raise ConfigError("no benchmark command given")
        if self.period_ms <= 0:
            raise ConfigError(f"sampling period must be positive, got {self.period_ms} ms")
        if self.timeout_s is not None and self.timeout_s <= 0:
            raise ConfigError(f"time limit must be positive, got {self.timeout_s} s")
        if self.grace_s < 0:
            raise ConfigError("grace interval cannot be negative")
        if self.exec_mode not in EXEC_MODES:
            raise ConfigError(f"exec mode must be one of {', '.join(EXEC_MODES)}, got '{self.exec_mode}'")
        if self.output and (self.output_dir or self.name):
            raise ConfigError("--output cannot be combined with --output-dir or --name")
        if self.fan_cmd is not None:
            try:
                fan = shlex.split(self.fan_cmd)
            except ValueError as e:
                raise ConfigError(f"cannot parse fan command: {e}") from e
            if not fan:
                raise ConfigError("fan command is empty")
        for name in self.columns:
            if not name or "=" in name:
                raise ConfigError(f"invalid column name '{name}'")
        return self

    def output_path(self) -> str:
        """``-`` for stdout, otherwise the trace file path."""
        if self.output:
            return self.output
        name = self.name or Path(self.command[0]).name
        if not name.endswith(".csv"):
            name += ".csv"
        return str(Path(self.output_dir or ".") / name)

    def fan_argv(self, state: int) -> List[str]:
        return shlex.split(self.fan_cmd) + [str(state)]

    def merge(self, overrides: Dict[str, Any]) -> "Config":
        """
        Return a copy with the given overrides applied. ``None`` and empty
        lists mean "not given" and keep the current value; ``False`` is a
        value and switches a flag off.
        """
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        for key, value in overrides.items():
            if key not in values:
                raise ConfigError(f"unknown configuration key '{key}'")
            if value is None or value == []:
                continue
            values[key] = value
        return Config(**values)


_NUMBERS = ("period_ms", "timeout_s", "wait_temp", "grace_s")
_FLAGS = ("stdout_column", "cpu_usage")
_STRINGS = ("sensors_file", "fan_cmd", "output", "output_dir", "name", "exec_mode", "thermal_root")


def _as_list(key: str, value: Any) -> List[str]:
    if isinstance(value, str):
        return shlex.split(value) if key == "command" else [value]
    if isinstance(value, list):
        return [str(v) for v in value]
    raise ConfigError(f"'{key}' must be a string or a list")


def _as_number(key: str, value: Any) -> float:
    # bool is an int subclass, "yes" must not become 1
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise ConfigError(f"'{key}' must be a number, got {value!r}")
    try:
        return float(value) if isinstance(value, str) else value
    except ValueError:
        raise ConfigError(f"'{key}' must be a number, got {value!r}") from None


def _checked(key: str, value: Any) -> Any:
    if value is None:
        return None
    if key in ("command", "sensors", "exec_specs", "columns"):
        return _as_list(key, value)
    if key in _NUMBERS:
        return _as_number(key, value)
    if key in _FLAGS and not isinstance(value, bool):
        raise ConfigError(f"'{key}' must be true or false, got {value!r}")
    if key in _STRINGS:
        if isinstance(value, bool) or not isinstance(value, (str, int, float)):
            raise ConfigError(f"'{key}' must be a string, got {value!r}")
        return str(value)
    return value


def load_config(path: Path) -> Config:
    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigError(f"cannot read config {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")

    return Config().merge({str(key): _checked(str(key), value) for key, value in data.items()})
