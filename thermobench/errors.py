"""Error kinds raised by the sampling engine and their exit codes."""


class ThermobenchError(Exception):
    exit_code = 1


class ConfigError(ThermobenchError):
    """Malformed sensor spec, conflicting output options and similar."""
    exit_code = 2


class SpawnError(ThermobenchError):
    """Benchmark, exec-sensor or fan command could not be started."""
    exit_code = 3


class TraceWriteError(ThermobenchError):
    exit_code = 4


# Non-fatal: caught by the probes, the cell is left empty for the tick.
class SensorReadError(ThermobenchError):
    pass


class ExecSensorError(ThermobenchError):
    pass
