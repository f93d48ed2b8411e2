import shlex
import sys
from pathlib import Path
from typing import List, Optional

import typer

from thermobench.config import Config, load_config
from thermobench.errors import ThermobenchError
from thermobench.log import log_error
from thermobench.probes import FileProbe
from thermobench.sensors import MILLI_CELSIUS, THERMAL_ROOT, FileSource, Sensor, discover_thermal_zones

app = typer.Typer(help="Run a benchmark while sampling thermal sensors into a CSV trace")


@app.command(context_settings={"ignore_unknown_options": True})
def run(
    command: Optional[List[str]] = typer.Argument(None, help="Benchmark command, after --"),
    sensor: Optional[List[str]] = typer.Option(None, "--sensor", "-S", metavar="'FILE [NAME [UNIT]]'",
                                               help="Sensor file to sample"),
    sensors_file: Optional[Path] = typer.Option(None, "--sensors-file", "-s",
                                                help="File with one sensor or !exec spec per line"),
    exec_spec: Optional[List[str]] = typer.Option(None, "--exec", "-e", metavar="[(COL,...)]CMD",
                                                  help="Command whose stdout feeds columns"),
    column: Optional[List[str]] = typer.Option(None, "--column", "-c",
                                               help="Column filled by KEY=value lines of the benchmark"),
    stdout: Optional[bool] = typer.Option(None, "--stdout/--no-stdout", "-l",
                                        help="Add a column with the benchmark's stdout"),
    period: Optional[float] = typer.Option(None, "--period", "-p", help="Sampling period in ms [default: 100]"),
    time_limit: Optional[float] = typer.Option(None, "--time", "-t", help="Stop the benchmark after this many seconds"),
    wait: Optional[float] = typer.Option(None, "--wait", "-w", help="Wait until the first sensor is at most this °C"),
    fan_cmd: Optional[str] = typer.Option(None, "--fan-cmd", "-f", help="Fan control command, called with 1 and 0"),
    cpu_usage: Optional[bool] = typer.Option(None, "--cpu-usage/--no-cpu-usage", "-u",
                                           help="Add CPU utilization columns"),
    output: Optional[str] = typer.Option(None, "--output", "-o", help="Trace file, - for stdout"),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-O", help="Directory for the trace file"),
    name: Optional[str] = typer.Option(None, "--name", "-n", help="Trace file name inside the output directory"),
    grace: Optional[float] = typer.Option(None, "--grace", help="Seconds between SIGTERM and SIGKILL [default: 2]"),
    exec_mode: Optional[str] = typer.Option(None, "--exec-mode", help="persistent or tick"),
    config: Optional[Path] = typer.Option(None, "--config", help="YAML run configuration"),
):
    """Run COMMAND and write one trace row per sampling period"""
    overrides = {
        "command": command,
        "sensors": sensor,
        "sensors_file": str(sensors_file) if sensors_file else None,
        "exec_specs": exec_spec,
        "columns": column,
        "stdout_column": stdout,
        "period_ms": period,
        "timeout_s": time_limit,
        "wait_temp": wait,
        "fan_cmd": fan_cmd,
        "cpu_usage": cpu_usage,
        "output": output,
        "output_dir": str(output_dir) if output_dir else None,
        "name": name,
        "grace_s": grace,
        "exec_mode": exec_mode,
    }
    from thermobench.runner import ThermoRunner

    try:
        cfg = load_config(config) if config else Config()
        cfg = cfg.merge(overrides)
        runner = ThermoRunner(cfg, invocation=" ".join(shlex.quote(a) for a in sys.argv))
        result = runner.run()
    except ThermobenchError as e:
        log_error(f"Error: {e}")
        raise typer.Exit(e.exit_code)

    if result.timed_out:
        typer.echo(f"Time limit reached, {result.rows} rows written to {result.output}", err=True)
    raise typer.Exit(result.exit_code)


@app.command()
def sensors(thermal_root: str = typer.Option(THERMAL_ROOT, help="Thermal sysfs directory")):
    """List the thermal zones used when no sensor is given"""
    zones = discover_thermal_zones(thermal_root)
    if not zones:
        typer.echo("No thermal zones found")
        return

    typer.echo("Thermal zones:")
    for i, (path, zone_name) in enumerate(zones):
        probe = FileProbe(Sensor(i, FileSource(path), zone_name, MILLI_CELSIUS))
        value = probe.sample()
        reading = f"{probe.sensor.to_celsius(value):.1f} °C" if value is not None else "unreadable"
        typer.echo(f"  {zone_name:<24} {path}  {reading}")


if __name__ == "__main__":
    app()
