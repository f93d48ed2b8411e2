"""End-to-end runs with real child processes."""

import asyncio
import csv
import shlex
import signal
import sys
import time

import pytest

from thermobench.config import Config
from thermobench.errors import ConfigError, SpawnError
from thermobench.runner import Phase, ThermoRunner, wait_for_temperature
from thermobench.sensors import FileSource, Sensor
from thermobench.supervisor import ProcState


def read_trace(path):
    lines = path.read_text().splitlines()
    rows = list(csv.reader(lines[1:]))
    return lines[0], rows[0], rows[1:]


def make_runner(**kwargs):
    return ThermoRunner(Config(**kwargs), handle_signals=False)


@pytest.mark.asyncio
async def test_two_file_sensors_half_second_benchmark(py, sensor_file, tmp_path):
    a, b = sensor_file("a", 45000), sensor_file("b", 47000)
    out = tmp_path / "trace.csv"
    runner = make_runner(command=py("import time; time.sleep(0.5)"),
                         sensors=[f"{a} fileA", f"{b} fileB"], period_ms=100, output=str(out))

    result = await runner.arun()

    comment, header, rows = read_trace(out)
    assert comment.startswith("# Started at: ")
    assert "Version: " in comment and "Generated by: " in comment
    assert header == ["time_ms", "fileA", "fileB"]
    assert 3 <= len(rows) <= 9
    assert all(len(r) == len(header) for r in rows)
    times = [int(r[0]) for r in rows]
    assert times == sorted(times)
    assert rows[0][1:] == ["45000", "47000"]
    assert result.exit_code == 0
    assert result.rows == len(rows)
    assert runner.transitions == [Phase.IDLE, Phase.RUNNING, Phase.TERMINATING, Phase.FINALIZED]


@pytest.mark.asyncio
async def test_benchmark_exit_code_is_the_result(py, sensor_file, tmp_path):
    runner = make_runner(command=py("import sys; sys.exit(7)"), sensors=[str(sensor_file("a", 1))],
                         output=str(tmp_path / "t.csv"))
    result = await runner.arun()
    assert result.exit_code == 7
    assert result.benchmark_status == 7


@pytest.mark.asyncio
async def test_time_limit_terminates_stubborn_benchmark(py, sensor_file, tmp_path):
    code = ("import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
            "time.sleep(60)")
    out = tmp_path / "trace.csv"
    runner = make_runner(command=py(code), sensors=[f"{sensor_file('a', 1)} a"], period_ms=100,
                         timeout_s=1, grace_s=0.5, output=str(out))

    started = time.monotonic()
    result = await runner.arun()
    elapsed = time.monotonic() - started

    assert result.timed_out
    assert result.exit_code == 0
    assert runner.benchmark.state == ProcState.KILLED
    assert 1.0 <= elapsed < 6
    _, header, rows = read_trace(out)
    assert header == ["time_ms", "a"]
    assert len(rows) >= 5
    assert all(int(r[0]) <= 1100 for r in rows)


@pytest.mark.asyncio
async def test_declared_stdout_columns(py, tmp_path):
    code = ("import time; print('work_done=10', flush=True); time.sleep(0.35); "
            "print('work_done=20'); print('note=ignored')")
    out = tmp_path / "trace.csv"
    runner = make_runner(command=py(code), columns=["work_done"], period_ms=50,
                         output=str(out), thermal_root=str(tmp_path / "none"))

    await runner.arun()

    _, header, rows = read_trace(out)
    assert header == ["time_ms", "work_done"]
    values = [r[1] for r in rows]
    assert values.count("20") == 1
    assert values.count("10") == 1
    assert "" in values


@pytest.mark.asyncio
async def test_stdout_column_is_quoted(py, tmp_path):
    out = tmp_path / "trace.csv"
    runner = make_runner(command=py("print('hello, \"world\"')"), stdout_column=True,
                         output=str(out), thermal_root=str(tmp_path / "none"))
    await runner.arun()

    text = out.read_text()
    assert '"hello, ""world"""' in text
    _, header, rows = read_trace(out)
    assert header == ["time_ms", "stdout"]
    assert 'hello, "world"' in [r[1] for r in rows]


@pytest.mark.asyncio
async def test_silent_exec_sensor_leaves_cells_empty(py, tmp_path):
    out = tmp_path / "trace.csv"
    runner = make_runner(command=py("import time; time.sleep(0.6)"), exec_specs=["(x)echo x=1; sleep 5"],
                         period_ms=100, output=str(out))
    await runner.arun()

    _, header, rows = read_trace(out)
    assert header == ["time_ms", "x"]
    values = [r[1] for r in rows]
    assert values.count("1") == 1
    assert set(values) == {"1", ""}
    assert all(not c.running for c in runner.supervisor.children)


@pytest.mark.asyncio
async def test_cpu_usage_columns(py, tmp_path):
    out = tmp_path / "trace.csv"
    runner = make_runner(command=py("import time; time.sleep(0.3)"), cpu_usage=True,
                         output=str(out), thermal_root=str(tmp_path / "none"))
    await runner.arun()

    _, header, rows = read_trace(out)
    assert header[0] == "time_ms"
    assert header[1] == "cpu0_usage_%"
    assert header[-1] == "cpu_usage_%"
    assert all(len(r) == len(header) for r in rows)


@pytest.mark.asyncio
async def test_autodiscovered_sensors(py, thermal_root, tmp_path):
    out = tmp_path / "trace.csv"
    runner = make_runner(command=py("pass"), output=str(out), thermal_root=str(thermal_root))
    await runner.arun()

    _, header, rows = read_trace(out)
    assert header == ["time_ms", "cpu_thermal_temp_m°C", "gpu_thermal_temp_m°C"]
    assert rows[0][1:] == ["47000", "51000"]


class SequenceProbe:
    def __init__(self, values):
        self.values = iter(values)
        self.sensor = Sensor(0, FileSource("/mock"), "mock", "°C")
        self.samples = 0

    def sample(self):
        self.samples += 1
        return next(self.values)


@pytest.mark.asyncio
async def test_wait_gate_passes_on_third_sample():
    probe = SequenceProbe([80, 70, 60, 50])
    polls = await wait_for_temperature(probe, 60, 0.001)
    assert polls == 3
    assert probe.samples == 3


@pytest.mark.asyncio
async def test_wait_gate_stops_on_request():
    probe = SequenceProbe([80] * 1000)
    stop = asyncio.Event()
    asyncio.get_running_loop().call_later(0.05, stop.set)
    assert await wait_for_temperature(probe, 60, 0.01, stop) is None


@pytest.mark.asyncio
async def test_benchmark_starts_only_after_cool_down(py, sensor_file, tmp_path):
    temp = sensor_file("temp", 80000)
    runner = make_runner(command=py("pass"), sensors=[f"{temp} cpu m°C"], wait_temp=60,
                         period_ms=20, output=str(tmp_path / "t.csv"))

    task = asyncio.ensure_future(runner.arun())
    await asyncio.sleep(0.2)
    assert runner.phase == Phase.WAIT_TEMP
    assert runner.benchmark is None
    assert runner.supervisor.children == []

    temp.write_text("59000\n")
    result = await asyncio.wait_for(task, 10)

    assert result.wait_polls > 1
    assert result.exit_code == 0
    assert runner.transitions[:3] == [Phase.IDLE, Phase.WAIT_TEMP, Phase.RUNNING]


@pytest.mark.asyncio
async def test_fan_switched_on_and_off(py, sensor_file, tmp_path):
    log = tmp_path / "fan.log"
    fan = shlex.join([sys.executable, "-c",
                      f"import sys; open({str(log)!r}, 'a').write(sys.argv[1] + chr(10))"])
    runner = make_runner(command=py("import time; time.sleep(0.3)"), sensors=[str(sensor_file("a", 1))],
                         fan_cmd=fan, output=str(tmp_path / "t.csv"))

    await runner.arun()

    assert log.read_text().splitlines() == ["1", "0"]
    assert Phase.FAN_ON in runner.transitions


@pytest.mark.asyncio
async def test_failing_fan_is_only_a_warning(py, sensor_file, tmp_path, capsys):
    runner = make_runner(command=py("pass"), sensors=[str(sensor_file("a", 1))],
                         fan_cmd=shlex.join(py("import sys; sys.exit(1)")), output=str(tmp_path / "t.csv"))
    result = await runner.arun()

    assert result.exit_code == 0
    assert "fan command" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_spawn_failure_finalizes_without_trace(sensor_file, tmp_path):
    out = tmp_path / "t.csv"
    runner = make_runner(command=["/nonexistent/bench"], sensors=[str(sensor_file("a", 1))], output=str(out))

    with pytest.raises(SpawnError):
        await runner.arun()
    assert runner.transitions[-1] == Phase.FINALIZED
    assert not out.exists()


def test_config_errors_raised_before_anything_runs(tmp_path):
    with pytest.raises(ConfigError):
        make_runner(command=["true"], sensors=["a b c d"], output=str(tmp_path / "t.csv"))
    with pytest.raises(ConfigError):
        make_runner(command=["true"], output="t.csv", output_dir=str(tmp_path))
    with pytest.raises(ConfigError):
        make_runner(command=["true"], exec_specs=["(v)echo 1"], wait_temp=50, output=str(tmp_path / "t.csv"))
    assert not (tmp_path / "t.csv").exists()


@pytest.mark.parametrize("kwargs", [
    {"sensors": ["/tmp/a t", "/tmp/b t"]},
    {"sensors": ["/tmp/a time_ms"]},
    {"exec_specs": ["(work_done)echo 1"], "columns": ["work_done"]},
    {"sensors": ["/tmp/a stdout"], "stdout_column": True},
    {"exec_specs": ["(v,v)echo 1"]},
])
def test_colliding_column_names_are_refused(kwargs, tmp_path):
    with pytest.raises(ConfigError, match="already used"):
        make_runner(command=["true"], output=str(tmp_path / "t.csv"), **kwargs)


@pytest.mark.asyncio
async def test_zones_of_the_same_type_keep_their_own_columns(py, tmp_path):
    root = tmp_path / "thermal"
    for n, temp in [(0, 41000), (1, 52000)]:
        zone = root / f"thermal_zone{n}"
        zone.mkdir(parents=True)
        (zone / "type").write_text("acpitz\n")
        (zone / "temp").write_text(f"{temp}\n")
    out = tmp_path / "trace.csv"
    runner = make_runner(command=py("pass"), thermal_root=str(root), output=str(out))

    await runner.arun()

    _, header, rows = read_trace(out)
    assert header == ["time_ms", "acpitz0_temp_m°C", "acpitz1_temp_m°C"]
    assert rows[0][1:] == ["41000", "52000"]


@pytest.mark.asyncio
async def test_interrupt_stops_benchmark_and_keeps_trace(py, sensor_file, tmp_path):
    out = tmp_path / "trace.csv"
    code = ("import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
            "time.sleep(60)")
    runner = make_runner(command=py(code), sensors=[f"{sensor_file('a', 1)} a"], period_ms=50,
                         grace_s=0.3, output=str(out))

    task = asyncio.ensure_future(runner.arun())
    await asyncio.sleep(0.5)
    assert runner.phase == Phase.RUNNING
    runner._on_signal(signal.SIGINT)
    result = await asyncio.wait_for(task, 10)

    assert result.interrupted
    assert not result.timed_out
    assert result.exit_code == 130
    assert runner.benchmark.state == ProcState.KILLED
    assert runner.benchmark.returncode is not None
    assert runner.transitions[-2:] == [Phase.TERMINATING, Phase.FINALIZED]
    _, header, rows = read_trace(out)
    assert header == ["time_ms", "a"]
    assert len(rows) >= 2
    assert result.rows == len(rows)
