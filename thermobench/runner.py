import asyncio
import enum
import shlex
import signal
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from thermobench import __version__
from thermobench.columns import ColumnRegistry
from thermobench.config import Config
from thermobench.errors import ConfigError, SpawnError
from thermobench.log import log_info, log_warn
from thermobench.probes import CpuProbe, ExecProbe, FileProbe, StdoutProbe
from thermobench.sampler import TIME_COLUMN, Sampler
from thermobench.sensors import SensorSet
from thermobench.supervisor import ChildProcess, ProcessSupervisor
from thermobench.trace import RunMetadata, TraceWriter

STDOUT_COLUMN = "stdout"


class Phase(enum.Enum):
    IDLE = "idle"
    WAIT_TEMP = "wait_temp"
    FAN_ON = "fan_on"
    RUNNING = "running"
    TERMINATING = "terminating"
    FINALIZED = "finalized"


@dataclass
class RunResult:
    exit_code: int = 0
    output: Optional[str] = None
    rows: int = 0
    timed_out: bool = False
    interrupted: bool = False
    benchmark_status: Optional[int] = None
    wait_polls: int = 0


async def _pause(stop: Optional[asyncio.Event], delay: float) -> bool:
    """Sleep ``delay`` seconds; True if ``stop`` was set meanwhile."""
    if stop is None:
        await asyncio.sleep(delay)
        return False
    try:
        await asyncio.wait_for(stop.wait(), delay)
    except asyncio.TimeoutError:
        return False
    return True


async def wait_for_temperature(probe: FileProbe, threshold: float, period_s: float,
                               stop: Optional[asyncio.Event] = None) -> Optional[int]:
    """
    Poll ``probe`` every ``period_s`` until it reads at most ``threshold`` °C.

    Returns the number of polls, or ``None`` when ``stop`` was set first.
    Unreadable samples just keep the loop going.
    """
    polls = 0
    while True:
        polls += 1
        value = probe.sample()
        if value is not None:
            temp = probe.sensor.to_celsius(value)
            if temp <= threshold:
                return polls
            if polls == 1:
                log_info(f"Waiting for {probe.sensor.name} to cool down from {temp:g} to {threshold:g} °C")
        if await _pause(stop, period_s):
            return None


class ThermoRunner:
    """
    Drives one run through its phases:
    IDLE -> WAIT_TEMP -> FAN_ON -> RUNNING -> TERMINATING -> FINALIZED.

    Sensors are resolved and all columns registered in the constructor, so
    configuration errors surface before any process is started.
    """

    def __init__(self, config: Config, invocation: str = "",
                 supervisor: Optional[ProcessSupervisor] = None,
                 handle_signals: bool = True):
        self.config = config.validate()
        self.invocation = invocation or " ".join(shlex.quote(a) for a in ["thermobench", "--", *config.command])
        self.supervisor = supervisor or ProcessSupervisor()
        self.handle_signals = handle_signals
        self.phase = Phase.IDLE
        self.transitions: List[Phase] = [Phase.IDLE]
        self.output_path = config.output_path()

        self.sensors = SensorSet.resolve(config.sensors, config.sensors_file,
                                         config.exec_specs, config.thermal_root)
        if config.wait_temp is not None and not self.sensors.file_sensors:
            raise ConfigError("waiting for temperature needs at least one file sensor")
        if not self.sensors:
            log_warn("no sensors configured and no thermal zones found")

        self.registry = ColumnRegistry()
        self.registry.add(TIME_COLUMN, "the sampler")
        self.file_probes: List[FileProbe] = []
        self.exec_probes: List[ExecProbe] = []
        for sensor in self.sensors:
            if sensor.is_file:
                column = self.registry.add(sensor.column_names[0], f"sensor '{sensor.source.path}'")
                self.file_probes.append(FileProbe(sensor, column))
            else:
                self.exec_probes.append(ExecProbe(sensor, self.registry, self.supervisor, config.exec_mode))

        self.cpu_probe = None
        if config.cpu_usage:
            self.cpu_probe = CpuProbe()
            self.cpu_probe.register(self.registry)

        self.stdout_probe = None
        if config.capture_stdout:
            self.stdout_probe = StdoutProbe(self.registry, self.supervisor, config.columns,
                                            STDOUT_COLUMN if config.stdout_column else None)

        line_probes = list(self.exec_probes)
        if self.stdout_probe is not None:
            line_probes.append(self.stdout_probe)
        self.sampler = Sampler(self.registry, config.period_s, self.file_probes,
                               line_probes, self.cpu_probe)

        self.benchmark: Optional[ChildProcess] = None
        self.writer: Optional[TraceWriter] = None
        self._stop: Optional[asyncio.Event] = None
        self._signum: Optional[int] = None
        self._fan_task: Optional[asyncio.Future] = None

    def _enter(self, phase: Phase):
        if phase != self.phase:
            self.phase = phase
            self.transitions.append(phase)

    def run(self) -> RunResult:
        return asyncio.run(self.arun())

    async def arun(self) -> RunResult:
        self._stop = asyncio.Event()
        result = RunResult(output=self.output_path)
        fan_on = False
        self._install_signal_handlers()
        try:
            if self.config.wait_temp is not None:
                self._enter(Phase.WAIT_TEMP)
                polls = await wait_for_temperature(self.file_probes[0], self.config.wait_temp,
                                                   self.config.period_s, self._stop)
                if polls is None:
                    result.interrupted = True
                    result.exit_code = 128 + (self._signum or signal.SIGINT)
                    return result
                result.wait_polls = polls

            if self.config.fan_cmd:
                self._enter(Phase.FAN_ON)
                await self._fan(1)
                fan_on = True

            self._enter(Phase.RUNNING)
            await self._run_benchmark(result)
            return result
        finally:
            self._enter(Phase.TERMINATING)
            try:
                await self._finalize(fan_on)
            finally:
                self._remove_signal_handlers()
                self._enter(Phase.FINALIZED)
            if self.writer is not None:
                result.rows = self.writer.rows_written

    async def _run_benchmark(self, result: RunResult):
        cfg = self.config
        # keep the benchmark's output out of a trace written to stdout
        stdout = 2 if (self.output_path == "-" and not cfg.capture_stdout) else None
        self.benchmark = await self.supervisor.spawn(cfg.command, capture_stdout=cfg.capture_stdout,
                                                     stdout=stdout)
        if self.stdout_probe is not None:
            self.stdout_probe.attach(self.benchmark)
        for probe in self.exec_probes:
            await probe.start()

        self.writer = TraceWriter.open(self.output_path, self.registry)
        self.writer.write_metadata(RunMetadata(__version__, datetime.now(), self.invocation))
        self.writer.write_header()
        log_info(f"Running '{' '.join(cfg.command)}', {len(self.registry)} columns "
                 f"every {cfg.period_ms:g} ms into {self.output_path}")

        self.sampler.start()
        deadline = None
        if cfg.timeout_s is not None:
            deadline = self.sampler.start_time + cfg.timeout_s

        exit_task = asyncio.ensure_future(self.supervisor.wait(self.benchmark))
        stop_task = asyncio.ensure_future(self._stop.wait())
        try:
            while True:
                now = self.sampler.clock()
                if deadline is not None and now >= deadline:
                    result.timed_out = True
                    break
                wake = self.sampler.next_deadline
                if deadline is not None:
                    wake = min(wake, deadline)
                done, _ = await asyncio.wait({exit_task, stop_task}, timeout=max(0.0, wake - now),
                                             return_when=asyncio.FIRST_COMPLETED)
                if exit_task in done:
                    # last row keeps values printed right before exit
                    self._sample()
                    break
                if stop_task in done:
                    result.interrupted = True
                    break
                if self.sampler.due():
                    self._sample()
                    await self._rearm()
        finally:
            stop_task.cancel()
            if not exit_task.done():
                exit_task.cancel()

        if result.timed_out or result.interrupted:
            self._enter(Phase.TERMINATING)
            reason = "time limit reached" if result.timed_out else "interrupted"
            log_info(f"{reason}, stopping benchmark")
            await self.supervisor.terminate(self.benchmark, cfg.grace_s)

        result.benchmark_status = self.benchmark.exit_status()
        if result.interrupted:
            result.exit_code = 128 + (self._signum or signal.SIGINT)
        elif result.timed_out:
            result.exit_code = 0
        else:
            result.exit_code = result.benchmark_status or 0

    def _sample(self):
        self.writer.write_row(self.sampler.tick())

    async def _rearm(self):
        for probe in self.exec_probes:
            try:
                await probe.rearm()
            except SpawnError as e:
                log_warn(str(e))

    async def _fan(self, state: int, timeout: Optional[float] = None):
        child = await self.supervisor.spawn(self.config.fan_argv(state))
        if state:
            self._fan_task = asyncio.ensure_future(self._check_fan(child))
        else:
            await self._check_fan(child, timeout)

    async def _check_fan(self, child: ChildProcess, timeout: Optional[float] = None):
        await self.supervisor.wait(child, timeout)
        code = child.returncode
        if code is None:
            log_warn(f"fan command '{' '.join(child.argv)}' still running")
        elif code != 0:
            log_warn(f"fan command '{' '.join(child.argv)}' exited with status {code}")

    async def _finalize(self, fan_on: bool):
        if self._fan_task is not None:
            try:
                await asyncio.wait_for(self._fan_task, self.config.grace_s)
            except asyncio.TimeoutError:
                pass
        await self.supervisor.reap_all(self.config.grace_s)
        if fan_on:
            try:
                await self._fan(0, timeout=self.config.grace_s)
            except SpawnError as e:
                log_warn(f"cannot switch the fan off: {e}")
            await self.supervisor.reap_all(self.config.grace_s)
        if self.writer is not None:
            self.writer.close()

    def _on_signal(self, signum: int):
        self._signum = signum
        self._stop.set()

    def _install_signal_handlers(self):
        if not self.handle_signals:
            return
        loop = asyncio.get_running_loop()
        try:
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(signum, self._on_signal, signum)
        except (NotImplementedError, RuntimeError):
            # not the main thread, or no signal support in this event loop
            self.handle_signals = False

    def _remove_signal_handlers(self):
        if not self.handle_signals:
            return
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)
