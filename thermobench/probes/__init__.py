from thermobench.probes.cpu_probe import CpuProbe
from thermobench.probes.exec_probe import ExecProbe, LineProbe, StdoutProbe
from thermobench.probes.file_probe import FileProbe

__all__ = ["CpuProbe", "ExecProbe", "FileProbe", "LineProbe", "StdoutProbe"]
