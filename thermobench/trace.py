import sys
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, TextIO

from thermobench.columns import ColumnRegistry, Row
from thermobench.errors import TraceWriteError

_NEEDS_QUOTES = (",", " ", '"', "\n", "\r")


def csv_escape(field: str) -> str:
    """Quote a field containing a comma, space, quote or line break."""
    if any(ch in field for ch in _NEEDS_QUOTES):
        return '"' + field.replace('"', '""') + '"'
    return field


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_record(fields: Iterable[Any]) -> str:
    return ",".join(csv_escape(format_value(f)) for f in fields) + "\n"


@dataclass
class RunMetadata:
    version: str
    started_at: datetime
    invocation: str

    def comment(self) -> str:
        started = self.started_at.strftime("%Y-%m-%d %H:%M:%S")
        return f"# Started at: {started}, Version: {self.version}, Generated by: {self.invocation}\n"


class TraceWriter:
    """Single writer of the trace stream: metadata, header, one row per tick."""

    def __init__(self, stream: TextIO, registry: ColumnRegistry, close_stream: bool = True):
        self.stream = stream
        self.registry = registry
        self.close_stream = close_stream
        self.rows_written = 0
        self._header_written = False

    @classmethod
    def open(cls, path: str, registry: ColumnRegistry) -> "TraceWriter":
        if path == "-":
            return cls(sys.stdout, registry, close_stream=False)
        try:
            stream = open(path, "w", encoding="utf-8", newline="")
        except OSError as e:
            raise TraceWriteError(f"cannot open trace file {path}: {e}") from e
        return cls(stream, registry)

    def _write(self, text: str):
        try:
            self.stream.write(text)
            self.stream.flush()
        except OSError as e:
            raise TraceWriteError(f"trace write failed: {e}") from e

    def write_metadata(self, meta: RunMetadata):
        self._write(meta.comment())

    def write_header(self):
        self.registry.freeze()
        self._write(format_record(self.registry.names))
        self._header_written = True

    def write_row(self, row: Row) -> List[Any]:
        if not self._header_written:
            raise TraceWriteError("header must be written before data rows")
        values = row.values()
        self._write(format_record(values))
        self.rows_written += 1
        return values

    def close(self):
        if self.stream is None:
            return
        try:
            self.stream.flush()
            if self.close_stream:
                self.stream.close()
        except OSError as e:
            raise TraceWriteError(f"cannot close trace: {e}") from e
        finally:
            self.stream = None
