"""Collecting process output and handing it to a sink at a fixed interval."""

from __future__ import annotations

import threading
from typing import Callable

STDOUT_PREFIX = "stdout: "
STDERR_PREFIX = "stderr: "


def _as_text(data) -> str:
    if isinstance(data, (bytes, bytearray)):
        return bytes(data).decode("utf-8", errors="replace")
    return str(data)


class _PrefixedWriter:
    """A writer that prefixes every line before buffering it."""

    def __init__(self, owner: "IntervalProcessWriter", prefix: str):
        self._owner = owner
        self.prefix = prefix

    def write(self, data) -> int:
        text = _as_text(data)
        prefixed = "".join(f"{self.prefix}{line}\n" for line in text.split("\n"))
        self._owner._append(prefixed)
        return len(data)


class IntervalProcessWriter:
    """Buffers stdout and stderr of a process and flushes it to a sink.

    A background thread flushes the buffer every ``interval`` seconds;
    :meth:`close` stops it and flushes whatever is left.
    """

    def __init__(self, sink: Callable[[str], None], interval: float = 0.5):
        self._sink = sink
        self._interval = interval
        self._lock = threading.Lock()
        self._buffer: list[str] = []
        self._closed = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stdout_writer(self) -> _PrefixedWriter:
        """A writer that prefixes every line with "stdout: "."""
        return _PrefixedWriter(self, STDOUT_PREFIX)

    def stderr_writer(self) -> _PrefixedWriter:
        """A writer that prefixes every line with "stderr: "."""
        return _PrefixedWriter(self, STDERR_PREFIX)

    def flush(self) -> None:
        """Hand the buffered output to the sink, if there is any."""
        with self._lock:
            if not self._buffer:
                return
            data = "".join(self._buffer)
            self._buffer.clear()
            self._sink(data)

    def close(self) -> None:
        """Stop the background thread and flush all pending output."""
        if self._closed.is_set():
            return
        self._closed.set()
        self._thread.join()
        self.flush()

    def __enter__(self) -> "IntervalProcessWriter":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _append(self, text: str) -> None:
        with self._lock:
            if self._closed.is_set():
                raise ValueError("write to closed IntervalProcessWriter")
            self._buffer.append(text)

    def _run(self) -> None:
        while not self._closed.wait(self._interval):
            self.flush()