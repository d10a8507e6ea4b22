"""Ready-made progress and result sinks."""

from __future__ import annotations

import logging
import threading

from snipbench.bench.events import Completed, Progress, Signal, Started
from snipbench.bench.models import ExecutionContext, RawResult

log = logging.getLogger("snipbench")


class LoggingProgressSink:
    """Log every signal as one line, like a textual progress bar."""

    def publish(self, signal: Signal) -> None:
        stream = f"{signal.snippet:30s} {signal.environment:12s}"
        if isinstance(signal, Started):
            log.info("  %s started (%d iterations)", stream, signal.total_iterations)
        elif isinstance(signal, Progress):
            line = (
                f"  {stream} {signal.current_iteration}/{signal.total_iterations} "
                f"{signal.percent:3d}%"
            )
            if signal.status != "completed":
                line += f" [{signal.status}]"
            log.info(line)
        elif isinstance(signal, Completed):
            line = f"  {stream} done"
            if signal.failed_iterations:
                line += f" ({signal.failed_iterations} failed)"
            log.info(line)


class CollectingProgressSink:
    """Keep every published signal in memory, in publication order."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._signals: list[Signal] = []

    def publish(self, signal: Signal) -> None:
        with self._lock:
            self._signals.append(signal)

    @property
    def signals(self) -> list[Signal]:
        with self._lock:
            return list(self._signals)

    def for_stream(self, snippet: str, environment: str) -> list[Signal]:
        return [s for s in self.signals if s.snippet == snippet and s.environment == environment]

    def progress_sequence(self, snippet: str, environment: str) -> list[int]:
        """Current iteration numbers of a stream's Progress signals."""
        return [
            s.current_iteration
            for s in self.for_stream(snippet, environment)
            if isinstance(s, Progress)
        ]


class CollectingResultSink:
    """Keep persisted results in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.results: list[tuple[ExecutionContext, RawResult]] = []

    def persist(self, context: ExecutionContext, result: RawResult) -> None:
        with self._lock:
            self.results.append((context, result))
