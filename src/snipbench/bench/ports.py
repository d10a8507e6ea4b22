"""Collaborator interfaces consumed by the orchestrator.

All ports are ``typing.Protocol`` classes: any object with matching
method signatures satisfies them without inheritance.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from snipbench.bench.events import Signal
    from snipbench.bench.models import ExecutionContext, IterationTask, RawResult


class ResultSink(Protocol):
    """Durable storage of individual measurements."""

    def persist(self, context: ExecutionContext, result: RawResult) -> None:
        """Store one successful unit's result."""
        ...


class ProgressSink(Protocol):
    """Fire-and-forget receiver of Started / Progress / Completed signals."""

    def publish(self, signal: Signal) -> None:
        """Deliver one signal; may be slow, must not be relied on to return fast."""
        ...


class MessageDispatchPort(Protocol):
    """Hands units to out-of-process workers.

    Completion is reported back to the orchestrator through
    ``BenchmarkOrchestrator.report_completion`` rather than returned.
    """

    def dispatch(self, task: IterationTask) -> None:
        """Queue *task* for execution."""
        ...
