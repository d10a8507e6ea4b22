"""Fan out (snippet x environment x iteration) units and track their progress.

A run goes ``IDLE -> DISPATCHING -> DRAINED``.  Each supported
(snippet, environment) pair is one *stream* of N units.  For every stream
the orchestrator emits:

- one :class:`Started` before any of its units run;
- one :class:`Progress` per finished unit, numbered 1..N in order even
  when units finish out of order (completions are buffered until every
  earlier iteration has finished);
- one :class:`Completed` after the N-th, carrying the failed count.

Units run on a bounded thread pool.  A failed unit is logged, counted and
never retried; it still advances its stream.  Signals are handed to a
single background publisher thread so a slow progress sink never blocks
workers.

Instead of the pool, units can be handed to a :class:`MessageDispatchPort`
with :meth:`BenchmarkOrchestrator.dispatch_stream`; completions then come
back through :meth:`BenchmarkOrchestrator.report_completion` and go
through the same sequencing.
"""

from __future__ import annotations

import enum
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from snipbench.bench.backend import ExecutionBackend
from snipbench.bench.calibrate import CalibrationResult, IterationCalibrator, should_calibrate
from snipbench.bench.events import Completed, Progress, Signal, Started
from snipbench.bench.instrument import ScriptInstrumenter
from snipbench.bench.iterations import IterationConfiguration
from snipbench.bench.models import ExecutionContext, IterationTask, RawResult
from snipbench.bench.ports import MessageDispatchPort, ProgressSink, ResultSink
from snipbench.bench.sampling import MultiSampleAggregator
from snipbench.bench.stats import BenchmarkMetrics
from snipbench.errors import ExecutionError, InvalidConfiguration
from snipbench.snippets import Snippet

log = logging.getLogger("snipbench")

DEFAULT_SIGNAL_TIMEOUT = 10.0


class OrchestratorState(enum.Enum):
    IDLE = "idle"
    DISPATCHING = "dispatching"
    DRAINED = "drained"


class UnitStatus(enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


@dataclass
class UnitFailure:
    """A unit that did not produce a result."""

    snippet: str
    environment: str
    iteration: int
    kind: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "snippet": self.snippet,
            "environment": self.environment,
            "iteration": self.iteration,
            "kind": self.kind,
            "message": self.message,
        }


@dataclass
class StreamReport:
    """Outcome of one (snippet, environment) stream."""

    snippet: Snippet
    environment: str
    total_iterations: int
    configuration: IterationConfiguration
    results_by_iteration: dict[int, RawResult] = field(default_factory=dict)
    failures: list[UnitFailure] = field(default_factory=list)
    unit_status: dict[int, UnitStatus] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        return self.snippet.slug, self.environment

    @property
    def results(self) -> list[RawResult]:
        """Successful results in iteration order."""
        return [self.results_by_iteration[i] for i in sorted(self.results_by_iteration)]

    @property
    def succeeded_count(self) -> int:
        return len(self.results_by_iteration)

    @property
    def failed_count(self) -> int:
        return len(self.failures)

    @property
    def finished_count(self) -> int:
        return self.succeeded_count + self.failed_count

    @property
    def is_complete(self) -> bool:
        return self.finished_count >= self.total_iterations

    def metrics(self) -> BenchmarkMetrics:
        metrics = BenchmarkMetrics(
            snippet_slug=self.snippet.slug,
            snippet_name=self.snippet.name,
            environment=self.environment,
        )
        for result in self.results:
            metrics.add(result.execution_time_ms, result.memory_used_bytes, result.memory_peak_bytes)
        return metrics


@dataclass
class OrchestrationReport:
    """Outcome of a whole run."""

    streams: dict[tuple[str, str], StreamReport] = field(default_factory=dict)
    skipped: list[tuple[str, str]] = field(default_factory=list)
    calibrations: dict[str, CalibrationResult] = field(default_factory=dict)
    state: OrchestratorState = OrchestratorState.IDLE

    @property
    def total_units(self) -> int:
        return sum(s.total_iterations for s in self.streams.values())

    @property
    def succeeded_units(self) -> int:
        return sum(s.succeeded_count for s in self.streams.values())

    @property
    def failed_units(self) -> int:
        return sum(s.failed_count for s in self.streams.values())

    @property
    def failures(self) -> list[UnitFailure]:
        return [f for s in self.streams.values() for f in s.failures]

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "streams": len(self.streams),
            "total_units": self.total_units,
            "succeeded_units": self.succeeded_units,
            "failed_units": self.failed_units,
            "skipped": [f"{slug}@{env}" for slug, env in self.skipped],
            "failures": [f.to_dict() for f in self.failures],
            "calibrations": {k: v.to_dict() for k, v in self.calibrations.items()},
        }


# ---------------------------------------------------------------------------
# Signal delivery
# ---------------------------------------------------------------------------


class _SignalPublisher:
    """Deliver signals to a progress sink on one background thread, in order.

    The thread is a daemon, so a sink that never returns cannot keep the
    interpreter alive once :meth:`close` has given up waiting.
    """

    _STOP = object()

    def __init__(self, sink: ProgressSink | None) -> None:
        self.sink = sink
        self._queue: queue.Queue[Any] = queue.Queue()
        self._thread: threading.Thread | None = None
        if sink is not None:
            self._thread = threading.Thread(
                target=self._drain, args=(sink,), name="snipbench-signals", daemon=True
            )
            self._thread.start()

    @property
    def thread(self) -> threading.Thread | None:
        return self._thread

    def publish(self, signal: Signal) -> None:
        if self._thread is None:
            return
        self._queue.put(signal)

    def _drain(self, sink: ProgressSink) -> None:
        while True:
            signal = self._queue.get()
            if signal is self._STOP:
                return
            try:
                sink.publish(signal)
            except Exception as exc:  # noqa: BLE001
                log.warning("Progress sink failed on %s signal: %s", signal.kind, exc)

    def close(self, timeout: float) -> bool:
        """Wait up to *timeout* seconds for queued signals; True if all were delivered."""
        if self._thread is None:
            return True
        self._queue.put(self._STOP)
        self._thread.join(timeout)
        delivered = not self._thread.is_alive()
        if not delivered:
            log.warning("Progress signals still pending after %gs, not waiting any longer", timeout)
        self._thread = None
        return delivered


class _StreamSequencer:
    """Turn unit completions, in any order, into in-order Progress signals."""

    def __init__(self, snippet: str, environment: str, total: int) -> None:
        self.snippet = snippet
        self.environment = environment
        self.total = total
        self.lock = threading.RLock()
        self._next = 1
        self._pending: dict[int, UnitStatus] = {}
        self._failed = 0
        self._completed_emitted = False

    def complete(
        self,
        iteration: int,
        status: UnitStatus,
        emit: Callable[[Signal], None],
    ) -> None:
        """Record a finished unit and emit every signal that became ready.

        *emit* is called under the stream lock so concurrent completions
        cannot reorder the stream's signals.
        """
        with self.lock:
            if iteration < self._next or iteration in self._pending:
                log.warning(
                    "Ignoring duplicate completion of %s@%s iteration %d",
                    self.snippet,
                    self.environment,
                    iteration,
                )
                return
            self._pending[iteration] = status
            while self._next in self._pending:
                ready = self._pending.pop(self._next)
                if ready is UnitStatus.FAILED:
                    self._failed += 1
                emit(
                    Progress(
                        snippet=self.snippet,
                        environment=self.environment,
                        current_iteration=self._next,
                        total_iterations=self.total,
                        status=ready.value,
                    )
                )
                self._next += 1
            if self._next > self.total and not self._completed_emitted:
                self._completed_emitted = True
                emit(
                    Completed(
                        snippet=self.snippet,
                        environment=self.environment,
                        total_iterations=self.total,
                        failed_iterations=self._failed,
                    )
                )

    @property
    def done(self) -> bool:
        with self.lock:
            return self._completed_emitted


@dataclass
class _Stream:
    report: StreamReport
    context: ExecutionContext
    sequencer: _StreamSequencer


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class BenchmarkOrchestrator:
    """Runs every supported (snippet, environment) stream of a benchmark.

    Usage::

        orchestrator = BenchmarkOrchestrator(
            WarmingBackend(SubprocessBackend(environments)),
            result_sink=JsonlResultSink(path),
            progress_sink=LoggingProgressSink(),
            pool_size=4,
        )
        report = orchestrator.run(catalog.select(), ["py312", "py313"], iterations=10)
    """

    def __init__(
        self,
        backend: ExecutionBackend,
        *,
        result_sink: ResultSink | None = None,
        progress_sink: ProgressSink | None = None,
        instrumenter: ScriptInstrumenter | None = None,
        pool_size: int = 4,
        sample_count: int = 1,
        calibrator: IterationCalibrator | None = None,
        target_duration_ms: float = 1000.0,
        force_calibration: bool = False,
        dispatch_port: MessageDispatchPort | None = None,
        signal_timeout: float = DEFAULT_SIGNAL_TIMEOUT,
    ) -> None:
        if pool_size < 1:
            raise InvalidConfiguration(f"Pool size must be at least 1 (got {pool_size})")
        self.backend = backend
        self.result_sink = result_sink
        self.progress_sink = progress_sink
        self.instrumenter = instrumenter or ScriptInstrumenter()
        self.pool_size = pool_size
        self.sample_count = sample_count
        self.calibrator = calibrator
        self.target_duration_ms = target_duration_ms
        self.force_calibration = force_calibration
        self.dispatch_port = dispatch_port
        self.signal_timeout = signal_timeout

        self.state = OrchestratorState.IDLE
        self._executor: ExecutionBackend = (
            MultiSampleAggregator(backend, sample_count=sample_count)
            if sample_count > 1
            else backend
        )
        self._streams: dict[tuple[str, str], _Stream] = {}
        self._publisher: _SignalPublisher | None = None
        self._report: OrchestrationReport | None = None
        self._lock = threading.Lock()
        self._streams_done = threading.Condition(self._lock)

    # -- configuration -----------------------------------------------------

    def resolve_configuration(
        self,
        snippet: Snippet,
        calibration: CalibrationResult | None = None,
    ) -> IterationConfiguration:
        """Pick the iteration counts for *snippet*.

        Explicit snippet values win, then a calibration result, then the
        code-complexity estimate.  A forced calibration replaces explicit
        values.
        """
        if calibration is not None and (
            self.force_calibration or not snippet.has_explicit_iterations
        ):
            return IterationConfiguration.from_calibration(calibration)
        return IterationConfiguration.create_with_defaults(
            snippet.warmup_iterations,
            snippet.inner_iterations,
            code=snippet.code,
        )

    def calibrate(self, snippets: Iterable[Snippet]) -> dict[str, CalibrationResult]:
        """Calibrate every eligible snippet; unmeasurable ones are left out."""
        results: dict[str, CalibrationResult] = {}
        if self.calibrator is None:
            return results
        for snippet in snippets:
            if not should_calibrate(snippet, force=self.force_calibration):
                log.debug("Not calibrating %s (category %s)", snippet.slug, snippet.category)
                continue
            result = self.calibrator.calibrate(snippet, self.target_duration_ms)
            if result is not None:
                results[snippet.slug] = result
        return results

    def _build_context(
        self,
        snippet: Snippet,
        environment: str,
        configuration: IterationConfiguration,
    ) -> ExecutionContext:
        return ExecutionContext(
            environment_id=environment,
            snippet=snippet,
            instrumented_script=self.instrumenter.build(snippet, configuration),
            configuration=configuration,
        )

    # -- lifecycle ---------------------------------------------------------

    def _begin(self) -> OrchestrationReport:
        with self._lock:
            if self.state is OrchestratorState.DISPATCHING:
                raise RuntimeError("Orchestrator is already dispatching")
            self.state = OrchestratorState.DISPATCHING
            self._streams = {}
            self._report = OrchestrationReport(state=self.state)
            self._publisher = _SignalPublisher(self.progress_sink)
            return self._report

    def _finish(self) -> OrchestrationReport:
        if self._report is None:
            raise RuntimeError("Orchestrator has not started a run")
        if self._publisher is not None:
            self._publisher.close(self.signal_timeout)
            self._publisher = None
        with self._lock:
            self.state = OrchestratorState.DRAINED
            self._report.state = self.state
            return self._report

    def _emit(self, signal: Signal) -> None:
        if self._publisher is not None:
            self._publisher.publish(signal)

    def _open_stream(
        self,
        snippet: Snippet,
        environment: str,
        iterations: int,
        configuration: IterationConfiguration,
    ) -> _Stream:
        if self._report is None:
            raise RuntimeError("Orchestrator has not started a run")
        report = StreamReport(
            snippet=snippet,
            environment=environment,
            total_iterations=iterations,
            configuration=configuration,
            unit_status={i: UnitStatus.PENDING for i in range(1, iterations + 1)},
        )
        stream = _Stream(
            report=report,
            context=self._build_context(snippet, environment, configuration),
            sequencer=_StreamSequencer(snippet.slug, environment, iterations),
        )
        with self._lock:
            self._streams[report.key] = stream
            self._report.streams[report.key] = report
        log.debug(
            "Stream %s@%s: %d units, %s",
            snippet.slug,
            environment,
            iterations,
            configuration.description,
        )
        self._emit(
            Started(snippet=snippet.slug, environment=environment, total_iterations=iterations)
        )
        return stream

    # -- in-process execution ----------------------------------------------

    def run(
        self,
        snippets: Iterable[Snippet],
        environments: Iterable[str],
        iterations: int,
    ) -> OrchestrationReport:
        """Run *iterations* units for every supported (snippet, environment).

        Returns:
            OrchestrationReport in state DRAINED.

        Raises:
            InvalidConfiguration: If *iterations* is less than 1.
        """
        if iterations < 1:
            raise InvalidConfiguration(f"Iterations must be at least 1 (got {iterations})")
        snippet_list = list(snippets)
        environment_list = list(environments)

        report = self._begin()
        try:
            supported = [s for s in snippet_list if any(s.supports(e) for e in environment_list)]
            report.calibrations = self.calibrate(supported)

            streams: list[_Stream] = []
            for snippet in snippet_list:
                configuration: IterationConfiguration | None = None
                for environment in environment_list:
                    if not snippet.supports(environment):
                        log.debug("Skipping %s@%s: not supported", snippet.slug, environment)
                        report.skipped.append((snippet.slug, environment))
                        continue
                    if configuration is None:
                        configuration = self.resolve_configuration(
                            snippet, report.calibrations.get(snippet.slug)
                        )
                    streams.append(
                        self._open_stream(snippet, environment, iterations, configuration)
                    )

            log.info(
                "Dispatching %d units in %d streams on %d workers",
                len(streams) * iterations,
                len(streams),
                self.pool_size,
            )
            self._run_pool(streams, iterations)
        finally:
            self._finish()

        log.info(
            "Run drained: %d units succeeded, %d failed, %d pairs skipped",
            report.succeeded_units,
            report.failed_units,
            len(report.skipped),
        )
        return report

    def run_stream(
        self,
        snippet: Snippet,
        environment: str,
        iterations: int,
        configuration: IterationConfiguration | None = None,
    ) -> StreamReport | None:
        """Run a single stream; None if *snippet* does not support *environment*."""
        if iterations < 1:
            raise InvalidConfiguration(f"Iterations must be at least 1 (got {iterations})")
        report = self._begin()
        try:
            if not snippet.supports(environment):
                log.debug("Skipping %s@%s: not supported", snippet.slug, environment)
                report.skipped.append((snippet.slug, environment))
                return None
            stream = self._open_stream(
                snippet,
                environment,
                iterations,
                configuration or self.resolve_configuration(snippet),
            )
            self._run_pool([stream], iterations)
            return stream.report
        finally:
            self._finish()

    def _run_pool(self, streams: list[_Stream], iterations: int) -> None:
        with ThreadPoolExecutor(
            max_workers=self.pool_size, thread_name_prefix="snipbench-unit"
        ) as pool:
            futures = {
                pool.submit(self._run_unit, stream, iteration): (stream, iteration)
                for stream in streams
                for iteration in range(1, iterations + 1)
            }
            for future in as_completed(futures):
                stream, iteration = futures[future]
                try:
                    result, error = future.result()
                except Exception as exc:  # noqa: BLE001
                    log.error(
                        "Worker exception for %s iteration %d: %s",
                        stream.context.describe(),
                        iteration,
                        exc,
                    )
                    result, error = None, exc
                self._finish_unit(stream, iteration, result, error)

    def _run_unit(
        self, stream: _Stream, iteration: int
    ) -> tuple[RawResult | None, BaseException | None]:
        with stream.sequencer.lock:
            stream.report.unit_status[iteration] = UnitStatus.RUNNING
        try:
            return self._executor.execute(stream.context), None
        except ExecutionError as exc:
            return None, exc

    # -- shared completion path --------------------------------------------

    def _finish_unit(
        self,
        stream: _Stream,
        iteration: int,
        result: RawResult | None,
        error: BaseException | None,
    ) -> None:
        report = stream.report
        status = UnitStatus.COMPLETED if result is not None else UnitStatus.FAILED
        with stream.sequencer.lock:
            previous = report.unit_status.get(iteration)
            if previous is None or previous in (UnitStatus.COMPLETED, UnitStatus.FAILED):
                log.warning(
                    "Ignoring unexpected completion of %s #%d", stream.context.describe(), iteration
                )
                return
            report.unit_status[iteration] = status

        if result is not None:
            self._persist(stream.context, result)
        else:
            kind = getattr(error, "kind", "error")
            message = getattr(error, "message", None) or str(error)
            log.error(
                "Unit failed: snippet %s, environment %s, iteration %d/%d: [%s] %s",
                report.snippet.slug,
                report.environment,
                iteration,
                report.total_iterations,
                kind,
                message,
            )

        with stream.sequencer.lock:
            if result is not None:
                report.results_by_iteration[iteration] = result
            else:
                report.failures.append(
                    UnitFailure(
                        snippet=report.snippet.slug,
                        environment=report.environment,
                        iteration=iteration,
                        kind=kind,
                        message=message,
                    )
                )
            stream.sequencer.complete(iteration, status, self._emit)

        if stream.sequencer.done:
            with self._streams_done:
                self._streams_done.notify_all()

    def _persist(self, context: ExecutionContext, result: RawResult) -> None:
        if self.result_sink is None:
            return
        try:
            self.result_sink.persist(context, result)
        except Exception as exc:  # noqa: BLE001
            log.error("Failed to persist result for %s: %s", context.describe(), exc)

    # -- message dispatch --------------------------------------------------

    def dispatch_stream(
        self,
        snippet: Snippet,
        environment: str,
        iterations: int,
        *,
        configuration: IterationConfiguration | None = None,
        port: MessageDispatchPort | None = None,
    ) -> StreamReport | None:
        """Hand a stream's units to a dispatch port instead of the pool.

        Emits Started, then dispatches one :class:`IterationTask` per unit.
        The stream advances as :meth:`report_completion` is called.  Call
        :meth:`drain` once every stream of the run has been dispatched.

        Returns:
            The stream's (live) report, or None if unsupported.
        """
        dispatch_port = port or self.dispatch_port
        if dispatch_port is None:
            raise RuntimeError("No message dispatch port configured")
        if iterations < 1:
            raise InvalidConfiguration(f"Iterations must be at least 1 (got {iterations})")

        if self.state is not OrchestratorState.DISPATCHING:
            self._begin()
        report = self._report
        if report is None:
            raise RuntimeError("Orchestrator has not started a run")
        if not snippet.supports(environment):
            log.debug("Skipping %s@%s: not supported", snippet.slug, environment)
            report.skipped.append((snippet.slug, environment))
            return None

        stream = self._open_stream(
            snippet,
            environment,
            iterations,
            configuration or self.resolve_configuration(snippet),
        )
        for iteration in range(1, iterations + 1):
            dispatch_port.dispatch(
                IterationTask(
                    context=stream.context,
                    iteration=iteration,
                    total_iterations=iterations,
                    sample_count=self.sample_count,
                )
            )
        return stream.report

    def report_completion(
        self,
        task: IterationTask,
        result: RawResult | None = None,
        error: BaseException | None = None,
    ) -> None:
        """Record an externally executed unit's outcome.

        Exactly one of *result* and *error* should be given.
        """
        with self._lock:
            stream = self._streams.get(task.stream_key)
        if stream is None:
            log.warning("Completion for unknown stream %s ignored", task.describe())
            return
        if result is None and error is None:
            error = ExecutionError(
                "Unit reported neither a result nor an error",
                snippet=task.context.snippet.slug,
                environment=task.context.environment_id,
            )
        self._finish_unit(stream, task.iteration, result, error)

    def drain(self, timeout: float | None = None) -> OrchestrationReport:
        """Wait for every dispatched stream to complete, then close the run.

        Streams still incomplete after *timeout* seconds are left as they
        are and reported with a warning.
        """
        if self._report is None or self.state is not OrchestratorState.DISPATCHING:
            raise RuntimeError("Nothing has been dispatched")
        with self._streams_done:
            finished = self._streams_done.wait_for(
                lambda: all(s.sequencer.done for s in self._streams.values()),
                timeout=timeout,
            )
        if not finished:
            pending = [s.context.describe() for s in self._streams.values() if not s.sequencer.done]
            log.warning("Draining with %d incomplete streams: %s", len(pending), ", ".join(pending))
        return self._finish()


# ---------------------------------------------------------------------------
# Worker side of the dispatch path
# ---------------------------------------------------------------------------


CompletionCallback = Callable[..., None]


class IterationTaskHandler:
    """Execute dispatched tasks and report their outcome.

    *report* is usually :meth:`BenchmarkOrchestrator.report_completion`.
    """

    def __init__(self, backend: ExecutionBackend, report: CompletionCallback) -> None:
        self.backend = backend
        self.report = report

    def handle(self, task: IterationTask) -> None:
        log.debug("Handling %s", task.describe())
        executor: ExecutionBackend = self.backend
        if task.sample_count > 1:
            executor = MultiSampleAggregator(self.backend, sample_count=task.sample_count)
        try:
            result = executor.execute(task.context)
        except ExecutionError as exc:
            self.report(task, error=exc)
            return
        except Exception as exc:  # noqa: BLE001
            log.error("Worker exception for %s: %s", task.describe(), exc)
            self.report(task, error=exc)
            return
        self.report(task, result=result)

    __call__ = handle


class InlineDispatchPort:
    """Dispatch port that runs each task immediately, in the calling thread."""

    def __init__(self, handler: IterationTaskHandler) -> None:
        self.handler = handler
        self.dispatched = 0

    def dispatch(self, task: IterationTask) -> None:
        self.dispatched += 1
        self.handler.handle(task)
