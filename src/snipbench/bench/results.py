"""Result records and their on-disk format.

Files produced per run::

    run_meta.json    - the run's configuration and counters
    results.jsonl    - one ResultRecord per successful unit, appended as
                       units finish so that an interrupted run keeps
                       everything measured so far
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from snipbench.bench.models import ExecutionContext, RawResult
from snipbench.bench.stats import BenchmarkMetrics

log = logging.getLogger("snipbench")

RESULTS_FILENAME = "results.jsonl"
META_FILENAME = "run_meta.json"


# ---------------------------------------------------------------------------
# ResultRecord
# ---------------------------------------------------------------------------


@dataclass
class ResultRecord:
    """One persisted measurement."""

    snippet: str
    environment: str
    execution_time_ms: float
    memory_used_bytes: float
    memory_peak_bytes: float
    run_id: str = ""
    name: str = ""
    category: str = ""
    warmup_iterations: int = 0
    inner_iterations: int = 0
    timestamp: float = field(default_factory=time.time)

    @classmethod
    def from_result(
        cls,
        context: ExecutionContext,
        result: RawResult,
        *,
        run_id: str = "",
    ) -> ResultRecord:
        return cls(
            snippet=context.snippet.slug,
            environment=context.environment_id,
            execution_time_ms=round(result.execution_time_ms, 4),
            memory_used_bytes=result.memory_used_bytes,
            memory_peak_bytes=result.memory_peak_bytes,
            run_id=run_id,
            name=context.snippet.name,
            category=context.snippet.category,
            warmup_iterations=context.configuration.warmup_iterations,
            inner_iterations=context.configuration.inner_iterations,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict."""
        return {
            "run_id": self.run_id,
            "snippet": self.snippet,
            "name": self.name,
            "category": self.category,
            "environment": self.environment,
            "execution_time_ms": round(self.execution_time_ms, 4),
            "memory_used_bytes": self.memory_used_bytes,
            "memory_peak_bytes": self.memory_peak_bytes,
            "warmup_iterations": self.warmup_iterations,
            "inner_iterations": self.inner_iterations,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResultRecord:
        """Deserialize from a dict, ignoring unknown fields."""
        known = {f.name for f in cls.__dataclass_fields__.values()}
        filtered = {k: v for k, v in data.items() if k in known}
        return cls(**filtered)

    def to_jsonl_line(self) -> str:
        """Serialize to a single JSONL line."""
        return json.dumps(self.to_dict(), separators=(",", ":"))

    @classmethod
    def from_jsonl_line(cls, line: str) -> ResultRecord:
        """Deserialize from a single JSONL line."""
        return cls.from_dict(json.loads(line))


# ---------------------------------------------------------------------------
# Sink
# ---------------------------------------------------------------------------


class JsonlResultSink:
    """Append each persisted result to a JSONL file.

    Safe to call from several worker threads at once.
    """

    def __init__(self, path: Path, *, run_id: str = "") -> None:
        self.path = path
        self.run_id = run_id
        self.count = 0
        self._lock = threading.Lock()

    def persist(self, context: ExecutionContext, result: RawResult) -> None:
        record = ResultRecord.from_result(context, result, run_id=self.run_id)
        line = record.to_jsonl_line() + "\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a") as f:
                f.write(line)
            self.count += 1


# ---------------------------------------------------------------------------
# I/O functions
# ---------------------------------------------------------------------------


def save_run_meta(output_dir: Path, meta: dict[str, Any]) -> Path:
    """Write ``run_meta.json`` into *output_dir*."""
    output_dir.mkdir(parents=True, exist_ok=True)
    meta_path = output_dir / META_FILENAME
    meta_path.write_text(json.dumps(meta, indent=2) + "\n")
    log.info("Wrote %s", meta_path)
    return meta_path


def load_results(results_path: Path) -> list[ResultRecord]:
    """Load every record from a ``results.jsonl`` file.

    Accepts either the file itself or the run directory containing it.
    Corrupt lines are logged and skipped.

    Raises:
        FileNotFoundError: If the file does not exist.
    """
    if results_path.is_dir():
        results_path = results_path / RESULTS_FILENAME
    if not results_path.exists():
        raise FileNotFoundError(f"No results file: {results_path}")

    records: list[ResultRecord] = []
    for lineno, line in enumerate(results_path.read_text().splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        try:
            records.append(ResultRecord.from_jsonl_line(line))
        except (json.JSONDecodeError, TypeError, AttributeError) as exc:
            log.warning("Skipping corrupt line %d in %s: %s", lineno, results_path, exc)
    return records


def group_metrics(records: list[ResultRecord]) -> dict[tuple[str, str], BenchmarkMetrics]:
    """Group records into per-(snippet, environment) metrics, sorted by key."""
    groups: dict[tuple[str, str], BenchmarkMetrics] = {}
    for record in records:
        key = (record.snippet, record.environment)
        metrics = groups.get(key)
        if metrics is None:
            metrics = BenchmarkMetrics(
                snippet_slug=record.snippet,
                snippet_name=record.name or record.snippet,
                environment=record.environment,
            )
            groups[key] = metrics
        metrics.add(record.execution_time_ms, record.memory_used_bytes, record.memory_peak_bytes)
    return dict(sorted(groups.items()))
