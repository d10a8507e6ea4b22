"""Tests for snipbench.bench.results: result records and JSONL I/O."""

from __future__ import annotations

import json
import tempfile
import threading
import unittest
from pathlib import Path

from bench_test_helpers import make_config, make_context, make_result, make_snippet

from snipbench.bench.results import (
    META_FILENAME,
    RESULTS_FILENAME,
    JsonlResultSink,
    ResultRecord,
    group_metrics,
    load_results,
    save_run_meta,
)


def _record(snippet: str = "s", environment: str = "py", time_ms: float = 1.0) -> ResultRecord:
    return ResultRecord(
        snippet=snippet,
        environment=environment,
        execution_time_ms=time_ms,
        memory_used_bytes=10.0,
        memory_peak_bytes=100.0,
    )


class TestResultRecord(unittest.TestCase):
    def test_from_result(self) -> None:
        context = make_context(make_snippet("join", name="Join"), "py312", make_config(3, 50))
        record = ResultRecord.from_result(context, make_result(1.234567, 8.0, 512.0), run_id="r1")
        self.assertEqual(record.snippet, "join")
        self.assertEqual(record.name, "Join")
        self.assertEqual(record.category, "Math")
        self.assertEqual(record.environment, "py312")
        self.assertEqual(record.execution_time_ms, 1.2346)
        self.assertEqual(record.warmup_iterations, 3)
        self.assertEqual(record.inner_iterations, 50)
        self.assertEqual(record.run_id, "r1")

    def test_jsonl_round_trip(self) -> None:
        record = _record(time_ms=2.5)
        line = record.to_jsonl_line()
        self.assertNotIn("\n", line)
        self.assertEqual(ResultRecord.from_jsonl_line(line), record)

    def test_from_dict_ignores_unknown(self) -> None:
        data = _record().to_dict()
        data["future_field"] = 1
        self.assertEqual(ResultRecord.from_dict(data).snippet, "s")


class TestJsonlResultSink(unittest.TestCase):
    def test_appends_lines(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "out" / RESULTS_FILENAME
            sink = JsonlResultSink(path, run_id="r1")
            sink.persist(make_context(), make_result(1.0))
            sink.persist(make_context(), make_result(2.0))
            lines = path.read_text().splitlines()
        self.assertEqual(sink.count, 2)
        self.assertEqual(len(lines), 2)
        self.assertEqual(json.loads(lines[1])["execution_time_ms"], 2.0)
        self.assertEqual(json.loads(lines[0])["run_id"], "r1")

    def test_concurrent_writers(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / RESULTS_FILENAME
            sink = JsonlResultSink(path)
            context = make_context()

            def write() -> None:
                for _ in range(25):
                    sink.persist(context, make_result())

            threads = [threading.Thread(target=write) for _ in range(4)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()
            records = load_results(path)
        self.assertEqual(len(records), 100)


class TestLoadResults(unittest.TestCase):
    def test_load_from_directory(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / RESULTS_FILENAME
            path.write_text(_record().to_jsonl_line() + "\n\n")
            records = load_results(Path(tmp))
        self.assertEqual(len(records), 1)

    def test_skips_corrupt_lines(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / RESULTS_FILENAME
            path.write_text(
                "\n".join(
                    [
                        _record(time_ms=1.0).to_jsonl_line(),
                        "{not json",
                        '{"snippet": "s"}',
                        "[1, 2]",
                        _record(time_ms=3.0).to_jsonl_line(),
                    ]
                )
            )
            with self.assertLogs("snipbench", level="WARNING") as logs:
                records = load_results(path)
        self.assertEqual([r.execution_time_ms for r in records], [1.0, 3.0])
        self.assertEqual(len(logs.output), 3)

    def test_missing(self) -> None:
        with self.assertRaises(FileNotFoundError):
            load_results(Path("/nonexistent/results.jsonl"))


class TestGroupMetrics(unittest.TestCase):
    def test_groups_by_stream(self) -> None:
        records = [
            _record("b", "py", 1.0),
            _record("a", "py", 2.0),
            _record("b", "py", 3.0),
            _record("a", "jit", 4.0),
        ]
        groups = group_metrics(records)
        self.assertEqual(list(groups), [("a", "jit"), ("a", "py"), ("b", "py")])
        self.assertEqual(groups[("b", "py")].execution_times, [1.0, 3.0])
        self.assertEqual(groups[("b", "py")].memory_peaks, [100.0, 100.0])
        self.assertEqual(groups[("a", "py")].snippet_name, "a")

    def test_empty(self) -> None:
        self.assertEqual(group_metrics([]), {})


class TestRunMeta(unittest.TestCase):
    def test_save(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = save_run_meta(Path(tmp) / "run", {"run_id": "r1"})
            self.assertEqual(path.name, META_FILENAME)
            self.assertEqual(json.loads(path.read_text()), {"run_id": "r1"})


if __name__ == "__main__":
    unittest.main()
