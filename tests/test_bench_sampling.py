"""Tests for snipbench.bench.sampling: multi-sample aggregation."""

from __future__ import annotations

import unittest
from unittest.mock import patch

from bench_test_helpers import FakeBackend, make_context, make_result

from snipbench.bench.sampling import MultiSampleAggregator, summarize_samples
from snipbench.errors import ExecutionTimeout


class TestSummarizeSamples(unittest.TestCase):
    def test_summary(self) -> None:
        summary = summarize_samples([1.0, 2.0, 3.0, 10.0])
        self.assertEqual(summary.count, 4)
        self.assertEqual(summary.mean, 4.0)
        self.assertEqual(summary.median, 2.5)
        self.assertEqual(summary.min, 1.0)
        self.assertEqual(summary.max, 10.0)
        # population stddev of [1, 2, 3, 10]
        self.assertAlmostEqual(summary.stddev, 3.5355339, places=6)
        self.assertAlmostEqual(summary.cv, 3.5355339 / 4.0 * 100, places=4)

    def test_single_sample(self) -> None:
        summary = summarize_samples([5.0])
        self.assertEqual(summary.stddev, 0.0)
        self.assertEqual(summary.median, 5.0)


class TestMultiSampleAggregator(unittest.TestCase):
    def test_single_sample_passes_through(self) -> None:
        expected = make_result(1.23456, 7.0, 99.0)
        inner = FakeBackend([expected])
        aggregator = MultiSampleAggregator(inner, sample_count=5)
        result, summary = aggregator.execute_with_summary(make_context(), 1)
        self.assertIs(result, expected)
        self.assertEqual(len(inner.calls), 1)
        self.assertIsNone(summary)

    def test_default_count_of_one_passes_through(self) -> None:
        expected = make_result(2.0)
        self.assertIs(MultiSampleAggregator(FakeBackend([expected])).execute(make_context()), expected)

    def test_median_time_and_mean_memory(self) -> None:
        inner = FakeBackend(
            [
                make_result(1.0, used=10.0, peak=100.0),
                make_result(9.0, used=20.0, peak=200.0),
                make_result(2.0, used=30.0, peak=300.0),
            ]
        )
        aggregator = MultiSampleAggregator(inner, sample_count=3, pause=0)
        result = aggregator.execute(make_context())
        self.assertEqual(result.execution_time_ms, 2.0)
        self.assertEqual(result.memory_used_bytes, 20.0)
        self.assertEqual(result.memory_peak_bytes, 200.0)
        self.assertEqual(len(inner.calls), 3)
        self.assertFalse(hasattr(aggregator, "last_summary"))

    def test_summary_returned_per_call(self) -> None:
        inner = FakeBackend(
            [make_result(1.0), make_result(9.0), make_result(2.0), make_result(4.0), make_result(6.0)]
        )
        aggregator = MultiSampleAggregator(inner, sample_count=3, pause=0)
        first, first_summary = aggregator.execute_with_summary(make_context())
        second, second_summary = aggregator.execute_with_summary(make_context(), 2)
        assert first_summary is not None and second_summary is not None
        self.assertEqual(first_summary.count, 3)
        self.assertEqual(first_summary.median, first.execution_time_ms)
        self.assertEqual(second_summary.count, 2)
        self.assertEqual(second.execution_time_ms, 5.0)
        self.assertEqual(first_summary.median, 2.0)

    def test_pause_between_samples_only(self) -> None:
        inner = FakeBackend()
        aggregator = MultiSampleAggregator(inner, sample_count=3, pause=0.5)
        with patch("snipbench.bench.sampling.time.sleep") as sleep:
            aggregator.execute(make_context())
        self.assertEqual(sleep.call_count, 2)
        sleep.assert_called_with(0.5)

    def test_explicit_count_overrides_default(self) -> None:
        inner = FakeBackend()
        MultiSampleAggregator(inner, sample_count=2, pause=0).execute(make_context(), 4)
        self.assertEqual(len(inner.calls), 4)

    def test_sample_failure_propagates(self) -> None:
        inner = FakeBackend([make_result(1.0), ExecutionTimeout(30)])
        aggregator = MultiSampleAggregator(inner, sample_count=3, pause=0)
        with self.assertRaises(ExecutionTimeout):
            aggregator.execute(make_context())

    def test_logs_sample_statistics(self) -> None:
        aggregator = MultiSampleAggregator(FakeBackend(), sample_count=2, pause=0)
        with self.assertLogs("snipbench", level="INFO") as logs:
            aggregator.execute(make_context())
        self.assertTrue(any("2 samples" in m for m in logs.output))


if __name__ == "__main__":
    unittest.main()
