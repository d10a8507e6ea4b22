"""Tests for snipbench.bench.iterations: iteration counts and complexity estimate."""

from __future__ import annotations

import unittest

from snipbench.bench.calibrate import CalibrationResult
from snipbench.bench.iterations import (
    DEFAULT_INNER_ITERATIONS,
    DEFAULT_WARMUP_ITERATIONS,
    INNER_ENV_VAR,
    WARMUP_ENV_VAR,
    CodeComplexity,
    IterationConfiguration,
    analyze_complexity,
    inner_for_complexity,
    warmup_for_complexity,
)
from snipbench.errors import InvalidConfiguration


class TestIterationConfigurationBounds(unittest.TestCase):
    def test_explicit_round_trip(self) -> None:
        for w, i in [(1, 10), (100, 10000), (10, 100), (37, 4242)]:
            with self.subTest(w=w, i=i):
                config = IterationConfiguration.explicit(w, i)
                self.assertEqual(config.warmup_iterations, w)
                self.assertEqual(config.inner_iterations, i)

    def test_out_of_bounds_rejected(self) -> None:
        for w, i in [(0, 100), (101, 100), (10, 9), (10, 10001), (-1, -1)]:
            with self.subTest(w=w, i=i):
                with self.assertRaises(InvalidConfiguration):
                    IterationConfiguration.explicit(w, i)

    def test_error_messages(self) -> None:
        with self.assertRaisesRegex(InvalidConfiguration, "Warmup iterations must be at least 1"):
            IterationConfiguration(0, 100)
        with self.assertRaisesRegex(InvalidConfiguration, "Inner iterations must not exceed"):
            IterationConfiguration(10, 20000)

    def test_non_integer_rejected(self) -> None:
        with self.assertRaises(InvalidConfiguration):
            IterationConfiguration(1.5, 100)  # type: ignore[arg-type]
        with self.assertRaises(InvalidConfiguration):
            IterationConfiguration(True, 100)  # type: ignore[arg-type]

    def test_invalid_configuration_is_value_error(self) -> None:
        with self.assertRaises(ValueError):
            IterationConfiguration(0, 0)

    def test_description(self) -> None:
        config = IterationConfiguration(5, 200)
        self.assertEqual(config.total_measurements, 200)
        self.assertEqual(config.description, "Warmup: 5, Inner: 200 (Total: 200 measurements)")

    def test_to_dict(self) -> None:
        self.assertEqual(
            IterationConfiguration(5, 200).to_dict(),
            {"warmup_iterations": 5, "inner_iterations": 200},
        )


class TestFromEnvironment(unittest.TestCase):
    def test_defaults(self) -> None:
        config = IterationConfiguration.from_environment(environ={})
        self.assertEqual(config.warmup_iterations, DEFAULT_WARMUP_ITERATIONS)
        self.assertEqual(config.inner_iterations, DEFAULT_INNER_ITERATIONS)

    def test_reads_variables(self) -> None:
        config = IterationConfiguration.from_environment(
            environ={WARMUP_ENV_VAR: "3", INNER_ENV_VAR: " 250 "}
        )
        self.assertEqual(config.warmup_iterations, 3)
        self.assertEqual(config.inner_iterations, 250)

    def test_non_numeric_falls_back(self) -> None:
        config = IterationConfiguration.from_environment(
            environ={WARMUP_ENV_VAR: "lots", INNER_ENV_VAR: ""}
        )
        self.assertEqual(config.warmup_iterations, DEFAULT_WARMUP_ITERATIONS)
        self.assertEqual(config.inner_iterations, DEFAULT_INNER_ITERATIONS)

    def test_explicit_values_win(self) -> None:
        config = IterationConfiguration.from_environment(
            7, None, environ={WARMUP_ENV_VAR: "3", INNER_ENV_VAR: "250"}
        )
        self.assertEqual(config.warmup_iterations, 7)
        self.assertEqual(config.inner_iterations, 250)

    def test_out_of_bounds_variable_rejected(self) -> None:
        with self.assertRaises(InvalidConfiguration):
            IterationConfiguration.from_environment(environ={INNER_ENV_VAR: "5"})


class TestComplexity(unittest.TestCase):
    def test_simple_code_is_minimal(self) -> None:
        complexity = analyze_complexity("x = 1 + 1")
        self.assertEqual(complexity.level, "minimal")
        self.assertEqual(complexity.estimated_operations, 1)

    def test_range_loops_multiply(self) -> None:
        code = "for i in range(100):\n    for j in range(10, 50):\n        pass"
        self.assertEqual(analyze_complexity(code).estimated_operations, 100 * 50)

    def test_underscored_literals(self) -> None:
        self.assertEqual(
            analyze_complexity("for i in range(10_000): pass").estimated_operations, 10000
        )

    def test_heavy_operation_weight(self) -> None:
        plain = analyze_complexity("for i in range(1000): x = i")
        regex = analyze_complexity("for i in range(1000): re.match('a', 'a')")
        self.assertLess(plain.score, regex.score)
        self.assertEqual(plain.level, "light")
        self.assertEqual(regex.level, "moderate")

    def test_extreme(self) -> None:
        code = "for i in range(1_000_000):\n    open('/dev/null').close()"
        complexity = analyze_complexity(code)
        self.assertEqual(complexity.level, "extreme")
        self.assertEqual(warmup_for_complexity(complexity), 3)

    def test_inner_clamped(self) -> None:
        minimal = CodeComplexity(level="minimal", score=0.0, estimated_operations=1)
        self.assertEqual(inner_for_complexity(minimal), 1000)
        heavy = CodeComplexity(level="heavy", score=12.0, estimated_operations=10_000_000)
        self.assertEqual(inner_for_complexity(heavy), 10)

    def test_inner_spreads_budget(self) -> None:
        light = CodeComplexity(level="light", score=3.0, estimated_operations=100_000)
        self.assertEqual(inner_for_complexity(light), 500)

    def test_from_code_complexity_keeps_given_values(self) -> None:
        config = IterationConfiguration.from_code_complexity("x = 1", warmup_iterations=2)
        self.assertEqual(config.warmup_iterations, 2)
        self.assertEqual(config.inner_iterations, 1000)


class TestFactories(unittest.TestCase):
    def test_create_with_defaults_explicit(self) -> None:
        config = IterationConfiguration.create_with_defaults(4, 40, code="x = 1")
        self.assertEqual((config.warmup_iterations, config.inner_iterations), (4, 40))

    def test_create_with_defaults_uses_code(self) -> None:
        config = IterationConfiguration.create_with_defaults(code="x = 1")
        self.assertEqual((config.warmup_iterations, config.inner_iterations), (20, 1000))

    def test_create_with_defaults_without_code_uses_environment(self) -> None:
        config = IterationConfiguration.create_with_defaults(environ={INNER_ENV_VAR: "321"})
        self.assertEqual(config.inner_iterations, 321)
        self.assertEqual(config.warmup_iterations, DEFAULT_WARMUP_ITERATIONS)

    def test_from_calibration(self) -> None:
        result = CalibrationResult(
            snippet="s",
            measured_time_ms=2.0,
            suggested_warmup=10,
            suggested_inner=500,
            efficiency_percent=100.0,
        )
        config = IterationConfiguration.from_calibration(result)
        self.assertEqual((config.warmup_iterations, config.inner_iterations), (10, 500))
        self.assertEqual(result.to_configuration(), config)


if __name__ == "__main__":
    unittest.main()
