"""Tests for snipbench.bench.backend: execution backends and output parsing."""

from __future__ import annotations

import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from bench_test_helpers import FakeBackend, make_config, make_context, make_result, make_snippet

from snipbench.bench.backend import (
    DockerComposeBackend,
    SubprocessBackend,
    WarmingBackend,
    create_backend,
    find_result_object,
    parse_result_output,
)
from snipbench.bench.config import BenchConfig, Environment
from snipbench.bench.timing import TimedResult
from snipbench.errors import (
    ExecutionFailed,
    ExecutionTimeout,
    ParseFailed,
    UnknownEnvironment,
)


def _local_backend(**kwargs: object) -> SubprocessBackend:
    env = Environment(name="py", python=sys.executable)
    return SubprocessBackend({"py": env}, **kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------


class TestFindResultObject(unittest.TestCase):
    def test_last_json_line_wins(self) -> None:
        output = 'noise\n{"a": 1}\nmore noise\n{"b": 2}\n'
        self.assertEqual(find_result_object(output), {"b": 2})

    def test_no_json_line(self) -> None:
        with self.assertRaises(ParseFailed) as ctx:
            find_result_object("just text\n")
        self.assertEqual(ctx.exception.raw_output, "just text\n")

    def test_invalid_json(self) -> None:
        with self.assertRaises(ParseFailed):
            find_result_object("{not json}")

    def test_json_not_an_object(self) -> None:
        with self.assertRaises(ParseFailed):
            find_result_object("[1, 2]\n")


class TestParseResultOutput(unittest.TestCase):
    def test_full_result(self) -> None:
        raw = parse_result_output(
            '{"execution_time_ms": 1.5, "memory_used_bytes": 10, "memory_peak_bytes": 2048}'
        )
        self.assertEqual(raw, make_result(1.5, 10.0, 2048.0))

    def test_garbled_fields_become_zero(self) -> None:
        raw = parse_result_output(
            '{"execution_time_ms": "fast", "memory_used_bytes": null, "memory_peak_bytes": true}'
        )
        self.assertEqual(raw.execution_time_ms, 0.0)
        self.assertEqual(raw.memory_used_bytes, 0.0)
        self.assertEqual(raw.memory_peak_bytes, 0.0)

    def test_numeric_strings_coerced(self) -> None:
        raw = parse_result_output('{"execution_time_ms": "2.5", "memory_peak_bytes": "100"}')
        self.assertEqual(raw.execution_time_ms, 2.5)
        self.assertEqual(raw.memory_peak_bytes, 100.0)

    def test_negative_time_clamped(self) -> None:
        raw = parse_result_output('{"execution_time_ms": -3}')
        self.assertEqual(raw.execution_time_ms, 0.0)


# ---------------------------------------------------------------------------
# SubprocessBackend
# ---------------------------------------------------------------------------


class TestSubprocessBackend(unittest.TestCase):
    def test_executes_real_unit(self) -> None:
        backend = _local_backend()
        result = backend.execute(make_context(environment="py", config=make_config(1, 10)))
        self.assertGreaterEqual(result.execution_time_ms, 0.0)
        self.assertGreaterEqual(result.memory_peak_bytes, 0.0)

    def test_unknown_environment(self) -> None:
        backend = _local_backend()
        with self.assertRaises(UnknownEnvironment) as ctx:
            backend.execute(make_context(environment="nope"))
        self.assertEqual(ctx.exception.environment, "nope")

    def test_failure_carries_last_stderr_line(self) -> None:
        backend = _local_backend()
        snippet = make_snippet("boom", code="raise ValueError('boom')")
        with self.assertRaises(ExecutionFailed) as ctx:
            backend.execute(make_context(snippet, environment="py"))
        exc = ctx.exception
        self.assertEqual(exc.exit_code, 1)
        self.assertIn("Script execution failed with code 1: ValueError: boom", str(exc))
        self.assertEqual(exc.snippet, "boom")
        self.assertEqual(exc.environment, "py")
        self.assertEqual(exc.kind, "failed")

    def test_timeout(self) -> None:
        backend = _local_backend(timeout=1)
        snippet = make_snippet("slow", code="import time\ntime.sleep(30)")
        with self.assertRaises(ExecutionTimeout) as ctx:
            backend.execute(make_context(snippet, environment="py", config=make_config(1, 10)))
        self.assertIn("timed out after 1 seconds", str(ctx.exception))

    def test_parse_failure(self) -> None:
        backend = _local_backend()
        timed = TimedResult(wall_time_s=0.1, exit_code=0, stdout="no result", stderr="")
        with patch.object(SubprocessBackend, "run_script", return_value=timed):
            with self.assertRaises(ParseFailed) as ctx:
                backend.execute(make_context(environment="py"))
        self.assertEqual(ctx.exception.snippet, "sum-range")
        self.assertEqual(ctx.exception.raw_output, "no result")

    def test_temp_script_removed(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            backend = _local_backend(tmp_dir=Path(tmp))
            backend.execute(make_context(environment="py"))
            self.assertEqual(list(Path(tmp).iterdir()), [])

    def test_missing_interpreter_is_execution_failure(self) -> None:
        env = Environment(name="py", python="/nonexistent/python9")
        with tempfile.TemporaryDirectory() as tmp:
            backend = SubprocessBackend({"py": env}, tmp_dir=Path(tmp))
            with self.assertRaises(ExecutionFailed) as ctx:
                backend.execute(make_context(environment="py"))
            self.assertEqual(list(Path(tmp).iterdir()), [])
        self.assertEqual(ctx.exception.exit_code, -1)
        self.assertEqual(ctx.exception.environment, "py")
        self.assertIn("Could not start /nonexistent/python9", str(ctx.exception))

    def test_environment_variables_passed(self) -> None:
        env = Environment(name="py", python=sys.executable, env={"SNIPBENCH_MARK": "x"})
        backend = SubprocessBackend({"py": env})
        result = backend.run_script("py", "import os\nprint(os.environ['SNIPBENCH_MARK'])")
        self.assertEqual(result.stdout.strip(), "x")


# ---------------------------------------------------------------------------
# DockerComposeBackend
# ---------------------------------------------------------------------------


class TestDockerComposeBackend(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.shared = Path(self.tmp.name) / "shared"
        env = Environment(
            name="py312",
            python="python3",
            service="bench-py312",
            env={"B": "2", "A": "1"},
        )
        self.backend = DockerComposeBackend(
            {"py312": env},
            compose_file=Path("compose.yaml"),
            shared_dir=self.shared,
            project="proj",
            container_dir="/work/",
        )

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def test_build_command(self) -> None:
        command = self.backend.build_command(self.backend.environments["py312"], "u.py")
        self.assertEqual(
            command,
            [
                "docker", "compose", "-p", "proj", "-f", "compose.yaml",
                "exec", "-T", "-e", "A=1", "-e", "B=2",
                "bench-py312", "python3", "/work/u.py",
            ],
        )

    def test_run_script_writes_and_removes_shared_file(self) -> None:
        seen: list[str] = []

        def fake_run_timed(command: list[str], **kwargs: object) -> TimedResult:
            script_name = command[-1].rsplit("/", 1)[-1]
            seen.append((self.shared / script_name).read_text())
            return TimedResult(
                wall_time_s=0.1,
                exit_code=0,
                stdout='{"execution_time_ms": 1.0}',
                stderr="",
            )

        with patch("snipbench.bench.backend.run_timed", side_effect=fake_run_timed):
            result = self.backend.execute(make_context(environment="py312"))

        self.assertEqual(result.execution_time_ms, 1.0)
        self.assertEqual(len(seen), 1)
        self.assertIn("def _snippet():", seen[0])
        self.assertEqual(list(self.shared.iterdir()), [])

    def test_missing_docker_binary_is_execution_failure(self) -> None:
        error = FileNotFoundError(2, "No such file or directory", "docker")
        with patch("snipbench.bench.backend.run_timed", side_effect=error):
            with self.assertRaises(ExecutionFailed) as ctx:
                self.backend.run_script("py312", "print(1)")
        self.assertIn("Could not start docker", str(ctx.exception))
        self.assertIsInstance(ctx.exception.__cause__, FileNotFoundError)
        self.assertEqual(list(self.shared.iterdir()), [])


# ---------------------------------------------------------------------------
# WarmingBackend
# ---------------------------------------------------------------------------


class TestWarmingBackend(unittest.TestCase):
    def test_warms_each_environment_once(self) -> None:
        inner = FakeBackend()
        backend = WarmingBackend(inner)
        backend.execute(make_context(environment="a"))
        backend.execute(make_context(environment="a"))
        backend.execute(make_context(environment="b"))
        # a: warm + 2 real, b: warm + 1 real
        self.assertEqual(len(inner.calls), 5)
        self.assertEqual(backend.warmed, frozenset({"a", "b"}))

    def test_warm_up_result_discarded(self) -> None:
        inner = FakeBackend([make_result(99.0), make_result(1.0)])
        result = WarmingBackend(inner).execute(make_context())
        self.assertEqual(result.execution_time_ms, 1.0)

    def test_warm_up_failure_does_not_fail_unit(self) -> None:
        inner = FakeBackend([ExecutionFailed(1, "cold start"), make_result(2.0)])
        backend = WarmingBackend(inner)
        with self.assertLogs("snipbench", level="WARNING") as logs:
            result = backend.execute(make_context(environment="a"))
        self.assertEqual(result.execution_time_ms, 2.0)
        self.assertIn("a", backend.warmed)
        self.assertTrue(any("Warm-up of environment a failed" in m for m in logs.output))

    def test_warm_up_launch_error_does_not_fail_unit(self) -> None:
        launch_error = FileNotFoundError(2, "No such file or directory", "docker")
        inner = FakeBackend([launch_error, make_result(3.0), make_result(4.0)])
        backend = WarmingBackend(inner)
        with self.assertLogs("snipbench", level="WARNING") as logs:
            result = backend.execute(make_context(environment="a"))
        self.assertEqual(result.execution_time_ms, 3.0)
        self.assertEqual(backend.warmed, frozenset({"a"}))
        self.assertIn("No such file or directory", logs.output[0])
        self.assertEqual(len(inner.calls), 2)
        self.assertEqual(backend.execute(make_context(environment="a")).execution_time_ms, 4.0)
        self.assertEqual(len(inner.calls), 3)

    def test_warm_up_unexpected_error_does_not_fail_unit(self) -> None:
        inner = FakeBackend([RuntimeError("broken pipe"), make_result(5.0)])
        backend = WarmingBackend(inner)
        with self.assertLogs("snipbench", level="WARNING"):
            result = backend.execute(make_context(environment="b"))
        self.assertEqual(result.execution_time_ms, 5.0)
        self.assertIn("b", backend.warmed)


# ---------------------------------------------------------------------------
# create_backend
# ---------------------------------------------------------------------------


class TestCreateBackend(unittest.TestCase):
    def test_local(self) -> None:
        config = BenchConfig(environments={"py": Environment(name="py", python=sys.executable)})
        self.assertIsInstance(create_backend(config), SubprocessBackend)

    def test_docker(self) -> None:
        config = BenchConfig(
            backend="docker",
            compose_file=Path("compose.yaml"),
            shared_dir=Path("/tmp/shared"),
            timeout=12,
        )
        backend = create_backend(config)
        self.assertIsInstance(backend, DockerComposeBackend)
        self.assertEqual(backend.timeout, 12)

    def test_docker_needs_paths(self) -> None:
        with self.assertRaises(ValueError):
            create_backend(BenchConfig(backend="docker"))


if __name__ == "__main__":
    unittest.main()
