"""Execution backends: run one instrumented unit in a named environment.

Every backend turns an :class:`ExecutionContext` into a :class:`RawResult`
or raises one of the typed execution errors:

- ``UnknownEnvironment``: the environment id is not configured;
- ``ExecutionTimeout``: the unit hit the time limit and was killed;
- ``ExecutionFailed``: the interpreter exited with a non-zero status or
  could not be started;
- ``ParseFailed``: no JSON result line in the output.

Backends:

- :class:`SubprocessBackend` runs a local interpreter on a temp file.
- :class:`DockerComposeBackend` runs ``docker compose exec`` against a
  service, with the script written to a directory shared with the
  container.
- :class:`WarmingBackend` wraps another backend and performs one
  throwaway execution per environment before the first real one.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import Any, Protocol

from snipbench.bench.config import BenchConfig, Environment
from snipbench.bench.models import ExecutionContext, RawResult
from snipbench.bench.timing import TimedResult, run_timed
from snipbench.errors import (
    ExecutionFailed,
    ExecutionTimeout,
    ParseFailed,
    UnknownEnvironment,
)

log = logging.getLogger("snipbench")


class ExecutionBackend(Protocol):
    """Anything that can execute one instrumented unit."""

    def execute(self, context: ExecutionContext) -> RawResult: ...


# ---------------------------------------------------------------------------
# Output parsing
# ---------------------------------------------------------------------------


def find_result_object(output: str) -> dict[str, Any]:
    """Return the last JSON object line in *output*.

    Lines printed by the snippet itself are ignored; only the last line
    starting with ``{`` is considered.

    Raises:
        ParseFailed: If there is no such line, or it is not a JSON object.
    """
    for line in reversed(output.splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            data = json.loads(line)
        except json.JSONDecodeError as exc:
            raise ParseFailed(output) from exc
        if not isinstance(data, dict):
            raise ParseFailed(output)
        return data
    raise ParseFailed(output)


def parse_result_output(output: str) -> RawResult:
    """Parse a measured unit's stdout into a RawResult.

    Garbled or missing numeric fields become 0 rather than failing the
    measurement.
    """
    return RawResult.from_dict(find_result_object(output))


# ---------------------------------------------------------------------------
# Script backends
# ---------------------------------------------------------------------------


class ScriptBackend:
    """Shared execute() logic for backends that run a script per unit."""

    def __init__(self, environments: dict[str, Environment], *, timeout: float = 30) -> None:
        self.environments = dict(environments)
        self.timeout = timeout

    def environment(self, environment_id: str) -> Environment:
        try:
            return self.environments[environment_id]
        except KeyError:
            raise UnknownEnvironment(
                f"Unknown environment '{environment_id}'",
                environment=environment_id,
            ) from None

    def run_script(
        self,
        environment_id: str,
        script: str,
        *,
        timeout: float | None = None,
    ) -> TimedResult:
        """Run *script* in the environment and return the raw process result."""
        raise NotImplementedError

    def launch(
        self,
        environment_id: str,
        command: list[str],
        *,
        env: dict[str, str] | None = None,
        timeout: float | None = None,
    ) -> TimedResult:
        """Run *command* via run_timed, mapping launch errors to ExecutionFailed."""
        try:
            return run_timed(
                command,
                env=env,
                timeout=self.timeout if timeout is None else timeout,
            )
        except OSError as exc:
            raise ExecutionFailed(
                -1, f"Could not start {command[0]}: {exc}", environment=environment_id
            ) from exc

    def execute(self, context: ExecutionContext) -> RawResult:
        slug = context.snippet.slug
        env_id = context.environment_id
        result = self.run_script(env_id, context.instrumented_script)

        if result.timed_out:
            raise ExecutionTimeout(self.timeout, snippet=slug, environment=env_id)
        if result.exit_code != 0:
            raise ExecutionFailed(
                result.exit_code, result.stderr, snippet=slug, environment=env_id
            )
        try:
            raw = parse_result_output(result.stdout)
        except ParseFailed as exc:
            raise ParseFailed(exc.raw_output, snippet=slug, environment=env_id) from exc

        log.debug(
            "%s@%s: %.4f ms, %.0f B used, %.0f B peak (%.2fs wall)",
            slug,
            env_id,
            raw.execution_time_ms,
            raw.memory_used_bytes,
            raw.memory_peak_bytes,
            result.wall_time_s,
        )
        return raw


class SubprocessBackend(ScriptBackend):
    """Run units with a local interpreter, one temp file per unit."""

    def __init__(
        self,
        environments: dict[str, Environment],
        *,
        timeout: float = 30,
        tmp_dir: Path | None = None,
    ) -> None:
        super().__init__(environments, timeout=timeout)
        self.tmp_dir = tmp_dir

    def run_script(
        self,
        environment_id: str,
        script: str,
        *,
        timeout: float | None = None,
    ) -> TimedResult:
        environment = self.environment(environment_id)
        fd, script_path = tempfile.mkstemp(
            prefix="snipbench-",
            suffix=".py",
            dir=str(self.tmp_dir) if self.tmp_dir else None,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(script)
            return self.launch(
                environment_id,
                [environment.python, script_path],
                env=environment.env,
                timeout=timeout,
            )
        finally:
            try:
                os.unlink(script_path)
            except OSError:
                pass


class DockerComposeBackend(ScriptBackend):
    """Run units inside long-lived docker compose services.

    The script is written to *shared_dir* on the host, which must be
    mounted at *container_dir* in every service.
    """

    def __init__(
        self,
        environments: dict[str, Environment],
        *,
        compose_file: Path,
        shared_dir: Path,
        project: str = "snipbench",
        container_dir: str = "/snipbench",
        timeout: float = 30,
        docker: str = "docker",
    ) -> None:
        super().__init__(environments, timeout=timeout)
        self.compose_file = compose_file
        self.shared_dir = shared_dir
        self.project = project
        self.container_dir = container_dir.rstrip("/")
        self.docker = docker

    def build_command(self, environment: Environment, script_name: str) -> list[str]:
        command = [
            self.docker,
            "compose",
            "-p",
            self.project,
            "-f",
            str(self.compose_file),
            "exec",
            "-T",
        ]
        for key, value in sorted(environment.env.items()):
            command += ["-e", f"{key}={value}"]
        command += [
            environment.service,
            environment.python or "python",
            f"{self.container_dir}/{script_name}",
        ]
        return command

    def run_script(
        self,
        environment_id: str,
        script: str,
        *,
        timeout: float | None = None,
    ) -> TimedResult:
        environment = self.environment(environment_id)
        self.shared_dir.mkdir(parents=True, exist_ok=True)
        script_name = f"snipbench_{uuid.uuid4().hex}.py"
        script_path = self.shared_dir / script_name
        try:
            script_path.write_text(script, encoding="utf-8")
            return self.launch(
                environment_id,
                self.build_command(environment, script_name),
                timeout=timeout,
            )
        finally:
            try:
                script_path.unlink()
            except OSError:
                pass


# ---------------------------------------------------------------------------
# Warm-up once per environment
# ---------------------------------------------------------------------------


class WarmingBackend:
    """Warm each environment once with a throwaway execution.

    The first time an environment id is seen, the same context is executed
    once and its result discarded.  Warm-up failures are logged and the
    real execution proceeds anyway.  Concurrent first calls may warm an
    environment twice, which only costs time.
    """

    def __init__(self, inner: ExecutionBackend) -> None:
        self.inner = inner
        self._warmed: set[str] = set()

    @property
    def warmed(self) -> frozenset[str]:
        return frozenset(self._warmed)

    def execute(self, context: ExecutionContext) -> RawResult:
        if context.environment_id not in self._warmed:
            self._warm(context)
        return self.inner.execute(context)

    def _warm(self, context: ExecutionContext) -> None:
        log.debug("Warming environment %s", context.environment_id)
        try:
            self.inner.execute(context)
        except Exception as exc:  # noqa: BLE001
            log.warning("Warm-up of environment %s failed: %s", context.environment_id, exc)
        self._warmed.add(context.environment_id)


def create_backend(config: BenchConfig) -> ScriptBackend:
    """Build the script backend described by *config* (without warming)."""
    if config.backend == "docker":
        if config.compose_file is None or config.shared_dir is None:
            raise ValueError("The docker backend needs compose_file and shared_dir")
        return DockerComposeBackend(
            config.environments,
            compose_file=config.compose_file,
            shared_dir=config.shared_dir,
            project=config.compose_project,
            container_dir=config.container_dir,
            timeout=config.timeout,
        )
    return SubprocessBackend(config.environments, timeout=config.timeout)
