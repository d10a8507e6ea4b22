"""Exception hierarchy for snipbench.

Execution errors carry the snippet slug and environment id when the caller
knows them, so a single log line is enough to find the failing unit.
"""

from __future__ import annotations


class SnipbenchError(Exception):
    """Base class for all snipbench errors."""


class InvalidConfiguration(SnipbenchError, ValueError):
    """Iteration counts (or other settings) outside their allowed bounds."""


class SnippetLoadError(SnipbenchError):
    """A snippet fixture file is missing required fields or malformed."""


class CalibrationUnmeasurable(SnipbenchError):
    """The calibration probe could not produce a positive elapsed time."""

    def __init__(self, snippet: str, detail: str = "") -> None:
        self.snippet = snippet
        self.detail = detail
        message = f"Cannot calibrate '{snippet}'"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ExecutionError(SnipbenchError):
    """Base class for failures of a single executed unit."""

    kind = "error"

    def __init__(
        self,
        message: str,
        *,
        snippet: str | None = None,
        environment: str | None = None,
    ) -> None:
        self.message = message
        self.snippet = snippet
        self.environment = environment
        super().__init__(message)

    def __str__(self) -> str:
        if self.snippet is None and self.environment is None:
            return self.message
        return f"{self.message} [snippet: {self.snippet}, environment: {self.environment}]"


class UnknownEnvironment(ExecutionError):
    """The requested environment id is not configured on the backend."""

    kind = "unknown_environment"


class ExecutionFailed(ExecutionError):
    """The unit's process exited with a non-zero status or could not be started."""

    kind = "failed"

    def __init__(
        self,
        exit_code: int,
        stderr: str,
        *,
        snippet: str | None = None,
        environment: str | None = None,
    ) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        tail = stderr.strip().splitlines()[-1] if stderr.strip() else ""
        message = f"Script execution failed with code {exit_code}"
        if tail:
            message += f": {tail}"
        super().__init__(message, snippet=snippet, environment=environment)


class ExecutionTimeout(ExecutionError):
    """The unit exceeded its time limit and its process group was killed."""

    kind = "timeout"

    def __init__(
        self,
        timeout: float,
        *,
        snippet: str | None = None,
        environment: str | None = None,
    ) -> None:
        self.timeout = timeout
        super().__init__(
            f"Script execution timed out after {timeout:g} seconds",
            snippet=snippet,
            environment=environment,
        )


class ParseFailed(ExecutionError):
    """The unit's output did not contain a JSON result object."""

    kind = "parse"

    def __init__(
        self,
        raw_output: str,
        *,
        snippet: str | None = None,
        environment: str | None = None,
    ) -> None:
        self.raw_output = raw_output
        preview = raw_output.strip()[:200]
        super().__init__(
            f"Invalid result output: {preview!r}",
            snippet=snippet,
            environment=environment,
        )
