"""Run configuration and environment profile loading.

Handles:
- Loading run profiles from YAML files.
- Parsing inline environment definitions from CLI arguments.
- Merging CLI options with profile defaults.
- Validating the final configuration before execution.
"""

from __future__ import annotations

import logging
import shutil
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

log = logging.getLogger("snipbench")

BACKENDS = ("local", "docker")


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@dataclass
class Environment:
    """One interpreter environment snippets can run in.

    For the local backend ``python`` is the interpreter executable.  For
    the docker backend ``service`` names the compose service and
    ``python`` is the interpreter command inside the container.
    """

    name: str
    python: str = ""
    env: dict[str, str] = field(default_factory=dict)
    service: str = ""
    description: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible dict (sparse: omits defaults)."""
        d: dict[str, Any] = {"name": self.name}
        if self.python:
            d["python"] = self.python
        if self.env:
            d["env"] = self.env
        if self.service:
            d["service"] = self.service
        if self.description:
            d["description"] = self.description
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Environment:
        """Deserialize from a dict."""
        return cls(
            name=data["name"],
            python=data.get("python", ""),
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            service=data.get("service", ""),
            description=data.get("description", ""),
        )


# ---------------------------------------------------------------------------
# BenchConfig
# ---------------------------------------------------------------------------


@dataclass
class BenchConfig:
    """Resolved configuration for a benchmark run."""

    # Identity
    run_id: str = ""  # Auto-generated if empty
    name: str = ""

    # Environments to measure in
    environments: dict[str, Environment] = field(default_factory=dict)

    # Iteration control
    iterations: int = 10  # Units per (snippet, environment) stream
    samples: int = 1  # Executions aggregated into one unit
    pool_size: int = 4
    timeout: float = 30  # Per-execution timeout in seconds

    # Calibration
    calibrate: bool = False
    force_calibration: bool = False
    target_duration_ms: float = 1000.0
    probe_timeout: float = 5.0

    # Execution backend
    backend: str = "local"
    warm_environments: bool = True
    compose_file: Path | None = None
    compose_project: str = "snipbench"
    shared_dir: Path | None = None  # Host side of the volume shared with containers
    container_dir: str = "/snipbench"  # Container side of the same volume

    # Snippet selection
    snippets_dir: Path = field(default_factory=lambda: Path("snippets"))
    snippets_filter: list[str] | None = None
    categories: list[str] | None = None

    # Output
    results_dir: Path = field(default_factory=lambda: Path("results"))

    def __post_init__(self) -> None:
        if not self.run_id:
            self.run_id = f"run_{time.strftime('%Y%m%d_%H%M%S')}"

    @property
    def output_dir(self) -> Path:
        """The output directory for this run."""
        return self.results_dir / self.run_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "name": self.name,
            "environments": {n: e.to_dict() for n, e in self.environments.items()},
            "iterations": self.iterations,
            "samples": self.samples,
            "pool_size": self.pool_size,
            "timeout": self.timeout,
            "calibrate": self.calibrate,
            "force_calibration": self.force_calibration,
            "target_duration_ms": self.target_duration_ms,
            "backend": self.backend,
            "warm_environments": self.warm_environments,
            "snippets_dir": str(self.snippets_dir),
            "snippets_filter": self.snippets_filter,
            "categories": self.categories,
        }


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


@dataclass
class ValidationError:
    """A single configuration validation error."""

    field: str
    message: str
    severity: str = "error"  # "error" or "warning"


def validate_config(config: BenchConfig) -> list[ValidationError]:
    """Validate a run configuration.

    Returns a list of validation errors.  Empty list means valid.
    """
    errors: list[ValidationError] = []

    if not config.environments:
        errors.append(
            ValidationError(
                field="environments",
                message=(
                    "No environments defined. "
                    "Use --profile or --env to define at least one."
                ),
            )
        )

    if config.backend not in BACKENDS:
        errors.append(
            ValidationError(
                field="backend",
                message=f"Unknown backend '{config.backend}'. Choose one of: {', '.join(BACKENDS)}.",
            )
        )

    for name, environment in config.environments.items():
        if not name or not name.strip():
            errors.append(
                ValidationError(field="environments", message="Environment names must be non-empty.")
            )
            continue
        if config.backend == "docker":
            if not environment.service:
                errors.append(
                    ValidationError(
                        field=f"environments.{name}.service",
                        message=f"Environment '{name}' has no docker compose service.",
                    )
                )
            continue
        if not environment.python:
            errors.append(
                ValidationError(
                    field=f"environments.{name}.python",
                    message=f"Environment '{name}' has no python executable.",
                )
            )
        elif not _python_exists(environment.python):
            errors.append(
                ValidationError(
                    field=f"environments.{name}.python",
                    message=f"Python for environment '{name}' not found: {environment.python}",
                )
            )

    if config.backend == "docker":
        if config.compose_file is None or not config.compose_file.exists():
            errors.append(
                ValidationError(
                    field="compose_file",
                    message=f"Compose file does not exist: {config.compose_file}",
                )
            )
        if config.shared_dir is None:
            errors.append(
                ValidationError(
                    field="shared_dir",
                    message="The docker backend needs a shared_dir mounted into the containers.",
                )
            )

    if config.iterations < 1:
        errors.append(
            ValidationError(
                field="iterations",
                message=f"Need at least 1 iteration per stream (got {config.iterations}).",
            )
        )
    elif config.iterations < 4:
        errors.append(
            ValidationError(
                field="iterations",
                message=(
                    f"Outlier detection needs at least 4 iterations "
                    f"(got {config.iterations}); all results will count as clean."
                ),
                severity="warning",
            )
        )

    if config.samples < 1:
        errors.append(
            ValidationError(
                field="samples",
                message=f"Samples per unit must be at least 1 (got {config.samples}).",
            )
        )

    if config.pool_size < 1:
        errors.append(
            ValidationError(
                field="pool_size",
                message=f"Pool size must be at least 1 (got {config.pool_size}).",
            )
        )

    if config.timeout <= 0:
        errors.append(
            ValidationError(
                field="timeout",
                message=f"Timeout must be positive (got {config.timeout}).",
            )
        )

    if config.target_duration_ms <= 0:
        errors.append(
            ValidationError(
                field="target_duration_ms",
                message=f"Target duration must be positive (got {config.target_duration_ms}).",
            )
        )

    if not config.snippets_dir.is_dir():
        errors.append(
            ValidationError(
                field="snippets_dir",
                message=f"Snippets directory does not exist: {config.snippets_dir}",
            )
        )

    return errors


def _python_exists(python: str) -> bool:
    path = Path(python)
    if path.is_file():
        return True
    return shutil.which(python) is not None


# ---------------------------------------------------------------------------
# YAML profile loading
# ---------------------------------------------------------------------------


def load_profile(profile_path: Path) -> dict[str, Any]:
    """Load a run profile from a YAML file.

    Profile format::

        name: "3.12 vs 3.13"
        iterations: 10
        samples: 3
        pool_size: 4
        timeout: 30
        calibrate: true
        snippets_dir: snippets

        environments:
          py312:
            python: /usr/bin/python3.12
          py313:
            python: /usr/bin/python3.13
            env:
              PYTHONHASHSEED: "0"

    Docker profiles add ``backend: docker``, ``compose_file``,
    ``shared_dir`` and a ``service`` per environment.

    Returns:
        The parsed YAML as a dict.
    """
    if not profile_path.exists():
        raise FileNotFoundError(f"Profile not found: {profile_path}")

    data = yaml.safe_load(profile_path.read_text())

    if not isinstance(data, dict):
        raise ValueError(f"Profile must be a YAML mapping, got {type(data).__name__}")

    return data


def config_from_profile(
    profile_data: dict[str, Any],
    *,
    cli_overrides: dict[str, Any] | None = None,
) -> BenchConfig:
    """Build a BenchConfig from a parsed YAML profile.

    Args:
        profile_data: Parsed YAML profile dict.
        cli_overrides: Dict of CLI option values that override
            profile defaults.  Keys match BenchConfig field names;
            ``None`` values are ignored.

    Returns:
        BenchConfig with environments and settings populated.
    """
    cli = {k: v for k, v in (cli_overrides or {}).items() if v is not None}

    def pick(key: str, default: Any) -> Any:
        if key in cli:
            return cli[key]
        value = profile_data.get(key)
        return default if value is None else value

    config = BenchConfig(
        run_id=pick("run_id", ""),
        name=pick("name", ""),
        iterations=int(pick("iterations", 10)),
        samples=int(pick("samples", 1)),
        pool_size=int(pick("pool_size", 4)),
        timeout=float(pick("timeout", 30)),
        calibrate=bool(pick("calibrate", False)),
        force_calibration=bool(pick("force_calibration", False)),
        target_duration_ms=float(pick("target_duration_ms", 1000.0)),
        probe_timeout=float(pick("probe_timeout", 5.0)),
        backend=str(pick("backend", "local")),
        warm_environments=bool(pick("warm_environments", True)),
        compose_project=str(pick("compose_project", "snipbench")),
        container_dir=str(pick("container_dir", "/snipbench")),
        snippets_dir=Path(pick("snippets_dir", "snippets")),
        results_dir=Path(pick("results_dir", "results")),
    )

    compose_file = pick("compose_file", None)
    if compose_file:
        config.compose_file = Path(compose_file)
    shared_dir = pick("shared_dir", None)
    if shared_dir:
        config.shared_dir = Path(shared_dir)

    snippets_filter = pick("snippets_filter", None)
    if snippets_filter:
        config.snippets_filter = list(snippets_filter)
    categories = pick("categories", None)
    if categories:
        config.categories = list(categories)

    environments_data = profile_data.get("environments", {}) or {}
    if not isinstance(environments_data, dict):
        raise ValueError("Profile 'environments' must be a mapping of name -> definition")

    for name, env_data in environments_data.items():
        if env_data is None:
            env_data = {}
        if not isinstance(env_data, dict):
            raise ValueError(
                f"Environment '{name}' must be a mapping, got {type(env_data).__name__}"
            )
        config.environments[str(name)] = Environment.from_dict({**env_data, "name": str(name)})

    for environment in cli.get("environments", []):
        config.environments[environment.name] = environment

    return config


# ---------------------------------------------------------------------------
# Inline environment parsing
# ---------------------------------------------------------------------------


def parse_inline_environment(spec: str) -> Environment:
    """Parse an inline environment specification from CLI.

    Format: ``"name:key=value,key=value,..."``

    Supported keys: python, service, description, env.KEY

    Examples::

        "py312:python=/usr/bin/python3.12"
        "jit:python=/opt/py313/bin/python3,env.PYTHON_JIT=1"
        "py311:service=bench-py311,python=python3"

    Returns:
        Environment with parsed values.
    """
    if ":" not in spec:
        raise ValueError(
            f"Invalid environment spec: '{spec}'. Expected format: 'name:key=value,...'"
        )

    name, rest = spec.split(":", 1)
    name = name.strip()
    if not name:
        raise ValueError("Environment name cannot be empty.")

    environment = Environment(name=name)

    if not rest.strip():
        return environment

    for pair in _split_pairs(rest.strip()):
        if "=" not in pair:
            raise ValueError(f"Invalid key=value pair in environment '{name}': '{pair}'")
        key, value = pair.split("=", 1)
        key = key.strip()
        value = value.strip()

        if key == "python":
            environment.python = value
        elif key == "service":
            environment.service = value
        elif key == "description":
            environment.description = value
        elif key.startswith("env."):
            environment.env[key[4:]] = value
        else:
            raise ValueError(
                f"Unknown environment key '{key}' in environment '{name}'. "
                f"Valid keys: python, service, description, env.KEY"
            )

    return environment


def _split_pairs(text: str) -> list[str]:
    """Split key=value pairs on commas.

    Segments without ``=`` are rejoined with the preceding segment (they
    are part of a value that contained a comma).
    """
    pairs: list[str] = []
    for part in text.split(","):
        part = part.strip()
        if not part:
            continue
        if "=" in part and (not pairs or "=" in pairs[-1]):
            pairs.append(part)
        elif pairs:
            # Continuation of the previous value.
            pairs[-1] += "," + part
        else:
            pairs.append(part)
    return pairs
