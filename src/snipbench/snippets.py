"""Snippet catalog: the named units of code that get benchmarked.

Each snippet lives in its own YAML fixture file::

    slug: join-with-str-join
    name: Join with str.join
    category: StringConcatenation
    description: Build a string from parts with str.join.
    tags: [strings]
    environments: [py311, py312]   # optional; empty means all
    warmup_iterations: 10          # optional
    inner_iterations: 500          # optional
    code: |
      parts = [str(i) for i in range(100)]
      "".join(parts)

Snippets are loaded once at startup into a :class:`SnippetCatalog` and are
referenced by slug afterwards.  Whether a snippet supports a given
environment is a plain lookup, not an error.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

import yaml

from snipbench.errors import SnippetLoadError
from snipbench.logging import get_logger

log = get_logger("snippets")

_REQUIRED_FIELDS = ("slug", "name", "category", "code")


@dataclass(frozen=True)
class Snippet:
    """One measurable unit of Python code plus its identity."""

    slug: str
    name: str
    category: str
    code: str
    description: str = ""
    tags: tuple[str, ...] = ()
    environments: tuple[str, ...] = ()
    warmup_iterations: int | None = None
    inner_iterations: int | None = None

    def supports(self, environment: str) -> bool:
        """True if this snippet may run in *environment*."""
        return not self.environments or environment in self.environments

    @property
    def has_explicit_iterations(self) -> bool:
        return self.warmup_iterations is not None or self.inner_iterations is not None

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a dict (sparse: omits empty optional fields)."""
        d: dict[str, Any] = {
            "slug": self.slug,
            "name": self.name,
            "category": self.category,
            "code": self.code,
        }
        if self.description:
            d["description"] = self.description
        if self.tags:
            d["tags"] = list(self.tags)
        if self.environments:
            d["environments"] = list(self.environments)
        if self.warmup_iterations is not None:
            d["warmup_iterations"] = self.warmup_iterations
        if self.inner_iterations is not None:
            d["inner_iterations"] = self.inner_iterations
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, source: str = "<dict>") -> Snippet:
        """Build a Snippet from a parsed fixture mapping.

        Raises:
            SnippetLoadError: If a required field is missing, not a
                string, or the code is blank.
        """
        for key in _REQUIRED_FIELDS:
            if not isinstance(data.get(key), str):
                raise SnippetLoadError(f"{key} field is required and must be a string in {source}")

        code = data["code"].strip("\n").rstrip()
        if not code.strip():
            raise SnippetLoadError(f"code field cannot be empty in {source}")

        return cls(
            slug=data["slug"],
            name=data["name"],
            category=data["category"],
            code=code,
            description=data.get("description") or "",
            tags=tuple(t for t in data.get("tags") or [] if isinstance(t, str)),
            environments=tuple(e for e in data.get("environments") or [] if isinstance(e, str)),
            warmup_iterations=_optional_int(data.get("warmup_iterations"), "warmup_iterations", source),
            inner_iterations=_optional_int(data.get("inner_iterations"), "inner_iterations", source),
        )


def _optional_int(value: Any, key: str, source: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise SnippetLoadError(f"{key} must be an integer in {source}")
    return value


# ---------------------------------------------------------------------------
# Catalog
# ---------------------------------------------------------------------------


@dataclass
class SnippetCatalog:
    """All loaded snippets, keyed by slug."""

    snippets: dict[str, Snippet] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.snippets)

    def __iter__(self):  # type: ignore[no-untyped-def]
        return iter(self.snippets.values())

    def __contains__(self, slug: object) -> bool:
        return slug in self.snippets

    def add(self, snippet: Snippet) -> None:
        if snippet.slug in self.snippets:
            log.warning("Duplicate snippet slug '%s', keeping the last one", snippet.slug)
        self.snippets[snippet.slug] = snippet

    def get(self, slug: str) -> Snippet | None:
        return self.snippets.get(slug)

    def lookup(self, slug: str, environment: str) -> tuple[Snippet | None, bool]:
        """Return ``(snippet, supported)`` for a slug in an environment.

        An unknown slug yields ``(None, False)``.
        """
        snippet = self.snippets.get(slug)
        if snippet is None:
            return None, False
        return snippet, snippet.supports(environment)

    def select(
        self,
        slugs: Iterable[str] | None = None,
        categories: Iterable[str] | None = None,
    ) -> list[Snippet]:
        """Return snippets filtered by slug and/or category, sorted by slug."""
        selected = list(self.snippets.values())
        if slugs:
            wanted = set(slugs)
            for missing in sorted(wanted - set(self.snippets)):
                log.warning("Snippet '%s' not in catalog, skipping", missing)
            selected = [s for s in selected if s.slug in wanted]
        if categories:
            cats = set(categories)
            selected = [s for s in selected if s.category in cats]
        return sorted(selected, key=lambda s: s.slug)

    @property
    def categories(self) -> list[str]:
        return sorted({s.category for s in self.snippets.values()})


# ---------------------------------------------------------------------------
# Fixture I/O
# ---------------------------------------------------------------------------


def load_snippet(path: Path) -> Snippet:
    """Load a single snippet fixture file.

    Raises:
        SnippetLoadError: If the file is not a YAML mapping or fails
            validation.
    """
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise SnippetLoadError(f"Invalid YAML in {path.name}: {exc}") from exc
    if not isinstance(data, dict):
        raise SnippetLoadError(f"Snippet fixture must be a YAML mapping: {path.name}")
    return Snippet.from_dict(data, source=path.name)


def load_catalog(snippets_dir: Path) -> SnippetCatalog:
    """Load every ``*.yaml`` / ``*.yml`` fixture under *snippets_dir*.

    Broken fixtures are logged and skipped so one bad file does not
    prevent the rest of the catalog from loading.

    Raises:
        FileNotFoundError: If *snippets_dir* does not exist.
    """
    if not snippets_dir.is_dir():
        raise FileNotFoundError(f"Snippets directory not found: {snippets_dir}")

    catalog = SnippetCatalog()
    paths = sorted([*snippets_dir.rglob("*.yaml"), *snippets_dir.rglob("*.yml")])
    for path in paths:
        try:
            catalog.add(load_snippet(path))
        except (SnippetLoadError, OSError) as exc:
            log.warning("Failed to load snippet fixture %s: %s", path.name, exc)

    log.debug("Loaded %d snippets from %s", len(catalog), snippets_dir)
    return catalog
