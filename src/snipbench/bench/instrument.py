"""Generate self-timing Python scripts from snippet code.

The measured script runs the snippet body inside a local function so
that ``return`` and local names behave as in any function body:

1. warmup: call the body ``warmup_iterations`` times, unmeasured;
2. start ``tracemalloc`` and reset its peak so the baselines only cover
   the measurement phase;
3. disable the cyclic garbage collector, restoring its previous state in
   a ``finally`` block;
4. call the body ``inner_iterations`` times between two
   ``time.perf_counter_ns()`` readings;
5. print one JSON object line with the per-iteration time and memory and
   the (undivided) peak memory growth.

The calibration probe is much simpler: it calls the body once and
prints only the elapsed time.
"""

from __future__ import annotations

import textwrap

from snipbench.bench.iterations import IterationConfiguration
from snipbench.snippets import Snippet

TIMER_TYPE = "perf_counter_ns"

_MEASURED_TEMPLATE = '''\
# snipbench measured unit: {label}
# {description}
import gc
import json
import time
import tracemalloc


def _snippet():
{body}


for _ in range({warmup}):
    _snippet()

gc.collect()
tracemalloc.start()
if hasattr(tracemalloc, "reset_peak"):
    tracemalloc.reset_peak()
_mem_before, _peak_before = tracemalloc.get_traced_memory()

_gc_was_enabled = gc.isenabled()
gc.disable()
try:
    _start = time.perf_counter_ns()
    for _ in range({inner}):
        _snippet()
    _end = time.perf_counter_ns()
    _mem_after, _peak_after = tracemalloc.get_traced_memory()
finally:
    if _gc_was_enabled:
        gc.enable()
    tracemalloc.stop()

_total_ms = (_end - _start) / 1_000_000
print(json.dumps({{
    "execution_time_ms": round(_total_ms / {inner}, 4),
    "memory_used_bytes": (_mem_after - _mem_before) / {inner},
    "memory_peak_bytes": _peak_after - _peak_before,
    "inner_iterations": {inner},
    "warmup_iterations": {warmup},
    "timer_type": "{timer}",
}}))
'''

_PROBE_TEMPLATE = '''\
# snipbench calibration probe: {label}
import json
import time


def _snippet():
{body}


_start = time.perf_counter_ns()
_snippet()
_end = time.perf_counter_ns()
print(json.dumps({{"elapsed_ms": (_end - _start) / 1_000_000}}))
'''


def _as_body(code: str) -> str:
    body = textwrap.dedent(code).strip("\n")
    if not body.strip():
        body = "pass"
    return textwrap.indent(body, "    ", lambda line: True)


def _label(snippet_or_code: Snippet | str) -> tuple[str, str]:
    if isinstance(snippet_or_code, Snippet):
        return snippet_or_code.slug, snippet_or_code.code
    return "<inline>", snippet_or_code


class ScriptInstrumenter:
    """Wraps snippet code into standalone measurement scripts."""

    def build(self, snippet: Snippet | str, config: IterationConfiguration) -> str:
        """Return the measured script for *snippet* under *config*."""
        label, code = _label(snippet)
        return _MEASURED_TEMPLATE.format(
            label=label,
            description=config.description,
            body=_as_body(code),
            warmup=config.warmup_iterations,
            inner=config.inner_iterations,
            timer=TIMER_TYPE,
        )

    def build_probe(self, snippet: Snippet | str) -> str:
        """Return the single-shot calibration probe for *snippet*."""
        label, code = _label(snippet)
        return _PROBE_TEMPLATE.format(label=label, body=_as_body(code))
