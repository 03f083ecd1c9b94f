"""wavefront: wave-based plan execution against a content generator.

A plan is a JSON document listing steps. Each step names a prompt template, template
parameters, the steps it depends on, and whether it may run alongside other steps. The
engine (`wavefront.orchestrator.PlanOrchestrator`, driven by `wavefront.cli:main` or
`python -m wavefront`) repeatedly computes the set of ready steps, fans the parallel ones out
on a bounded thread pool, runs the rest one at a time, and stops when every step has
finished or nothing more can run.

Every step runs render -> generate -> write -> validate. A failed validation is fed back into
the next prompt until the retry budget runs out, at which point the step is flagged for
escalation. File writes are recorded in a rollback checkpoint under `.wavefront/` so an
incomplete run can be undone with `wavefront --rollback`.

Modules
- `plan`: plan/step/result types and plan validation.
- `dag`: ready-set computation, cycle detection and shared-file dependency inference.
- `render`: prompt templates with `{{name}}` placeholders and `{{include name}}` directives.
- `generator`: HTTP (Ollama, OpenAI-compatible), subprocess and stub generator clients.
- `validator`: named artifact checks.
- `checkpoint`: created/modified file tracking and rollback.
- `executor`: the per-step attempt loop.
- `orchestrator`: the wave loop.
- `reporting`: session/results JSON and the end-of-run summary.
- `settings`: generator settings from the project config and environment.

Key exports from this module
- `__version__`: the package version string. (`__all__` is limited to this.)
"""

from __future__ import annotations

__all__ = ["__version__"]

__version__ = "0.1.0"
