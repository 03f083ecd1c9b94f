"""wavefront.plan

This module defines the plan data model consumed by the engine and the result records it
produces.

Plan JSON shape (input)
- Top-level object:
  - `planId` (string, required): opaque identifier, stable for the run.
  - `task` (string, optional): human-readable description; not interpreted.
  - `steps` (array[object], required): the step graph.
  - `context` (object, optional): shared parameters passed to every step's render call.
  - `estimatedTokensSaved` (integer, optional): carried into the results as `tokensSaved`.
  - plus any unknown top-level keys captured in `Plan.extra`
- Each step object:
  - `id` (string, required): unique within the plan.
  - `title` (string, optional, defaults to the id)
  - `type` (string, required): selects the template (unless `template` is given).
  - `template` (string, optional): explicit template id.
  - `params` (object, optional): step inputs; `params.path` is the output path.
  - `dependsOn` (array[string], optional): ids that must complete first.
  - `canParallelize` (bool, optional, default true)
  - `validation.checks` (array[string], optional): ordered validation gate.
  - `stateUpdates.appMap` (object, optional): `{section, entry}` appended to the project
    app map once the step completes.
  - plus any unknown keys captured in `Step.extra`

Well-formedness
`Plan.validate()` rejects duplicate ids, dependencies on ids that are not in the plan and
dependency cycles. It is called from `Plan.from_dict` and again by the orchestrator before
any step runs, so a malformed plan never reaches the scheduler.

Results
`StepResult` and `ExecutionResult` are the records returned to callers. Error strings are
bounded by `MAX_ERROR_CHARS` so one noisy tool cannot blow up the persisted results file.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Mapping

MAX_ERROR_CHARS = 2000


class PlanError(ValueError):
    """Structural problem with a plan; fatal for the whole run."""


class CircularDependencyError(PlanError):
    def __init__(self, step_ids: Iterable[str]) -> None:
        self.step_ids = sorted(step_ids)
        super().__init__(f"circular dependency among steps: {self.step_ids}")


class StepStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class AppMapUpdate:
    section: str
    entry: str


@dataclass(frozen=True)
class StepValidation:
    checks: list[str] | None = None


@dataclass(frozen=True)
class Step:
    id: str
    type: str
    title: str = ""
    template: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)
    can_parallelize: bool = True
    validation: StepValidation = field(default_factory=StepValidation)
    state_updates: dict[str, Any] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def template_id(self) -> str:
        return self.template or self.type

    @property
    def output_path(self) -> str | None:
        raw = self.params.get("path")
        if raw is None or not str(raw).strip():
            return None
        return str(raw)

    @property
    def app_map_update(self) -> AppMapUpdate | None:
        raw = self.state_updates.get("appMap")
        if not isinstance(raw, dict):
            return None
        return AppMapUpdate(section=str(raw["section"]), entry=str(raw["entry"]))

    @staticmethod
    def from_dict(d: Mapping[str, Any]) -> "Step":
        known_keys = {
            "id",
            "title",
            "type",
            "template",
            "params",
            "dependsOn",
            "canParallelize",
            "validation",
            "stateUpdates",
        }
        extra = {k: v for k, v in d.items() if k not in known_keys}

        step_id = d.get("id")
        if not isinstance(step_id, str) or not step_id.strip():
            raise PlanError("step missing required string: id")
        step_type = d.get("type")
        if not isinstance(step_type, str) or not step_type.strip():
            raise PlanError(f"step {step_id} missing required string: type")

        params = d.get("params") or {}
        if not isinstance(params, dict):
            raise PlanError(f"step {step_id} has invalid params; expected an object")

        depends_on = d.get("dependsOn") or []
        if not isinstance(depends_on, list) or any(not isinstance(x, str) for x in depends_on):
            raise PlanError(f"step {step_id} has invalid dependsOn; expected array of strings")

        validation_raw = d.get("validation") or {}
        if not isinstance(validation_raw, dict):
            raise PlanError(f"step {step_id} has invalid validation; expected an object")
        checks = validation_raw.get("checks")
        if checks is not None and (not isinstance(checks, list) or any(not isinstance(x, str) for x in checks)):
            raise PlanError(f"step {step_id} has invalid validation.checks; expected array of strings")

        state_updates = d.get("stateUpdates") or {}
        if not isinstance(state_updates, dict):
            raise PlanError(f"step {step_id} has invalid stateUpdates; expected an object")
        app_map = state_updates.get("appMap")
        if app_map is not None and (
            not isinstance(app_map, dict)
            or not isinstance(app_map.get("section"), str)
            or not isinstance(app_map.get("entry"), str)
        ):
            raise PlanError(f"step {step_id} has invalid stateUpdates.appMap; expected {{section, entry}} strings")

        template = d.get("template")
        return Step(
            id=step_id.strip(),
            type=step_type.strip(),
            title=str(d.get("title") or step_id).strip(),
            template=(str(template).strip() if template else None),
            params=dict(params),
            depends_on=[x.strip() for x in depends_on if x.strip()],
            can_parallelize=(d.get("canParallelize") is not False),
            validation=StepValidation(checks=(list(checks) if checks is not None else None)),
            state_updates=dict(state_updates),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "id": self.id,
            "title": self.title,
            "type": self.type,
            "params": dict(self.params),
            "dependsOn": list(self.depends_on),
            "canParallelize": self.can_parallelize,
        }
        if self.template:
            d["template"] = self.template
        if self.validation.checks is not None:
            d["validation"] = {"checks": list(self.validation.checks)}
        if self.state_updates:
            d["stateUpdates"] = dict(self.state_updates)
        d.update(self.extra)
        return d


@dataclass(frozen=True)
class Plan:
    plan_id: str
    steps: list[Step]
    task: str = ""
    context: dict[str, Any] = field(default_factory=dict)
    estimated_tokens_saved: int = 0
    extra: dict[str, Any] = field(default_factory=dict, repr=False)

    @staticmethod
    def from_dict(raw: Any) -> "Plan":
        if not isinstance(raw, dict):
            raise PlanError(f"plan must be a JSON object, got {type(raw)}")

        plan_id = raw.get("planId")
        if not isinstance(plan_id, str) or not plan_id.strip():
            raise PlanError("plan is missing required field: planId")
        steps_raw = raw.get("steps")
        if not isinstance(steps_raw, list):
            raise PlanError("plan is missing required field: steps[]")
        context = raw.get("context") or {}
        if not isinstance(context, dict):
            raise PlanError("plan field 'context' must be an object")

        steps: list[Step] = []
        for idx, it in enumerate(steps_raw):
            if not isinstance(it, dict):
                raise PlanError(f"plan step {idx} is not an object")
            steps.append(Step.from_dict(it))

        tokens_saved = raw.get("estimatedTokensSaved") or 0
        if isinstance(tokens_saved, bool) or not isinstance(tokens_saved, (int, float)) or tokens_saved < 0:
            raise PlanError("plan field 'estimatedTokensSaved' must be a non-negative number")

        known_keys = {"planId", "task", "steps", "context", "estimatedTokensSaved"}
        extra = {k: v for k, v in raw.items() if k not in known_keys}
        plan = Plan(
            plan_id=plan_id.strip(),
            task=str(raw.get("task") or ""),
            steps=steps,
            context=dict(context),
            estimated_tokens_saved=int(tokens_saved),
            extra=extra,
        )
        plan.validate()
        return plan

    @staticmethod
    def load(path: Path) -> "Plan":
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise PlanError(f"plan file is not valid JSON: {path}: {exc}") from exc
        return Plan.from_dict(raw)

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "planId": self.plan_id,
            "task": self.task,
            "steps": [s.to_dict() for s in self.steps],
            "context": dict(self.context),
            "estimatedTokensSaved": self.estimated_tokens_saved,
        }
        d.update(self.extra)
        return d

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=True) + "\n", encoding="utf-8")

    def get_step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(f"Step not found: {step_id}")

    def validate(self) -> None:
        """Raise `PlanError` unless ids are unique, dependencies resolve and the graph is acyclic."""
        from .dag import find_cycle

        seen: set[str] = set()
        dupes: list[str] = []
        for step in self.steps:
            if step.id in seen:
                dupes.append(step.id)
            seen.add(step.id)
        if dupes:
            raise PlanError(f"duplicate step ids: {sorted(set(dupes))}")

        for step in self.steps:
            unknown = [d for d in step.depends_on if d not in seen]
            if unknown:
                raise PlanError(f"step {step.id} depends on unknown step ids: {unknown}")

        cycle = find_cycle(self.steps)
        if cycle:
            raise CircularDependencyError(cycle)


def bound_error(message: str, *, limit: int = MAX_ERROR_CHARS) -> str:
    message = str(message)
    if len(message) <= limit:
        return message
    return message[: limit - 3] + "..."


@dataclass(frozen=True)
class StepResult:
    step_id: str
    success: bool
    attempts: int
    title: str = ""
    errors: tuple[str, ...] = ()
    escalate: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "stepId": self.step_id,
            "title": self.title,
            "success": self.success,
            "attempts": self.attempts,
            "errors": list(self.errors),
            "escalate": self.escalate,
        }


@dataclass
class ExecutionResult:
    plan_id: str
    task: str = ""
    success: bool = True
    started_at: str | None = None
    completed_at: str | None = None
    steps: list[StepResult] = field(default_factory=list)
    failed_steps: list[str] = field(default_factory=list)
    escalate_to_cloud: list[Step] = field(default_factory=list)
    blocked_steps: list[str] = field(default_factory=list)
    tokens_saved: int = 0

    @property
    def completed_steps(self) -> list[str]:
        return [r.step_id for r in self.steps if r.success]

    def record(self, step: Step, result: StepResult) -> None:
        self.steps.append(result)
        if result.success:
            return
        self.success = False
        self.failed_steps.append(step.id)
        if result.escalate:
            self.escalate_to_cloud.append(step)

    def to_dict(self) -> dict[str, Any]:
        return {
            "planId": self.plan_id,
            "task": self.task,
            "success": self.success,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "steps": [r.to_dict() for r in self.steps],
            "failedSteps": list(self.failed_steps),
            "escalateToCloud": [s.to_dict() for s in self.escalate_to_cloud],
            "blockedSteps": list(self.blocked_steps),
            "tokensSaved": self.tokens_saved,
        }

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=True) + "\n", encoding="utf-8")
