"""Progress reporting for plan runs.

The orchestrator does not write session state itself. It calls a `ProgressReporter` at
each boundary:

- `plan_started(plan)` once, before the first wave;
- `step_started(step)` from the thread that runs the step;
- `step_finished(step, result)` from the orchestrator thread, in recording order;
- `plan_finished(result)` once, after the last wave (also after a blocked run).

`JsonStateReporter` persists two files under the state directory:

- `session.json`: the current plan id, executed/failed/running/pending step ids, a
  per-step `stepStatus` map and timestamps, rewritten at every boundary so an interrupted
  run leaves an accurate record;
- `results.json`: the full `ExecutionResult`, written by `plan_finished`.

When given an `app_map_path`, it also appends each completed step's `stateUpdates.appMap`
entry to the project app map (see `wavefront.appmap`).

`format_summary()` renders the end-of-run summary the CLI prints.
"""

from __future__ import annotations

import json
import sys
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from .appmap import update_app_map
from .plan import ExecutionResult, Plan, Step, StepResult, StepStatus


class ProgressReporter(Protocol):
    def plan_started(self, plan: Plan) -> None: ...

    def step_started(self, step: Step) -> None: ...

    def step_finished(self, step: Step, result: StepResult) -> None: ...

    def plan_finished(self, result: ExecutionResult) -> None: ...


class NullReporter:
    def plan_started(self, plan: Plan) -> None:
        _ = plan

    def step_started(self, step: Step) -> None:
        _ = step

    def step_finished(self, step: Step, result: StepResult) -> None:
        _ = (step, result)

    def plan_finished(self, result: ExecutionResult) -> None:
        _ = result


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class JsonStateReporter:
    def __init__(self, *, session_path: Path, results_path: Path, app_map_path: Path | None = None) -> None:
        self.session_path = session_path
        self.results_path = results_path
        self.app_map_path = app_map_path
        self._lock = threading.Lock()
        self._session: dict[str, Any] = {}

    def _write_session(self) -> None:
        self._session["updatedAt"] = _now()
        self.session_path.parent.mkdir(parents=True, exist_ok=True)
        self.session_path.write_text(json.dumps(self._session, indent=2, ensure_ascii=True) + "\n", encoding="utf-8")

    def plan_started(self, plan: Plan) -> None:
        with self._lock:
            self._session = {
                "sessionId": f"sess-{uuid.uuid4().hex[:12]}",
                "startedAt": _now(),
                "currentPlan": plan.plan_id,
                "task": plan.task,
                "executedSteps": [],
                "failedSteps": [],
                "runningSteps": [],
                "pendingSteps": [s.id for s in plan.steps],
                "stepStatus": {s.id: StepStatus.PENDING.value for s in plan.steps},
            }
            self._write_session()

    def step_started(self, step: Step) -> None:
        with self._lock:
            if step.id in self._session.get("pendingSteps", []):
                self._session["pendingSteps"].remove(step.id)
            self._session.setdefault("runningSteps", []).append(step.id)
            self._session.setdefault("stepStatus", {})[step.id] = StepStatus.RUNNING.value
            self._write_session()

    def step_finished(self, step: Step, result: StepResult) -> None:
        with self._lock:
            for key in ("pendingSteps", "runningSteps"):
                if step.id in self._session.get(key, []):
                    self._session[key].remove(step.id)
            key = "executedSteps" if result.success else "failedSteps"
            self._session.setdefault(key, []).append(step.id)
            status = StepStatus.COMPLETED if result.success else StepStatus.FAILED
            self._session.setdefault("stepStatus", {})[step.id] = status.value
            self._write_session()
        update = step.app_map_update
        if result.success and update is not None and self.app_map_path is not None:
            if update_app_map(self.app_map_path, update):
                print(f"[wavefront] step {step.id}: app map updated ({update.section})", file=sys.stderr)

    def plan_finished(self, result: ExecutionResult) -> None:
        with self._lock:
            self._session["completedAt"] = result.completed_at
            self._session["success"] = result.success
            self._session["blockedSteps"] = list(result.blocked_steps)
            self._session["totalTokensSaved"] = result.tokens_saved
            self._session["runningSteps"] = []
            self._write_session()
            result.save(self.results_path)

    def load_session(self) -> dict[str, Any] | None:
        if not self.session_path.exists():
            return None
        return json.loads(self.session_path.read_text(encoding="utf-8"))


def format_summary(result: ExecutionResult, *, results_path: Path | None = None) -> str:
    lines: list[str] = ["", "=" * 60, "EXECUTION SUMMARY", "=" * 60]
    lines.append("Plan executed successfully." if result.success else "Plan execution failed.")

    ok = sum(1 for r in result.steps if r.success)
    lines.append(f"Steps completed: {ok}/{len(result.steps)}")
    attempts = sum(r.attempts for r in result.steps)
    lines.append(f"Total attempts: {attempts}")
    lines.append(f"Tokens saved: ~{result.tokens_saved:,}")

    for r in result.steps:
        if r.success:
            continue
        last = r.errors[-1] if r.errors else "(no error recorded)"
        first_line = (last.splitlines() or [""])[0][:120]
        lines.append(f"  x {r.step_id} ({r.attempts} attempt(s)): {first_line}")

    if result.escalate_to_cloud:
        lines.append("")
        lines.append("Steps requiring escalation:")
        for step in result.escalate_to_cloud:
            lines.append(f"  - {step.id}: {step.title}")

    if result.blocked_steps:
        lines.append("")
        lines.append(f"Blocked by failed dependencies: {', '.join(result.blocked_steps)}")

    if results_path is not None:
        lines.append("")
        lines.append(f"Results saved to: {results_path}")
    lines.append("")
    return "\n".join(lines)
