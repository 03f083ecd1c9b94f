"""wavefront orchestrator: run a plan's step graph in dependency waves.

`PlanOrchestrator.execute_plan(plan)` drives the whole run and returns an
`ExecutionResult`. `PlanOrchestrator.rollback()` undoes the filesystem changes recorded by
the most recent incomplete run.

Lifecycle
1. Ingest
  - `plan.validate()` rejects duplicate ids, unknown dependencies and cycles before any step
    runs (`PlanError` / `CircularDependencyError`).
  - When `infer_dependencies` is on, steps naming the same file gain an explicit dependency
    on the earlier step (`dag.infer_file_dependencies`). Inferred edges are logged.
  - The rollback checkpoint is opened. A leftover checkpoint from the same plan id is
    extended; one from a different plan raises `RuntimeError` unless the caller passes
    `discard_checkpoint=True`.

2. Waves
  Each wave computes one ready set (`dag.ready_set`) from the completed/failed sets and runs
  it to completion before the next wave is computed:
  - the concurrent partition is fanned out on a thread pool bounded by `max_concurrent` and
    fully awaited. An exception escaping one step is captured into that step's result;
    siblings keep running;
  - the sequential partition then runs one step at a time in plan order, stopping at the
    first failure. Skipped steps stay pending and are reconsidered next wave.
  Results are recorded in dispatch order. Failed steps are never retried by the
  orchestrator; their dependents simply never become ready.

3. Termination
  - All steps completed or failed: the loop ends.
  - Empty ready set with unfinished steps: steps whose ancestry contains a failure are
    reported in `blocked_steps` and the run ends with `success=False`. Any other unfinished
    step can only be part of a cycle and raises `CircularDependencyError`.

4. Checkpoint
  - Full success clears the checkpoint (state and file).
  - Any failure keeps it on disk so completed work can be inspected and rolled back
    explicitly; nothing is rolled back automatically.

Reporting
The configured `ProgressReporter` is told about plan start, each step start/finish and plan
finish. The orchestrator keeps no other persistent state.
"""

from __future__ import annotations

import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Mapping

from .checkpoint import CheckpointStore
from .dag import blocked_by_failures, infer_file_dependencies, ready_set
from .executor import StepExecutor
from .generator import GeneratorClient
from .plan import CircularDependencyError, ExecutionResult, Plan, Step, StepResult, bound_error
from .render import TemplateRenderer
from .reporting import NullReporter, ProgressReporter
from .validator import ArtifactValidator


@dataclass(frozen=True)
class WavefrontConfig:
    project_root: Path
    renderer: TemplateRenderer
    generator: GeneratorClient
    validator: ArtifactValidator
    reporter: ProgressReporter = field(default_factory=NullReporter)
    max_retries: int = 2
    max_concurrent: int = 4
    generation_timeout: float = 120.0
    infer_dependencies: bool = True
    write_renders: bool = True
    dry_run: bool = False

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got: {self.max_retries}")
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be >= 1, got: {self.max_concurrent}")
        if self.generation_timeout <= 0:
            raise ValueError(f"generation_timeout must be > 0, got: {self.generation_timeout}")

    @property
    def state_dir(self) -> Path:
        return self.project_root / ".wavefront"

    @property
    def checkpoint_path(self) -> Path:
        return self.state_dir / "rollback-checkpoint.json"

    @property
    def renders_dir(self) -> Path:
        return self.state_dir / "renders"

    @property
    def session_path(self) -> Path:
        return self.state_dir / "session.json"

    @property
    def results_path(self) -> Path:
        return self.state_dir / "results.json"

    @property
    def app_map_path(self) -> Path:
        return self.state_dir / "app-map.md"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class PlanOrchestrator:
    def __init__(self, cfg: WavefrontConfig) -> None:
        self.cfg = cfg
        self.checkpoint: CheckpointStore | None = None

    def _log(self, msg: str) -> None:
        print(f"[wavefront] {msg}", file=sys.stderr)

    def execute_plan(self, plan: Plan, *, discard_checkpoint: bool = False) -> ExecutionResult:
        plan.validate()
        steps = self._prepare_steps(plan)
        checkpoint = self._open_checkpoint(plan, discard=discard_checkpoint)
        self.checkpoint = checkpoint
        executor = StepExecutor(
            project_root=self.cfg.project_root,
            renderer=self.cfg.renderer,
            generator=self.cfg.generator,
            validator=self.cfg.validator,
            checkpoint=checkpoint,
            max_retries=self.cfg.max_retries,
            generation_timeout=self.cfg.generation_timeout,
            renders_dir=(self.cfg.renders_dir if self.cfg.write_renders else None),
            dry_run=self.cfg.dry_run,
        )

        result = ExecutionResult(
            plan_id=plan.plan_id,
            task=plan.task,
            started_at=_now(),
            tokens_saved=plan.estimated_tokens_saved,
        )
        completed: set[str] = set()
        failed: set[str] = set()

        self._log(f"plan {plan.plan_id}: {len(steps)} step(s)")
        if plan.task:
            self._log(f"task: {plan.task!r}")
        self.cfg.reporter.plan_started(plan)

        wave = 0
        while len(completed) + len(failed) < len(steps):
            ready = ready_set(steps, completed=completed, failed=failed)
            if not ready:
                blocked, stuck = blocked_by_failures(steps, completed=completed, failed=failed)
                if stuck:
                    raise CircularDependencyError(stuck)
                result.blocked_steps = blocked
                result.success = False
                self._log(f"steps blocked by failed dependencies: {blocked}")
                break

            wave += 1
            self._log(
                f"wave {wave}: concurrent={[s.id for s in ready.concurrent]} "
                f"sequential={[s.id for s in ready.sequential]}"
            )

            for step, step_result in self._run_concurrent(executor, ready.concurrent, plan.context):
                self._record(result, step, step_result, completed, failed)

            for step in ready.sequential:
                step_result = self._run_one(executor, step, plan.context)
                self._record(result, step, step_result, completed, failed)
                if not step_result.success:
                    self._log(f"sequential step {step.id} failed; deferring the rest of this wave")
                    break

        result.completed_at = _now()
        self.cfg.reporter.plan_finished(result)

        if result.success:
            checkpoint.clear()
            self._log(f"plan {plan.plan_id} completed")
        else:
            if not checkpoint.is_empty():
                self._log(f"changes kept; run rollback to undo them ({self.cfg.checkpoint_path})")
            self._log(f"plan {plan.plan_id} failed: {result.failed_steps}")
        return result

    def rollback(self) -> bool:
        store = CheckpointStore.load(project_root=self.cfg.project_root, checkpoint_path=self.cfg.checkpoint_path)
        if store is None:
            self._log("no rollback checkpoint found")
            return False
        store.rollback()
        return True

    def _prepare_steps(self, plan: Plan) -> list[Step]:
        if not self.cfg.infer_dependencies:
            return list(plan.steps)
        steps = infer_file_dependencies(plan.steps)
        for before, after in zip(plan.steps, steps):
            added = [d for d in after.depends_on if d not in before.depends_on]
            if added:
                self._log(f"inferred dependency: {after.id} -> {added} (shared file)")
        return steps

    def _open_checkpoint(self, plan: Plan, *, discard: bool) -> CheckpointStore:
        existing = CheckpointStore.load(project_root=self.cfg.project_root, checkpoint_path=self.cfg.checkpoint_path)
        if existing is not None and not existing.is_empty():
            if existing.plan_id == plan.plan_id:
                self._log(f"extending existing checkpoint for plan {plan.plan_id}")
                return existing
            if not discard:
                raise RuntimeError(
                    f"a rollback checkpoint for plan {existing.plan_id!r} already exists. "
                    "Roll it back or discard it before running a different plan."
                )
            self._log(f"discarding checkpoint for plan {existing.plan_id}")
            existing.clear()
        return CheckpointStore(
            project_root=self.cfg.project_root,
            checkpoint_path=self.cfg.checkpoint_path,
            plan_id=plan.plan_id,
        )

    def _run_one(self, executor: StepExecutor, step: Step, context: Mapping[str, Any]) -> StepResult:
        self.cfg.reporter.step_started(step)
        try:
            return executor.execute(step, context)
        except Exception as exc:
            self._log(f"step {step.id}: unexpected error: {exc!r}")
            return StepResult(
                step_id=step.id,
                title=step.title,
                success=False,
                attempts=0,
                errors=(bound_error(f"Unexpected error: {exc!r}"),),
            )

    def _run_concurrent(
        self,
        executor: StepExecutor,
        batch: list[Step],
        context: Mapping[str, Any],
    ) -> list[tuple[Step, StepResult]]:
        if not batch:
            return []
        if len(batch) == 1:
            return [(batch[0], self._run_one(executor, batch[0], context))]

        workers = min(self.cfg.max_concurrent, len(batch))
        self._log(f"running {len(batch)} step(s) in parallel (max {workers})")
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="wavefront-step") as pool:
            futures = [pool.submit(self._run_one, executor, step, context) for step in batch]
            return [(step, fut.result()) for step, fut in zip(batch, futures)]

    def _record(
        self,
        result: ExecutionResult,
        step: Step,
        step_result: StepResult,
        completed: set[str],
        failed: set[str],
    ) -> None:
        result.record(step, step_result)
        if step_result.success:
            completed.add(step.id)
        else:
            failed.add(step.id)
        self.cfg.reporter.step_finished(step, step_result)
