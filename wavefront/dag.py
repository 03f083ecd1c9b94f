"""Dependency scheduling for wavefront plans.

This module implements a "frontier" scheduler over `Step.depends_on`. Rather than building a
graph object, `ready_set()` scans the plan's steps against the current completed/failed sets
and returns every step that may start right now.

Wave semantics
- A step is ready when it is neither completed nor failed and every id in its `depends_on`
  is completed. A failed dependency never becomes completed, so its dependents stay out of
  every later ready set.
- The ready set is partitioned into `concurrent` (steps with `can_parallelize`) and
  `sequential` (the rest). Both partitions preserve the caller's input order; the
  orchestrator relies on that order for the sequential partition.
- The orchestrator computes one ready set per wave, runs it fully, then recomputes. This
  module holds no state between calls.

Deadlock
- An empty ready set while steps remain means the remaining steps are unreachable.
  `blocked_by_failures()` separates the ones explained by a failed ancestor from the rest;
  anything left over can only be a cycle. `find_cycle()` reports a cycle up front so a plan
  is rejected at ingestion instead of stalling mid-run.

File dependency inference
- `infer_file_dependencies()` is an explicit pre-pass: when two steps name the same file
  (`params.path` or `params.files`), the later step in plan order gains a dependency on the
  earlier one. It returns new `Step` objects and never mutates its input.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .plan import Step


@dataclass(frozen=True)
class ReadySet:
    concurrent: list[Step]
    sequential: list[Step]

    def __bool__(self) -> bool:
        return bool(self.concurrent or self.sequential)

    def __len__(self) -> int:
        return len(self.concurrent) + len(self.sequential)

    @property
    def ids(self) -> list[str]:
        return [s.id for s in self.concurrent] + [s.id for s in self.sequential]


def ready_set(steps: Iterable[Step], *, completed: set[str], failed: set[str]) -> ReadySet:
    concurrent: list[Step] = []
    sequential: list[Step] = []
    for step in steps:
        if step.id in completed or step.id in failed:
            continue
        if not all(d in completed for d in step.depends_on):
            continue
        if step.can_parallelize:
            concurrent.append(step)
        else:
            sequential.append(step)
    return ReadySet(concurrent=concurrent, sequential=sequential)


def blocked_by_failures(steps: Sequence[Step], *, completed: set[str], failed: set[str]) -> tuple[list[str], list[str]]:
    """Split unfinished steps into (blocked by a failed ancestor, stuck for another reason)."""
    by_id = {s.id: s for s in steps}
    memo: dict[str, bool] = {}

    def has_failed_ancestor(step_id: str, trail: frozenset[str]) -> bool:
        if step_id in memo:
            return memo[step_id]
        step = by_id.get(step_id)
        if step is None:
            return False
        hit = False
        for dep in step.depends_on:
            if dep in failed:
                hit = True
                break
            if dep in trail or dep in completed:
                continue
            if has_failed_ancestor(dep, trail | {dep}):
                hit = True
                break
        memo[step_id] = hit
        return hit

    blocked: list[str] = []
    stuck: list[str] = []
    for step in steps:
        if step.id in completed or step.id in failed:
            continue
        if has_failed_ancestor(step.id, frozenset({step.id})):
            blocked.append(step.id)
        else:
            stuck.append(step.id)
    return blocked, stuck


def find_cycle(steps: Iterable[Step]) -> list[str]:
    """Return the ids of one dependency cycle, or `[]` if the graph is acyclic.

    Dependencies on ids that are not in `steps` are ignored here; `Plan.validate()`
    reports them separately.
    """
    by_id = {s.id: s for s in steps}
    WHITE, GREY, BLACK = 0, 1, 2
    color = {sid: WHITE for sid in by_id}

    for root in by_id:
        if color[root] != WHITE:
            continue
        path: list[str] = [root]
        stack = [(root, iter(by_id[root].depends_on))]
        color[root] = GREY
        while stack:
            node, deps = stack[-1]
            advanced = False
            for dep in deps:
                if dep not in by_id:
                    continue
                if color[dep] == GREY:
                    return path[path.index(dep) :]
                if color[dep] == WHITE:
                    color[dep] = GREY
                    path.append(dep)
                    stack.append((dep, iter(by_id[dep].depends_on)))
                    advanced = True
                    break
            if not advanced:
                color[node] = BLACK
                stack.pop()
                path.pop()
    return []


def _step_files(step: Step) -> set[str]:
    files: set[str] = set()
    path = step.params.get("path")
    if isinstance(path, str) and path.strip():
        files.add(path.strip())
    extra = step.params.get("files")
    if isinstance(extra, list):
        files.update(str(f).strip() for f in extra if str(f).strip())
    return files


def infer_file_dependencies(steps: Sequence[Step]) -> list[Step]:
    deps_by_id: dict[str, list[str]] = {s.id: list(s.depends_on) for s in steps}

    def reaches(start: str, target: str) -> bool:
        stack, visited = [start], set()
        while stack:
            node = stack.pop()
            if node == target:
                return True
            if node in visited:
                continue
            visited.add(node)
            stack.extend(deps_by_id.get(node, []))
        return False

    seen: list[tuple[Step, set[str]]] = []
    for step in steps:
        files = _step_files(step)
        deps = deps_by_id[step.id]
        for earlier, earlier_files in seen:
            if not files & earlier_files or earlier.id in deps:
                continue
            # An explicit edge the other way wins.
            if reaches(earlier.id, step.id):
                continue
            deps.append(earlier.id)
        seen.append((step, files))

    return [s if deps_by_id[s.id] == s.depends_on else replace(s, depends_on=deps_by_id[s.id]) for s in steps]
