from __future__ import annotations

import json
from pathlib import Path

import pytest

from wavefront.plan import (
    MAX_ERROR_CHARS,
    AppMapUpdate,
    CircularDependencyError,
    ExecutionResult,
    Plan,
    PlanError,
    Step,
    StepResult,
    bound_error,
)


def _plan_dict(**overrides: object) -> dict[str, object]:
    raw: dict[str, object] = {
        "planId": "p1",
        "task": "build the thing",
        "context": {"project": "demo"},
        "steps": [
            {"id": "a", "type": "component", "params": {"path": "src/a.ts"}},
            {
                "id": "b",
                "title": "Second",
                "type": "component",
                "template": "custom",
                "dependsOn": ["a"],
                "canParallelize": False,
                "validation": {"checks": ["file-exists", "non-empty"]},
                "owner": "team-x",
            },
        ],
        "source": "planner",
    }
    raw.update(overrides)
    return raw


def test_from_dict_parses_camel_case_fields_and_keeps_unknown_keys() -> None:
    plan = Plan.from_dict(_plan_dict())

    assert plan.plan_id == "p1"
    assert plan.task == "build the thing"
    assert plan.context == {"project": "demo"}
    assert plan.extra == {"source": "planner"}

    a, b = plan.steps
    assert a.title == "a"
    assert a.template_id == "component"
    assert a.output_path == "src/a.ts"
    assert a.can_parallelize is True
    assert a.validation.checks is None

    assert b.template_id == "custom"
    assert b.depends_on == ["a"]
    assert b.can_parallelize is False
    assert b.validation.checks == ["file-exists", "non-empty"]
    assert b.output_path is None
    assert b.extra == {"owner": "team-x"}


def test_to_dict_round_trips_unknown_keys(tmp_path: Path) -> None:
    plan = Plan.from_dict(_plan_dict())
    out = tmp_path / "plan.json"
    plan.save(out)

    raw = json.loads(out.read_text(encoding="utf-8"))
    assert raw["source"] == "planner"
    assert raw["steps"][1]["owner"] == "team-x"
    assert raw["steps"][1]["validation"] == {"checks": ["file-exists", "non-empty"]}
    assert Plan.load(out) == plan


def test_missing_plan_id_is_rejected() -> None:
    with pytest.raises(PlanError, match="planId"):
        Plan.from_dict(_plan_dict(planId=""))


def test_step_without_type_is_rejected() -> None:
    with pytest.raises(PlanError, match="type"):
        Plan.from_dict(_plan_dict(steps=[{"id": "a"}]))


def test_invalid_depends_on_is_rejected() -> None:
    with pytest.raises(PlanError, match="dependsOn"):
        Plan.from_dict(_plan_dict(steps=[{"id": "a", "type": "t", "dependsOn": "b"}]))


def test_duplicate_ids_are_rejected() -> None:
    steps = [{"id": "a", "type": "t"}, {"id": "a", "type": "t"}]
    with pytest.raises(PlanError, match="duplicate step ids"):
        Plan.from_dict(_plan_dict(steps=steps))


def test_unknown_dependency_is_rejected() -> None:
    steps = [{"id": "a", "type": "t", "dependsOn": ["ghost"]}]
    with pytest.raises(PlanError, match="ghost"):
        Plan.from_dict(_plan_dict(steps=steps))


def test_cycle_is_rejected_with_member_ids() -> None:
    steps = [
        {"id": "a", "type": "t", "dependsOn": ["c"]},
        {"id": "b", "type": "t", "dependsOn": ["a"]},
        {"id": "c", "type": "t", "dependsOn": ["b"]},
        {"id": "d", "type": "t"},
    ]
    with pytest.raises(CircularDependencyError) as exc:
        Plan.from_dict(_plan_dict(steps=steps))
    assert exc.value.step_ids == ["a", "b", "c"]


def test_load_reports_invalid_json(tmp_path: Path) -> None:
    bad = tmp_path / "plan.json"
    bad.write_text("{not json", encoding="utf-8")
    with pytest.raises(PlanError, match="not valid JSON"):
        Plan.load(bad)


def test_get_step_raises_key_error_for_unknown_id() -> None:
    plan = Plan.from_dict(_plan_dict())
    assert plan.get_step("b").title == "Second"
    with pytest.raises(KeyError):
        plan.get_step("zzz")


def test_bound_error_caps_length() -> None:
    assert bound_error("short") == "short"
    long = "x" * (MAX_ERROR_CHARS + 50)
    bounded = bound_error(long)
    assert len(bounded) == MAX_ERROR_CHARS
    assert bounded.endswith("...")


def test_execution_result_records_failures_and_escalations() -> None:
    a = Step(id="a", type="t")
    b = Step(id="b", type="t", title="Bee")
    c = Step(id="c", type="t")
    result = ExecutionResult(plan_id="p1")

    result.record(a, StepResult(step_id="a", success=True, attempts=1))
    result.record(b, StepResult(step_id="b", success=False, attempts=3, errors=("boom",), escalate=True))
    result.record(c, StepResult(step_id="c", success=False, attempts=0, errors=("Template error",)))

    assert result.success is False
    assert result.completed_steps == ["a"]
    assert result.failed_steps == ["b", "c"]
    assert [s.id for s in result.escalate_to_cloud] == ["b"]

    d = result.to_dict()
    assert d["failedSteps"] == ["b", "c"]
    assert d["escalateToCloud"][0]["title"] == "Bee"
    assert d["steps"][1] == {
        "stepId": "b",
        "title": "",
        "success": False,
        "attempts": 3,
        "errors": ["boom"],
        "escalate": True,
    }


def test_state_updates_and_estimated_tokens_saved_are_parsed() -> None:
    plan = Plan.from_dict(
        {
            "planId": "p1",
            "estimatedTokensSaved": 12500,
            "steps": [
                {
                    "id": "a",
                    "type": "component",
                    "stateUpdates": {"appMap": {"section": "Components", "entry": "Button - src/Button.tsx"}},
                },
                {"id": "b", "type": "component"},
            ],
        }
    )

    a, b = plan.steps
    assert plan.estimated_tokens_saved == 12500
    assert a.app_map_update == AppMapUpdate(section="Components", entry="Button - src/Button.tsx")
    assert b.app_map_update is None
    assert "stateUpdates" not in a.extra
    assert a.to_dict()["stateUpdates"] == {"appMap": {"section": "Components", "entry": "Button - src/Button.tsx"}}
    assert plan.to_dict()["estimatedTokensSaved"] == 12500


@pytest.mark.parametrize(
    "patch,message",
    [
        ({"estimatedTokensSaved": -1}, "estimatedTokensSaved"),
        ({"estimatedTokensSaved": "lots"}, "estimatedTokensSaved"),
        ({"steps": [{"id": "a", "type": "t", "stateUpdates": {"appMap": {"section": "X"}}}]}, "stateUpdates.appMap"),
        ({"steps": [{"id": "a", "type": "t", "stateUpdates": []}]}, "invalid stateUpdates"),
    ],
)
def test_invalid_state_updates_and_tokens_are_rejected(patch: dict[str, object], message: str) -> None:
    raw: dict[str, object] = {"planId": "p1", "steps": [{"id": "a", "type": "t"}]}
    raw.update(patch)
    with pytest.raises(PlanError, match=message):
        Plan.from_dict(raw)


def test_execution_result_reports_tokens_saved() -> None:
    assert ExecutionResult(plan_id="p1").to_dict()["tokensSaved"] == 0
    assert ExecutionResult(plan_id="p1", tokens_saved=900).to_dict()["tokensSaved"] == 900
