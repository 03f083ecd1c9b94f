from __future__ import annotations

import json
from pathlib import Path

from wavefront.plan import ExecutionResult, Plan, Step, StepResult
from wavefront.reporting import JsonStateReporter, format_summary


def _plan() -> Plan:
    return Plan.from_dict(
        {
            "planId": "p1",
            "task": "demo",
            "steps": [{"id": "a", "type": "t"}, {"id": "b", "type": "t", "title": "Bee"}, {"id": "c", "type": "t"}],
        }
    )


def test_json_state_reporter_tracks_step_lifecycle(tmp_path: Path) -> None:
    plan = _plan()
    reporter = JsonStateReporter(session_path=tmp_path / "session.json", results_path=tmp_path / "results.json")

    reporter.plan_started(plan)
    session = reporter.load_session()
    assert session is not None
    assert session["currentPlan"] == "p1"
    assert session["pendingSteps"] == ["a", "b", "c"]
    assert session["sessionId"].startswith("sess-")

    a, b, _c = plan.steps
    reporter.step_started(a)
    reporter.step_started(b)
    session = reporter.load_session()
    assert session is not None
    assert session["runningSteps"] == ["a", "b"]
    assert session["stepStatus"]["a"] == "running"
    assert session["pendingSteps"] == ["c"]

    reporter.step_finished(a, StepResult(step_id="a", success=True, attempts=1))
    reporter.step_finished(b, StepResult(step_id="b", success=False, attempts=3, escalate=True))
    session = reporter.load_session()
    assert session is not None
    assert session["executedSteps"] == ["a"]
    assert session["failedSteps"] == ["b"]
    assert session["runningSteps"] == []
    assert session["stepStatus"] == {"a": "completed", "b": "failed", "c": "pending"}

    result = ExecutionResult(plan_id="p1", task="demo", completed_at="2026-01-01T00:00:00+00:00")
    result.record(a, StepResult(step_id="a", success=True, attempts=1))
    result.record(b, StepResult(step_id="b", success=False, attempts=3, escalate=True))
    result.blocked_steps = ["c"]
    reporter.plan_finished(result)

    session = reporter.load_session()
    assert session is not None
    assert session["success"] is False
    assert session["blockedSteps"] == ["c"]
    assert session["completedAt"] == "2026-01-01T00:00:00+00:00"

    saved = json.loads((tmp_path / "results.json").read_text(encoding="utf-8"))
    assert saved["planId"] == "p1"
    assert saved["failedSteps"] == ["b"]
    assert saved["blockedSteps"] == ["c"]


def test_load_session_without_file(tmp_path: Path) -> None:
    reporter = JsonStateReporter(session_path=tmp_path / "none.json", results_path=tmp_path / "r.json")
    assert reporter.load_session() is None


def test_format_summary_for_failed_run(tmp_path: Path) -> None:
    a = Step(id="a", type="t")
    b = Step(id="b", type="t", title="Bee")
    result = ExecutionResult(plan_id="p1")
    result.record(a, StepResult(step_id="a", success=True, attempts=1))
    result.record(b, StepResult(step_id="b", success=False, attempts=3, errors=("", "tsc failed\nmore"), escalate=True))
    result.blocked_steps = ["c", "d"]

    text = format_summary(result, results_path=tmp_path / "results.json")

    assert "Plan execution failed." in text
    assert "Steps completed: 1/2" in text
    assert "Total attempts: 4" in text
    assert "  x b (3 attempt(s)): tsc failed" in text
    assert "more" not in text
    assert "Steps requiring escalation:\n  - b: Bee" in text
    assert "Blocked by failed dependencies: c, d" in text
    assert f"Results saved to: {tmp_path / 'results.json'}" in text


def test_format_summary_for_successful_run() -> None:
    result = ExecutionResult(plan_id="p1")
    result.record(Step(id="a", type="t"), StepResult(step_id="a", success=True, attempts=2))

    text = format_summary(result)

    assert "Plan executed successfully." in text
    assert "Steps completed: 1/1" in text
    assert "escalation" not in text
    assert "Results saved to" not in text


def test_json_state_reporter_updates_app_map_for_completed_steps(tmp_path: Path) -> None:
    app_map = tmp_path / "app-map.md"
    app_map.write_text("# App Map\n\n## Components\n", encoding="utf-8")
    reporter = JsonStateReporter(
        session_path=tmp_path / "session.json",
        results_path=tmp_path / "results.json",
        app_map_path=app_map,
    )
    plan = Plan.from_dict(
        {
            "planId": "p1",
            "steps": [
                {"id": "a", "type": "t", "stateUpdates": {"appMap": {"section": "Components", "entry": "A"}}},
                {"id": "b", "type": "t", "stateUpdates": {"appMap": {"section": "Components", "entry": "B"}}},
            ],
        }
    )
    a, b = plan.steps
    reporter.plan_started(plan)

    reporter.step_finished(a, StepResult(step_id="a", success=True, attempts=1))
    reporter.step_finished(b, StepResult(step_id="b", success=False, attempts=3))

    assert app_map.read_text(encoding="utf-8") == "# App Map\n\n## Components\n- A\n"


def test_json_state_reporter_records_tokens_saved(tmp_path: Path) -> None:
    reporter = JsonStateReporter(session_path=tmp_path / "session.json", results_path=tmp_path / "results.json")
    reporter.plan_started(_plan())

    reporter.plan_finished(ExecutionResult(plan_id="p1", tokens_saved=4200))

    session = reporter.load_session()
    assert session is not None
    assert session["totalTokensSaved"] == 4200
    saved = json.loads((tmp_path / "results.json").read_text(encoding="utf-8"))
    assert saved["tokensSaved"] == 4200


def test_format_summary_reports_tokens_saved() -> None:
    text = format_summary(ExecutionResult(plan_id="p1", tokens_saved=12500))

    assert "Tokens saved: ~12,500" in text
