from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import pytest

from wavefront.checkpoint import CheckpointStore
from wavefront.executor import StepExecutor
from wavefront.generator import GenerationTimeout
from wavefront.plan import Step, StepValidation
from wavefront.render import StringTemplateRenderer
from wavefront.validator import CheckResult, StubValidator, Validator


class FakeGenerator:
    def __init__(self, replies: list[object]) -> None:
        self._replies = list(replies)
        self.prompts: list[str] = []
        self.timeouts: list[float] = []

    def generate(self, prompt: str, *, timeout: float) -> str:
        self.prompts.append(prompt)
        self.timeouts.append(timeout)
        if not self._replies:
            raise AssertionError("No generator replies left")
        reply = self._replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return str(reply)


class AlwaysFailValidator:
    def __init__(self, message: str = "E1: bad") -> None:
        self.message = message
        self.calls: list[dict[str, object]] = []

    def run_checks(self, checks: Sequence[str], target_path: Path | None) -> list[CheckResult]:
        self.calls.append({"checks": list(checks), "target_path": target_path})
        return [CheckResult(checks[0] if checks else "custom", False, self.message)]


def _executor(tmp_path: Path, generator: object, validator: object, **kwargs: object) -> StepExecutor:
    return StepExecutor(
        project_root=tmp_path,
        renderer=StringTemplateRenderer({"component": "Write {{name}} for {{project}}."}),
        generator=generator,  # type: ignore[arg-type]
        validator=validator,  # type: ignore[arg-type]
        checkpoint=CheckpointStore(project_root=tmp_path),
        **kwargs,  # type: ignore[arg-type]
    )


def _step(**overrides: object) -> Step:
    fields: dict[str, object] = {
        "id": "s1",
        "type": "component",
        "title": "Button",
        "params": {"name": "Button", "path": "src/Button.tsx"},
    }
    fields.update(overrides)
    return Step(**fields)  # type: ignore[arg-type]


def test_success_on_first_attempt_writes_cleaned_output(tmp_path: Path) -> None:
    gen = FakeGenerator(["```tsx\nexport const Button = 1;\n```"])
    ex = _executor(tmp_path, gen, Validator(project_root=tmp_path), renders_dir=tmp_path / "renders")

    result = ex.execute(_step(), {"project": "demo"})

    assert result.success is True
    assert result.attempts == 1
    assert result.errors == ()
    assert (tmp_path / "src" / "Button.tsx").read_text(encoding="utf-8") == "export const Button = 1;"
    assert gen.prompts == ["Write Button for demo."]
    assert gen.timeouts == [120.0]
    assert (tmp_path / "renders" / "s1-attempt1.md").read_text(encoding="utf-8") == "Write Button for demo.\n"
    assert ex.checkpoint.created_files == ["src/Button.tsx"]


def test_plan_context_overrides_step_params(tmp_path: Path) -> None:
    gen = FakeGenerator(["x"])
    ex = _executor(tmp_path, gen, Validator(project_root=tmp_path))

    ex.execute(_step(params={"name": "Card", "project": "override"}), {"project": "demo"})

    assert gen.prompts == ["Write Card for demo."]


def test_always_failing_validation_retries_with_feedback_and_escalates(tmp_path: Path) -> None:
    gen = FakeGenerator(["one", "two", "three"])
    validator = AlwaysFailValidator("E1: bad")
    ex = _executor(tmp_path, gen, validator, max_retries=2)

    result = ex.execute(_step(validation=StepValidation(checks=["non-empty"])), {"project": "demo"})

    assert result.success is False
    assert result.attempts == 3
    assert result.escalate is True
    assert result.errors == ("E1: bad", "E1: bad", "E1: bad")
    assert len(gen.prompts) == 3
    assert "## PREVIOUS ERROR" not in gen.prompts[0]
    assert "## PREVIOUS ERROR\n\nE1: bad\n\nFix this error and output the corrected code." in gen.prompts[1]
    assert gen.prompts[2].count("## PREVIOUS ERROR") == 2
    assert [c["checks"] for c in validator.calls] == [["non-empty"]] * 3


def test_zero_retries_means_one_attempt(tmp_path: Path) -> None:
    gen = FakeGenerator(["one"])
    ex = _executor(tmp_path, gen, AlwaysFailValidator(), max_retries=0)

    result = ex.execute(_step(), {"project": "demo"})

    assert result.attempts == 1
    assert result.escalate is True


def test_generation_timeout_consumes_an_attempt(tmp_path: Path) -> None:
    gen = FakeGenerator([GenerationTimeout("Request timeout after 5s"), "ok"])
    ex = _executor(tmp_path, gen, Validator(project_root=tmp_path), generation_timeout=5.0)

    result = ex.execute(_step(), {"project": "demo"})

    assert result.success is True
    assert result.attempts == 2
    assert result.errors == ("Request timeout after 5s",)
    assert gen.timeouts == [5.0, 5.0]
    assert "## PREVIOUS ERROR" not in gen.prompts[1]


def test_template_error_fails_without_attempts(tmp_path: Path) -> None:
    gen = FakeGenerator([])
    ex = _executor(tmp_path, gen, Validator(project_root=tmp_path))

    result = ex.execute(_step(type="missing-template"), {})

    assert result.success is False
    assert result.attempts == 0
    assert result.escalate is False
    assert result.errors[0].startswith("Template error: Template not found: missing-template")
    assert gen.prompts == []


def test_existing_file_is_tracked_as_modified_and_passed_as_current_content(tmp_path: Path) -> None:
    target = tmp_path / "src" / "Button.tsx"
    target.parent.mkdir()
    target.write_text("old body", encoding="utf-8")
    gen = FakeGenerator(["new body"])
    ex = StepExecutor(
        project_root=tmp_path,
        renderer=StringTemplateRenderer({"component": "Update:\n{{current_content}}"}),
        generator=gen,
        validator=Validator(project_root=tmp_path),
        checkpoint=CheckpointStore(project_root=tmp_path),
    )

    result = ex.execute(_step(), {})

    assert result.success is True
    assert gen.prompts == ["Update:\nold body"]
    assert target.read_text(encoding="utf-8") == "new body"
    assert [m.original for m in ex.checkpoint.modified_files] == [b"old body"]
    assert ex.checkpoint.created_files == []


def test_dry_run_does_not_write_output(tmp_path: Path) -> None:
    gen = FakeGenerator(["content"])
    ex = _executor(tmp_path, gen, StubValidator(), dry_run=True)

    result = ex.execute(_step(), {"project": "demo"})

    assert result.success is True
    assert not (tmp_path / "src" / "Button.tsx").exists()
    assert ex.checkpoint.is_empty()


def test_negative_retries_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="max_retries"):
        _executor(tmp_path, FakeGenerator([]), AlwaysFailValidator(), max_retries=-1)


def test_non_utf8_existing_output_is_replaced_and_rolled_back_byte_for_byte(tmp_path: Path) -> None:
    target = tmp_path / "notes.txt"
    target.write_bytes(b"caf\xe9\r\n")
    gen = FakeGenerator(["new body"])
    ex = StepExecutor(
        project_root=tmp_path,
        renderer=StringTemplateRenderer({"component": "Update:\n{{current_content}}"}),
        generator=gen,
        validator=Validator(project_root=tmp_path),
        checkpoint=CheckpointStore(project_root=tmp_path),
    )

    result = ex.execute(_step(params={"name": "Notes", "path": "notes.txt"}), {})

    assert result.success is True
    assert gen.prompts == ["Update:\ncaf\ufffd\n"]
    assert target.read_text(encoding="utf-8") == "new body"

    ex.checkpoint.rollback()

    assert target.read_bytes() == b"caf\xe9\r\n"
