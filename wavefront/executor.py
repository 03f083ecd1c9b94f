"""Single-step execution: render -> generate -> write -> validate -> accept or retry.

`StepExecutor.execute(step, context)` owns one step's whole `running` phase and returns a
`StepResult` once the step leaves it. Nothing outside this method observes a partial attempt.

Attempt loop
1. Render the step's template once with `step.params` overlaid by the plan `context` (plan
   context wins on key collisions). When the output path already exists its text is also
   passed as `current_content`; undecodable bytes become U+FFFD there. A `TemplateError`
   ends the step immediately with `attempts=0` and `escalate=False`: retrying cannot fix a
   missing template.
2. For `attempt = 1 .. max_retries + 1`:
   - write the exact prompt to the renders directory (when configured);
   - call the generator with the per-call timeout. `GenerationError` (including timeouts)
     and `OSError` are recorded as the attempt's error and the loop moves on;
   - strip code fences from the reply;
   - when the step has an output path: create parent directories, capture the original
     bytes of a pre-existing file in the checkpoint store (first write of the run only) or
     record the path as created, then write;
   - run the validation gate. The first failing check stops the gate; its message is
     recorded and appended verbatim to the prompt as corrective feedback for the next
     attempt.
3. If every attempt fails, the step fails with `escalate=True`.

Dry run
With `dry_run=True` the executor renders and generates but never touches the step's
output path; validation is still called (the CLI pairs dry runs with a stub validator).
"""

from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import Any, Mapping

from .checkpoint import CheckpointStore
from .generator import GenerationError, GeneratorClient, clean_output
from .plan import Step, StepResult, bound_error
from .render import TemplateError, TemplateRenderer, append_feedback, write_prompt
from .validator import ArtifactValidator, default_checks


class StepExecutor:
    def __init__(
        self,
        *,
        project_root: Path,
        renderer: TemplateRenderer,
        generator: GeneratorClient,
        validator: ArtifactValidator,
        checkpoint: CheckpointStore,
        max_retries: int = 2,
        generation_timeout: float = 120.0,
        renders_dir: Path | None = None,
        dry_run: bool = False,
    ) -> None:
        if max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got: {max_retries}")
        self.project_root = project_root
        self.renderer = renderer
        self.generator = generator
        self.validator = validator
        self.checkpoint = checkpoint
        self.max_retries = max_retries
        self.generation_timeout = generation_timeout
        self.renders_dir = renders_dir
        self.dry_run = dry_run

    def resolve_output(self, step: Step) -> Path | None:
        raw = step.output_path
        if raw is None:
            return None
        p = Path(raw)
        return p if p.is_absolute() else self.project_root / p

    def _log(self, step: Step, msg: str) -> None:
        print(f"[wavefront] step {step.id}: {msg}", file=sys.stderr)

    def build_params(self, step: Step, context: Mapping[str, Any], output_path: Path | None) -> dict[str, Any]:
        params: dict[str, Any] = {**step.params, **context}
        if output_path is not None and output_path.is_file() and "current_content" not in params:
            params["current_content"] = output_path.read_text(encoding="utf-8", errors="replace")
        return params

    def execute(self, step: Step, context: Mapping[str, Any]) -> StepResult:
        errors: list[str] = []
        output_path = self.resolve_output(step)
        self._log(step, f"start type={step.type} title={step.title!r}" + (f" path={step.output_path}" if output_path else ""))

        try:
            prompt = self.renderer.render(step.template_id, self.build_params(step, context, output_path))
        except TemplateError as exc:
            errors.append(bound_error(f"Template error: {exc}"))
            self._log(step, f"template error: {exc}")
            return StepResult(step_id=step.id, title=step.title, success=False, attempts=0, errors=tuple(errors))

        checks = step.validation.checks if step.validation.checks is not None else default_checks(step.output_path)
        max_attempts = self.max_retries + 1

        for attempt in range(1, max_attempts + 1):
            self._log(step, f"attempt {attempt}/{max_attempts}")
            if self.renders_dir is not None:
                write_prompt(renders_dir=self.renders_dir, step_id=step.id, attempt=attempt, prompt=prompt)

            started = time.monotonic()
            try:
                output = self.generator.generate(prompt, timeout=self.generation_timeout)
            except (GenerationError, OSError) as exc:
                errors.append(bound_error(str(exc) or type(exc).__name__))
                self._log(step, f"generation failed: {exc}")
                continue
            self._log(step, f"generated in {time.monotonic() - started:.1f}s")

            content = clean_output(output)
            if output_path is not None and not self.dry_run:
                self._write_output(output_path, content)

            results = self.validator.run_checks(checks, output_path)
            failed = next((r for r in results if not r.success), None)
            if failed is None:
                self._log(step, "completed")
                return StepResult(
                    step_id=step.id,
                    title=step.title,
                    success=True,
                    attempts=attempt,
                    errors=tuple(errors),
                )

            errors.append(bound_error(failed.message))
            self._log(step, f"validation failed: {failed.check}: {failed.message[:100]}")
            prompt = append_feedback(prompt, failed.message)

        self._log(step, f"failed after {max_attempts} attempt(s); flagged for escalation")
        return StepResult(
            step_id=step.id,
            title=step.title,
            success=False,
            attempts=max_attempts,
            errors=tuple(errors),
            escalate=True,
        )

    def _write_output(self, output_path: Path, content: str) -> None:
        output_path.parent.mkdir(parents=True, exist_ok=True)
        if output_path.exists():
            self.checkpoint.track_modification(output_path)
        else:
            self.checkpoint.track_creation(output_path)
        output_path.write_text(content, encoding="utf-8")
