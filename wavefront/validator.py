"""Validation gate for step artifacts.

`Validator.run_checks(checks, target_path)` runs named checks in order against the file a
step produced and returns one `CheckResult` per check that ran. The first failing check
stops the sequence, so the returned list ends with the failure when there is one.

Built-in checks
- `file-exists`: the target path exists.
- `non-empty`: the target path exists and has non-whitespace content.
- `typescript-check`: `npx tsc --noEmit` in the project root exits 0.
- `eslint-check`: `npx eslint <target> --fix` exits 0.

Tool output from failing external checks is trimmed to its first 10 lines. Unknown check
names pass with an "Unknown check" message.

Extra checks can be registered with `Validator.register(name, fn)`, where
`fn(target_path) -> CheckResult` (the `check` field is filled in by the validator).
"""

from __future__ import annotations

import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Protocol

MAX_TOOL_OUTPUT_LINES = 10


@dataclass(frozen=True)
class CheckResult:
    check: str
    success: bool
    message: str


CheckFn = Callable[[Path | None], CheckResult]


def _first_lines(text: str, n: int = MAX_TOOL_OUTPUT_LINES) -> str:
    return "\n".join(text.strip().splitlines()[:n])


def file_exists(target: Path | None) -> CheckResult:
    if target is not None and target.exists():
        return CheckResult("file-exists", True, "File exists")
    return CheckResult("file-exists", False, f"File not found: {target}")


def non_empty(target: Path | None) -> CheckResult:
    if target is None or not target.is_file():
        return CheckResult("non-empty", False, f"File not found: {target}")
    if not target.read_text(encoding="utf-8", errors="replace").strip():
        return CheckResult("non-empty", False, f"File is empty: {target}")
    return CheckResult("non-empty", True, "File has content")


class Validator:
    def __init__(self, *, project_root: Path, tool_timeout: float = 300.0) -> None:
        self.project_root = project_root
        self.tool_timeout = tool_timeout
        self._checks: dict[str, CheckFn] = {
            "file-exists": file_exists,
            "non-empty": non_empty,
            "typescript-check": self.typescript_check,
            "eslint-check": self.eslint_check,
        }

    @property
    def known_checks(self) -> list[str]:
        return sorted(self._checks)

    def register(self, name: str, fn: CheckFn) -> None:
        self._checks[name] = fn

    def _run_tool(self, name: str, argv: list[str], ok_message: str) -> CheckResult:
        try:
            p = subprocess.run(
                argv,
                cwd=str(self.project_root),
                capture_output=True,
                text=True,
                timeout=self.tool_timeout,
            )
        except FileNotFoundError:
            return CheckResult(name, False, f"Command not found: {argv[0]}")
        except subprocess.TimeoutExpired:
            return CheckResult(name, False, f"{' '.join(argv[:2])} timed out after {self.tool_timeout}s")
        if p.returncode == 0:
            return CheckResult(name, True, ok_message)
        return CheckResult(name, False, _first_lines(p.stderr or p.stdout or f"exit code {p.returncode}"))

    def typescript_check(self, target: Path | None) -> CheckResult:
        _ = target
        return self._run_tool("typescript-check", ["npx", "tsc", "--noEmit"], "TypeScript check passed")

    def eslint_check(self, target: Path | None) -> CheckResult:
        if target is None:
            return CheckResult("eslint-check", False, "eslint-check requires an output path")
        return self._run_tool("eslint-check", ["npx", "eslint", str(target), "--fix"], "ESLint check passed")

    def run_checks(self, checks: Sequence[str], target_path: Path | None) -> list[CheckResult]:
        results: list[CheckResult] = []
        for check in checks:
            fn = self._checks.get(check)
            if fn is None:
                result = CheckResult(check, True, f"Unknown check: {check}")
            else:
                result = replace(fn(target_path), check=check)
            results.append(result)
            if not result.success:
                break
        return results


def default_checks(output_path: str | None) -> list[str]:
    return ["file-exists"] if output_path else []


class ArtifactValidator(Protocol):
    def run_checks(self, checks: Sequence[str], target_path: Path | None) -> list[CheckResult]: ...


class StubValidator:
    """Always-pass validator for `--dry-run`."""

    def run_checks(self, checks: Sequence[str], target_path: Path | None) -> list[CheckResult]:
        _ = target_path
        return [CheckResult(check, True, "(stub) skipped") for check in checks]
