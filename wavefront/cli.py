"""wavefront.cli

Command-line entrypoint for wavefront, a plan execution engine that runs a JSON step graph
against a content generator, validating every artifact and keeping a rollback checkpoint.

Entry points
- `wavefront.cli:main`
- `python3 -m wavefront ...` (delegates to this module)

Usage
- `wavefront path/to/plan.json`       execute a plan
- `wavefront -`                       read the plan JSON from stdin
- `wavefront --rollback`              undo the changes of the last incomplete run
- `wavefront plan.json --dry-run`     stub generator and validator, no file writes

Project root and path resolution
The project root is `$WAVEFRONT_PROJECT_ROOT` when set, otherwise the current directory.
`--templates-dir`, `--config` and relative step output paths resolve against it. State files
live under `<project>/.wavefront/`:
- `rollback-checkpoint.json` (kept after a failed run, removed on success or rollback)
- `session.json` and `results.json` (progress and final results)
- `renders/` (the prompt sent for every attempt)
- `app-map.md` (project-owned; completed steps append their `stateUpdates.appMap` entry)

Generator settings come from the `hybrid` section of `--config` (default
`.wavefront/config.json`), then `WAVEFRONT_*` environment variables, then the flags below.

Exit status
- 0: every step completed (or a rollback ran / found nothing to do)
- 1: the plan finished with failed or blocked steps
- 2: the plan was rejected (malformed, cyclic), the settings are invalid or disable execution
  (`hybrid.enabled` is not true), or a checkpoint from another plan is pending
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import replace
from pathlib import Path

from .generator import GeneratorClient, StubGenerator, build_generator
from .orchestrator import PlanOrchestrator, WavefrontConfig
from .plan import Plan, PlanError
from .render import FileTemplateRenderer
from .reporting import JsonStateReporter, format_summary
from .settings import GeneratorSettings
from .validator import ArtifactValidator, StubValidator, Validator


def _read_plan(arg: str, *, project_root: Path) -> Plan:
    if arg == "-":
        return Plan.from_dict(json.loads(Path("/dev/stdin").read_text(encoding="utf-8")))
    p = Path(arg)
    if not p.is_absolute():
        p = project_root / p
    if not p.is_file():
        raise PlanError(f"Plan file not found: {arg}")
    return Plan.load(p)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="wavefront", description="Execute a step plan with a content generator.")
    p.add_argument("plan", nargs="?", default=None, help="Plan JSON file, or '-' to read from stdin.")
    p.add_argument("--rollback", action="store_true", help="Undo the file changes recorded by the last incomplete run.")
    p.add_argument("--dry-run", action="store_true", help="Use a stub generator and validator; do not write step outputs.")
    p.add_argument(
        "--config",
        default=".wavefront/config.json",
        help="Project config JSON with a 'hybrid' section (default: ./.wavefront/config.json).",
    )
    p.add_argument(
        "--templates-dir",
        default="templates/hybrid",
        help="Directory holding <template>.md files (default: ./templates/hybrid).",
    )
    p.add_argument("--provider", default=None, help="Generator provider: ollama, openai, command or stub.")
    p.add_argument("--endpoint", default=None, help="Generator HTTP endpoint.")
    p.add_argument("--model", default=None, help="Generator model name.")
    p.add_argument("--command", default=None, help="Executable for the 'command' provider (default: claude).")
    p.add_argument("--max-retries", type=int, default=None, help="Retries per step after the first attempt.")
    p.add_argument("--max-concurrent", type=int, default=4, help="Maximum steps run in parallel per wave (default 4).")
    p.add_argument("--timeout", type=float, default=None, help="Per-call generation timeout in seconds.")
    p.add_argument(
        "--no-infer-deps",
        action="store_true",
        help="Do not add dependencies between steps that write the same file.",
    )
    p.add_argument(
        "--discard-checkpoint",
        action="store_true",
        help="Drop a pending rollback checkpoint from a different plan instead of refusing to run.",
    )
    p.add_argument("--no-renders", action="store_true", help="Do not write rendered prompts to .wavefront/renders/.")
    return p


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(list(sys.argv[1:] if argv is None else argv))
    if args.plan is None and not args.rollback:
        print("wavefront: a plan file is required (or use --rollback)", file=sys.stderr)
        return 2

    root_env = os.environ.get("WAVEFRONT_PROJECT_ROOT")
    project_root = (Path(root_env) if root_env else Path.cwd()).resolve()

    try:
        settings = GeneratorSettings.load(config_path=(project_root / args.config).resolve()).merged(
            {
                "provider": args.provider,
                "endpoint": args.endpoint,
                "model": args.model,
                "command": args.command,
                "max_retries": args.max_retries,
                "timeout": args.timeout,
            }
        ).normalized()
        # Rollback only replays the checkpoint; it never generates or validates.
        if args.dry_run or args.rollback:
            generator: GeneratorClient = StubGenerator()
            validator: ArtifactValidator = StubValidator()
        else:
            generator = build_generator(
                provider=settings.provider,
                endpoint=settings.endpoint,
                model=settings.model,
                temperature=settings.temperature,
                max_tokens=settings.max_tokens,
                cmd=settings.command,
            )
            validator = Validator(project_root=project_root)
    except ValueError as exc:
        print(f"wavefront: {exc}", file=sys.stderr)
        return 2
    if not settings.enabled and not args.rollback:
        print(f"wavefront: plan execution is disabled: 'hybrid.enabled' is not true in {args.config}", file=sys.stderr)
        return 2

    cfg = WavefrontConfig(
        project_root=project_root,
        renderer=FileTemplateRenderer((project_root / args.templates_dir).resolve()),
        generator=generator,
        validator=validator,
        max_retries=settings.max_retries,
        max_concurrent=max(1, int(args.max_concurrent)),
        generation_timeout=settings.timeout,
        infer_dependencies=(not args.no_infer_deps),
        write_renders=(not args.no_renders),
        dry_run=bool(args.dry_run),
    )
    reporter = JsonStateReporter(
        session_path=cfg.session_path,
        results_path=cfg.results_path,
        app_map_path=(None if cfg.dry_run else cfg.app_map_path),
    )
    cfg = replace(cfg, reporter=reporter)
    orch = PlanOrchestrator(cfg)

    try:
        if args.rollback:
            orch.rollback()
            return 0
        plan = _read_plan(args.plan, project_root=project_root)
        print(f"[wavefront] provider={settings.provider} model={settings.model or '-'}", file=sys.stderr)
        result = orch.execute_plan(plan, discard_checkpoint=bool(args.discard_checkpoint))
    except (ValueError, RuntimeError) as exc:
        print(f"wavefront: {exc}", file=sys.stderr)
        return 2

    print(format_summary(result, results_path=cfg.results_path), file=sys.stderr)
    return 0 if result.success else 1
