"""Prompt rendering for wavefront steps.

The engine consumes a `TemplateRenderer`: `render(template_id, params) -> str`. A render
failure is a configuration defect, so both error types below are treated by the executor as
non-retryable for the step that hit them.

Template files (`FileTemplateRenderer`)
- A template id maps to `<templates_dir>/<template_id>.md`; a missing file raises
  `TemplateNotFoundError`.
- `{{include <name>}}` splices in another file from the same directory (typically
  `_base.md` and `_patterns.md`). Includes are expanded once, before substitution, and a
  missing include file is left as an unresolved directive.
- Loaded templates (with includes expanded) are cached per renderer instance.

Placeholder substitution
- `{{key}}` is replaced by `params[key]`; nested maps are addressed with dotted keys
  (`{{component.name}}`).
- Scalars render with `str()`, `None` renders as an empty string, lists of scalars render as
  one `- item` line each, and lists containing objects render each object as indented JSON.
- After substitution, any `{{...}}` left in the text raises `UnresolvedPlaceholderError`
  listing the names, so a prompt never reaches the generator with holes in it.

Corrective feedback
`append_feedback()` appends a failed validation message to a prompt in the fixed
"## PREVIOUS ERROR" shape the executor uses between attempts. The message is copied
verbatim.

Render files
`write_prompt()` writes the exact prompt sent for an attempt to
`<renders_dir>/<step-key>-attempt<N>.md`. These are generated artifacts, rewritten on every
run.
"""

from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from typing import Any, Mapping, Protocol

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_.\-]+)\s*\}\}")
_INCLUDE_RE = re.compile(r"\{\{\s*include\s+([^}\s]+)\s*\}\}")


class TemplateError(Exception):
    pass


class TemplateNotFoundError(TemplateError):
    def __init__(self, template_id: str) -> None:
        self.template_id = template_id
        super().__init__(f"Template not found: {template_id}")


class UnresolvedPlaceholderError(TemplateError):
    def __init__(self, template_id: str, names: list[str]) -> None:
        self.template_id = template_id
        self.names = names
        super().__init__(f"Unresolved placeholder(s) in template {template_id}: {names}")


class TemplateRenderer(Protocol):
    def render(self, template_id: str, params: Mapping[str, Any]) -> str: ...


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        lines = []
        for v in value:
            if isinstance(v, (dict, list, tuple)):
                lines.append(json.dumps(v, indent=2))
            else:
                lines.append(f"- {v}")
        return "\n".join(lines)
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _flatten(params: Mapping[str, Any], prefix: str = "") -> dict[str, str]:
    flat: dict[str, str] = {}
    for key, value in params.items():
        full_key = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, Mapping):
            flat.update(_flatten(value, full_key))
        else:
            flat[full_key] = _format_value(value)
    return flat


def substitute(template: str, params: Mapping[str, Any], *, template_id: str = "<inline>") -> str:
    flat = _flatten(params)
    missing: list[str] = []

    def _sub(m: re.Match[str]) -> str:
        name = m.group(1)
        if name in flat:
            return flat[name]
        if name not in missing:
            missing.append(name)
        return m.group(0)

    leftover = [m.group(0) for m in _INCLUDE_RE.finditer(template)]
    out = _PLACEHOLDER_RE.sub(_sub, template)
    if missing or leftover:
        raise UnresolvedPlaceholderError(template_id, missing + leftover)
    return out


class StringTemplateRenderer:
    """Renderer over in-memory templates keyed by id."""

    def __init__(self, templates: Mapping[str, str]) -> None:
        self.templates = dict(templates)

    def render(self, template_id: str, params: Mapping[str, Any]) -> str:
        if template_id not in self.templates:
            raise TemplateNotFoundError(template_id)
        return substitute(self.templates[template_id], params, template_id=template_id)


class FileTemplateRenderer:
    def __init__(self, templates_dir: Path) -> None:
        self.templates_dir = templates_dir
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def load_template(self, template_id: str) -> str:
        with self._lock:
            if template_id in self._cache:
                return self._cache[template_id]

        path = self.templates_dir / f"{template_id}.md"
        if not path.is_file():
            raise TemplateNotFoundError(template_id)
        text = path.read_text(encoding="utf-8")

        def _include(m: re.Match[str]) -> str:
            inc = self.templates_dir / m.group(1)
            if not inc.is_file():
                return m.group(0)
            return inc.read_text(encoding="utf-8")

        text = _INCLUDE_RE.sub(_include, text)
        with self._lock:
            self._cache[template_id] = text
        return text

    def render(self, template_id: str, params: Mapping[str, Any]) -> str:
        return substitute(self.load_template(template_id), params, template_id=template_id)


def append_feedback(prompt: str, message: str) -> str:
    return f"{prompt}\n\n## PREVIOUS ERROR\n\n{message}\n\nFix this error and output the corrected code."


def _step_key(step_id: str) -> str:
    return re.sub(r"[^A-Za-z0-9_.-]+", "-", step_id).strip("-") or "step"


def write_prompt(*, renders_dir: Path, step_id: str, attempt: int, prompt: str) -> Path:
    renders_dir.mkdir(parents=True, exist_ok=True)
    out = renders_dir / f"{_step_key(step_id)}-attempt{attempt}.md"
    out.write_text(prompt.rstrip() + "\n", encoding="utf-8")
    return out
