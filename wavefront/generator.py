"""Generator clients: turn a rendered prompt into generated text.

The engine programs against the small `GeneratorClient` protocol:

    generate(prompt, *, timeout) -> str

Clients raise `GenerationError` for provider/network failures and `GenerationTimeout` when
the per-call `timeout` (seconds) elapses. The executor treats both as a failed attempt and
retries within the step's budget; anything a client returns is accepted as text.

Providers
- `OllamaGenerator`: `POST {endpoint}/api/generate` with `stream=false`; the reply is the
  `response` field.
- `OpenAICompatibleGenerator`: `POST {endpoint}/v1/chat/completions` with a single user
  message; the reply is `choices[0].message.content`.
- `CommandGenerator`: runs an external CLI (default `claude`) as
  `<cmd> --model <model> -p <prompt> --output-format json` and extracts the final
  `type == "result"` event from the JSON envelope it prints. Plain-text stdout is accepted
  as-is when no envelope can be parsed.
- `StubGenerator`: deterministic, no I/O; used by `--dry-run` and tests.

HTTP clients use `httpx`. Its timeout bounds each phase (connect, each read, ...)
separately, so the response body is streamed and the per-call timeout is also enforced as
a total deadline across the whole request. A `transport` may be injected (e.g.
`httpx.MockTransport`) so tests never touch the network.

Output cleaning
`clean_output()` strips Markdown code fences a model wraps around the artifact. It removes
an opening fence line (with or without a language tag) and closing fence lines, then trims
surrounding whitespace.
"""

from __future__ import annotations

import json
import re
import subprocess
import time
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

_OPEN_FENCE_RE = re.compile(r"^```[A-Za-z0-9_+.-]*[ \t]*\n", re.MULTILINE)
_CLOSE_FENCE_RE = re.compile(r"\n```[ \t]*$", re.MULTILINE)
_BARE_FENCE_RE = re.compile(r"^```[ \t]*$", re.MULTILINE)


class GenerationError(RuntimeError):
    pass


class GenerationTimeout(GenerationError):
    pass


class GeneratorClient(Protocol):
    def generate(self, prompt: str, *, timeout: float) -> str: ...


def clean_output(output: str) -> str:
    cleaned = _OPEN_FENCE_RE.sub("", output)
    cleaned = _CLOSE_FENCE_RE.sub("", cleaned)
    cleaned = _BARE_FENCE_RE.sub("", cleaned)
    return cleaned.strip()


class _HTTPGenerator:
    path = ""

    def __init__(
        self,
        *,
        endpoint: str,
        model: str,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.endpoint = endpoint.rstrip("/")
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.transport = transport

    def _payload(self, prompt: str) -> dict[str, Any]:
        raise NotImplementedError

    def _extract(self, data: Any) -> str:
        raise NotImplementedError

    def generate(self, prompt: str, *, timeout: float) -> str:
        url = f"{self.endpoint}{self.path}"
        deadline = time.monotonic() + float(timeout)
        try:
            with httpx.Client(timeout=float(timeout), transport=self.transport) as client:
                with client.stream("POST", url, json=self._payload(prompt)) as r:
                    body = bytearray()
                    for chunk in r.iter_bytes():
                        body.extend(chunk)
                        if time.monotonic() > deadline:
                            raise GenerationTimeout(f"Request timeout after {timeout}s: {url}")
                    status = r.status_code
        except httpx.TimeoutException as e:
            raise GenerationTimeout(f"Request timeout after {timeout}s: {url}") from e
        except httpx.HTTPError as e:
            raise GenerationError(f"Request to {url} failed: {e}") from e

        if status >= 400:
            raise GenerationError(f"HTTP {status} from {url}: {bytes(body[:200]).decode('utf-8', 'replace')}")
        try:
            data = json.loads(bytes(body))
        except ValueError as e:
            raise GenerationError(f"Invalid JSON response from {url}") from e
        return self._extract(data)


class OllamaGenerator(_HTTPGenerator):
    path = "/api/generate"

    def _payload(self, prompt: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "prompt": prompt,
            "stream": False,
            "options": {"temperature": self.temperature, "num_predict": self.max_tokens},
        }

    def _extract(self, data: Any) -> str:
        if not isinstance(data, dict):
            raise GenerationError("Invalid response from Ollama")
        return str(data.get("response") or "")


class OpenAICompatibleGenerator(_HTTPGenerator):
    path = "/v1/chat/completions"

    def _payload(self, prompt: str) -> dict[str, Any]:
        return {
            "model": self.model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    def _extract(self, data: Any) -> str:
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise GenerationError("Invalid response from LLM") from e
        return "" if content is None else str(content)


class CommandGenerator:
    def __init__(self, *, cmd: str | None = None, model: str | None = None) -> None:
        self.cmd = cmd or "claude"
        self.model = model or "sonnet"

    def argv(self, prompt: str) -> list[str]:
        # Keep `--output-format json` last; the CLI is sensitive to flag ordering.
        return [self.cmd, "--model", self.model, "-p", prompt, "--output-format", "json"]

    def generate(self, prompt: str, *, timeout: float) -> str:
        try:
            p = subprocess.run(self.argv(prompt), capture_output=True, text=True, timeout=timeout)
        except subprocess.TimeoutExpired as e:
            raise GenerationTimeout(f"{self.cmd} timed out after {timeout}s") from e
        except FileNotFoundError as e:
            raise GenerationError(f"Generator command not found: {self.cmd}") from e

        if p.returncode != 0:
            raise GenerationError(f"{self.cmd} exited with code {p.returncode}: {(p.stderr or '').strip()[:500]}")
        return _extract_result_text(p.stdout)


class StubGenerator:
    """Deterministic generator for `--dry-run`."""

    def __init__(self, text: str = "// (stub) generated content\n") -> None:
        self.text = text

    def generate(self, prompt: str, *, timeout: float) -> str:
        _ = (prompt, timeout)
        return self.text


def _best_effort_parse_json(text: str) -> Any | None:
    """Parse the first JSON value in `text`."""
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass

    start = None
    for i, ch in enumerate(text):
        if ch in "{[":
            start = i
            break
    if start is None:
        return None

    decoder = json.JSONDecoder()
    try:
        val, _end = decoder.raw_decode(text[start:])
        return val
    except json.JSONDecodeError:
        return None


def _parse_envelope(raw_stdout: str) -> Any | None:
    """Parse `--output-format json` stdout: a single JSON value, then JSONL, then the first JSON value found."""
    if not raw_stdout.strip():
        return None

    try:
        return json.loads(raw_stdout)
    except json.JSONDecodeError:
        pass

    items: list[Any] = []
    for ln in raw_stdout.splitlines():
        ln = ln.strip()
        if not ln:
            continue
        try:
            items.append(json.loads(ln))
        except json.JSONDecodeError:
            continue
    if items:
        return items
    return _best_effort_parse_json(raw_stdout)


def _extract_result_text(raw_stdout: str) -> str:
    env = _parse_envelope(raw_stdout)
    result_ev: dict | None = None
    if isinstance(env, dict) and "result" in env:
        result_ev = env
    elif isinstance(env, list):
        for it in reversed(env):
            if isinstance(it, dict) and it.get("type") == "result":
                result_ev = it
                break

    if result_ev is None:
        return raw_stdout.strip()
    if result_ev.get("is_error"):
        raise GenerationError(f"Generator reported an error: {str(result_ev.get('result') or '')[:500]}")
    res = result_ev.get("result")
    if isinstance(res, str):
        return res
    return raw_stdout.strip()


@dataclass(frozen=True)
class _Provider:
    name: str
    needs_model: bool


PROVIDERS = {
    "ollama": _Provider("ollama", needs_model=True),
    "openai": _Provider("openai", needs_model=True),
    "command": _Provider("command", needs_model=False),
    "stub": _Provider("stub", needs_model=False),
}


def build_generator(
    *,
    provider: str,
    endpoint: str,
    model: str,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    cmd: str | None = None,
) -> GeneratorClient:
    entry = PROVIDERS.get(provider)
    if entry is None:
        raise ValueError(f"Unknown generator provider: {provider!r} (expected one of {sorted(PROVIDERS)})")
    if entry.needs_model and not model.strip():
        raise ValueError(f"Generator provider {provider!r} requires a model name")

    if provider == "ollama":
        return OllamaGenerator(endpoint=endpoint, model=model, temperature=temperature, max_tokens=max_tokens)
    if provider == "openai":
        return OpenAICompatibleGenerator(endpoint=endpoint, model=model, temperature=temperature, max_tokens=max_tokens)
    if provider == "command":
        return CommandGenerator(cmd=cmd, model=(model or None))
    return StubGenerator()
