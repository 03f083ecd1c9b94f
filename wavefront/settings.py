from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Mapping

from .generator import PROVIDERS


@dataclass(frozen=True)
class GeneratorSettings:
    """Generator and retry settings: config file `hybrid` section, then environment.

    `enabled` mirrors `hybrid.enabled`. A config that sets it to anything but `true` turns
    plan execution off; a missing key or a missing config file leaves it on.
    """

    provider: str = "ollama"
    endpoint: str = "http://localhost:11434"
    model: str = ""
    temperature: float = 0.7
    max_tokens: int = 4096
    max_retries: int = 2
    timeout: float = 120.0
    command: str | None = None
    enabled: bool = True

    @classmethod
    def load(cls, *, config_path: Path | None = None, env: Mapping[str, str] | None = None) -> "GeneratorSettings":
        env = os.environ if env is None else env
        settings = cls()
        if config_path is not None and config_path.exists():
            settings = settings.merged(_read_hybrid_section(config_path))
        return settings.merged(
            {
                "provider": env.get("WAVEFRONT_PROVIDER"),
                "endpoint": env.get("WAVEFRONT_ENDPOINT"),
                "model": env.get("WAVEFRONT_MODEL"),
                "temperature": _env_number("WAVEFRONT_TEMPERATURE", env, float),
                "max_tokens": _env_number("WAVEFRONT_MAX_TOKENS", env, int),
                "max_retries": _env_number("WAVEFRONT_MAX_RETRIES", env, int),
                "timeout": _env_number("WAVEFRONT_TIMEOUT", env, float),
                "command": env.get("WAVEFRONT_COMMAND"),
            }
        ).normalized()

    def merged(self, overrides: Mapping[str, Any]) -> "GeneratorSettings":
        known = {k: v for k, v in overrides.items() if v is not None and k in self.__dataclass_fields__}
        return replace(self, **known)

    def normalized(self) -> "GeneratorSettings":
        """Validate all fields. Raises ValueError on invalid configuration."""
        provider = str(self.provider).strip().lower()
        if provider not in PROVIDERS:
            raise ValueError(f"provider must be one of: {', '.join(sorted(PROVIDERS))}; got: {self.provider!r}")
        endpoint = str(self.endpoint).strip()
        if provider in {"ollama", "openai"} and not endpoint:
            raise ValueError("endpoint must be non-empty")
        if not 0.0 <= float(self.temperature) <= 2.0:
            raise ValueError(f"temperature must be between 0 and 2, got: {self.temperature}")
        if int(self.max_tokens) < 1:
            raise ValueError(f"max_tokens must be >= 1, got: {self.max_tokens}")
        if int(self.max_retries) < 0:
            raise ValueError(f"max_retries must be >= 0, got: {self.max_retries}")
        if float(self.timeout) <= 0:
            raise ValueError(f"timeout must be > 0, got: {self.timeout}")
        return replace(
            self,
            provider=provider,
            endpoint=endpoint,
            model=str(self.model).strip(),
            temperature=float(self.temperature),
            max_tokens=int(self.max_tokens),
            max_retries=int(self.max_retries),
            timeout=float(self.timeout),
        )


_CONFIG_KEYS = {
    "provider": "provider",
    "providerEndpoint": "endpoint",
    "model": "model",
}
_SETTINGS_KEYS = {
    "temperature": "temperature",
    "maxTokens": "max_tokens",
    "maxRetries": "max_retries",
    "timeout": "timeout",
}


def _read_hybrid_section(config_path: Path) -> dict[str, Any]:
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ValueError(f"config file is not valid JSON: {config_path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ValueError(f"config file must be a JSON object: {config_path}")
    hybrid = raw.get("hybrid") or {}
    if not isinstance(hybrid, dict):
        raise ValueError(f"config field 'hybrid' must be an object: {config_path}")

    out: dict[str, Any] = {}
    for src, dst in _CONFIG_KEYS.items():
        if hybrid.get(src) is not None:
            out[dst] = hybrid[src]
    nested = hybrid.get("settings") or {}
    if isinstance(nested, dict):
        for src, dst in _SETTINGS_KEYS.items():
            if nested.get(src) is not None:
                out[dst] = nested[src]
    if "timeout" in out:
        # The config file stores milliseconds.
        out["timeout"] = float(out["timeout"]) / 1000.0
    if "enabled" in hybrid:
        out["enabled"] = hybrid["enabled"] is True
    if hybrid.get("command") is not None:
        out["command"] = str(hybrid["command"])
    return out


def _env_number(name: str, env: Mapping[str, str], kind: type) -> Any:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return kind(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got: {raw!r}") from exc
