from __future__ import annotations

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import yaml

from .openai_compat import OpenAICompatProvider


_ENV_PATTERN = re.compile(r"\$\{(\w+)\}")

DEFAULT_BASE_URL = "https://api.x.ai/v1"
DEFAULT_MODEL = "grok-code-fast-1"


@dataclass(frozen=True)
class ProviderConfig:
    name: str
    base_url: str
    model: str
    api_key: str


class ProviderRegistry:
    def __init__(self) -> None:
        self._items: Dict[str, ProviderConfig] = {}

    def add(self, cfg: ProviderConfig) -> None:
        key = cfg.name.strip().lower()
        if not key:
            raise ValueError("Provider name cannot be empty.")
        self._items[key] = cfg

    def get(self, name: str) -> ProviderConfig:
        key = (name or "").strip().lower()
        if not key:
            raise ValueError("Missing --provider.")
        if key not in self._items:
            known = ", ".join(sorted(self._items.keys())) or "(none)"
            raise ValueError(f"Unknown provider '{name}'. Known providers: {known}")
        return self._items[key]

    def names(self) -> list[str]:
        return sorted(self._items.keys())


def _expand_env_placeholders(s: str) -> str:
    def repl(m: re.Match) -> str:
        var = m.group(1)
        val = os.getenv(var)
        if not val:
            raise ValueError(f"API key placeholder '${{{var}}}' not found in environment or is empty.")
        return val

    return _ENV_PATTERN.sub(repl, s)


def load_provider_registry(yaml_path: str | Path) -> ProviderRegistry:
    """Read ``providers: {name: {base_url, model, api_key}}`` from YAML.

    ``api_key`` may be a ``${ENV_VAR}`` placeholder.
    """
    p = Path(yaml_path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Config YAML not found: {p}")

    data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    providers = data.get("providers")
    if not isinstance(providers, dict) or not providers:
        raise ValueError("YAML must contain a non-empty 'providers:' mapping.")

    reg = ProviderRegistry()

    for name, cfg in providers.items():
        if not isinstance(cfg, dict):
            raise ValueError(f"providers.{name} must be a mapping/dict.")

        fields = {k: str(cfg.get(k) or "").strip() for k in ("base_url", "model", "api_key")}
        missing = [k for k, v in fields.items() if not v]
        if missing:
            raise ValueError(f"providers.{name} missing required field(s): {', '.join(missing)}")

        api_key = _expand_env_placeholders(fields["api_key"])
        if not api_key:
            raise ValueError(f"providers.{name} api_key resolved to empty string.")

        reg.add(ProviderConfig(name=str(name), base_url=fields["base_url"], model=fields["model"], api_key=api_key))

    return reg


def resolve_provider(
    provider: Optional[str],
    model: Optional[str],
    base_url: Optional[str],
    api_key: Optional[str],
    yaml_path: Optional[Path] = None,
    timeout: float = 120.0,
) -> OpenAICompatProvider:
    """
    Priority:
      - explicit overrides (model/base_url/api_key)
      - YAML entry (by provider name), when a provider name is given
      - SUPER_AGENT_BASE_URL / SUPER_AGENT_API_KEY environment
    """
    cfg: ProviderConfig | None = None
    if provider:
        reg = load_provider_registry((yaml_path or Path("pysuperagent.yaml")).expanduser())
        cfg = reg.get(provider)

    final_model = model or (cfg.model if cfg else None) or DEFAULT_MODEL
    final_base_url = base_url or (cfg.base_url if cfg else None) or os.getenv("SUPER_AGENT_BASE_URL") or DEFAULT_BASE_URL
    final_api_key = api_key or (cfg.api_key if cfg else None) or os.getenv("SUPER_AGENT_API_KEY") or ""

    return OpenAICompatProvider(
        model=final_model,
        base_url=final_base_url,
        api_key=final_api_key,
        provider_name=cfg.name if cfg else "openai",
        timeout=timeout,
    )
