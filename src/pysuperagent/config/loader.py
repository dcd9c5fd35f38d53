from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from platformdirs import user_config_dir

from ..mcp.models import CapabilityServerConfig
from .models import Settings

logger = logging.getLogger(__name__)

APP_NAME = "pysuperagent"
MODEL_ENV = "SUPER_AGENT_MODEL"


def _project_paths(cwd: Path) -> list[Path]:
    return [cwd / ".pysuperagent" / "settings.json"]


def _global_paths() -> list[Path]:
    return [Path(user_config_dir(APP_NAME)) / "settings.json"]


def _load_json(p: Path) -> dict[str, Any] | None:
    try:
        obj = json.loads(p.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", p, e)
        return None
    if isinstance(obj, dict):
        return obj
    logger.warning("Ignoring settings file %s: top level is not an object", p)
    return None


def _merge_dicts(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _merge_dicts(out[k], v)  # type: ignore
        else:
            out[k] = v
    return out


def _number(merged: dict[str, Any], key: str, default: float, *, minimum: float) -> float:
    v = merged.get(key)
    if isinstance(v, bool) or not isinstance(v, (int, float)):
        return default
    return v if v >= minimum else default


def parse_servers(obj: Any) -> dict[str, CapabilityServerConfig]:
    out: dict[str, CapabilityServerConfig] = {}
    if not isinstance(obj, dict):
        return out
    for name, entry in obj.items():
        if not isinstance(name, str):
            continue
        sc = CapabilityServerConfig.from_obj(name, entry)
        if sc is None:
            logger.warning("Skipping invalid capability server entry %r", name)
            continue
        out[name] = sc
    return out


def load_settings(*, cwd: Path, explicit_path: Path | None = None) -> Settings:
    """Load settings.

    Merge order: global < project < explicit_path, then ``.mcp.json`` servers,
    then the SUPER_AGENT_MODEL environment variable.
    """
    merged: dict[str, Any] = {}
    loaded_from: list[Path] = []

    candidates = [*_global_paths(), *_project_paths(cwd)]
    if explicit_path is not None:
        candidates.append(explicit_path.expanduser().resolve())
    for p in candidates:
        if p.exists() and p.is_file():
            obj = _load_json(p)
            if obj is not None:
                merged = _merge_dicts(merged, obj)
                loaded_from.append(p)

    cfg = Settings()
    cfg.loaded_from = loaded_from

    model = merged.get("model")
    if isinstance(model, str) and model.strip():
        cfg.model = model.strip()
    cfg.max_tool_rounds = int(_number(merged, "max_tool_rounds", cfg.max_tool_rounds, minimum=1))
    cfg.tool_timeout = float(_number(merged, "tool_timeout", cfg.tool_timeout, minimum=0.001))
    cfg.provider_timeout = float(_number(merged, "provider_timeout", cfg.provider_timeout, minimum=0.001))
    cfg.connect_timeout = float(_number(merged, "connect_timeout", cfg.connect_timeout, minimum=0.001))
    cfg.max_parallel_tools = int(_number(merged, "max_parallel_tools", cfg.max_parallel_tools, minimum=1))
    if isinstance(merged.get("auto_approve"), bool):
        cfg.auto_approve = merged["auto_approve"]
    if isinstance(merged.get("stream"), bool):
        cfg.stream = merged["stream"]

    cfg.capability_servers = parse_servers(merged.get("mcpServers") or merged.get("mcp_servers") or {})

    # .mcp.json in the working directory overrides same-named servers
    mcp_json = cwd / ".mcp.json"
    if mcp_json.exists() and mcp_json.is_file():
        obj = _load_json(mcp_json)
        if obj is not None:
            cfg.capability_servers.update(parse_servers(obj.get("mcpServers") or {}))
            loaded_from.append(mcp_json)

    plugins = merged.get("plugins", [])
    if isinstance(plugins, list):
        cfg.plugins = [p.strip() for p in plugins if isinstance(p, str) and p.strip()]

    env_model = os.getenv(MODEL_ENV)
    if env_model:
        cfg.model = env_model.strip()

    return cfg
