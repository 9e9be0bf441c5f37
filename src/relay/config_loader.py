# src/relay/config_loader.py

from __future__ import annotations
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
import yaml

from relay.core.types import SelectionStrategy

STRATEGIES = tuple(s.value for s in SelectionStrategy)
LOG_LEVELS = ("debug", "info", "warning", "error")
BACKENDS = ("file", "none")


class ConfigError(ValueError):
    pass


def _require(d: Dict[str, Any], dotted: str, typ: type) -> Any:
    cur: Any = d
    for k in dotted.split("."):
        if not isinstance(cur, dict) or k not in cur:
            raise ConfigError(f"Missing config key: {dotted}")
        cur = cur[k]
    if typ is bool and not isinstance(cur, bool):
        raise ConfigError(f"'{dotted}' must be a boolean")
    if typ is str and not isinstance(cur, str):
        raise ConfigError(f"'{dotted}' must be a string")
    if typ is list and not isinstance(cur, list):
        raise ConfigError(f"'{dotted}' must be a list")
    return cur


def _choice(value: Any, key: str, allowed: tuple) -> str:
    norm = str(value).strip().lower()
    if norm not in allowed:
        raise ConfigError(f"Unknown {key} '{value}' (expected one of: {', '.join(allowed)}).")
    return norm


def apply_env_overrides(raw: Dict[str, Any], env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    RELAY_LOG_LEVEL, RELAY_DEFAULT_PROVIDER and RELAY_STRATEGY replace the top-level keys.
    RELAY_QWEN_URL replaces auth.base_url of every local provider; its endpoint is
    dropped so it gets re-derived from the new base URL.
    """
    env = os.environ if env is None else env

    if env.get("RELAY_LOG_LEVEL"):
        raw["log_level"] = env["RELAY_LOG_LEVEL"]
    if env.get("RELAY_DEFAULT_PROVIDER"):
        raw["default_provider"] = env["RELAY_DEFAULT_PROVIDER"]
    if env.get("RELAY_STRATEGY"):
        raw["strategy"] = env["RELAY_STRATEGY"]

    qwen_url = env.get("RELAY_QWEN_URL")
    if qwen_url:
        for entry in raw.get("providers") or []:
            if isinstance(entry, dict) and entry.get("type") == "local":
                auth = dict(entry.get("auth") or {"type": "none"})
                auth["base_url"] = qwen_url.rstrip("/")
                entry["auth"] = auth
                entry.pop("endpoint", None)
    return raw


def load_config(path: Path, env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    if not path or not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigError(f"Config is not valid YAML: {path}: {e}") from e
    if not isinstance(raw, dict) or not raw:
        raise ConfigError(f"Config is empty or invalid YAML: {path}")

    apply_env_overrides(raw, env)

    # Validate required keys (no defaults here)
    _require(raw, "providers", list)
    _require(raw, "runtime.stream", bool)
    _require(raw, "storage.backend", str)          # 'file' or 'none'
    _require(raw, "storage.transcripts_dir", str)  # path string

    # Normalise enumerations
    raw["storage"]["backend"] = _choice(raw["storage"]["backend"], "storage.backend", BACKENDS)
    raw["strategy"] = _choice(raw.get("strategy", "first-available"), "strategy", STRATEGIES)
    raw["log_level"] = _choice(raw.get("log_level", "info"), "log_level", LOG_LEVELS)

    default_provider = raw.get("default_provider")
    if default_provider is not None and not isinstance(default_provider, str):
        raise ConfigError("'default_provider' must be a string")

    # Provider entries are checked one by one through the registry in bootstrap
    return raw
