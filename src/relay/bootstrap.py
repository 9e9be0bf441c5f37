from __future__ import annotations
import logging
import random
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from dotenv import load_dotenv

from .config_loader import load_config
from .config_schema import ProviderConfig
from .manager import ProviderManager
from .providers.registry import ProviderRegistry, default_registry
from .secrets.sources import SecretsResolver
from .storage.transcript import Transcript

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."


@dataclass
class AppContext:
    cfg: Dict[str, Any]
    paths: Dict[str, Path]
    registry: ProviderRegistry
    manager: ProviderManager
    provider_configs: List[ProviderConfig]
    system_prompt: str
    warnings: List[str] = field(default_factory=list)

    @property
    def strategy(self) -> str:
        return self.cfg["strategy"]

    @property
    def default_provider(self) -> Optional[str]:
        return self.cfg.get("default_provider")

    @property
    def stream(self) -> bool:
        return bool(self.cfg["runtime"]["stream"])


def _with_api_key(entry: Dict[str, Any], resolver: SecretsResolver, registry: ProviderRegistry) -> Dict[str, Any]:
    """Fill an empty api_key auth from the secrets resolver; other entries pass through."""
    auth = entry.get("auth")
    if not isinstance(auth, dict) or auth.get("type") != "api_key" or auth.get("api_key"):
        return entry
    name = str(entry.get("name") or "")
    factory = registry.resolve(name) if name else None
    key = resolver.secret(name) or (resolver.secret(factory.name) if factory else None)
    if not key:
        return entry
    return {**entry, "auth": {**auth, "api_key": key}}


def build_app(
    config_path: Path,
    repo_root: Optional[Path] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    registry: Optional[ProviderRegistry] = None,
    rng: Optional[random.Random] = None,
) -> AppContext:
    """
    Composition root: load YAML, resolve secrets, validate providers through the
    registry and build the (not yet initialized) ProviderManager.
    Invalid provider entries become warnings; the rest still load.
    """
    load_dotenv()
    cfg = load_config(config_path, env)
    config_dir = config_path.resolve().parent
    repo_root = repo_root or Path.cwd()

    secrets_cfg = cfg.get("secrets") or {}
    resolver = SecretsResolver(method=secrets_cfg.get("method", "env"), mapping=secrets_cfg.get("mapping", {}))

    registry = registry or default_registry()
    warnings: List[str] = []
    configs: List[ProviderConfig] = []
    for index, entry in enumerate(cfg["providers"]):
        if isinstance(entry, dict):
            entry = _with_api_key(entry, resolver, registry)
        checked = registry.validate_config(entry)
        if checked.ok:
            configs.append(checked.value)
        else:
            msg = f"providers[{index}]: {checked.error.message}"
            logger.warning("Skipping provider entry %s", msg)
            warnings.append(msg)

    manager = ProviderManager(registry, configs, rng=rng)

    # ----- Transcript path -----
    tdir_path = Path(cfg["storage"]["transcripts_dir"])
    transcripts_dir = tdir_path if tdir_path.is_absolute() else (repo_root / tdir_path).resolve()

    # ----- System prompt -----
    sys_prompt_path = Path(__file__).resolve().parent / "prompts" / "system.txt"
    system_prompt = (sys_prompt_path.read_text(encoding="utf-8").strip()
                     if sys_prompt_path.exists() else DEFAULT_SYSTEM_PROMPT)

    return AppContext(
        cfg=cfg,
        paths={"config_dir": config_dir, "repo_root": repo_root, "transcripts_dir": transcripts_dir},
        registry=registry,
        manager=manager,
        provider_configs=configs,
        system_prompt=system_prompt,
        warnings=warnings,
    )


def open_transcript(ctx: AppContext, header_meta: Optional[Dict[str, Any]] = None) -> Transcript:
    storage = ctx.cfg["storage"]
    root_dir = ctx.paths["transcripts_dir"] if storage["backend"] == "file" else None
    return Transcript(
        system_prompt=ctx.system_prompt,
        session_id=storage.get("resume"),
        root_dir=root_dir,
        header_meta=header_meta,
    )
