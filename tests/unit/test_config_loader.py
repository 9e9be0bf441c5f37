# tests/unit/test_config_loader.py

from __future__ import annotations
import sys
from pathlib import Path
import pytest
from textwrap import dedent

# Make "src" importable
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src"))

from relay.config_loader import load_config, ConfigError


def write_yaml(p: Path, text: str) -> Path:
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(dedent(text).lstrip("\n").rstrip() + "\n", encoding="utf-8")
    return p


BASE = """
strategy: CHEAPEST
log_level: Debug
storage: { backend: FILE, transcripts_dir: sessions, resume: null }
runtime: { stream: true }
providers:
  - name: qwen-local
    type: local
    auth: { type: none, base_url: "http://localhost:8000" }
    endpoint: "http://localhost:8000/v1"
"""


def test_load_config_ok(tmp_path: Path):
    cfg = write_yaml(tmp_path / "config" / "default.yaml", BASE)
    data = load_config(cfg, env={})
    assert data["strategy"] == "cheapest"          # normalised
    assert data["log_level"] == "debug"
    assert data["storage"]["backend"] == "file"
    # loader leaves paths as provided (bootstrap resolves them)
    assert data["storage"]["transcripts_dir"] == "sessions"
    assert data["providers"][0]["name"] == "qwen-local"


def test_defaults_for_optional_keys(tmp_path: Path):
    cfg = write_yaml(
        tmp_path / "c.yaml",
        """
        storage: { backend: none, transcripts_dir: sessions }
        runtime: { stream: false }
        providers: []
        """,
    )
    data = load_config(cfg, env={})
    assert data["strategy"] == "first-available"
    assert data["log_level"] == "info"


def test_env_overrides(tmp_path: Path):
    cfg = write_yaml(tmp_path / "c.yaml", BASE)
    data = load_config(cfg, env={
        "RELAY_LOG_LEVEL": "error",
        "RELAY_DEFAULT_PROVIDER": "openrouter",
        "RELAY_STRATEGY": "fastest",
        "RELAY_QWEN_URL": "http://gpu-box:9000/",
    })
    assert data["log_level"] == "error"
    assert data["default_provider"] == "openrouter"
    assert data["strategy"] == "fastest"
    local = data["providers"][0]
    assert local["auth"]["base_url"] == "http://gpu-box:9000"
    assert "endpoint" not in local


@pytest.mark.parametrize("text", [
    # missing providers
    """
    storage: { backend: file, transcripts_dir: sessions }
    runtime: { stream: true }
    """,
    # wrong type
    """
    storage: { backend: file, transcripts_dir: sessions }
    runtime: { stream: "yes" }
    providers: []
    """,
    # providers not a list
    """
    storage: { backend: file, transcripts_dir: sessions }
    runtime: { stream: true }
    providers: { qwen: {} }
    """,
    # unknown backend
    """
    storage: { backend: s3, transcripts_dir: sessions }
    runtime: { stream: true }
    providers: []
    """,
    # unknown strategy
    """
    strategy: smartest
    storage: { backend: file, transcripts_dir: sessions }
    runtime: { stream: true }
    providers: []
    """,
])
def test_invalid_configs_raise_config_error(tmp_path: Path, text: str):
    cfg = write_yaml(tmp_path / "c.yaml", text)
    with pytest.raises(ConfigError):
        load_config(cfg, env={})


def test_missing_and_empty_files(tmp_path: Path):
    with pytest.raises(ConfigError):
        load_config(tmp_path / "nope.yaml", env={})
    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(empty, env={})
    broken = tmp_path / "broken.yaml"
    broken.write_text("providers: [unclosed\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(broken, env={})
