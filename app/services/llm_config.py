"""LLM config loader: named YAML configs per extraction stage, built into providers via the registry.

app/llm_configs/<name>.yaml holds provider, model, options (max_tokens, temperature)
and provider-specific blocks (ollama, vertex, openai). A missing file falls back to
the env-configured provider (LLM_PROVIDER) so a bare deployment still works.
"""
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from app.services.llm_provider import LLMProvider, build_provider

logger = logging.getLogger(__name__)

# Directory containing LLM config YAML files (app/llm_configs/)
_LLM_CONFIGS_DIR = Path(__file__).resolve().parent.parent / "llm_configs"


def get_llm_config(name: str) -> Optional[Dict[str, Any]]:
    """
    Load LLM config by name from YAML (e.g. "fast", "full", "full_reextract").
    Returns None if file not found or unreadable.
    """
    path = _LLM_CONFIGS_DIR / f"{name}.yaml"
    if not path.is_file():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        if not isinstance(data, dict):
            return None
        return dict(data)
    except Exception as e:
        logger.warning(f"Failed to load LLM config {name}: {e}")
        return None


def list_llm_config_names() -> List[str]:
    """Return sorted list of config names from YAML files (stems of *.yaml)."""
    if not _LLM_CONFIGS_DIR.is_dir():
        return []
    return sorted(p.stem for p in _LLM_CONFIGS_DIR.iterdir() if p.suffix == ".yaml" and p.stem)


def resolve_llm_config(name: str) -> Dict[str, Any]:
    """Named YAML config, or the env default provider when no file exists."""
    from app.config import LLM_PROVIDER

    cfg = get_llm_config(name)
    if cfg is None:
        logger.info("No LLM config %r on disk; using env provider %s", name, LLM_PROVIDER)
        return {"provider": LLM_PROVIDER, "options": {}}
    if not cfg.get("provider"):
        cfg["provider"] = LLM_PROVIDER
    return cfg


def generation_options(config: Dict[str, Any]) -> Dict[str, Any]:
    """Keyword args for LLMProvider.generate() taken from config["options"]."""
    options = config.get("options") or {}
    out: Dict[str, Any] = {}
    if options.get("max_tokens") is not None:
        out["max_tokens"] = int(options["max_tokens"])
    if options.get("temperature") is not None:
        out["temperature"] = float(options["temperature"])
    return out


def get_stage_provider(name: str) -> tuple[LLMProvider, Dict[str, Any]]:
    """Build the provider for a named stage. Returns (provider, generate kwargs)."""
    cfg = resolve_llm_config(name)
    return build_provider(cfg), generation_options(cfg)
