"""Prompt registry: load versioned prompt templates from files (append-only, optionally SHA-identified)."""
import hashlib
import logging
from pathlib import Path
from typing import List, Optional

import yaml

logger = logging.getLogger(__name__)

# Directory containing prompt name/version folders (app/prompts/)
_PROMPTS_DIR = Path(__file__).resolve().parent.parent / "prompts"


def list_names() -> List[str]:
    """List available prompt names (top-level folders under prompts/)."""
    if not _PROMPTS_DIR.is_dir():
        return []
    return sorted(p.name for p in _PROMPTS_DIR.iterdir() if p.is_dir() and not p.name.startswith("."))


def _load_prompt_file(name: str, version: str) -> Optional[dict]:
    """Load a single prompt YAML file. Returns None if not found."""
    path = _PROMPTS_DIR / name / f"{version}.yaml"
    if not path.is_file():
        return None
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else None
    except Exception as e:
        logger.warning(f"Failed to load prompt {name}/{version}: {e}")
        return None


def get_prompt_with_meta(name: str, version: str) -> Optional[dict]:
    """
    Get prompt template with metadata.
    Returns dict with keys: body, system, variables, description, version, sha; or None if not found.
    """
    data = _load_prompt_file(name, version)
    if not data:
        return None
    body = data.get("body")
    if not isinstance(body, str):
        return None
    body = body.strip()
    return {
        "body": body,
        "system": (data.get("system") or "").strip() or None,
        "variables": data.get("variables") or [],
        "description": data.get("description") or "",
        "version": data.get("version") or version,
        "sha": prompt_sha(body),
    }


def prompt_sha(body: str) -> str:
    """Content-derived SHA256 (hex) for a prompt body. Same content => same SHA."""
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def render_prompt(name: str, version: str, **values: str) -> tuple[str | None, str]:
    """
    Fill a prompt's declared {variables} and return (system, prompt).
    Substitution is literal so JSON braces in the template are left alone.
    Raises LookupError if the prompt is missing or a declared variable is not supplied.
    """
    meta = get_prompt_with_meta(name, version)
    if meta is None:
        raise LookupError(f"Prompt {name}/{version} not found under {_PROMPTS_DIR}")
    body = meta["body"]
    for var in meta["variables"]:
        if var not in values:
            raise LookupError(f"Prompt {name}/{version} needs variable {var!r}")
        body = body.replace("{" + var + "}", values[var])
    return meta["system"], body
