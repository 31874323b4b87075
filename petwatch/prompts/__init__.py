"""
Prompt Management for Petwatch

Prompts live in editable text files next to this module and can be
overridden via environment variables.

Usage:
    from petwatch.prompts import get_prompt

    prompt = get_prompt("interpret_bound")
"""

import logging
import os
from pathlib import Path
from typing import Dict, Optional

logger = logging.getLogger(__name__)

PROMPTS_DIR = Path(__file__).parent

IDENTIFY_SUBJECT = "identify_subject"
INTERPRET_BOUND = "interpret_bound"
INTERPRET_PROVISIONAL = "interpret_provisional"
INTERPRET_CLIP = "interpret_clip"

_cache: Dict[str, str] = {}


def get_prompt(name: str, default: Optional[str] = None) -> str:
    """Load prompt template by name.

    Looks for:
    1. Environment variable PW_PROMPT_{NAME} (uppercase)
    2. File prompts/{name}.txt
    3. Default value if provided
    """
    if name in _cache:
        return _cache[name]

    env_value = os.environ.get(f"PW_PROMPT_{name.upper()}")
    if env_value:
        _cache[name] = env_value
        return env_value

    txt_path = PROMPTS_DIR / f"{name}.txt"
    if txt_path.exists():
        template = txt_path.read_text(encoding="utf-8").strip()
        _cache[name] = template
        return template

    if default is not None:
        return default

    logger.warning(f"Prompt '{name}' not found in {PROMPTS_DIR}")
    return ""


def list_prompts() -> Dict[str, str]:
    """Map prompt name to file path."""
    return {path.stem: str(path) for path in PROMPTS_DIR.glob("*.txt")}


def reload_prompts():
    """Clear prompt cache to force reload from files."""
    _cache.clear()
