"""Environment variable helpers shared by the Meridian config layer.

All readers are forgiving: a missing, empty, or malformed value yields
the supplied default instead of raising.
"""
from __future__ import annotations

import os
from typing import Dict

_TRUTHY = {"1", "true", "yes", "on", "y"}
_FALSY = {"0", "false", "no", "off", "n"}


def env_str(name: str, default: str = "") -> str:
    """Get a stripped env var, or *default* when unset/blank."""
    val = os.environ.get(name, "").strip()
    return val if val else default


def env_flag(name: str, default: bool = False) -> bool:
    """Get a boolean env var.

    Args:
        name: The MERIDIAN_* env var name (e.g. "MERIDIAN_AFFECT_ENABLED").
        default: Default if unset or not recognisably truthy/falsy.

    Returns:
        True if the env var is truthy.
    """
    val = env_str(name).lower()
    if val in _TRUTHY:
        return True
    if val in _FALSY:
        return False
    return default


def env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def env_mapping(name: str) -> Dict[int, str]:
    """Parse ``"37=pkg.mod:Cls, 36=other.mod:factory"`` into ``{37: ..., 36: ...}``.

    Malformed items are skipped.
    """
    result: Dict[int, str] = {}
    for item in env_str(name).split(","):
        key, sep, value = item.partition("=")
        key, value = key.strip(), value.strip()
        if not sep or not value or not key.isdigit():
            continue
        result[int(key)] = value
    return result
