"""Typed readers for CAMPUS_* environment overrides."""

from __future__ import annotations

import os
from typing import Optional

_TRUTHY = {"1", "true", "yes", "y", "on"}


def env_flag(name: str, default: bool = False) -> bool:
    v = os.getenv(name)
    if v is None:
        return default
    return v.strip().lower() in _TRUTHY


def env_float(name: str) -> Optional[float]:
    """Unset or blank means no override; anything else must parse."""
    v = os.getenv(name)
    if v is None or not v.strip():
        return None
    try:
        return float(v)
    except ValueError as e:
        raise ValueError(f"Environment variable {name} is not a number: {v!r}") from e
