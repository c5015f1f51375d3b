"""Environment loader using python-dotenv for controller settings."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

_ENV_INITIALISED = False
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def ensure_env_loaded(dotenv_path: Optional[Path] = None) -> None:
    """Load the .env file once."""

    global _ENV_INITIALISED
    if _ENV_INITIALISED:
        return

    if dotenv_path is None:
        dotenv_path = Path(__file__).resolve().parent.parent / ".env"

    if dotenv_path.exists():
        load_dotenv(dotenv_path=dotenv_path, override=False)
    else:
        load_dotenv(override=False)
    _ENV_INITIALISED = True


def _raw(name: str) -> Optional[str]:
    ensure_env_loaded()
    raw = os.getenv(name)
    if raw is None:
        return None
    raw = raw.strip()
    return raw or None


def env_bool(name: str, default: bool) -> bool:
    """Return an environment variable interpreted as boolean."""

    raw = _raw(name)
    if raw is None:
        return default
    value = raw.lower()
    if value in _TRUE_VALUES:
        return True
    if value in _FALSE_VALUES:
        return False
    return default


def env_str(name: str, default: str) -> str:
    raw = _raw(name)
    return default if raw is None else raw


def env_int(name: str, default: int) -> int:
    raw = _raw(name)
    if raw is None:
        return default
    try:
        return int(raw, 0)
    except ValueError:
        return default


def env_float(name: str, default: float) -> float:
    raw = _raw(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def env_optional_int(name: str, default: Optional[int] = None) -> Optional[int]:
    """Return an integer variable; ``none``/``off`` explicitly disables it."""

    raw = _raw(name)
    if raw is None:
        return default
    if raw.lower() in {"none", "off", "-"}:
        return None
    try:
        return int(raw, 0)
    except ValueError:
        return default


__all__ = ["env_bool", "env_float", "env_int", "env_optional_int", "env_str", "ensure_env_loaded"]
