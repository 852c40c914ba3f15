"""Environment variable helpers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from core.logging import get_logger

logger = get_logger(__name__)


def load_dotenv_if_available(path: Path | None = None) -> bool:
    """Load variables from a .env file without overriding the process environment."""

    env_path = path or Path(".env")
    if not env_path.exists():
        return False
    load_dotenv(dotenv_path=env_path, override=False)
    logger.debug("Loaded environment variables from %s", env_path)
    return True


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    return value.strip()


def env_int(key: str, default: int, *, minimum: Optional[int] = None) -> int:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s'. Falling back to %d.", key, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("%s=%d is below the minimum %d. Falling back to %d.", key, value, minimum, default)
        return default
    return value


def env_float(key: str, default: float, *, minimum: Optional[float] = None) -> float:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Invalid %s value '%s'. Falling back to %.2f.", key, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("%s=%.2f is below the minimum %.2f. Falling back to %.2f.", key, value, minimum, default)
        return default
    return value


def require_env(key: str, *, context: Optional[str] = None) -> str:
    """Return a mandatory secret or raise ``RuntimeError`` naming the missing variable."""

    value = env_str(key)
    if value:
        return value
    prefix = f"[{context}] " if context else ""
    raise RuntimeError(f"{prefix}{key} is not configured.")


__all__ = [
    "env_float",
    "env_int",
    "env_str",
    "load_dotenv_if_available",
    "require_env",
]
