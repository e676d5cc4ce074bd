"""sagemaker_pilot.config — Environment defaults, logging setup, call-config merging.

Configuration is supplied as plain dicts at construction and per call. The
environment only seeds the innermost default layer, so a merged configuration
always carries concrete retry numbers.
"""

from __future__ import annotations

import copy
import logging
import os
from typing import Any, Dict, Optional

__all__ = [
    "AWS_REGION",
    "BACKOFF_MULTIPLIER",
    "CLIENT_MAX_ATTEMPTS",
    "DEFAULT_ACCEPT",
    "DEFAULT_CONTENT_TYPE",
    "DEFAULT_INVOKER_CONFIG",
    "LOG_LEVEL",
    "MAX_ATTEMPTS",
    "POLL_SECONDS",
    "TIMEOUT_MS",
    "build_instance_config",
    "configure_logging",
    "merge_call_config",
]


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------

AWS_REGION: str = os.environ.get("AWS_REGION", os.environ.get("AWS_DEFAULT_REGION", "us-east-1"))
LOG_LEVEL: str = os.environ.get("SAGEMAKER_PILOT_LOG_LEVEL", "INFO")

MAX_ATTEMPTS: int = _env_int("SAGEMAKER_PILOT_MAX_ATTEMPTS", 3)
TIMEOUT_MS: int = _env_int("SAGEMAKER_PILOT_TIMEOUT_MS", 30000)
BACKOFF_MULTIPLIER: float = _env_float("SAGEMAKER_PILOT_BACKOFF_MULTIPLIER", 2)
POLL_SECONDS: int = _env_int("SAGEMAKER_PILOT_POLL_SECONDS", 60)
CLIENT_MAX_ATTEMPTS: int = _env_int("SAGEMAKER_PILOT_CLIENT_MAX_ATTEMPTS", 3)

DEFAULT_CONTENT_TYPE = "application/json"
DEFAULT_ACCEPT = "application/json"

_MERGED_SECTIONS = ("retry", "validation", "monitoring")
_INSTANCE_SECTIONS = _MERGED_SECTIONS + ("batch",)

DEFAULT_INVOKER_CONFIG: Dict[str, Dict[str, Any]] = {
    "retry": {
        "max_attempts": MAX_ATTEMPTS,
        "timeout_ms": TIMEOUT_MS,
        "backoff_multiplier": BACKOFF_MULTIPLIER,
    },
    "validation": {"enabled": True},
    "monitoring": {"enabled": True},
    "batch": {"enabled": True, "max_batch_size": 10, "concurrency": 3},
}

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

_PACKAGE_LOGGER = "sagemaker_pilot"


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Attach one stdout handler to the package logger (idempotent)."""
    logger = logging.getLogger(_PACKAGE_LOGGER)
    resolved = level or LOG_LEVEL
    logger.setLevel(getattr(logging, str(resolved).upper(), logging.INFO))
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[%(asctime)s] %(levelname)s %(name)s: %(message)s"))
        logger.addHandler(handler)
    return logger


# ---------------------------------------------------------------------------
# Configuration merge
# ---------------------------------------------------------------------------


def _overlay(base: Optional[Dict[str, Any]], override: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Shallow per-field merge; present keys win even when falsy, ``None`` counts as absent."""
    merged = dict(base or {})
    for key, value in (override or {}).items():
        if value is None:
            continue
        merged[key] = value
    return merged


def build_instance_config(user_config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Resolve constructor config on top of :data:`DEFAULT_INVOKER_CONFIG`.

    Section dicts (``retry``, ``validation``, ``monitoring``, ``batch``) are
    merged field by field; any other top-level key is copied through.
    """
    user_config = user_config or {}
    resolved: Dict[str, Any] = {
        key: value for key, value in user_config.items() if key not in _INSTANCE_SECTIONS
    }
    for section in _INSTANCE_SECTIONS:
        resolved[section] = _overlay(copy.deepcopy(DEFAULT_INVOKER_CONFIG[section]), user_config.get(section))
    return resolved


def merge_call_config(
    instance_config: Dict[str, Any],
    call_options: Optional[Dict[str, Any]] = None,
) -> Dict[str, Dict[str, Any]]:
    """Compute the effective ``retry``/``validation``/``monitoring`` settings for one call.

    Per-call fields override instance fields one by one. Callables
    (``custom_validator``, ``metrics_callback``) are replaced, never composed.
    Neither argument is mutated.
    """
    call_options = call_options or {}
    effective: Dict[str, Dict[str, Any]] = {}
    for section in _MERGED_SECTIONS:
        base = _overlay(DEFAULT_INVOKER_CONFIG[section], instance_config.get(section))
        effective[section] = _overlay(base, call_options.get(section))
    return effective
