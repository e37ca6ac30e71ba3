"""
vestledger configuration

All settings come from environment variables so the same code runs in tests,
local CLI sessions and deployment jobs. Allocation plans (the schedules to
create for a launch) are kept in YAML files and loaded on demand.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""
    pass


def _get_int(env_var: str, default: int, minimum: int = 0) -> int:
    raw = os.getenv(env_var, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{env_var} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigurationError(f"{env_var} must be >= {minimum}, got {value}")
    return value


def _get_flag(env_var: str, default: bool = False) -> bool:
    raw = os.getenv(env_var, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


DATA_DIR = Path(os.getenv("VESTLEDGER_DATA_DIR", os.path.expanduser("~/.vestledger"))).expanduser()
STATE_DB_PATH = Path(os.getenv("VESTLEDGER_STATE_DB", str(DATA_DIR / "vesting_state.db"))).expanduser()
_log_dir = os.getenv("VESTLEDGER_LOG_DIR", "").strip()
LOG_DIR = Path(_log_dir).expanduser() if _log_dir else None
LOG_LEVEL = os.getenv("VESTLEDGER_LOG_LEVEL", "INFO").strip().upper() or "INFO"
JSON_LOGS = _get_flag("VESTLEDGER_JSON_LOGS", default=False)
TOKEN_DECIMALS = _get_int("VESTLEDGER_TOKEN_DECIMALS", 18)
METRICS_ENABLED = _get_flag("VESTLEDGER_METRICS_ENABLED", default=True)

if TOKEN_DECIMALS > 36:
    raise ConfigurationError(f"VESTLEDGER_TOKEN_DECIMALS out of range: {TOKEN_DECIMALS}")


def load_allocation_plan(path: Path) -> dict[str, Any]:
    """
    Load a YAML allocation plan.

    The plan is a mapping with an optional ``category_caps`` mapping
    (category name -> whole tokens) and a ``schedules`` list. Each schedule
    entry carries ``beneficiary``, ``amount`` (whole tokens), ``category``,
    ``cliff_days``, ``duration_days`` and optionally ``start`` and
    ``description``.

    Args:
        path: Plan file location

    Returns:
        Parsed plan mapping

    Raises:
        ConfigurationError: If the file is missing or malformed
    """
    if not path.exists():
        raise ConfigurationError(f"Allocation plan {path} does not exist")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Allocation plan {path} is not valid YAML: {exc}") from exc

    if not isinstance(data, dict):
        raise ConfigurationError(f"Allocation plan {path} must contain a mapping.")
    schedules = data.get("schedules", [])
    if not isinstance(schedules, list):
        raise ConfigurationError("Allocation plan 'schedules' must be a list.")
    caps = data.get("category_caps", {})
    if not isinstance(caps, dict):
        raise ConfigurationError("Allocation plan 'category_caps' must be a mapping.")

    logger.info(
        "Loaded allocation plan",
        extra={"event": "config.plan_loaded", "path": str(path), "schedules": len(schedules)},
    )
    return data
