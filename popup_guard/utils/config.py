import copy
import json
import os
from typing import Any, Dict, Optional

from ..core.errors import ConfigError
from .logger import logger

"""
Configuration loader for the popup engine.

Behavior:
- An explicit path wins, then the `POPUP_GUARD_CONFIG` env var, then
  `~/.popup_guard/config.json`.
- Every candidate is validated against `config.schema.json` (jsonschema);
  invalid or unreadable files are logged and skipped.
- User values are deep-merged over DEFAULT_CONFIG, so a partial file only
  overrides what it names.
"""

DEFAULT_CONFIG: Dict[str, Any] = {
    "log_level": "INFO",
    "whitelisted_domains": [],
    "learning": {
        "learning_enabled": True,
        "suggestion_confidence_threshold": 0.8,
        "similarity_threshold": 0.7,
        "pattern_decay_min_confidence": 0.3,
        "pattern_max_age_days": 30,
        "max_patterns": 100,
    },
    "decisions": {
        "pending_decision_timeout_ms": 15000,
        "auto_action_enabled": False,
    },
    "throttle": {
        "max_detections_per_window": 30,
        "window_ms": 60000,
        "min_limit": 5,
        "latency_budget_ms": 500,
        "memory_threshold": 0.8,
        "healthy_interval_ms": 30000,
    },
    "cache": {
        "history_cap": 1000,
        "decisions_cap": 500,
        "stale_pending_ms": 300000,
        "memory_pressure_fraction": 0.3,
    },
    "scoring": {
        "high_threshold": 0.8,
        "medium_threshold": 0.5,
    },
    "storage": {
        "backend": "memory",
        "data_dir": os.path.join("~", ".popup_guard", "data"),
    },
}

_SCHEMA_PATH = os.path.join(os.path.dirname(__file__), "config.schema.json")

_config_cache: Dict[str, Any] = {}
_schema_cache: Optional[Dict[str, Any]] = None


def _default_config_path() -> str:
    return os.path.join(os.path.expanduser("~"), ".popup_guard", "config.json")


def merge_config(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively merge override into a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Load configuration from JSON with defaults.

    Never raises: when no valid file is found the defaults are returned.
    """
    global _config_cache
    if _config_cache and path is None:
        return _config_cache

    candidates = []
    if path:
        candidates.append(path)
    env_path = os.environ.get("POPUP_GUARD_CONFIG")
    if env_path:
        candidates.append(env_path)
    candidates.append(_default_config_path())

    for p in candidates:
        try:
            p_abs = os.path.abspath(os.path.expanduser(p))
            if not os.path.exists(p_abs):
                continue
            with open(p_abs, "r", encoding="utf-8") as f:
                cfg = json.load(f)
            validate_config(cfg)
            _config_cache = merge_config(DEFAULT_CONFIG, cfg)
            logger.info(f"Configuration loaded from {p_abs}")
            return _config_cache
        except json.JSONDecodeError as e:
            logger.error(f"Invalid JSON in config file {p}: {e}")
            continue
        except Exception as e:
            logger.warning(f"Failed to load config {p}: {e}")
            continue

    logger.info("No config file found; using default configuration")
    _config_cache = copy.deepcopy(DEFAULT_CONFIG)
    return _config_cache


def reset_config_cache() -> None:
    """Forget the cached configuration (mainly for testing)."""
    global _config_cache
    _config_cache = {}


def _load_schema() -> Dict[str, Any]:
    global _schema_cache
    if _schema_cache is None:
        with open(_SCHEMA_PATH, "r", encoding="utf-8") as f:
            _schema_cache = json.load(f)
    return _schema_cache


def validate_config(cfg: Dict[str, Any]) -> None:
    """Validate configuration using the bundled JSON Schema.

    Raises ConfigError on invalid configs.
    """
    from jsonschema import ValidationError, validate

    if not isinstance(cfg, dict):
        raise ConfigError("Configuration must be a JSON object/dict")

    try:
        validate(instance=cfg, schema=_load_schema())
    except ValidationError as e:
        path = "/".join(str(p) for p in e.absolute_path) or "<root>"
        raise ConfigError(f"Invalid configuration at {path}: {e.message}") from e


def get_section(cfg: Optional[Dict[str, Any]], section: str) -> Dict[str, Any]:
    """Return a config section merged over its defaults."""
    cfg = cfg or {}
    return merge_config(DEFAULT_CONFIG.get(section, {}), cfg.get(section, {}) or {})


if __name__ == "__main__":
    # Simple CLI for debugging
    cfg = load_config()
    print(json.dumps(cfg, indent=2))
