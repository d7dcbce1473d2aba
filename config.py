"""
Configuration loader for the discovery core.

Loads configuration from YAML file with environment variable substitution.
"""

import os
import re
from pathlib import Path

import yaml


def load_config(config_path: str = None) -> dict:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $DISCOVERY_CONFIG,
            then config.yaml in the current dir.

    Returns:
        Configuration dict with env vars substituted, merged over defaults.
    """
    if config_path is None:
        config_path = os.environ.get("DISCOVERY_CONFIG", "config.yaml")

    path = Path(config_path)
    if not path.exists():
        return _default_config()

    with open(path) as f:
        content = f.read()

    # Substitute environment variables: ${VAR_NAME} or ${VAR_NAME:default}
    content = _substitute_env_vars(content)

    config = yaml.safe_load(content) or {}
    if not isinstance(config, dict):
        raise ValueError(f"{path}: top level of the config must be a mapping")

    return _merge_with_defaults(config)


def _substitute_env_vars(content: str) -> str:
    """Replace ${VAR} and ${VAR:default} with environment values."""

    def replace(match):
        var_expr = match.group(1)
        if ":" in var_expr:
            var_name, default = var_expr.split(":", 1)
        else:
            var_name, default = var_expr, ""
        return os.environ.get(var_name, default)

    # Match ${VAR} or ${VAR:default}
    pattern = r"\$\{([^}]+)\}"
    return re.sub(pattern, replace, content)


def _default_config() -> dict:
    """Return default configuration."""
    return {
        "store": {
            "path": os.environ.get("DISCOVERY_DB", "~/.discovery/records.db"),
        },
        "embeddings": {
            "provider": os.environ.get("DISCOVERY_EMBEDDINGS", "auto"),
            "model": "text-embedding-3-small",
            "cache_enabled": True,
            "cache_path": "~/.discovery/embedding_cache.db",
        },
        "search": {
            "max_results": 15,
            "rrf_k": 60,
            "candidate_multiplier": 3,
            "min_similarity": None,
        },
        "serendipity": {
            "enabled": True,
            "candidate_limit": 30,
            "candidate_floor": 0.5,
            "similarity_floor": 0.6,
            "min_cluster_size": 3,
            "max_representatives": 5,
        },
        "citations": {
            "max_distance_km": 100.0,
            "tool_kinds": {},
        },
        "resilience": {
            "retry": {
                "enabled": True,
                "max_attempts": 3,
                "base_delay": 1.0,
                "max_delay": 10.0,
                "timeout": 15.0,
            },
            "breakers": {
                "default": {
                    "threshold": 5,
                    "open_duration": 60.0,
                    "probe_delay": 30.0,
                },
            },
        },
        "outbox": {
            "path": "~/.discovery/outbox.json",
            "max_retries": 3,
            "base_delay": 1.0,
            "endpoint": os.environ.get("DISCOVERY_OUTBOX_URL", ""),
            "timeout": 30.0,
        },
    }


def _merge_with_defaults(config: dict) -> dict:
    """Merge user config with defaults."""
    defaults = _default_config()

    # Deep merge
    def merge(base, override):
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = merge(result[key], value)
            else:
                result[key] = value
        return result

    return merge(defaults, config)


def get_section(config: dict, section: str) -> dict:
    """Get one top-level section, or an empty dict if missing."""
    value = config.get(section) or {}
    return value if isinstance(value, dict) else {}


def retry_options(config: dict) -> dict | None:
    """Keyword arguments for retry_with_backoff, or None when retries are disabled."""
    retry = dict(get_section(config, "resilience").get("retry") or {})
    if not retry.pop("enabled", True):
        return None
    allowed = ("max_attempts", "base_delay", "max_delay", "timeout")
    return {k: retry[k] for k in allowed if k in retry}


def breaker_options(config: dict, name: str) -> dict:
    """CircuitBreaker arguments for one dependency: its own block over ``default``."""
    breakers = get_section(config, "resilience").get("breakers") or {}
    options = dict(breakers.get("default") or {})
    options.update(breakers.get(name) or {})
    options["name"] = name
    return options
