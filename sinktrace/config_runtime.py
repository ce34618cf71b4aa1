"""Runtime configuration for sinktrace - centralized configuration management."""

import copy
import json
import os
from pathlib import Path
from typing import Any

from sinktrace.utils.constants import ENV_PREFIX
from sinktrace.utils.logging import logger

DEFAULTS = {
    "paths": {
        "findings_json": "./.sinktrace/findings.json",
    },
    "limits": {
        # Intraprocedural fixpoint budget is this many visits per CFG node
        "max_visits_per_node": 200,
        "max_scc_iterations": 20,
        "max_worklist_rounds": 50,
        "max_path_depth": 40,
        "max_paths_per_sink": 100,
        # Backward search states per sink and origin before giving up
        "max_path_states": 20000,
        "path_length_ceiling": 16,
        "merge_count_ceiling": 4,
        "workers": 4,
    },
    "scoring": {
        "unknown_penalty": 0.6,
        "min_unknown_factor": 0.1,
        "long_path_penalty": 0.9,
        "corroboration_bonus": 0.05,
        "max_corroboration_bonus": 0.15,
    },
}

SECTIONS = tuple(DEFAULTS)


def default_config() -> dict[str, Any]:
    """Fresh copy of the built-in defaults."""
    return copy.deepcopy(DEFAULTS)


def merge_config(overrides: dict[str, Any] | None) -> dict[str, Any]:
    """Apply a partial ``{section: {key: value}}`` mapping on top of the defaults.

    Unknown sections/keys and values of the wrong type are ignored with a warning.
    """
    cfg = default_config()
    if not overrides:
        return cfg

    for section, values in overrides.items():
        if section not in cfg or not isinstance(values, dict):
            logger.warning(f"Ignoring unknown config section '{section}'")
            continue
        for key, value in values.items():
            if key not in cfg[section]:
                logger.warning(f"Ignoring unknown config key '{section}.{key}'")
                continue
            if _type_matches(cfg[section][key], value):
                cfg[section][key] = value
            else:
                logger.warning(
                    f"Ignoring config value for '{section}.{key}': expected "
                    f"{type(cfg[section][key]).__name__}, got {type(value).__name__}"
                )
    return cfg


def load_runtime_config(root: str = ".") -> dict[str, Any]:
    """
    Load runtime configuration from .sinktrace/config.json and environment variables.

    Config priority (highest to lowest):
    1. Environment variables (SINKTRACE_<SECTION>_<KEY>)
    2. .sinktrace/config.json file
    3. Built-in defaults

    Args:
        root: Root directory to look for config file

    Returns:
        Configuration dictionary with merged values
    """
    user: dict[str, Any] | None = None
    path = Path(root) / ".sinktrace" / "config.json"
    try:
        if path.exists():
            with open(path, encoding="utf-8") as f:
                loaded = json.load(f)
            if isinstance(loaded, dict):
                user = loaded
            else:
                logger.warning(f"Config file {path} is not a JSON object, ignoring it")
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Could not load config file from {path}: {e}")
        logger.info("Continuing with default configuration")

    cfg = merge_config(user)

    for section in cfg:
        for key in cfg[section]:
            env_var = f"{ENV_PREFIX}{section.upper()}_{key.upper()}"
            if env_var not in os.environ:
                continue
            value = os.environ[env_var]
            default_value = cfg[section][key]
            try:
                if isinstance(default_value, bool):
                    cfg[section][key] = value.strip().lower() in ("1", "true", "yes")
                elif isinstance(default_value, int):
                    cfg[section][key] = int(value)
                elif isinstance(default_value, float):
                    cfg[section][key] = float(value)
                else:
                    cfg[section][key] = value
            except ValueError as e:
                logger.warning(
                    f"Invalid value for environment variable {env_var}: '{value}' - {e}"
                )
                logger.info(f"Using default value: {default_value}")

    return cfg


def _type_matches(default: Any, value: Any) -> bool:
    if isinstance(default, bool) or isinstance(value, bool):
        return isinstance(default, bool) and isinstance(value, bool)
    if isinstance(default, float):
        return isinstance(value, (int, float))
    return isinstance(value, type(default))
