"""
Campaign Orchestrator — Layered Config Loader

Configuration is assembled from three layers, later layers winning:
  1. the base YAML file (config/campaign.yaml unless told otherwise)
  2. a per-environment overlay, {CAMPAIGN_CONFIG_DIR}/{CAMPAIGN_ENV}.yaml
  3. CAMPAIGN_ prefixed environment variables

Usage:
    from engine.config import load_config, get_config_value

    cfg = load_config(base_path="config/campaign.yaml", env="prod")
    interval = get_config_value("scheduler.sweep_interval", cfg, default=15.0)

Environment variables:
    CAMPAIGN_ENV                 active profile (dev, staging, prod)
    CAMPAIGN_CONFIG              base file path
    CAMPAIGN_CONFIG_DIR          overlay directory (default: config/)
    CAMPAIGN_<SECTION>__<KEY>    nested override; "__" separates levels,
                                 e.g. CAMPAIGN_STORE__PATH=/var/lib/campaign.db
"""

from __future__ import annotations

import copy
import logging
import os
from pathlib import Path
from typing import Any, Iterator

import yaml

logger = logging.getLogger("campaign_orchestrator.config")

ENV_PREFIX = "CAMPAIGN_"
DEFAULT_BASE_PATH = "config/campaign.yaml"

# Variables that choose where config comes from, not config values
_META_VARS = frozenset({
    "CAMPAIGN_ENV", "CAMPAIGN_CONFIG_DIR", "CAMPAIGN_CONFIG",
    "CAMPAIGN_WORKER_MODE", "CAMPAIGN_VERSION", "CAMPAIGN_JOB_TIMEOUT",
    "CAMPAIGN_DB_BACKEND", "CAMPAIGN_DB_DSN",
})


# ═══════════════════════════════════════════════════════════════════
# Merging
# ═══════════════════════════════════════════════════════════════════

def deep_merge(base: dict, overlay: dict) -> dict:
    """
    Return a new dict with overlay applied on top of base.

    Mappings present on both sides are merged key by key; anything else
    (scalars, lists) from the overlay replaces the base value outright.
    Neither argument is modified.
    """
    merged = copy.deepcopy(base)
    _merge_into(merged, overlay)
    return merged


def _merge_into(target: dict, overlay: dict) -> None:
    for key, value in overlay.items():
        current = target.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            _merge_into(current, value)
        else:
            target[key] = copy.deepcopy(value)


def _set_nested(d: dict, keys: list[str], value: Any):
    *parents, leaf = keys
    for key in parents:
        d = d.setdefault(key, {})
    d[leaf] = value


def _parse_scalar(value: str) -> Any:
    """Env var text read as YAML, so "30" is an int and "true" a bool."""
    try:
        return yaml.safe_load(value)
    except yaml.YAMLError:
        return value


def _read_yaml(path: str | Path) -> dict[str, Any]:
    with open(path) as f:
        return yaml.safe_load(f) or {}


# ═══════════════════════════════════════════════════════════════════
# Layer 2: Environment Overlay
# ═══════════════════════════════════════════════════════════════════

def _overlay_candidates(base_path: str, env: str, config_dir: str) -> Iterator[Path]:
    directory = Path(config_dir)
    yield directory / f"{env}.yaml"
    yield directory / f"{env}.yml"
    yield Path(os.path.dirname(base_path) or ".") / f"{env}.yaml"


def _load_overlay_file(
    base_path: str,
    env: str = "",
    config_dir: str = "",
) -> dict[str, Any]:
    """
    Overlay for the active environment, or {} when there is no active
    environment or no readable file for it. An unreadable candidate is
    logged and the next one tried.
    """
    env = env or os.environ.get("CAMPAIGN_ENV", "")
    if not env:
        return {}
    config_dir = config_dir or os.environ.get("CAMPAIGN_CONFIG_DIR", "config")

    for path in _overlay_candidates(base_path, env, config_dir):
        if not path.is_file():
            continue
        try:
            overlay = _read_yaml(path)
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Skipping unreadable overlay %s: %s", path, e)
            continue
        logger.info("Config overlay %s applied for env=%s", path, env)
        return overlay

    logger.debug("No config overlay for env=%s", env)
    return {}


# ═══════════════════════════════════════════════════════════════════
# Layer 3: Environment Variables
# ═══════════════════════════════════════════════════════════════════

def _load_env_overrides(prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """
    Collect prefixed environment variables into a nested dict.

      CAMPAIGN_STORE__PATH=x.db                -> {"store": {"path": "x.db"}}
      CAMPAIGN_SCHEDULER__SWEEP_INTERVAL=30    -> {"scheduler": {"sweep_interval": 30}}

    Meta variables (CAMPAIGN_ENV, CAMPAIGN_DB_DSN, ...) are skipped.
    """
    overrides: dict[str, Any] = {}
    for name, raw in os.environ.items():
        if name in _META_VARS or not name.startswith(prefix):
            continue
        keys = [part for part in name[len(prefix):].lower().split("__") if part]
        if keys:
            _set_nested(overrides, keys, _parse_scalar(raw))

    if overrides:
        logger.debug("Env overrides for sections: %s", ", ".join(sorted(overrides)))
    return overrides


# ═══════════════════════════════════════════════════════════════════
# Loader
# ═══════════════════════════════════════════════════════════════════

def load_config(
    base_path: str = "",
    env: str = "",
    config_dir: str = "",
    include_env_vars: bool = True,
) -> dict[str, Any]:
    """
    Load and merge all configuration layers.

    A missing base file yields an empty base; a malformed one raises.
    The result carries two bookkeeping keys: `_active_env` and
    `_config_source`.
    """
    base_path = base_path or os.environ.get("CAMPAIGN_CONFIG", DEFAULT_BASE_PATH)

    layers: list[dict[str, Any]] = []
    if os.path.exists(base_path):
        layers.append(_read_yaml(base_path))
        logger.debug("Base config read from %s", base_path)
    layers.append(_load_overlay_file(base_path, env=env, config_dir=config_dir))
    if include_env_vars:
        layers.append(_load_env_overrides())

    config: dict[str, Any] = {}
    for layer in layers:
        _merge_into(config, layer)

    config["_active_env"] = env or os.environ.get("CAMPAIGN_ENV", "default")
    config["_config_source"] = base_path
    return config


def get_config_value(
    path: str,
    config: dict[str, Any] | None = None,
    default: Any = None,
) -> Any:
    """Look up a dotted path such as "store.path"; `default` if any step is missing."""
    node: Any = load_config() if config is None else config
    for key in path.split("."):
        if not isinstance(node, dict) or key not in node:
            return default
        node = node[key]
    return node
