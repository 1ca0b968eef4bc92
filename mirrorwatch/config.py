"""Configuration loading for the mirror monitor."""

import copy
import logging
import os
import re
from typing import Any

import yaml

from mirrorwatch.catalog import BUILTIN_PROFILES
from mirrorwatch.errors import ConfigError
from mirrorwatch.models import SiteProfile

logger = logging.getLogger(__name__)

_DEFAULT_CONFIG_PATH = "config/config.yaml"

DEFAULTS: dict[str, Any] = {
    "browserless": {
        "url": "https://chrome.browserless.io",
        "api_key": None,
        "timeout_seconds": 30.0,
        "min_request_interval_seconds": 1.5,
    },
    "monitoring": {
        "full_sweep_interval_seconds": 6 * 3600,
        "stale_check_interval_seconds": 3600,
        "per_site_delay_seconds": 3.0,
        "inter_alias_delay_seconds": 1.5,
        "probe_timeout_seconds": 5.0,
        "alert_threshold_seconds": 30 * 60,
        "max_aliases_per_provider": 3,
    },
    "notifier": {
        "url": None,
        "max_retries": 3,
        "queue_size": 100,
    },
    "storage": {
        "backend": "memory",
    },
    "site_list_path": "config/sites.yaml",
}


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (overrides or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: str | None = None) -> dict[str, Any]:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to config YAML. Falls back to CONFIG_PATH env var,
                     then to config/config.yaml.

    Returns:
        Configuration dictionary with defaults filled in.
    """
    path = config_path or os.environ.get("CONFIG_PATH", _DEFAULT_CONFIG_PATH)
    logger.info("Loading config from %s", path)

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigError(f"Config file {path} must contain a mapping")

    config = _merge(DEFAULTS, raw)

    # Environment variable overrides (secrets are usually injected this way)
    if os.environ.get("BROWSERLESS_URL"):
        config["browserless"]["url"] = os.environ["BROWSERLESS_URL"]
    if os.environ.get("BROWSERLESS_API_KEY"):
        config["browserless"]["api_key"] = os.environ["BROWSERLESS_API_KEY"]
    if os.environ.get("NOTIFIER_URL"):
        config["notifier"]["url"] = os.environ["NOTIFIER_URL"]
    if os.environ.get("STORAGE_BACKEND"):
        config["storage"]["backend"] = os.environ["STORAGE_BACKEND"]
    if os.environ.get("GCP_PROJECT_ID"):
        config["storage"]["project_id"] = os.environ["GCP_PROJECT_ID"]
    if os.environ.get("BIGQUERY_DATASET"):
        config["storage"]["dataset"] = os.environ["BIGQUERY_DATASET"]

    return config


def require(config: dict[str, Any], dotted_key: str) -> Any:
    """Return a required config value, e.g. ``require(cfg, "browserless.api_key")``."""
    node: Any = config
    for part in dotted_key.split("."):
        if not isinstance(node, dict) or node.get(part) in (None, ""):
            raise ConfigError(f"Missing required configuration value: {dotted_key}")
        node = node[part]
    return node


def load_sites(config: dict[str, Any]) -> list[SiteProfile]:
    """Load monitored sites from the site list file.

    Entries in the file replace built-in profiles of the same name and
    are appended otherwise. Without a site list file the built-in catalog
    is used as is.

    Args:
        config: Application configuration dict.

    Returns:
        List of SiteProfile objects in sweep order.
    """
    site_list_path = config.get("site_list_path") or DEFAULTS["site_list_path"]
    profiles = {profile.name: profile for profile in BUILTIN_PROFILES}

    if not os.path.exists(site_list_path):
        logger.info("No site list at %s, using %d built-in sites", site_list_path, len(profiles))
        return list(profiles.values())

    logger.info("Loading sites from %s", site_list_path)
    with open(site_list_path) as f:
        data = yaml.safe_load(f) or {}

    for entry in data.get("sites", []):
        name = str(entry.get("name") or "").strip().lower()
        aliases = entry.get("aliases") or []
        pattern = entry.get("domain_pattern")
        if not name or not aliases or not pattern:
            logger.warning("Skipping incomplete site entry: %s", entry)
            continue
        try:
            re.compile(pattern)
        except re.error as e:
            logger.warning("Skipping site %s with invalid domain_pattern: %s", name, e)
            continue
        profiles[name] = SiteProfile(
            name=name,
            display_name=entry.get("display_name") or name,
            query_aliases=tuple(str(a) for a in aliases),
            domain_pattern=pattern,
            description=entry.get("description", ""),
        )

    logger.info("Loaded %d sites", len(profiles))
    return list(profiles.values())
