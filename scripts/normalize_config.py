import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

RULES_FILENAME = '.normalize.yaml'

DEFAULTS: Dict[str, Any] = {
    "suffix": "_norm",
    "exclude_patterns": [],
    "workers": 4,
    "level": -1,
}

ENV_KEYS = {
    "suffix": "PNG_NORMALIZE_SUFFIX",
    "workers": "PNG_NORMALIZE_WORKERS",
    "level": "PNG_NORMALIZE_LEVEL",
}

logger = logging.getLogger(__name__)


def positive_int(value) -> int:
    try:
        num = float(value)
        if not num.is_integer() or num < 1:
            raise ValueError("must be a positive whole number")
        return int(num)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid worker count: {value}. Must be a positive whole number.") from e


def compression_level(value) -> int:
    try:
        level = int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"Invalid compression level: {value}") from e
    if not -1 <= level <= 9:
        raise ValueError(f"Invalid compression level: {value}. Must be between -1 and 9.")
    return level


def _validated(config: Dict[str, Any]) -> Dict[str, Any]:
    config["workers"] = positive_int(config["workers"])
    config["level"] = compression_level(config["level"])
    suffix = str(config["suffix"])
    if not suffix or '/' in suffix or os.sep in suffix:
        raise ValueError(f"Invalid output suffix: {suffix!r}")
    config["suffix"] = suffix
    patterns = config["exclude_patterns"] or []
    config["exclude_patterns"] = [patterns] if isinstance(patterns, str) else list(patterns)
    return config


def load_env_config(dotenv_path: Optional[str] = None) -> Dict[str, Any]:
    """Defaults overlaid with PNG_NORMALIZE_* environment variables (and a .env file)."""
    load_dotenv(dotenv_path)
    config = dict(DEFAULTS)
    for key, env_name in ENV_KEYS.items():
        if (value := os.getenv(env_name)) is not None:
            config[key] = value
    return _validated(config)


def load_rules(root: Path) -> Dict[str, Any]:
    rules_path = Path(root) / RULES_FILENAME
    if not rules_path.is_file():
        return {}
    try:
        with open(rules_path, 'r', encoding='utf-8') as f:
            rules = yaml.safe_load(f) or {}
    except (yaml.YAMLError, IOError) as e:
        logger.error(f"Failed to load rules from {rules_path}: {str(e)}")
        return {}
    if not isinstance(rules, dict):
        logger.warning(f"Ignoring {rules_path}: expected a mapping, got {type(rules).__name__}")
        return {}
    unknown = set(rules) - set(DEFAULTS)
    if unknown:
        logger.warning(f"Ignoring unknown keys in {rules_path}: {', '.join(sorted(unknown))}")
    return {k: v for k, v in rules.items() if k in DEFAULTS}


def merge_config(base: Dict[str, Any], *overrides: Dict[str, Any]) -> Dict[str, Any]:
    config = dict(base)
    for override in overrides:
        config.update({k: v for k, v in override.items() if v is not None})
    return _validated(config)
