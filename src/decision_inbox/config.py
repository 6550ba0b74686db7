"""YAML configuration loading for the Decision Inbox.

Each CLI invocation is a short-lived process, so the configuration is read
once and cached for the life of the process. Edit the file and rerun the
command to pick up changes.

The file location comes from DECISION_INBOX_CONFIG_PATH, falling back to
config/config.yaml relative to the working directory.

Usage:
    from decision_inbox.config import get_config

    config = get_config()
    timeout = config.classifier.timeout_seconds
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from decision_inbox.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from decision_inbox.core.errors import ConfigLoadError, ConfigValidationError
from decision_inbox.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV_VAR = "DECISION_INBOX_CONFIG_PATH"

_cached: AppConfig | None = None


def config_path() -> Path:
    """Where the configuration is read from when no path is given."""
    return Path(os.environ.get(CONFIG_PATH_ENV_VAR) or DEFAULT_CONFIG_PATH)


def _read_mapping(path: Path) -> dict[str, Any]:
    """Parse the YAML file into a dict. An empty file means all defaults.

    Raises:
        ConfigLoadError: Missing file, unreadable YAML or a non-mapping document
    """
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Copy config/config.yaml.example to {path} or set {CONFIG_PATH_ENV_VAR}."
        ) from e
    except OSError as e:
        raise ConfigLoadError(f"Cannot read configuration file {path}: {e}") from e

    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Invalid YAML in {path}:\n{e}") from e

    if document is None:
        return {}
    if not isinstance(document, dict):
        raise ConfigLoadError(
            f"Configuration in {path} must be a YAML mapping of sections, "
            f"not a {type(document).__name__}"
        )
    return document


def _describe_errors(error: ValidationError) -> str:
    """One line per invalid field, named by its dotted path."""
    lines = []
    for detail in error.errors():
        where = ".".join(str(part) for part in detail["loc"]) or "(root)"
        lines.append(f"  - {where}: {detail['msg']}")
    return "\n".join(lines)


def load_config(path: Path | None = None) -> AppConfig:
    """Read and validate a configuration file, bypassing the cache.

    Raises:
        ConfigLoadError: If the file cannot be read or parsed
        ConfigValidationError: If a value is out of range or the schema is too new
    """
    path = path or config_path()
    data = _read_mapping(path)

    try:
        config = AppConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Invalid configuration in {path}:\n{_describe_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"{path} declares schema_version {config.schema_version}, which is newer than "
            f"this release understands ({CURRENT_SCHEMA_VERSION}). Upgrade decision-inbox."
        )

    logger.info(
        "config_loaded",
        path=str(path),
        classifier_model=config.classifier.model,
        extra_keywords=len(config.precheck.extra_action_keywords),
    )
    return config


def get_config() -> AppConfig:
    """Return the process-wide configuration, loading it on first use."""
    global _cached
    if _cached is None:
        _cached = load_config()
    return _cached


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Check a configuration file without caching it.

    Returns:
        (is_valid, human-readable summary or error)
    """
    try:
        config = load_config(path)
    except ConfigLoadError as e:
        return False, f"Load error: {e}"
    except ConfigValidationError as e:
        return False, f"Validation error: {e}"

    summary = [
        f"Configuration valid (schema version {config.schema_version})",
        f"  - classifier model: {config.classifier.model}",
        f"  - classifier timeout: {config.classifier.timeout_seconds}s",
        f"  - extra action keywords: {len(config.precheck.extra_action_keywords)}",
        f"  - database: {config.database.path}",
    ]
    return True, "\n".join(summary)


def reset_config() -> None:
    """Drop the cached configuration (tests switch config files between cases)."""
    global _cached
    _cached = None
