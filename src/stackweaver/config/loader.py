"""Settings loader: YAML file, then environment, then explicit overrides."""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import ValidationError as PydanticValidationError

from stackweaver.config.models import EngineSettings
from stackweaver.utils.errors import ConfigurationError

DEFAULT_CONFIG_FILE = "stackweaver.yaml"
ENV_PREFIX = "STACKWEAVER_"

# Environment variable suffix -> dotted settings key
ENV_KEYS = {
    "STATE_DIR": "state_dir",
    "LOG_DIR": "log_dir",
    "LOG_LEVEL": "log_level",
    "REGION": "region",
    "ACCOUNT_ID": "account_id",
    "PROFILE": "profile",
    "MAX_WORKERS": "max_workers",
    "OPERATION_TIMEOUT": "operation_timeout",
    "RETRY_MAX_ATTEMPTS": "retry.max_attempts",
    "RETRY_BASE_DELAY": "retry.base_delay",
    "RETRY_MAX_DELAY": "retry.max_delay",
}


def _set_dotted(data: Dict[str, Any], key: str, value: Any) -> None:
    parts = key.split(".")
    target = data
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def _read_file(config_path: Path) -> Dict[str, Any]:
    try:
        with open(config_path, "r") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse {config_path}: {e}")
    except OSError as e:
        raise ConfigurationError(f"Failed to read {config_path}: {e}")

    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping at the top level")
    return data


def load_settings(
    config_path: Optional[str] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> EngineSettings:
    """Load engine settings.

    Args:
        config_path: Explicit settings file; when None, ./stackweaver.yaml is used if present
        overrides: Dotted keys set by the caller (CLI flags); None values are ignored
        environ: Environment mapping, defaults to os.environ

    Returns:
        Validated EngineSettings

    Raises:
        ConfigurationError: If the file is unreadable or any value is invalid
    """
    environ = os.environ if environ is None else environ
    data: Dict[str, Any] = {}

    if config_path is not None:
        path = Path(config_path)
        if not path.exists():
            raise ConfigurationError(f"Settings file not found: {path}")
        data = _read_file(path)
    elif Path(DEFAULT_CONFIG_FILE).exists():
        data = _read_file(Path(DEFAULT_CONFIG_FILE))

    for suffix, key in ENV_KEYS.items():
        value = environ.get(ENV_PREFIX + suffix)
        if value is not None and value != "":
            _set_dotted(data, key, value)

    for key, value in (overrides or {}).items():
        if value is not None:
            _set_dotted(data, key, value)

    try:
        return EngineSettings(**data)
    except PydanticValidationError as e:
        problems = []
        for error in e.errors():
            location = ".".join(str(loc) for loc in error.get("loc", []))
            problems.append(f"{location}: {error.get('msg', 'invalid value')}")
        raise ConfigurationError(
            "Invalid settings:\n  " + "\n  ".join(problems),
            cause=e
        )
