"""
Configuration loading and management utilities.

This module loads and validates approval-system configuration from YAML
files with environment variable substitution support.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import ValidationError

from ..exceptions import ConfigurationError
from .models import HITLConfig

_ENV_PATTERN = re.compile(r'\$\{([^}:]+)(?::([^}]*))?\}')


def substitute_env_vars(data: Any) -> Any:
    """
    Recursively substitute environment variables in configuration data.

    Supports the format ${VAR_NAME} or ${VAR_NAME:default_value}.

    Args:
        data: Configuration data (dict, list, str, or other)

    Returns:
        Configuration data with environment variables substituted
    """
    if isinstance(data, dict):
        return {key: substitute_env_vars(value) for key, value in data.items()}
    elif isinstance(data, list):
        return [substitute_env_vars(item) for item in data]
    elif isinstance(data, str):
        def replace_var(match):
            var_name = match.group(1)
            default_value = match.group(2) if match.group(2) is not None else ""
            return os.getenv(var_name, default_value)

        return _ENV_PATTERN.sub(replace_var, data)
    else:
        return data


def load_yaml_config(config_path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load YAML configuration file with environment variable substitution.

    Raises:
        ConfigurationError: If file cannot be loaded or parsed
    """
    config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            raw_config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse YAML configuration: {e}", original_error=e)
    except OSError as e:
        raise ConfigurationError(f"Failed to read configuration file: {e}", original_error=e)

    if raw_config is None:
        raise ConfigurationError("Configuration file is empty")

    if not isinstance(raw_config, dict):
        raise ConfigurationError(
            f"Failed to parse YAML configuration: expected a mapping, got {type(raw_config).__name__}"
        )

    return substitute_env_vars(raw_config)


def _format_validation_error(error: ValidationError) -> str:
    error_details = []
    for detail in error.errors():
        loc = " -> ".join(str(x) for x in detail['loc'])
        error_details.append(f"{loc}: {detail['msg']}")
    return "Configuration validation failed:\n" + "\n".join(error_details)


def load_hitl_config(config_path: Union[str, Path]) -> HITLConfig:
    """
    Load and validate approval-system configuration from a YAML file.

    The file may either hold the settings at the top level or under a
    ``hitl`` key.

    Raises:
        ConfigurationError: If configuration is invalid
    """
    config_data = load_yaml_config(config_path)
    if isinstance(config_data.get("hitl"), dict):
        config_data = config_data["hitl"]

    try:
        return HITLConfig(**config_data)
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(e), original_error=e)


def save_hitl_config(config: HITLConfig, config_path: Union[str, Path]) -> None:
    """
    Save approval-system configuration to a YAML file.

    Raises:
        ConfigurationError: If configuration cannot be saved
    """
    config_path = Path(config_path)

    try:
        config_path.parent.mkdir(parents=True, exist_ok=True)

        config_dict = config.model_dump(exclude_none=True, mode='json')

        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(
                config_dict,
                f,
                default_flow_style=False,
                sort_keys=False,
                indent=2
            )
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Failed to save configuration: {e}", original_error=e)


def get_config_from_env() -> Optional[HITLConfig]:
    """
    Create configuration from ``HITL_*`` environment variables.

    Returns:
        HITLConfig instance if any HITL variable is set, None otherwise

    Raises:
        ConfigurationError: If a variable holds an invalid value
    """
    env_map = {
        "HITL_CONFIDENCE_THRESHOLD": "confidence_threshold",
        "HITL_APPROVAL_TIMEOUT_MS": "approval_timeout_ms",
        "HITL_TIMEOUT_STRATEGY": "timeout_strategy",
        "HITL_RETRY_ATTEMPTS": "retry_attempts",
        "HITL_HOOK_TIMEOUT_SECONDS": "hook_timeout_seconds",
    }

    config_data: Dict[str, Any] = {}
    for env_var, field_name in env_map.items():
        value = os.getenv(env_var)
        if value:
            config_data[field_name] = value

    logging_config = {}
    if os.getenv("HITL_LOG_LEVEL"):
        logging_config["level"] = os.getenv("HITL_LOG_LEVEL")
    if os.getenv("HITL_LOG_FILE"):
        logging_config["log_file"] = os.getenv("HITL_LOG_FILE")
    if os.getenv("HITL_LOG_STRUCTURED"):
        logging_config["structured"] = os.getenv("HITL_LOG_STRUCTURED").lower() in ("1", "true", "yes")

    if logging_config:
        config_data["logging"] = logging_config

    if not config_data:
        return None

    try:
        return HITLConfig(**config_data)
    except ValidationError as e:
        raise ConfigurationError(_format_validation_error(e), original_error=e)
