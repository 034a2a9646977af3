"""
hitlflow configuration system.

Pydantic models and utilities for loading and validating approval-system
configuration from YAML files with environment variable support.
"""

from ..exceptions import ConfigurationError
from .loader import (
    get_config_from_env,
    load_hitl_config,
    load_yaml_config,
    save_hitl_config,
    substitute_env_vars,
)
from .models import (
    ConfidenceWeights,
    HITLConfig,
    LoggingSettings,
    RiskWeights,
)

__all__ = [
    # Models
    "HITLConfig",
    "ConfidenceWeights",
    "RiskWeights",
    "LoggingSettings",
    # Loader functions
    "load_hitl_config",
    "save_hitl_config",
    "load_yaml_config",
    "get_config_from_env",
    "substitute_env_vars",
    "ConfigurationError",
]
