"""Configuration module for yardcheck.

This module contains configuration classes for verification runs.
"""

from yardcheck.config.config import (
    DEFAULT_INSTANCES,
    NESTED_INSTANCE,
    ConfigError,
    HarnessConfig,
    Instance,
    TrustPolicy,
    parse_duration,
    parse_trust_policy,
)


__all__ = [
    "DEFAULT_INSTANCES",
    "NESTED_INSTANCE",
    "ConfigError",
    "HarnessConfig",
    "Instance",
    "TrustPolicy",
    "parse_duration",
    "parse_trust_policy",
]
