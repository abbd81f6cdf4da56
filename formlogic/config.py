"""
Configuration module for formlogic.

Handles environment variables and default settings.
"""

import os
from dataclasses import dataclass


@dataclass
class FormLogicConfig:
    """Configuration settings for formlogic."""

    # Async / remote conditions
    default_debounce_ms: int = 300
    default_cache_duration_ms: int = 30000

    # Expression parsing
    ast_cache_max_size: int = 1000

    # Transport
    http_timeout_s: float = 10.0

    # Derivations
    max_derivation_passes: int = 10

    # Diagnostics
    debug: bool = False

    @classmethod
    def from_env(cls) -> "FormLogicConfig":
        """
        Create configuration from environment variables.

        If an environment variable is not set, uses the class field default value.
        """
        _defaults = cls()

        return cls(
            default_debounce_ms=int(os.getenv("FORMLOGIC_DEBOUNCE_MS", str(_defaults.default_debounce_ms))),
            default_cache_duration_ms=int(
                os.getenv("FORMLOGIC_CACHE_DURATION_MS", str(_defaults.default_cache_duration_ms))
            ),
            ast_cache_max_size=int(os.getenv("FORMLOGIC_AST_CACHE_SIZE", str(_defaults.ast_cache_max_size))),
            http_timeout_s=float(os.getenv("FORMLOGIC_HTTP_TIMEOUT", str(_defaults.http_timeout_s))),
            max_derivation_passes=int(
                os.getenv("FORMLOGIC_MAX_DERIVATION_PASSES", str(_defaults.max_derivation_passes))
            ),
            debug=os.getenv("FORMLOGIC_DEBUG", "1" if _defaults.debug else "0") == "1",
        )


config = FormLogicConfig.from_env()


def get_config() -> FormLogicConfig:
    """Get the current configuration."""
    return config


def update_config(**kwargs) -> FormLogicConfig:
    """Update configuration settings."""
    global config
    for key, value in kwargs.items():
        if hasattr(config, key):
            setattr(config, key, value)
    return config
