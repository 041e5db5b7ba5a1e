"""
Configuration package for the exception rule engine.

This package contains modules for managing engine settings,
environment variables, and logging configuration.
"""

from exception_rules.config.settings import Settings

# Export settings singleton for package-wide defaults
settings = Settings()

__all__ = ["settings", "Settings"]
