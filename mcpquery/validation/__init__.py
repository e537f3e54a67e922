"""
mcpquery validation module.

This module provides configuration validation and schema enforcement.
"""

from mcpquery.validation.config import Config, ConfigError, ServerDescriptor

__all__ = ["Config", "ConfigError", "ServerDescriptor"]
