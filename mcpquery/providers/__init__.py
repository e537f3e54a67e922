"""
mcpquery providers module.

This module provides abstractions for various LLM providers.
"""

from mcpquery.providers.base import Provider, ProviderFactory, ProviderResponse

__all__ = ["Provider", "ProviderFactory", "ProviderResponse"]
