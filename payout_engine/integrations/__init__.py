"""External provider integrations: payment rails and content metrics."""
from .base import ContentStats, ProviderError, ProviderErrorType

__all__ = ["ContentStats", "ProviderError", "ProviderErrorType"]
