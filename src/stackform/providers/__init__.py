"""Built-in provider adapters."""

from stackform.providers.mock import MockProvider

__all__ = ["MockProvider"]
