"""Generation provider clients."""

from .client import ChatCompletionsClient

__all__ = ["ChatCompletionsClient"]
