"""Provider implementations."""

from .anthropic import AnthropicProvider
from .base import Provider
from .gemini import GeminiProvider
from .local import LocalProvider
from .mock import MockProvider
from .openai import OpenAIProvider

__all__ = [
    "AnthropicProvider",
    "GeminiProvider",
    "LocalProvider",
    "MockProvider",
    "OpenAIProvider",
    "Provider",
]
