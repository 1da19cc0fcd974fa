"""LLM provider interface"""

from .provider import LLMProvider, LLMMessage, LLMResponse

__all__ = [
    "LLMProvider",
    "LLMMessage",
    "LLMResponse",
]
