"""Reasoning-model interface consumed by the ReAct loop"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel


class LLMMessage(BaseModel):
    """Chat message sent to the reasoning model"""
    role: Literal["system", "user", "assistant"]
    content: str


class LLMResponse(BaseModel):
    """Completion returned by the reasoning model"""
    content: str
    model: str = ""
    usage: Optional[Dict[str, Any]] = None


class LLMProvider(ABC):
    """
    Reasoning model behind the ReAct loop.

    Implementations wrap a concrete completion API; this package never calls
    a model directly.
    """

    @abstractmethod
    async def generate(
        self,
        messages: List[LLMMessage],
        temperature: float = 0.7,
        max_tokens: Optional[int] = None,
        **kwargs
    ) -> LLMResponse:
        """
        Complete a chat

        Args:
            messages: Conversation so far, system message first
            temperature: Sampling temperature
            max_tokens: Completion length cap

        Returns:
            The model's reply
        """
        pass

    async def ask(self, prompt: str, system: Optional[str] = None, **kwargs) -> str:
        """Single-turn request returning the stripped reply text"""
        messages = []
        if system:
            messages.append(LLMMessage(role="system", content=system))
        messages.append(LLMMessage(role="user", content=prompt))
        response = await self.generate(messages, **kwargs)
        return response.content.strip()

    def get_model_name(self) -> str:
        return type(self).__name__
