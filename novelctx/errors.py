"""Error taxonomy for context assembly"""

from typing import Optional


class ContextError(RuntimeError):
    """Base error for context assembly failures the caller must handle."""


class GraphUnavailableError(ContextError):
    """The graph query service could not be reached on a cache miss."""

    def __init__(
        self,
        message: str,
        novel_id: Optional[str] = None,
        chapter_number: Optional[int] = None,
        category: Optional[str] = None
    ):
        super().__init__(message)
        self.novel_id = novel_id
        self.chapter_number = chapter_number
        self.category = category


class BudgetExceededError(ContextError):
    """Required sections alone exceed the total input budget."""

    def __init__(self, required_tokens: int, total_budget: int, sections: Optional[dict] = None):
        super().__init__(
            f"Required context needs {required_tokens} tokens but the input budget is {total_budget}"
        )
        self.required_tokens = required_tokens
        self.total_budget = total_budget
        self.sections = sections or {}


class InvalidKeyFormatError(ValueError):
    """A cache key string could not be parsed. Internal to the cache."""
