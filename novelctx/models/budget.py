"""Count and token budget policies for writing context"""

import logging
import re
from typing import Optional

from pydantic import BaseModel, Field

from .entity import EntityCategory

logger = logging.getLogger(__name__)

# CJK Unified Ideographs, Extension A and Compatibility Ideographs
CJK_PATTERN = re.compile(r"[\u3400-\u4dbf\u4e00-\u9fff\uf900-\ufaff]")

TRUNCATION_MARKER = "\n...[truncated]"

# Weights in tenths of a token so the estimate stays exact integer arithmetic
CJK_WEIGHT_TENTHS = 15
WORD_WEIGHT_TENTHS = 13
SAFETY_MARGIN = 0.9


def estimate_tokens(text: Optional[str]) -> int:
    """
    Estimate the prompt token cost of a text.

    CJK ideographs count 1.5 tokens each; every remaining whitespace-delimited
    token counts 1.3. The result is rounded down.

    Args:
        text: Text to estimate (None and "" yield 0)

    Returns:
        Estimated token count
    """
    if not text:
        return 0

    cjk_chars = len(CJK_PATTERN.findall(text))
    words = len(CJK_PATTERN.sub(" ", text).split())
    return (cjk_chars * CJK_WEIGHT_TENTHS + words * WORD_WEIGHT_TENTHS) // 10


class CountPolicy(BaseModel):
    """Maximum item counts per context category"""
    max_events: int = Field(default=8, ge=0)
    max_foreshadows: int = Field(default=6, ge=0)
    max_plotlines: int = Field(default=3, ge=0)
    max_world_rules: int = Field(default=5, ge=0)
    max_character_arcs: int = Field(default=3, ge=0)
    max_full_chapters: int = Field(default=2, ge=0)
    max_summary_chapters: int = Field(default=20, ge=0)
    min_relevance: float = Field(default=0.35, description="Logged when trimming drops entities above it")


class TokenPolicy(BaseModel):
    """Token ceilings per prompt section plus the total input ceiling"""
    max_core_settings: int = Field(default=8000, ge=0)
    max_volume_plan: int = Field(default=5000, ge=0)
    max_event_description: int = Field(default=400, ge=0)
    max_summaries: int = Field(default=12000, ge=0)
    max_user_adjustment: int = Field(default=2000, ge=0)
    # Only for content that is not one of the recent full chapters
    max_chapter_content: int = Field(default=8000, ge=0)
    total_input_budget: int = Field(default=100000, ge=0)
    enable_smart_truncation: bool = True


class BudgetPolicy(BaseModel):
    """Two-tier budget: item counts and token ceilings"""
    counts: CountPolicy = Field(default_factory=CountPolicy)
    tokens: TokenPolicy = Field(default_factory=TokenPolicy)

    def estimate_tokens(self, text: Optional[str]) -> int:
        """Estimate tokens (see module-level estimate_tokens)"""
        return estimate_tokens(text)

    def truncate(self, text: Optional[str], max_tokens: int) -> Optional[str]:
        """
        Cut text down to roughly max_tokens, keeping its opening.

        The head is sliced proportionally with a 10% safety margin and a
        truncation marker is appended. Text that already fits, empty text and
        disabled smart truncation return the input unchanged.

        Args:
            text: Text to truncate
            max_tokens: Token ceiling for the result

        Returns:
            The input or a shortened prefix of it
        """
        if not self.tokens.enable_smart_truncation or not text:
            return text

        estimated = estimate_tokens(text)
        if estimated <= max_tokens:
            return text

        ratio = max(0, max_tokens) / estimated
        target_length = max(0, int(len(text) * ratio * SAFETY_MARGIN))
        if target_length >= len(text):
            return text

        head = text[:target_length]
        while head and estimate_tokens(head + TRUNCATION_MARKER) > max_tokens:
            head = head[:int(len(head) * SAFETY_MARGIN)]

        result = head + TRUNCATION_MARKER
        if len(result) >= len(text) or estimate_tokens(result) > max_tokens:
            result = head
        logger.debug(f"Truncated text from {estimated} to {estimate_tokens(result)} tokens")
        return result

    def count_limit(self, category: EntityCategory) -> int:
        """Maximum number of entities kept for a category"""
        limits = {
            EntityCategory.EVENTS: self.counts.max_events,
            EntityCategory.FORESHADOWS: self.counts.max_foreshadows,
            EntityCategory.PLOTLINES: self.counts.max_plotlines,
            EntityCategory.WORLD_RULES: self.counts.max_world_rules,
            EntityCategory.CHARACTER_ARCS: self.counts.max_character_arcs,
        }
        return limits[EntityCategory(category)]

    def core_settings_ceiling(self) -> int:
        """Ceiling for the core settings section, never above the total budget"""
        return min(self.tokens.max_core_settings, self.tokens.total_input_budget)

    def section_ceiling_sum(self) -> int:
        """Sum of the text section ceilings used together in one prompt"""
        return (
            self.tokens.max_core_settings
            + self.tokens.max_volume_plan
            + self.tokens.max_summaries
            + self.tokens.max_user_adjustment
        )
