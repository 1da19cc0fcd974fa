"""Pydantic schemas for novelctx data structures"""

from .entity import (
    EntityType,
    EntityCategory,
    GraphEntity,
    CATEGORY_ENTITY_TYPES,
    EventProperties,
    CharacterProperties,
    LocationProperties,
    ForeshadowProperties,
    PlotlineProperties,
    WorldRuleProperties,
    rank_entities,
)
from .budget import (
    BudgetPolicy,
    CountPolicy,
    TokenPolicy,
    estimate_tokens,
    TRUNCATION_MARKER,
)
from .context import (
    WritingContext,
    ChapterText,
    ChapterSummary,
    BudgetReport,
    ShedRecord,
)
from .trace import AgentThought, AgentTrace

__all__ = [
    # Entities
    "EntityType",
    "EntityCategory",
    "GraphEntity",
    "CATEGORY_ENTITY_TYPES",
    "EventProperties",
    "CharacterProperties",
    "LocationProperties",
    "ForeshadowProperties",
    "PlotlineProperties",
    "WorldRuleProperties",
    "rank_entities",
    # Budget
    "BudgetPolicy",
    "CountPolicy",
    "TokenPolicy",
    "estimate_tokens",
    "TRUNCATION_MARKER",
    # Context
    "WritingContext",
    "ChapterText",
    "ChapterSummary",
    "BudgetReport",
    "ShedRecord",
    # Agent trace
    "AgentThought",
    "AgentTrace",
]
