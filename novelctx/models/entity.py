"""Graph entity models retrieved from the story graph"""

import math
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Type

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class EntityType(str, Enum):
    """Types of story-graph entities"""
    EVENT = "event"
    CHARACTER = "character"
    LOCATION = "location"
    FORESHADOW = "foreshadow"
    PLOTLINE = "plotline"
    WORLD_RULE = "world_rule"


class EntityCategory(str, Enum):
    """Context sections fetched from the graph"""
    EVENTS = "events"
    FORESHADOWS = "foreshadows"
    PLOTLINES = "plotlines"
    WORLD_RULES = "world_rules"
    CHARACTER_ARCS = "character_arcs"


# Entity type a graph query for each category is expected to return
CATEGORY_ENTITY_TYPES: Dict[EntityCategory, EntityType] = {
    EntityCategory.EVENTS: EntityType.EVENT,
    EntityCategory.FORESHADOWS: EntityType.FORESHADOW,
    EntityCategory.PLOTLINES: EntityType.PLOTLINE,
    EntityCategory.WORLD_RULES: EntityType.WORLD_RULE,
    EntityCategory.CHARACTER_ARCS: EntityType.CHARACTER,
}


class _EntityProperties(BaseModel):
    """Known fields of an entity type; unknown keys are kept as extension fields"""
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    description: Optional[str] = None


class EventProperties(_EntityProperties):
    participants: List[str] = Field(default_factory=list)
    location: Optional[str] = None
    importance: Optional[Any] = None
    caused_by: Optional[str] = None


class CharacterProperties(_EntityProperties):
    character_name: Optional[str] = None
    role: Optional[str] = None
    pending_beat: Optional[str] = None
    next_goal: Optional[str] = None
    pov: bool = False


class LocationProperties(_EntityProperties):
    region: Optional[str] = None


class ForeshadowProperties(_EntityProperties):
    planted_at: Optional[int] = None
    status: str = "open"
    urgency: Optional[float] = None
    suggested_payoff_chapter: Optional[int] = None


class PlotlineProperties(_EntityProperties):
    status: Optional[str] = None
    progress: Optional[float] = None
    idle_duration: Optional[int] = None


class WorldRuleProperties(_EntityProperties):
    constraint: Optional[str] = None
    scope: Optional[str] = None


PROPERTY_SCHEMAS: Dict[EntityType, Type[_EntityProperties]] = {
    EntityType.EVENT: EventProperties,
    EntityType.CHARACTER: CharacterProperties,
    EntityType.LOCATION: LocationProperties,
    EntityType.FORESHADOW: ForeshadowProperties,
    EntityType.PLOTLINE: PlotlineProperties,
    EntityType.WORLD_RULE: WorldRuleProperties,
}


def freeze_properties(value: Any) -> Any:
    """Read-only view of a property value: mappings become proxies, lists become tuples"""
    if isinstance(value, Mapping):
        return MappingProxyType({key: freeze_properties(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(freeze_properties(item) for item in value)
    return value


def thaw_properties(value: Any) -> Any:
    """Plain dict/list copy of a frozen property value"""
    if isinstance(value, Mapping):
        return {key: thaw_properties(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [thaw_properties(item) for item in value]
    return value


class GraphEntity(BaseModel):
    """A unit of retrieved story knowledge. Immutable once constructed, properties included."""
    model_config = ConfigDict(frozen=True)

    type: EntityType
    id: str
    properties: Mapping[str, Any] = Field(default_factory=dict, validate_default=True)
    chapter_number: Optional[int] = None
    relevance_score: float = 0.0
    source: str = ""

    @field_validator("properties", mode="after")
    @classmethod
    def _freeze(cls, value: Mapping[str, Any]) -> Mapping[str, Any]:
        return freeze_properties(value)

    @field_serializer("properties")
    def _serialize_properties(self, value: Mapping[str, Any]) -> Dict[str, Any]:
        return thaw_properties(value)

    def properties_dict(self) -> Dict[str, Any]:
        """Mutable copy of the properties"""
        return thaw_properties(self.properties)

    def typed_properties(self) -> _EntityProperties:
        """Validate the generic property mapping into this type's shape"""
        return PROPERTY_SCHEMAS[self.type].model_validate(self.properties_dict())

    def ranking_key(self) -> Tuple[float, float, str]:
        """Sort key: relevance desc, chapter desc (unknown chapter last), id asc"""
        chapter = self.chapter_number if self.chapter_number is not None else -math.inf
        return (-self.relevance_score, -chapter, self.id)

    @property
    def display_name(self) -> str:
        for key in ("title", "name", "character_name", "label"):
            value = self.properties.get(key)
            if value:
                return str(value)
        return self.id

    @property
    def description(self) -> Optional[str]:
        value = self.properties.get("description")
        return value if isinstance(value, str) else None

    def with_description(self, description: str) -> "GraphEntity":
        """Return a copy carrying a replaced description"""
        properties = self.properties_dict()
        properties["description"] = description
        return self.model_copy(update={"properties": freeze_properties(properties)})

    def to_prompt_line(self) -> str:
        """One-line rendering used in prompts and for token accounting"""
        line = f"[{self.type.value}]"
        if self.chapter_number is not None:
            line += f" ch.{self.chapter_number}"
        line += f" {self.display_name}"
        if self.description:
            line += f": {self.description}"
        return line


def rank_entities(entities: List[GraphEntity]) -> List[GraphEntity]:
    """Order entities by relevance, then recency, then id"""
    return sorted(entities, key=lambda e: e.ranking_key())
