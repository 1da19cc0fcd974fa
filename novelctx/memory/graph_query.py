"""Abstract interface for story-graph queries"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from novelctx.models import CATEGORY_ENTITY_TYPES, EntityCategory, GraphEntity

# Filter keys understood by every graph query service
FILTER_CHARACTER = "character"
FILTER_LIMIT = "limit"

RESOLVED_FORESHADOW_STATUSES = {"resolved", "paid_off", "closed"}
FINISHED_PLOTLINE_STATUSES = {"completed", "finished", "closed"}


class GraphQueryService(ABC):
    """Read access to the story graph, one category at a time"""

    @abstractmethod
    async def query_entities(
        self,
        novel_id: str,
        chapter_number: int,
        category: EntityCategory,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[GraphEntity]:
        """
        Query entities relevant to writing a chapter.

        Raises:
            GraphUnavailableError: If the graph cannot be reached
        """
        pass

    @abstractmethod
    async def is_available(self) -> bool:
        """Whether the graph can currently be reached"""
        pass

    def get_service_type(self) -> str:
        return type(self).__name__

    async def close(self):
        """Release driver resources"""
        pass


def _matches_character(entity: GraphEntity, character: str) -> bool:
    props = entity.properties
    names = {props.get("name"), props.get("character_name")}
    participants = props.get("participants") or []
    return character in names or character in participants


def matches_category(
    entity: GraphEntity,
    category: EntityCategory,
    chapter_number: int,
    filters: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Whether an entity belongs in a category's result for a chapter.

    Events and foreshadows must come from earlier chapters; world rules apply
    from the chapter they were introduced in; resolved foreshadows, finished
    plotlines and completed character arcs are excluded.
    """
    filters = filters or {}
    props = entity.properties
    chapter = entity.chapter_number
    category = EntityCategory(category)
    if entity.type != CATEGORY_ENTITY_TYPES[category]:
        return False

    if category in (EntityCategory.EVENTS, EntityCategory.FORESHADOWS):
        if chapter is None or chapter >= chapter_number:
            return False
    if category == EntityCategory.FORESHADOWS:
        if str(props.get("status", "open")).lower() in RESOLVED_FORESHADOW_STATUSES:
            return False
    elif category == EntityCategory.PLOTLINES:
        if str(props.get("status", "")).lower() in FINISHED_PLOTLINE_STATUSES:
            return False
    elif category == EntityCategory.WORLD_RULES:
        if chapter is not None and chapter > chapter_number:
            return False
    elif category == EntityCategory.CHARACTER_ARCS:
        progress, total = props.get("progress"), props.get("total_beats")
        if isinstance(progress, (int, float)) and isinstance(total, (int, float)) and progress >= total:
            return False

    character = filters.get(FILTER_CHARACTER)
    if character and category in (EntityCategory.EVENTS, EntityCategory.CHARACTER_ARCS):
        return _matches_character(entity, character)
    return True
