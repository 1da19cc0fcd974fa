"""In-memory implementation of GraphQueryService"""

import json
import logging
from collections import defaultdict
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from novelctx.memory.graph_query import FILTER_LIMIT, GraphQueryService, matches_category
from novelctx.models import EntityCategory, GraphEntity, rank_entities

logger = logging.getLogger(__name__)


class InMemoryGraphQueryService(GraphQueryService):
    """In-memory story graph, used for tests and offline fixtures"""

    def __init__(self):
        """Initialize empty graph"""
        self.entities: Dict[str, List[GraphEntity]] = defaultdict(list)  # novel_id -> entities
        self.query_count = 0

    @classmethod
    def from_fixture(cls, path: Union[str, Path]) -> "InMemoryGraphQueryService":
        """
        Load a graph from a JSON file mapping novel ids to entity lists

        Args:
            path: Fixture file path

        Returns:
            Populated service
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Graph fixture not found: {path}")

        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)

        service = cls()
        for novel_id, items in data.items():
            service.add_entities(novel_id, [GraphEntity.model_validate(item) for item in items])
        logger.info(f"Loaded graph fixture {path} ({len(data)} novel(s))")
        return service

    def add_entity(self, novel_id: Any, entity: GraphEntity) -> GraphEntity:
        """Add an entity, replacing any entity with the same id"""
        novel_id = str(novel_id)
        self.entities[novel_id] = [e for e in self.entities[novel_id] if e.id != entity.id]
        self.entities[novel_id].append(entity)
        logger.debug(f"Added {entity.type.value} {entity.id} to novel {novel_id}")
        return entity

    def add_entities(self, novel_id: Any, entities: List[GraphEntity]):
        for entity in entities:
            self.add_entity(novel_id, entity)

    def delete_chapter_entities(self, novel_id: Any, chapter_number: int) -> int:
        """Remove all entities recorded for a chapter (used when a chapter is rewritten)"""
        novel_id = str(novel_id)
        before = len(self.entities[novel_id])
        self.entities[novel_id] = [e for e in self.entities[novel_id] if e.chapter_number != chapter_number]
        return before - len(self.entities[novel_id])

    def clear(self, novel_id: Optional[Any] = None):
        """Clear one novel or the whole graph"""
        if novel_id is None:
            self.entities.clear()
        else:
            self.entities.pop(str(novel_id), None)

    async def query_entities(
        self,
        novel_id: str,
        chapter_number: int,
        category: EntityCategory,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[GraphEntity]:
        """Query entities, highest relevance first"""
        self.query_count += 1
        filters = filters or {}
        results = rank_entities([
            entity for entity in self.entities.get(str(novel_id), [])
            if matches_category(entity, category, chapter_number, filters)
        ])

        limit = filters.get(FILTER_LIMIT)
        if limit is not None:
            results = results[:int(limit)]

        logger.debug(
            f"Graph query {EntityCategory(category).value}: novel={novel_id}, chapter={chapter_number}, "
            f"results={len(results)}"
        )
        return results

    async def is_available(self) -> bool:
        return True
