"""Neo4j implementation of GraphQueryService"""

import json
import logging
from typing import Any, Dict, List, Optional

from neo4j import AsyncDriver, AsyncGraphDatabase, AsyncSession
from neo4j.exceptions import ServiceUnavailable, SessionExpired

from novelctx.errors import GraphUnavailableError
from novelctx.memory.graph_query import FILTER_LIMIT, GraphQueryService, matches_category
from novelctx.models import CATEGORY_ENTITY_TYPES, EntityCategory, EntityType, GraphEntity

logger = logging.getLogger(__name__)

# Chapter window pushed down to the database; finer filters run on the results
CHAPTER_CLAUSES: Dict[EntityCategory, str] = {
    EntityCategory.EVENTS: "n.chapter_number < $chapter_number",
    EntityCategory.FORESHADOWS: "n.chapter_number < $chapter_number",
    EntityCategory.WORLD_RULES: "n.chapter_number IS NULL OR n.chapter_number <= $chapter_number",
    EntityCategory.PLOTLINES: "true",
    EntityCategory.CHARACTER_ARCS: "true",
}


class Neo4jGraphQueryService(GraphQueryService):
    """Neo4j-backed story graph"""

    def __init__(
        self,
        uri: str = "bolt://localhost:7687",
        user: str = "neo4j",
        password: str = "password",
        database: str = "neo4j"
    ):
        """
        Initialize Neo4j driver

        Args:
            uri: Neo4j connection URI (bolt://localhost:7687)
            user: Neo4j username
            password: Neo4j password
            database: Database name (default: neo4j)
        """
        self.uri = uri
        self.user = user
        self.database = database
        self.driver: Optional[AsyncDriver] = AsyncGraphDatabase.driver(
            uri, auth=(user, password)
        )

    async def close(self):
        """Close the Neo4j driver connection"""
        if self.driver:
            await self.driver.close()
            self.driver = None

    async def _get_session(self) -> AsyncSession:
        """Get an async session"""
        if self.driver is None:
            raise GraphUnavailableError("Neo4j driver is closed")
        return self.driver.session(database=self.database)

    @staticmethod
    def _label(entity_type: EntityType) -> str:
        return entity_type.value.upper()

    @staticmethod
    def _to_entity(node_data: Dict[str, Any]) -> GraphEntity:
        properties = node_data.get("properties") or "{}"
        return GraphEntity(
            type=EntityType(node_data["type"]),
            id=node_data["id"],
            properties=json.loads(properties) if isinstance(properties, str) else dict(properties),
            chapter_number=node_data.get("chapter_number"),
            relevance_score=node_data.get("relevance_score") or 0.0,
            source=node_data.get("source") or "neo4j"
        )

    async def query_entities(
        self,
        novel_id: str,
        chapter_number: int,
        category: EntityCategory,
        filters: Optional[Dict[str, Any]] = None
    ) -> List[GraphEntity]:
        """Query a category's nodes for a novel, highest relevance first"""
        category = EntityCategory(category)
        filters = filters or {}
        label = self._label(CATEGORY_ENTITY_TYPES[category])
        query = f"""
        MATCH (n:{label} {{novel_id: $novel_id}})
        WHERE {CHAPTER_CLAUSES[category]}
        RETURN n
        ORDER BY n.relevance_score DESC
        """

        try:
            async with await self._get_session() as session:
                result = await session.run(
                    query,
                    novel_id=str(novel_id),
                    chapter_number=chapter_number
                )
                entities = [self._to_entity(dict(record["n"])) async for record in result]
        except (ServiceUnavailable, SessionExpired) as e:
            raise GraphUnavailableError(
                f"Neo4j unavailable at {self.uri}: {e}",
                novel_id=str(novel_id),
                chapter_number=chapter_number,
                category=category.value
            ) from e

        results = [e for e in entities if matches_category(e, category, chapter_number, filters)]
        limit = filters.get(FILTER_LIMIT)
        if limit is not None:
            results = results[:int(limit)]
        logger.debug(f"Neo4j query {category.value}: novel={novel_id}, chapter={chapter_number}, results={len(results)}")
        return results

    async def upsert_entity(self, novel_id: Any, entity: GraphEntity) -> GraphEntity:
        """Create or replace an entity node"""
        label = self._label(entity.type)
        query = f"""
        MERGE (n:{label} {{novel_id: $novel_id, id: $id}})
        SET n.type = $type,
            n.properties = $properties,
            n.chapter_number = $chapter_number,
            n.relevance_score = $relevance_score,
            n.source = $source
        RETURN n
        """
        try:
            async with await self._get_session() as session:
                await session.run(
                    query,
                    novel_id=str(novel_id),
                    id=entity.id,
                    type=entity.type.value,
                    properties=json.dumps(entity.properties_dict(), ensure_ascii=False),
                    chapter_number=entity.chapter_number,
                    relevance_score=entity.relevance_score,
                    source=entity.source
                )
        except (ServiceUnavailable, SessionExpired) as e:
            raise GraphUnavailableError(f"Neo4j unavailable at {self.uri}: {e}", novel_id=str(novel_id)) from e
        logger.debug(f"Upserted {entity.type.value} {entity.id} for novel {novel_id}")
        return entity

    async def is_available(self) -> bool:
        if self.driver is None:
            return False
        try:
            await self.driver.verify_connectivity()
            return True
        except (ServiceUnavailable, SessionExpired) as e:
            logger.warning(f"Neo4j connectivity check failed: {e}")
            return False
