"""Caching, graph query and chapter storage interfaces"""

from .query_cache import QueryCache, CacheKey, CacheStats, DEFAULT_TTL_SECONDS
from .graph_query import GraphQueryService, FILTER_CHARACTER, FILTER_LIMIT, matches_category
from .in_memory_graph import InMemoryGraphQueryService
from .neo4j_graph import Neo4jGraphQueryService
from .chapter_store import ChapterStore, LocalChapterStore

__all__ = [
    "QueryCache",
    "CacheKey",
    "CacheStats",
    "DEFAULT_TTL_SECONDS",
    "GraphQueryService",
    "FILTER_CHARACTER",
    "FILTER_LIMIT",
    "matches_category",
    "InMemoryGraphQueryService",
    "Neo4jGraphQueryService",
    "ChapterStore",
    "LocalChapterStore",
]
