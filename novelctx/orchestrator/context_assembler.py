"""Context Assembler - builds budgeted writing contexts from cached graph queries"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from novelctx.errors import BudgetExceededError, GraphUnavailableError
from novelctx.memory import (
    ChapterStore,
    FILTER_CHARACTER,
    FILTER_LIMIT,
    GraphQueryService,
    QueryCache,
)
from novelctx.models import (
    BudgetPolicy,
    BudgetReport,
    ChapterSummary,
    ChapterText,
    EntityCategory,
    GraphEntity,
    ShedRecord,
    WritingContext,
    estimate_tokens,
    rank_entities,
)
from novelctx.models.context import CATEGORY_FIELDS

logger = logging.getLogger(__name__)

# Sections removed first when the total input budget is exceeded
SHED_ORDER = [
    "recent_summaries",
    "world_rules",
    "plotline_status",
    "unresolved_foreshadows",
    "character_arcs",
    "relevant_events",
    "volume_plan",
    "recent_full_chapters",
]

# Sections shed oldest-first; entity sections lose their lowest-ranked item first
OLDEST_FIRST_SECTIONS = {"recent_summaries", "recent_full_chapters"}

# Categories narrowed to the point-of-view character when one is given
POV_CATEGORIES = (EntityCategory.EVENTS, EntityCategory.CHARACTER_ARCS)


class BuildOptions(BaseModel):
    """Per-call options for build_context"""
    pov_character: Optional[str] = None
    core_settings: Optional[str] = Field(default=None, description="Overrides the chapter store")
    volume_plan: Optional[Dict[str, Any]] = Field(default=None, description="Overrides the chapter store")
    chapter_plan: Optional[Dict[str, Any]] = Field(default=None, description="Overrides the chapter store")
    user_adjustment: str = ""
    budget: Optional[BudgetPolicy] = None
    filters: Dict[EntityCategory, Dict[str, Any]] = Field(default_factory=dict)
    fetch_limit: int = Field(default=50, ge=1, description="Graph-side cap, part of the cache key")


@dataclass
class _BuildStats:
    hits: int = 0
    misses: int = 0
    queries: int = 0


class _Sections:
    """Mutable section items with their token costs, used while enforcing the total budget"""

    def __init__(self):
        self.items: Dict[str, List[Any]] = {}
        self.costs: Dict[str, List[int]] = {}

    def set(self, name: str, items: List[Any], costs: List[int]):
        self.items[name] = list(items)
        self.costs[name] = list(costs)

    def tokens(self, name: str) -> int:
        return sum(self.costs.get(name, []))

    def total(self) -> int:
        return sum(sum(costs) for costs in self.costs.values())

    def section_tokens(self) -> Dict[str, int]:
        return {name: sum(costs) for name, costs in self.costs.items()}

    def can_shed(self, name: str) -> bool:
        # The most recent full chapter is required
        floor = 1 if name == "recent_full_chapters" else 0
        return len(self.items.get(name, [])) > floor

    def shed_one(self, name: str) -> int:
        index = 0 if name in OLDEST_FIRST_SECTIONS else -1
        self.items[name].pop(index)
        return self.costs[name].pop(index)


def _json_tokens(data: Dict[str, Any]) -> int:
    if not data:
        return 0
    return estimate_tokens(json.dumps(data, ensure_ascii=False, default=str))


def _chapter_tokens(chapter: ChapterText) -> int:
    return estimate_tokens(chapter.title) + estimate_tokens(chapter.content)


class ContextAssembler:
    """
    Builds a WritingContext for one chapter.

    Each graph-backed section goes through the query cache: a hit reuses the
    cached, unbudgeted result; a miss queries the graph and caches the raw
    result before any trimming. Sections are then ranked, trimmed to their
    count limits and token ceilings, and finally shed in a fixed priority
    order until the total input budget is met. Holds no state between calls
    beyond the cache.
    """

    def __init__(
        self,
        graph_service: GraphQueryService,
        chapter_store: ChapterStore,
        query_cache: QueryCache,
        budget_policy: Optional[BudgetPolicy] = None
    ):
        """
        Initialize the assembler

        Args:
            graph_service: Story graph collaborator queried on cache misses
            chapter_store: Source of recent chapters, summaries and settings
            query_cache: Shared query cache
            budget_policy: Default budget, overridable per call
        """
        self.graph_service = graph_service
        self.chapter_store = chapter_store
        self.query_cache = query_cache
        self.budget_policy = budget_policy or BudgetPolicy()

        ceiling_sum = self.budget_policy.section_ceiling_sum()
        if ceiling_sum > self.budget_policy.tokens.total_input_budget:
            logger.warning(
                f"Section token ceilings add up to {ceiling_sum}, above the total input budget "
                f"{self.budget_policy.tokens.total_input_budget}; sections will be shed to fit"
            )

    # Cache access (faults degrade to misses)

    def _cache_get(self, key) -> Optional[Any]:
        try:
            return self.query_cache.get(key)
        except Exception as e:
            logger.warning(f"Cache lookup failed for {key}, treating as miss: {e}")
            return None

    def _cache_put(self, key, payload: Any):
        try:
            self.query_cache.put(key, payload)
        except Exception as e:
            logger.warning(f"Cache store failed for {key}: {e}")

    def section_filters(self, category: EntityCategory, options: BuildOptions) -> Dict[str, Any]:
        """Filters sent to the graph for a category; they also discriminate the cache key"""
        filters: Dict[str, Any] = {FILTER_LIMIT: options.fetch_limit}
        if options.pov_character and category in POV_CATEGORIES:
            filters[FILTER_CHARACTER] = options.pov_character
        filters.update(options.filters.get(category, {}))
        return filters

    async def fetch_section(
        self,
        novel_id: Any,
        chapter_number: int,
        category: EntityCategory,
        filters: Optional[Dict[str, Any]] = None,
        stats: Optional[_BuildStats] = None
    ) -> List[GraphEntity]:
        """
        Fetch a category's ranked, unbudgeted entities through the cache.

        Raises:
            GraphUnavailableError: On a cache miss when the graph cannot be reached
        """
        category = EntityCategory(category)
        filters = dict(filters or {})
        stats = stats if stats is not None else _BuildStats()
        key = self.query_cache.build_key(category, novel_id, chapter_number, filters=filters)

        cached = self._cache_get(key)
        if cached is not None:
            stats.hits += 1
            return rank_entities(list(cached))

        stats.misses += 1
        stats.queries += 1
        try:
            entities = await self.graph_service.query_entities(str(novel_id), chapter_number, category, filters)
        except OSError as e:
            # ConnectionError and TimeoutError included
            raise GraphUnavailableError(
                f"Graph query {category.value} failed: {e}",
                novel_id=str(novel_id),
                chapter_number=chapter_number,
                category=category.value
            ) from e

        entities = tuple(entities)
        self._cache_put(key, entities)
        return rank_entities(list(entities))

    def _trim_entities(
        self,
        category: EntityCategory,
        ranked: List[GraphEntity],
        policy: BudgetPolicy
    ) -> List[GraphEntity]:
        limit = policy.count_limit(category)
        kept, dropped = ranked[:limit], ranked[limit:]

        relevant_dropped = [e for e in dropped if e.relevance_score >= policy.counts.min_relevance]
        if relevant_dropped:
            logger.info(
                f"Count limit {limit} for {category.value} dropped {len(relevant_dropped)} entities "
                f"scoring at least {policy.counts.min_relevance}"
            )

        max_description = policy.tokens.max_event_description
        trimmed = []
        for entity in kept:
            description = entity.description
            if description and estimate_tokens(description) > max_description:
                entity = entity.with_description(policy.truncate(description, max_description))
            trimmed.append(entity)
        return trimmed

    def _fit_summaries(self, summaries: List[ChapterSummary], policy: BudgetPolicy) -> List[ChapterSummary]:
        """Keep the most recent summaries that fit the summaries ceiling, oldest first"""
        ceiling = policy.tokens.max_summaries
        kept: List[ChapterSummary] = []
        used = 0
        for summary in reversed(summaries):
            cost = estimate_tokens(summary.summary)
            if used + cost > ceiling:
                if not kept:
                    kept.append(summary.model_copy(update={"summary": policy.truncate(summary.summary, ceiling)}))
                break
            kept.append(summary)
            used += cost
        kept.reverse()
        return kept

    async def _core_settings(self, novel_id: str, options: BuildOptions) -> str:
        if options.core_settings is not None:
            return options.core_settings
        return await self.chapter_store.get_core_settings(novel_id)

    async def _volume_plan(self, novel_id: str, chapter_number: int, options: BuildOptions) -> Dict[str, Any]:
        if options.volume_plan is not None:
            return options.volume_plan
        return await self.chapter_store.get_volume_plan(novel_id, chapter_number)

    async def _chapter_plan(self, novel_id: str, chapter_number: int, options: BuildOptions) -> Dict[str, Any]:
        if options.chapter_plan is not None:
            return options.chapter_plan
        return await self.chapter_store.get_chapter_plan(novel_id, chapter_number)

    async def build_context(
        self,
        novel_id: Any,
        chapter_number: int,
        options: Optional[BuildOptions] = None
    ) -> WritingContext:
        """
        Assemble the writing context for a chapter.

        Args:
            novel_id: Novel identifier
            chapter_number: Chapter about to be written
            options: Per-call options (point of view, overrides, budget)

        Returns:
            A fresh WritingContext within the total input budget

        Raises:
            GraphUnavailableError: If a section misses the cache and the graph is unreachable
            BudgetExceededError: If the required sections alone exceed the total input budget
        """
        options = options or BuildOptions()
        policy = options.budget or self.budget_policy
        novel_id = str(novel_id)
        stats = _BuildStats()
        report = BudgetReport(total_budget=policy.tokens.total_input_budget)
        categories = list(EntityCategory)

        section_results, chapters, summaries, core_settings, volume_plan, chapter_plan = await asyncio.gather(
            asyncio.gather(*(
                self.fetch_section(novel_id, chapter_number, category, self.section_filters(category, options), stats)
                for category in categories
            )),
            self.chapter_store.get_recent_chapters(novel_id, chapter_number, policy.counts.max_full_chapters),
            self.chapter_store.get_summaries(novel_id, chapter_number, policy.counts.max_summary_chapters),
            self._core_settings(novel_id, options),
            self._volume_plan(novel_id, chapter_number, options),
            self._chapter_plan(novel_id, chapter_number, options),
        )

        sections = _Sections()

        for category, ranked in zip(categories, section_results):
            entities = self._trim_entities(category, ranked, policy)
            sections.set(
                CATEGORY_FIELDS[category],
                entities,
                [estimate_tokens(e.to_prompt_line()) for e in entities]
            )

        truncated_core = policy.truncate(core_settings or "", policy.core_settings_ceiling())
        if truncated_core != (core_settings or ""):
            report.truncated_sections.append("core_settings")
        sections.set("core_settings", [truncated_core], [estimate_tokens(truncated_core)])

        adjustment = policy.truncate(options.user_adjustment or "", policy.tokens.max_user_adjustment)
        if adjustment != (options.user_adjustment or ""):
            report.truncated_sections.append("user_adjustment")
        sections.set("user_adjustment", [adjustment], [estimate_tokens(adjustment)])

        sections.set("chapter_plan", [chapter_plan or {}], [_json_tokens(chapter_plan)])
        volume_plan = volume_plan or {}
        if _json_tokens(volume_plan) > policy.tokens.max_volume_plan:
            logger.info(f"Volume plan exceeds {policy.tokens.max_volume_plan} tokens, omitted")
            report.truncated_sections.append("volume_plan")
            volume_plan = {}
        sections.set("volume_plan", [volume_plan] if volume_plan else [], [_json_tokens(volume_plan)] if volume_plan else [])

        fitted_summaries = self._fit_summaries(list(summaries), policy)
        if len(fitted_summaries) < len(summaries) or (
            fitted_summaries and summaries and fitted_summaries[-1].summary != summaries[-1].summary
        ):
            report.truncated_sections.append("recent_summaries")
        sections.set("recent_summaries", fitted_summaries, [estimate_tokens(s.summary) for s in fitted_summaries])

        # Most recent last, never truncated
        chapters = sorted(chapters, key=lambda c: c.chapter_number)
        sections.set("recent_full_chapters", chapters, [_chapter_tokens(c) for c in chapters])

        report.required_tokens = (
            sections.tokens("core_settings")
            + sections.tokens("user_adjustment")
            + sections.tokens("chapter_plan")
            + (_chapter_tokens(chapters[-1]) if chapters else 0)
        )
        self._enforce_total_budget(sections, policy, report)

        report.section_tokens = sections.section_tokens()
        report.total_tokens = sections.total()
        report.cache_hits = stats.hits
        report.cache_misses = stats.misses
        report.graph_queries = stats.queries

        context = WritingContext(
            novel_id=novel_id,
            chapter_number=chapter_number,
            core_settings=sections.items["core_settings"][0],
            volume_plan=sections.items["volume_plan"][0] if sections.items["volume_plan"] else {},
            chapter_plan=sections.items["chapter_plan"][0],
            relevant_events=sections.items["relevant_events"],
            unresolved_foreshadows=sections.items["unresolved_foreshadows"],
            plotline_status=sections.items["plotline_status"],
            world_rules=sections.items["world_rules"],
            character_arcs=sections.items["character_arcs"],
            recent_full_chapters=sections.items["recent_full_chapters"],
            recent_summaries=sections.items["recent_summaries"],
            user_adjustment=sections.items["user_adjustment"][0],
            budget_report=report
        )

        logger.info(
            f"Built context: novel={novel_id}, chapter={chapter_number}, tokens={report.total_tokens}/"
            f"{report.total_budget}, events={len(context.relevant_events)}, "
            f"foreshadows={len(context.unresolved_foreshadows)}, cache_hits={stats.hits}, "
            f"graph_queries={stats.queries}"
        )
        return context

    def _enforce_total_budget(self, sections: _Sections, policy: BudgetPolicy, report: BudgetReport):
        """Shed sections in priority order until the total fits, or raise"""
        budget = policy.tokens.total_input_budget
        total = sections.total()
        if total <= budget:
            return

        logger.info(f"Context needs {total} tokens, budget is {budget}; shedding sections")
        for name in SHED_ORDER:
            removed = 0
            while total > budget and sections.can_shed(name):
                total -= sections.shed_one(name)
                removed += 1
            if removed:
                report.shed.append(ShedRecord(section=name, removed=removed))
                logger.info(f"Shed {removed} item(s) from {name}")
            if total <= budget:
                return

        raise BudgetExceededError(
            required_tokens=total,
            total_budget=budget,
            sections={name: tokens for name, tokens in sections.section_tokens().items() if tokens}
        )

    def invalidate(self, novel_id: Any, from_chapter: Optional[int] = None) -> int:
        """
        Drop cached queries after a chapter is written or edited.

        Args:
            novel_id: Novel identifier
            from_chapter: First affected chapter; None invalidates the whole novel

        Returns:
            Number of cache entries removed
        """
        if from_chapter is None:
            return self.query_cache.invalidate_novel(novel_id)
        return self.query_cache.invalidate_from_chapter(novel_id, from_chapter)
