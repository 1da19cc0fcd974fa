"""Writing context assembled for chapter generation"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .entity import EntityCategory, GraphEntity
from .trace import AgentTrace


class ChapterText(BaseModel):
    """Full text of a previously written chapter"""
    chapter_number: int
    title: str = ""
    content: str = ""


class ChapterSummary(BaseModel):
    """Summary of a previously written chapter"""
    chapter_number: int
    summary: str = ""


class ShedRecord(BaseModel):
    """Items removed from a section to meet the total input budget"""
    section: str
    removed: int


class BudgetReport(BaseModel):
    """Token accounting for one assembled context"""
    section_tokens: Dict[str, int] = Field(default_factory=dict)
    total_tokens: int = 0
    total_budget: int = 0
    shed: List[ShedRecord] = Field(default_factory=list)
    truncated_sections: List[str] = Field(default_factory=list)
    cache_hits: int = 0
    cache_misses: int = 0
    graph_queries: int = 0
    # Sections that are never shed
    required_tokens: int = 0

    @property
    def utilization(self) -> float:
        if self.total_budget <= 0:
            return 0.0
        return self.total_tokens / self.total_budget


class WritingContext(BaseModel):
    """Everything a generation call needs. Built fresh per call, never persisted."""
    novel_id: str
    chapter_number: int
    core_settings: str = ""
    volume_plan: Dict[str, Any] = Field(default_factory=dict)
    chapter_plan: Dict[str, Any] = Field(default_factory=dict)
    relevant_events: List[GraphEntity] = Field(default_factory=list)
    unresolved_foreshadows: List[GraphEntity] = Field(default_factory=list)
    plotline_status: List[GraphEntity] = Field(default_factory=list)
    world_rules: List[GraphEntity] = Field(default_factory=list)
    character_arcs: List[GraphEntity] = Field(default_factory=list)
    # Verbatim, most recent last
    recent_full_chapters: List[ChapterText] = Field(default_factory=list)
    # Oldest first, may be truncated
    recent_summaries: List[ChapterSummary] = Field(default_factory=list)
    user_adjustment: str = ""
    agent_trace: Optional[AgentTrace] = None
    budget_report: BudgetReport = Field(default_factory=BudgetReport)

    def entities_for(self, category: EntityCategory) -> List[GraphEntity]:
        """Entity list held for a graph-backed category"""
        return getattr(self, CATEGORY_FIELDS[EntityCategory(category)])


CATEGORY_FIELDS: Dict[EntityCategory, str] = {
    EntityCategory.EVENTS: "relevant_events",
    EntityCategory.FORESHADOWS: "unresolved_foreshadows",
    EntityCategory.PLOTLINES: "plotline_status",
    EntityCategory.WORLD_RULES: "world_rules",
    EntityCategory.CHARACTER_ARCS: "character_arcs",
}
