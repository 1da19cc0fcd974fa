"""Tests for Pydantic models"""

import pytest
from pydantic import ValidationError

from novelctx.models import (
    AgentThought,
    BudgetReport,
    EntityCategory,
    EntityType,
    EventProperties,
    ForeshadowProperties,
    GraphEntity,
    ShedRecord,
    WritingContext,
    rank_entities,
)


def test_graph_entity_is_immutable():
    """GraphEntity cannot be modified after construction"""
    entity = GraphEntity(type=EntityType.EVENT, id="e1", relevance_score=0.5)

    with pytest.raises(ValidationError):
        entity.relevance_score = 0.9


def test_graph_entity_properties_are_read_only():
    """Nested property values are frozen too; dumps and copies stay plain"""
    entity = GraphEntity(
        type=EntityType.EVENT,
        id="e1",
        properties={"participants": ["Lin Wei"], "place": {"region": "north"}}
    )

    with pytest.raises(TypeError):
        entity.properties["title"] = "x"
    with pytest.raises(TypeError):
        entity.properties["place"]["region"] = "south"
    assert entity.properties["participants"] == ("Lin Wei",)

    copy = entity.properties_dict()
    copy["participants"].append("Su Yan")
    assert entity.properties["participants"] == ("Lin Wei",)
    assert entity.model_dump()["properties"] == {"participants": ["Lin Wei"], "place": {"region": "north"}}


def test_default_properties_are_read_only():
    entity = GraphEntity(type=EntityType.LOCATION, id="loc-1")
    with pytest.raises(TypeError):
        entity.properties["name"] = "x"


def test_graph_entity_from_dict():
    """Entity type is parsed from its string value"""
    entity = GraphEntity.model_validate({
        "type": "world_rule",
        "id": "w1",
        "chapter_number": 2,
        "properties": {"name": "Qi cost"},
    })

    assert entity.type == EntityType.WORLD_RULE
    assert entity.display_name == "Qi cost"
    assert entity.description is None


def test_typed_properties_keep_extensions():
    """Typed property shapes validate known fields and keep unknown ones"""
    entity = GraphEntity(
        type=EntityType.EVENT,
        id="e1",
        properties={"participants": ["Lin Wei"], "weather": "storm"}
    )

    props = entity.typed_properties()
    assert isinstance(props, EventProperties)
    assert props.participants == ["Lin Wei"]
    assert props.model_extra == {"weather": "storm"}


def test_foreshadow_status_defaults_open():
    entity = GraphEntity(type=EntityType.FORESHADOW, id="f1")
    props = entity.typed_properties()
    assert isinstance(props, ForeshadowProperties)
    assert props.status == "open"


def test_with_description_returns_copy():
    """Replacing a description leaves the original untouched"""
    entity = GraphEntity(type=EntityType.EVENT, id="e1", properties={"description": "long"})
    shorter = entity.with_description("short")

    assert shorter.description == "short"
    assert entity.description == "long"


def test_display_name_falls_back_to_id():
    entity = GraphEntity(type=EntityType.LOCATION, id="loc-7")
    assert entity.display_name == "loc-7"


def test_prompt_line():
    entity = GraphEntity(
        type=EntityType.EVENT,
        id="e1",
        chapter_number=3,
        properties={"title": "Ambush", "description": "At the ford"}
    )
    assert entity.to_prompt_line() == "[event] ch.3 Ambush: At the ford"


def test_rank_entities_order():
    """Ranking: relevance desc, then chapter desc, unknown chapter last, then id"""
    entities = [
        GraphEntity(type=EntityType.EVENT, id="b", relevance_score=0.5, chapter_number=4),
        GraphEntity(type=EntityType.EVENT, id="a", relevance_score=0.5, chapter_number=4),
        GraphEntity(type=EntityType.EVENT, id="c", relevance_score=0.5),
        GraphEntity(type=EntityType.EVENT, id="d", relevance_score=0.5, chapter_number=9),
        GraphEntity(type=EntityType.EVENT, id="e", relevance_score=0.8, chapter_number=1),
    ]

    assert [e.id for e in rank_entities(entities)] == ["e", "d", "a", "b", "c"]


def test_rank_entities_stable_across_input_order():
    entities = [
        GraphEntity(type=EntityType.EVENT, id=str(i), relevance_score=(i % 3) / 3, chapter_number=i % 4)
        for i in range(12)
    ]
    assert rank_entities(entities) == rank_entities(list(reversed(entities)))


def test_writing_context_entities_for():
    entity = GraphEntity(type=EntityType.PLOTLINE, id="p1")
    context = WritingContext(novel_id="n1", chapter_number=5, plotline_status=[entity])

    assert context.entities_for(EntityCategory.PLOTLINES) == [entity]
    assert context.entities_for("events") == []
    assert context.agent_trace is None


def test_budget_report_utilization():
    report = BudgetReport(total_tokens=450, total_budget=1000, shed=[ShedRecord(section="world_rules", removed=2)])
    assert report.utilization == pytest.approx(0.45)
    assert BudgetReport().utilization == 0.0


def test_agent_thought_step_number_positive():
    with pytest.raises(ValidationError):
        AgentThought(step_number=0)
