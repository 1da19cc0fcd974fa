"""Tests for the ReAct loop and context tools"""

import json
from typing import List
from unittest.mock import AsyncMock

import pytest

from novelctx.errors import GraphUnavailableError
from novelctx.llm import LLMProvider, LLMResponse
from novelctx.memory import InMemoryGraphQueryService, QueryCache
from novelctx.models import AgentThought, AgentTrace, EntityType, GraphEntity, WritingContext
from novelctx.orchestrator import (
    ContextAssembler,
    ReActLoop,
    ToolRegistry,
    attach_trace,
    parse_decision,
    register_context_tools,
)
from novelctx.orchestrator.react_loop import extract_json

from tests.fakes import FakeChapterStore


class ScriptedLLM(LLMProvider):
    """Returns queued decisions; reflection prompts get a fixed answer"""

    def __init__(self, decisions: List[str]):
        self.decisions = list(decisions)
        self.calls = []

    async def generate(self, messages, temperature=0.7, max_tokens=None, **kwargs):
        self.calls.append(messages)
        if len(messages) == 1:
            return LLMResponse(content="Noted.", model="scripted")
        return LLMResponse(content=self.decisions.pop(0), model="scripted")


def decision(action: str, reasoning: str = "", **args) -> str:
    return json.dumps({"reasoning": reasoning, "action": action, "args": args})


@pytest.fixture
def assembler():
    graph = InMemoryGraphQueryService()
    graph.add_entity("n1", GraphEntity(
        type=EntityType.EVENT, id="e1", chapter_number=3, relevance_score=0.9,
        properties={"title": "Ambush", "participants": ["Lin Wei"]}
    ))
    graph.add_entity("n1", GraphEntity(
        type=EntityType.FORESHADOW, id="f1", chapter_number=2, relevance_score=0.8,
        properties={"title": "Cracked seal"}
    ))
    store = FakeChapterStore(summaries={1: "Departure.", 2: "Journey."})
    return ContextAssembler(graph, store, QueryCache())


@pytest.fixture
def registry(assembler):
    return register_context_tools(ToolRegistry(), assembler)


class TestDecisionParsing:
    """Model output parsing"""

    def test_plain_json(self):
        parsed = parse_decision('{"reasoning": "r", "action": "WRITE"}')
        assert parsed.action == "WRITE"
        assert parsed.args == {}

    def test_fenced_json_with_prose(self):
        text = 'Sure.\n```json\n{"action": "get_world_rules", "args": {"limit": 2}}\n```'
        parsed = parse_decision(text)
        assert parsed.action == "get_world_rules"
        assert parsed.args == {"limit": 2}

    def test_braces_inside_strings(self):
        assert extract_json('x {"reasoning": "a } b", "action": "WRITE"} y') == '{"reasoning": "a } b", "action": "WRITE"}'

    @pytest.mark.parametrize("text", ["no json here", "[1, 2]", '{"reasoning": "missing action"}', '{"action": '])
    def test_invalid_decisions_raise_value_error(self, text):
        with pytest.raises(ValueError):
            parse_decision(text)


class TestToolRegistry:
    """Tool registration"""

    def test_context_tools_registered(self, registry):
        assert set(registry.names()) == {
            "get_relevant_events",
            "get_unresolved_foreshadows",
            "get_plotline_status",
            "get_world_rules",
            "get_character_arcs",
            "get_recent_summaries",
        }
        assert "get_world_rules" in registry.describe()

    def test_write_is_reserved(self):
        with pytest.raises(ValueError):
            ToolRegistry().register("write", AsyncMock())

    @pytest.mark.asyncio
    async def test_event_tool_uses_cache(self, registry, assembler):
        tool = registry.get("get_relevant_events")
        first = await tool.func("n1", 5, character="Lin Wei")
        second = await tool.func("n1", 5, character="Lin Wei")

        assert [e.id for e in first] == ["e1"]
        assert [e.id for e in second] == ["e1"]
        assert assembler.graph_service.query_count == 1

    @pytest.mark.asyncio
    async def test_summaries_tool(self, registry):
        summaries = await registry.get("get_recent_summaries").func("n1", 5, limit=1)
        assert [s.chapter_number for s in summaries] == [2]

    @pytest.mark.asyncio
    async def test_negative_limit_returns_nothing(self, registry):
        events = await registry.get("get_relevant_events").func("n1", 5, limit=-1)
        summaries = await registry.get("get_recent_summaries").func("n1", 5, limit=-1)
        assert events == []
        assert summaries == []


class TestReActLoop:
    """Episode control flow"""

    @pytest.mark.asyncio
    async def test_tool_then_write(self, registry):
        llm = ScriptedLLM([
            decision("get_relevant_events", "Need the ambush", character="Lin Wei"),
            decision("WRITE", "Enough context"),
        ])
        loop = ReActLoop(llm, registry)

        trace = await loop.run("n1", 10)

        assert trace.actions() == ["get_relevant_events", "WRITE"]
        assert trace.goal_achieved
        first = trace.thoughts[0]
        assert "Ambush" in first.observation
        assert first.reflection == "Noted."
        assert json.loads(first.action_args) == {"character": "Lin Wei"}

    @pytest.mark.asyncio
    async def test_step_ceiling(self, registry):
        llm = ScriptedLLM([decision("get_world_rules")] * 10)
        loop = ReActLoop(llm, registry, max_steps=4, reflect=False)

        trace = await loop.run("n1", 10)

        assert len(trace) == 4
        assert not trace.goal_achieved

    @pytest.mark.asyncio
    async def test_early_chapters_get_smaller_ceiling(self, registry):
        llm = ScriptedLLM([decision("get_world_rules")] * 10)
        loop = ReActLoop(llm, registry, reflect=False)

        trace = await loop.run("n1", 5)

        assert len(trace) == 3

    @pytest.mark.asyncio
    async def test_unknown_tool_ends_episode(self, registry):
        llm = ScriptedLLM([decision("summon_dragon"), decision("WRITE")])
        trace = await ReActLoop(llm, registry).run("n1", 10)

        assert len(trace) == 1
        assert not trace.goal_achieved
        assert trace.last.metadata == "unknown_tool"

    @pytest.mark.asyncio
    async def test_unparseable_decision_ends_episode(self, registry):
        llm = ScriptedLLM(["I think we should write now.", decision("WRITE")])
        trace = await ReActLoop(llm, registry).run("n1", 10)

        assert len(trace) == 1
        assert trace.last.metadata == "parse_error"
        assert not trace.goal_achieved

    @pytest.mark.asyncio
    async def test_tool_failure_recorded_as_observation(self, registry):
        llm = ScriptedLLM([decision("get_world_rules", bogus_arg=1), decision("WRITE")])
        trace = await ReActLoop(llm, registry, reflect=False).run("n1", 10)

        assert trace.thoughts[0].metadata == "tool_error"
        assert "failed" in trace.thoughts[0].observation
        assert trace.goal_achieved

    @pytest.mark.asyncio
    async def test_graph_unavailable_propagates(self):
        registry = ToolRegistry()
        registry.register("get_relevant_events", AsyncMock(side_effect=GraphUnavailableError("down")))
        llm = ScriptedLLM([decision("get_relevant_events")])

        with pytest.raises(GraphUnavailableError):
            await ReActLoop(llm, registry).run("n1", 10)

    @pytest.mark.asyncio
    async def test_observation_truncated(self):
        registry = ToolRegistry()
        registry.register("dump", AsyncMock(return_value=["word " * 2000]))
        llm = ScriptedLLM([decision("dump"), decision("WRITE")])

        trace = await ReActLoop(llm, registry, reflect=False, max_observation_tokens=50).run("n1", 10)

        assert len(trace.thoughts[0].observation) < 2000

    @pytest.mark.asyncio
    async def test_previous_steps_in_prompt(self, registry):
        llm = ScriptedLLM([decision("get_unresolved_foreshadows"), decision("WRITE")])
        await ReActLoop(llm, registry, reflect=False).run("n1", 10, user_adjustment="Slow burn")

        second_prompt = llm.calls[1][1].content
        assert "get_unresolved_foreshadows" in second_prompt
        assert "Slow burn" in second_prompt

    def test_invalid_ceiling_rejected(self, registry):
        with pytest.raises(ValueError):
            ReActLoop(ScriptedLLM([]), registry, max_steps=0)


class TestTrace:
    """Trace bookkeeping"""

    def test_steps_must_be_sequential(self):
        trace = AgentTrace()
        trace.append(AgentThought(step_number=1, action="get_world_rules"))
        with pytest.raises(ValueError):
            trace.append(AgentThought(step_number=3))

    def test_no_append_after_goal(self):
        trace = AgentTrace()
        trace.append(AgentThought(step_number=1, action="WRITE", goal_achieved=True))
        with pytest.raises(ValueError):
            trace.append(AgentThought(step_number=2))

    def test_attach_trace_returns_copy(self):
        context = WritingContext(novel_id="n1", chapter_number=4)
        trace = AgentTrace()
        trace.append(AgentThought(step_number=1, action="WRITE", goal_achieved=True))

        attached = attach_trace(context, trace)

        assert attached.agent_trace is trace
        assert context.agent_trace is None


@pytest.mark.asyncio
async def test_ask_sends_single_user_message():
    llm = ScriptedLLM([])
    assert await llm.ask("Reflect") == "Noted."
    assert [m.role for m in llm.calls[0]] == ["user"]
