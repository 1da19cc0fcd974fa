"""ReAct loop - bounded reason/act/observe/reflect episodes over context tools"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from novelctx.llm import LLMMessage, LLMProvider
from novelctx.memory import FILTER_CHARACTER
from novelctx.models import (
    AgentThought,
    AgentTrace,
    BudgetPolicy,
    EntityCategory,
    GraphEntity,
    WritingContext,
)

logger = logging.getLogger(__name__)

WRITE_ACTION = "WRITE"
DEFAULT_MAX_STEPS = 8
DEFAULT_EARLY_CHAPTER_THRESHOLD = 5
DEFAULT_EARLY_MAX_STEPS = 3
DEFAULT_OBSERVATION_TOKENS = 400

ToolFunc = Callable[..., Awaitable[Any]]

SYSTEM_PROMPT = """You gather story context before a chapter is written.
Each turn, choose ONE tool to call, or WRITE when you have enough context.

Available tools:
{tools}

Respond with ONLY a JSON object:
{{"reasoning": "why this step", "action": "<tool name or WRITE>", "args": {{}}}}"""

REFLECTION_PROMPT = """You called {action} and observed:
{observation}

In one sentence, state what this tells you and what is still missing."""


@dataclass
class Tool:
    """A named async callable the loop may invoke"""
    name: str
    func: ToolFunc
    description: str = ""


class ToolRegistry:
    """Name-to-tool mapping offered to the reasoning model"""

    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(self, name: str, func: ToolFunc, description: str = "") -> Tool:
        if name.upper() == WRITE_ACTION:
            raise ValueError(f"{WRITE_ACTION} is reserved and cannot be registered as a tool")
        tool = Tool(name=name, func=func, description=description)
        self._tools[name] = tool
        return tool

    def get(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def names(self) -> List[str]:
        return list(self._tools)

    def describe(self) -> str:
        return "\n".join(f"- {t.name}: {t.description}" for t in self._tools.values())

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


CATEGORY_TOOLS = {
    "get_relevant_events": (EntityCategory.EVENTS, "Past events relevant to the chapter. Args: character, limit"),
    "get_unresolved_foreshadows": (EntityCategory.FORESHADOWS, "Foreshadows not yet paid off. Args: limit"),
    "get_plotline_status": (EntityCategory.PLOTLINES, "Active plotlines and their status. Args: limit"),
    "get_world_rules": (EntityCategory.WORLD_RULES, "World rules in force at this chapter. Args: limit"),
    "get_character_arcs": (EntityCategory.CHARACTER_ARCS, "Unfinished character arcs. Args: character, limit"),
}


def register_context_tools(registry: ToolRegistry, assembler) -> ToolRegistry:
    """
    Register the standard context tools backed by a ContextAssembler.

    Category tools go through the assembler's cached section fetch and return
    at most the policy's count limit unless a smaller limit is passed.
    """
    def category_tool(category: EntityCategory) -> ToolFunc:
        async def tool(novel_id: str, chapter_number: int, character: Optional[str] = None,
                       limit: Optional[int] = None) -> List[GraphEntity]:
            filters: Dict[str, Any] = {}
            if character:
                filters[FILTER_CHARACTER] = character
            ranked = await assembler.fetch_section(novel_id, chapter_number, category, filters)
            cap = assembler.budget_policy.count_limit(category)
            if limit is not None:
                cap = min(cap, max(0, int(limit)))
            return ranked[:cap]
        return tool

    for name, (category, description) in CATEGORY_TOOLS.items():
        registry.register(name, category_tool(category), description)

    async def get_recent_summaries(novel_id: str, chapter_number: int, limit: Optional[int] = None):
        cap = assembler.budget_policy.counts.max_summary_chapters
        if limit is not None:
            cap = min(cap, max(0, int(limit)))
        return await assembler.chapter_store.get_summaries(novel_id, chapter_number, cap)

    registry.register(
        "get_recent_summaries",
        get_recent_summaries,
        "Summaries of the chapters before this one, oldest first. Args: limit"
    )
    return registry


class AgentDecision(BaseModel):
    """One step's decision as returned by the reasoning model"""
    reasoning: str = ""
    action: str
    args: Dict[str, Any] = Field(default_factory=dict)


def extract_json(text: str) -> str:
    """
    Extract the first JSON object from text that may contain extra content.

    Args:
        text: Raw model output, possibly fenced in a markdown code block

    Returns:
        The JSON object text, or the stripped input when no object is found
    """
    text = text.strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    start = text.find("{")
    if start == -1:
        return text

    depth = 0
    in_string = False
    escape_next = False
    for i in range(start, len(text)):
        char = text[i]
        if escape_next:
            escape_next = False
            continue
        if char == "\\" and in_string:
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:i + 1]
    return text[start:]


def parse_decision(text: str) -> AgentDecision:
    """
    Parse a model response into a decision.

    Raises:
        ValueError: If the response holds no valid decision object
    """
    data = json.loads(extract_json(text))
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return AgentDecision.model_validate(data)


def render_observation(result: Any) -> str:
    """Serialize a tool result to JSON for the trace and the next prompt"""
    if isinstance(result, (list, tuple)):
        items = [render_item(item) for item in result]
        return json.dumps(items, ensure_ascii=False, default=str)
    return json.dumps(render_item(result), ensure_ascii=False, default=str)


def render_item(item: Any) -> Any:
    if isinstance(item, GraphEntity):
        return item.to_prompt_line()
    if isinstance(item, BaseModel):
        return item.model_dump(mode="json")
    return item


class ReActLoop:
    """
    Runs one bounded reasoning episode before a chapter is written.

    Each step asks the model for a decision, executes the chosen tool and
    records the observation, optionally followed by a short reflection.
    The episode ends on WRITE, an unknown tool, an unparseable decision or
    the step ceiling. Early chapters get a smaller ceiling since the story
    graph holds little for them.
    """

    def __init__(
        self,
        llm_provider: LLMProvider,
        registry: ToolRegistry,
        max_steps: int = DEFAULT_MAX_STEPS,
        early_chapter_threshold: int = DEFAULT_EARLY_CHAPTER_THRESHOLD,
        early_max_steps: int = DEFAULT_EARLY_MAX_STEPS,
        reflect: bool = True,
        budget_policy: Optional[BudgetPolicy] = None,
        max_observation_tokens: int = DEFAULT_OBSERVATION_TOKENS
    ):
        if max_steps < 1 or early_max_steps < 1:
            raise ValueError("Step ceilings must be at least 1")
        self.llm_provider = llm_provider
        self.registry = registry
        self.max_steps = max_steps
        self.early_chapter_threshold = early_chapter_threshold
        self.early_max_steps = early_max_steps
        self.reflect = reflect
        self.budget_policy = budget_policy or BudgetPolicy()
        self.max_observation_tokens = max_observation_tokens

    def step_ceiling(self, chapter_number: int) -> int:
        if chapter_number <= self.early_chapter_threshold:
            return min(self.early_max_steps, self.max_steps)
        return self.max_steps

    def _build_messages(
        self,
        novel_id: str,
        chapter_number: int,
        user_adjustment: str,
        trace: AgentTrace
    ) -> List[LLMMessage]:
        lines = [f"Novel: {novel_id}", f"Chapter to write: {chapter_number}"]
        if user_adjustment:
            lines.append(f"Author instructions: {user_adjustment}")
        if trace.thoughts:
            lines.append("\nSteps so far:")
            for thought in trace.thoughts:
                lines.append(f"{thought.step_number}. {thought.action}({thought.action_args}) -> {thought.observation}")
                if thought.reflection:
                    lines.append(f"   Reflection: {thought.reflection}")
        lines.append("\nDecide the next step.")
        return [
            LLMMessage(role="system", content=SYSTEM_PROMPT.format(tools=self.registry.describe())),
            LLMMessage(role="user", content="\n".join(lines))
        ]

    async def _reflect(self, action: str, observation: str) -> str:
        return await self.llm_provider.ask(
            REFLECTION_PROMPT.format(action=action, observation=observation),
            temperature=0.3,
            max_tokens=200
        )

    async def run(self, novel_id: Any, chapter_number: int, user_adjustment: str = "") -> AgentTrace:
        """
        Run one episode.

        Args:
            novel_id: Novel identifier
            chapter_number: Chapter about to be written
            user_adjustment: Author instructions for this chapter

        Returns:
            The episode's trace

        Raises:
            GraphUnavailableError: If a tool cannot reach the story graph
        """
        novel_id = str(novel_id)
        trace = AgentTrace()
        ceiling = self.step_ceiling(chapter_number)

        for step in range(1, ceiling + 1):
            messages = self._build_messages(novel_id, chapter_number, user_adjustment, trace)
            response = await self.llm_provider.generate(messages, temperature=0.3)

            try:
                decision = parse_decision(response.content)
            except ValueError as e:
                logger.warning(f"Step {step}: unparseable decision: {e}")
                trace.append(AgentThought(
                    step_number=step,
                    observation=f"Unparseable decision: {response.content[:200]}",
                    metadata="parse_error"
                ))
                break

            action = decision.action.strip()
            action_args = json.dumps(decision.args, ensure_ascii=False, default=str)

            if action.upper() == WRITE_ACTION:
                trace.append(AgentThought(
                    step_number=step,
                    reasoning=decision.reasoning,
                    action=WRITE_ACTION,
                    action_args=action_args,
                    goal_achieved=True
                ))
                logger.info(f"ReAct episode for chapter {chapter_number} ready to write after {step} step(s)")
                break

            tool = self.registry.get(action)
            if tool is None:
                logger.warning(f"Step {step}: unknown tool {action}")
                trace.append(AgentThought(
                    step_number=step,
                    reasoning=decision.reasoning,
                    action=action,
                    action_args=action_args,
                    observation=f"Unknown tool: {action}",
                    metadata="unknown_tool"
                ))
                break

            metadata = None
            try:
                result = await tool.func(novel_id, chapter_number, **decision.args)
                observation = render_observation(result)
            except (ValueError, KeyError, TypeError) as e:
                logger.warning(f"Step {step}: tool {action} failed: {e}")
                observation = f"Tool {action} failed: {e}"
                metadata = "tool_error"

            observation = self.budget_policy.truncate(observation, self.max_observation_tokens)
            reflection = await self._reflect(action, observation) if self.reflect else None

            trace.append(AgentThought(
                step_number=step,
                reasoning=decision.reasoning,
                action=action,
                action_args=action_args,
                observation=observation,
                reflection=reflection,
                metadata=metadata
            ))
        else:
            logger.info(f"ReAct episode for chapter {chapter_number} hit the {ceiling}-step ceiling")

        return trace


def attach_trace(context: WritingContext, trace: AgentTrace) -> WritingContext:
    """Return a copy of the context carrying the episode trace"""
    return context.model_copy(update={"agent_trace": trace})
