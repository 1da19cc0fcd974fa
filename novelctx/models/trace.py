"""ReAct agent trace models"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field


class AgentThought(BaseModel):
    """One reasoning/action/observation/reflection step"""
    step_number: int = Field(..., ge=1)
    reasoning: str = ""
    action: str = ""
    action_args: str = ""
    observation: str = ""
    reflection: Optional[str] = None
    goal_achieved: bool = False
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Optional[str] = None


class AgentTrace(BaseModel):
    """Append-only log of one reasoning episode"""
    thoughts: List[AgentThought] = Field(default_factory=list)

    def append(self, thought: AgentThought) -> None:
        """
        Append the next step.

        Raises:
            ValueError: If the episode already ended or the step number is out of order
        """
        if self.goal_achieved:
            raise ValueError("Cannot append to a trace whose goal is already achieved")
        expected = len(self.thoughts) + 1
        if thought.step_number != expected:
            raise ValueError(f"Expected step {expected}, got {thought.step_number}")
        self.thoughts.append(thought)

    @property
    def goal_achieved(self) -> bool:
        return bool(self.thoughts) and self.thoughts[-1].goal_achieved

    @property
    def last(self) -> Optional[AgentThought]:
        return self.thoughts[-1] if self.thoughts else None

    def actions(self) -> List[str]:
        return [t.action for t in self.thoughts if t.action]

    def __len__(self) -> int:
        return len(self.thoughts)
