"""Context assembly, ReAct episodes and diagnostics"""

from .context_assembler import BuildOptions, ContextAssembler, SHED_ORDER
from .react_loop import (
    AgentDecision,
    ReActLoop,
    Tool,
    ToolRegistry,
    attach_trace,
    parse_decision,
    register_context_tools,
)
from .diagnostics import Alert, ContextDiagnostics

__all__ = [
    "BuildOptions",
    "ContextAssembler",
    "SHED_ORDER",
    "AgentDecision",
    "ReActLoop",
    "Tool",
    "ToolRegistry",
    "attach_trace",
    "parse_decision",
    "register_context_tools",
    "Alert",
    "ContextDiagnostics",
]
