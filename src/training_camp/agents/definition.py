"""Agent definition - the versioned artifact that the pipeline evolves."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


def new_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class ToolType(str, Enum):
    BUILTIN = "builtin"
    API = "api"
    FUNCTION = "function"


class StepType(str, Enum):
    START = "start"
    PROMPT = "prompt"
    TOOL = "tool"
    CONDITION = "condition"
    LOOP = "loop"
    OUTPUT = "output"


class MemoryType(str, Enum):
    NONE = "none"
    BUFFER = "buffer"
    SUMMARY = "summary"
    VECTOR = "vector"


@dataclass
class ToolParameter:
    name: str
    type: str = "string"
    description: str = ""
    required: bool = False


@dataclass
class AgentTool:
    """A tool the agent may call."""

    name: str
    description: str = ""
    id: str = field(default_factory=new_id)
    type: ToolType = ToolType.FUNCTION
    config: dict[str, Any] = field(default_factory=dict)
    parameters: list[ToolParameter] = field(default_factory=list)


@dataclass
class Position:
    x: float = 0.0
    y: float = 0.0


@dataclass
class FlowConnections:
    """Outgoing connection slots of a flow step (values are step ids)."""

    next: str | None = None
    on_true: str | None = None
    on_false: str | None = None
    on_error: str | None = None


@dataclass
class FlowStep:
    """One node of the agent's execution graph."""

    type: StepType
    name: str
    id: str = field(default_factory=new_id)
    config: dict[str, Any] = field(default_factory=dict)
    position: Position = field(default_factory=Position)
    connections: FlowConnections = field(default_factory=FlowConnections)


@dataclass
class MemoryConfig:
    type: MemoryType = MemoryType.NONE
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class AgentParameters:
    """Model settings. temperature is kept in [0, 2], penalties in [-2, 2]."""

    model: str = "anthropic/claude-sonnet-4-20250514"
    temperature: float = 0.7
    max_tokens: int = 2048
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None


@dataclass
class AgentDefinition:
    """A single version of an agent.

    Definitions are treated as values: evolution always builds a new
    definition with ``version + 1`` and leaves the previous one untouched so
    lineage history stays intact.
    """

    name: str
    system_prompt: str
    id: str = field(default_factory=new_id)
    lineage_id: str | None = None
    description: str = ""
    version: int = 1
    tools: list[AgentTool] = field(default_factory=list)
    flow: list[FlowStep] = field(default_factory=list)
    memory: MemoryConfig = field(default_factory=MemoryConfig)
    parameters: AgentParameters = field(default_factory=AgentParameters)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @property
    def effective_lineage_id(self) -> str:
        """Lineage key for history lookups, synthesised when the agent has none."""
        return self.lineage_id or f"lineage-{self.id}"
