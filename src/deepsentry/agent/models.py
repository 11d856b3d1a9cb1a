"""Data models shared by the agent loop and its collaborators."""

from __future__ import annotations

import enum
import json
from dataclasses import dataclass, field
from typing import Literal

Role = Literal["system", "user", "assistant"]
RiskLevel = Literal["low", "high"]
ReportKind = Literal["text", "structured"]

LOCAL_RUN_MARKER = "local_run "
TRANSFER_VERBS = ("upload", "download")


@dataclass(slots=True)
class Message:
    """One conversation entry sent to the model."""

    role: Role
    content: str

    def to_payload(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True, slots=True)
class FinalReport:
    """Completion report, resolved once from whatever shape the model produced."""

    kind: ReportKind = "text"
    text: str = ""

    @classmethod
    def from_value(cls, value: object) -> FinalReport:
        if value is None:
            return cls()
        if isinstance(value, str):
            return cls(kind="text", text=value)
        if isinstance(value, (dict, list)):
            return cls(kind="structured", text=json.dumps(value, indent=2, ensure_ascii=False))
        return cls(kind="text", text=str(value))


@dataclass(frozen=True, slots=True)
class RiskVerdict:
    level: RiskLevel
    reason: str

    @property
    def is_high(self) -> bool:
        return self.level == "high"


@dataclass(frozen=True, slots=True)
class AgentAction:
    """A single interpreted model response."""

    thought: str
    command: str = ""
    risk_level: RiskLevel = "low"
    reason: str = ""
    is_finished: bool = False
    final_report: FinalReport = field(default_factory=FinalReport)

    @property
    def requires_confirmation(self) -> bool:
        return bool(self.command) and self.risk_level == "high"


@dataclass(slots=True)
class CommandResult:
    """Normalized outcome of one executor call."""

    command: str
    output: str
    error: str | None = None
    returncode: int | None = None
    bytes_transferred: int | None = None
    duration_seconds: float = 0.0
    remote: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


class LoopState(str, enum.Enum):
    THINKING = "thinking"
    GATING = "gating"
    EXECUTING = "executing"
    OBSERVING = "observing"
    FINISHED = "finished"


@dataclass(slots=True)
class StepRecord:
    """Captured data for a single orchestration step."""

    index: int
    action: AgentAction
    result: CommandResult | None = None
    approved: bool | None = None
    declined: bool = False


@dataclass(slots=True)
class LoopResult:
    goal: str
    final_report: str
    state: LoopState
    steps: list[StepRecord] = field(default_factory=list)
    history: list[Message] = field(default_factory=list)
