# models.py
# Data contracts for the debugger core.
# No business logic lives here: pure schema and validation, plus a few
# read-only lookups on Program.

import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Iterator, Literal, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    model_validator,
)

from entran import config


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ExecutionStatus(str, Enum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"


class DebugCommand(str, Enum):
    STEP_OVER = "step_over"
    STEP_INTO = "step_into"
    STEP_OUT = "step_out"
    CONTINUE = "continue"
    PAUSE = "pause"
    RESET = "reset"
    EVALUATE = "evaluate"
    INSPECT = "inspect"


class BreakpointAction(str, Enum):
    SET = "set"
    REMOVE = "remove"


# ---------------------------------------------------------------------------
# Conditions and branch actions
# ---------------------------------------------------------------------------


class EqualityCheck(BaseModel):
    type: Literal["equality_check"]
    variable: str
    operator: str = "=="
    value: str


class ContainsCheck(BaseModel):
    type: Literal["contains_check"]
    variable: str
    operator: str = "contains"
    value: str


class BooleanCheck(BaseModel):
    type: Literal["boolean_check"]
    expression: str


Condition = Annotated[
    Union[EqualityCheck, ContainsCheck, BooleanCheck],
    Field(discriminator="type"),
]


class CommandAction(BaseModel):
    """Branch action that re-enters the command path."""

    type: Literal["command"]
    tool: str = ""
    command: str
    parameters: dict[str, Any] = Field(default_factory=dict)
    assign_to: str | None = None


class LogAction(BaseModel):
    """Branch action that only reports a message."""

    type: Literal["log"]
    message: str


Action = Annotated[Union[CommandAction, LogAction], Field(discriminator="type")]


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------


class _StepBase(BaseModel):
    id: str = Field(..., min_length=1, description="Program-wide unique step id.")
    description: str = ""


class CommandStep(_StepBase):
    type: Literal["command"]
    tool: str = ""
    command: str = Field(..., description="Template string; may contain $var tokens.")
    parameters: dict[str, Any] = Field(default_factory=dict)
    expected_output: str | None = None
    assign_to: str | None = None


class ConditionalStep(_StepBase):
    type: Literal["conditional"]
    condition: Condition
    true_branch: Action | None = None
    false_branch: Action | None = None


class AssignmentStep(_StepBase):
    type: Literal["assignment"]
    assign_to: str = Field(..., description='"memory", "global" or a frame variable name.')
    value: Any = ""


class ChoiceOption(BaseModel):
    id: str | None = None
    description: str = ""
    action: Action


class ChoiceStep(_StepBase):
    type: Literal["choice"]
    options: list[ChoiceOption] = Field(..., min_length=1)


class AnalysisStep(_StepBase):
    type: Literal["analysis"]
    input: list[str] = Field(default_factory=list)
    extract: list[str] = Field(default_factory=list)


class NoteStep(_StepBase):
    type: Literal["note"]
    level: str = "info"
    message: str = ""


Step = Annotated[
    Union[CommandStep, ConditionalStep, AssignmentStep, ChoiceStep, AnalysisStep, NoteStep],
    Field(discriminator="type"),
]


# ---------------------------------------------------------------------------
# Program (external, read-only input)
# ---------------------------------------------------------------------------


class Procedure(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    steps: list[Step] = Field(default_factory=list)


class ErrorHandling(BaseModel):
    model_config = ConfigDict(extra="allow")

    on_tool_error: str = "continue"
    on_condition_error: str = "abort"
    timeout: int = 30_000


class Program(BaseModel):
    """A transpiled troubleshooting program. Never mutated by the core."""

    model_config = ConfigDict(extra="allow", frozen=True)

    name: str
    version: str = "1.0"
    tools: list[str] = Field(default_factory=list)
    procedures: list[Procedure] = Field(..., min_length=1)
    execution_order: list[str] = Field(default_factory=list)
    global_memory: dict[str, Any] = Field(default_factory=dict)
    error_handling: ErrorHandling = Field(default_factory=ErrorHandling)

    @model_validator(mode="after")
    def _check_references(self) -> "Program":
        known = {proc.id for proc in self.procedures}
        if len(known) != len(self.procedures):
            raise ValueError("duplicate procedure id")
        if len(set(self.execution_order)) != len(self.execution_order):
            raise ValueError("execution_order lists a procedure more than once")
        for proc_id in self.execution_order:
            if proc_id not in known:
                raise ValueError(f"execution_order names unknown procedure '{proc_id}'")

        seen: set[str] = set()
        for proc in self.procedures:
            for step in proc.steps:
                if step.id in seen:
                    raise ValueError(f"duplicate step id '{step.id}'")
                seen.add(step.id)

        if not any(proc.steps for proc in self.ordered_procedures()):
            raise ValueError("program has no executable steps")
        return self

    def ordered_procedures(self) -> list[Procedure]:
        """Procedures in execution order (declaration order when none is given)."""
        if not self.execution_order:
            return list(self.procedures)
        by_id = {proc.id: proc for proc in self.procedures}
        return [by_id[proc_id] for proc_id in self.execution_order]

    def get_procedure(self, procedure_id: str) -> Procedure | None:
        for proc in self.procedures:
            if proc.id == procedure_id:
                return proc
        return None

    def iter_steps(self) -> Iterator[Step]:
        for proc in self.ordered_procedures():
            yield from proc.steps

    def total_steps(self) -> int:
        return sum(len(proc.steps) for proc in self.ordered_procedures())


class Analysis(BaseModel):
    """Semantic-analysis annotation. Consumed for reporting only."""

    model_config = ConfigDict(extra="allow", frozen=True)

    intent: dict[str, Any] | str | None = None
    risk_assessment: dict[str, Any] | None = None

    @property
    def primary_intent(self) -> str | None:
        if isinstance(self.intent, dict):
            return self.intent.get("primary")
        return self.intent

    @property
    def overall_risk(self) -> str | None:
        if self.risk_assessment:
            return self.risk_assessment.get("overall_risk")
        return None


# ---------------------------------------------------------------------------
# Session options
# ---------------------------------------------------------------------------


class SessionOptions(BaseModel):
    debug_mode: bool = True
    timeout_ms: int = Field(
        default=config.DEFAULT_TIMEOUT_MS,
        ge=1000,
        le=300_000,
        validation_alias=AliasChoices("timeout_ms", "timeout"),
    )
    memory_limit_bytes: int = Field(
        default=config.DEFAULT_MEMORY_LIMIT,
        ge=1024,
        le=100 * 1024 * 1024,
        validation_alias=AliasChoices("memory_limit_bytes", "memory_limit"),
    )
    auto_continue: bool = False
    risk_level: RiskLevel = RiskLevel.MEDIUM

    @property
    def safe_mode(self) -> bool:
        return self.risk_level == RiskLevel.LOW


# ---------------------------------------------------------------------------
# Execution state
# ---------------------------------------------------------------------------


class CurrentStep(BaseModel):
    procedure_id: str
    step_id: str
    step_index: int = Field(default=0, ge=0)
    instruction_pointer: int = Field(default=0, ge=0)


class ToolOutput(BaseModel):
    command: str
    output: str
    timestamp: datetime = Field(default_factory=utcnow)


class Heap(BaseModel):
    tool_outputs: dict[str, ToolOutput] = Field(default_factory=dict)


class Memory(BaseModel):
    persistent_vars: dict[str, Any] = Field(default_factory=dict)


class HistoryEntry(BaseModel):
    """One evaluated step. Appended regardless of outcome."""

    step_id: str
    type: str
    started_at: datetime
    completed_at: datetime
    duration_ms: int
    success: bool
    output: Any = None
    error: str | None = None


class ErrorState(BaseModel):
    step_id: str | None
    error: str
    timestamp: datetime = Field(default_factory=utcnow)


class ExecutionState(BaseModel):
    status: ExecutionStatus = ExecutionStatus.INITIALIZED
    current_step: CurrentStep
    frame: dict[str, Any] = Field(default_factory=dict)
    heap: Heap = Field(default_factory=Heap)
    memory: Memory = Field(default_factory=Memory)
    execution_history: list[HistoryEntry] = Field(default_factory=list)
    breakpoints: list[str] = Field(default_factory=list)
    error_state: ErrorState | None = None


class StepResult(BaseModel):
    step_id: str | None = None
    step_type: str | None = None
    success: bool
    output: Any = None
    error: str | None = None
    risk_level: RiskLevel | None = None
    stdout: str | None = None
    stderr: str | None = None


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


class CommandRecord(BaseModel):
    command: DebugCommand
    params: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=utcnow)
    status_after: ExecutionStatus | None = None


class Session(BaseModel):
    """One independent execution of a Program. Owned by the Session Manager."""

    id: str
    program: Program
    analysis: Analysis | None = None
    options: SessionOptions = Field(default_factory=SessionOptions)
    state: ExecutionState
    command_history: list[CommandRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)
    total_steps_executed: int = 0

    # Serialises debug commands on this session.
    _lock: threading.RLock = PrivateAttr(default_factory=threading.RLock)
    # Set by pause; observed by continue/step_out between steps.
    _pause_requested: threading.Event = PrivateAttr(default_factory=threading.Event)

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def pause_requested(self) -> threading.Event:
        return self._pause_requested

    def touch(self) -> None:
        self.last_activity = utcnow()


class SessionSummary(BaseModel):
    id: str
    program: str
    status: ExecutionStatus
    created_at: datetime
    last_activity: datetime
    total_steps_executed: int
    current_step_id: str | None = None
    intent: str | None = None
    overall_risk: str | None = None


class StartResponse(BaseModel):
    session_id: str
    state: ExecutionState
    step_result: StepResult | None = None


class CommandResponse(BaseModel):
    success: bool
    command: DebugCommand
    state: ExecutionState
    step_result: StepResult | None = None
    result: dict[str, Any] | None = None
    message: str | None = None
