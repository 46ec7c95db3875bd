# models.py
# Data contracts for the plan execution engine.
# No orchestration lives here: schema, validation, and pure state transitions.
#
# Snapshot wire format uses camelCase keys (runId, planId, ...). Python code
# uses snake_case attributes; pydantic aliases bridge the two.

import json
import time
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from plan_engine.errors import StateTransitionError


def now_ms() -> int:
    """Wall-clock epoch milliseconds."""
    return int(time.time() * 1000)


class _Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class _Value(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


class StepType(str, Enum):
    ANALYSIS = "analysis"
    CODE_CHANGE = "code_change"
    REVIEW = "review"
    TOOL_CALL = "tool_call"


class StepInput(_Value):
    prompt: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)
    required_tools: list[str] = Field(default_factory=list)


class Step(_Value):
    """A single unit of work in a plan. Position in the plan is execution order."""

    id: str = Field(..., min_length=1)
    type: StepType
    title: str = Field(..., min_length=1)
    description: str = ""
    input: StepInput = Field(default_factory=StepInput)


class Plan(_Value):
    """An ordered set of steps. Frozen: a plan cannot change once a run starts."""

    id: str = Field(..., min_length=1)
    goal: str = Field(..., min_length=1)
    description: str = ""
    steps: tuple[Step, ...] = Field(..., min_length=1)

    @classmethod
    def from_json_file(cls, path: str | Path) -> "Plan":
        return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))


# ---------------------------------------------------------------------------
# Execution state
# ---------------------------------------------------------------------------


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


class StopReason(str, Enum):
    MAX_ITERATIONS = "max_iterations"
    BUDGET_EXHAUSTED = "budget_exhausted"
    ERROR = "error"
    CANCELLED = "cancelled"


class TokenUsage(_Value):
    input: int = Field(default=0, ge=0)
    output: int = Field(default=0, ge=0)
    total: int = Field(default=0, ge=0)

    def add(self, input_tokens: int, output_tokens: int) -> "TokenUsage":
        return TokenUsage(
            input=self.input + input_tokens,
            output=self.output + output_tokens,
            total=self.total + input_tokens + output_tokens,
        )


class ExecutionError(_Value):
    """A recorded failure. Lives in ExecutionState.errors; never raised."""

    step_id: str | None = None
    message: str
    timestamp: int = Field(default_factory=now_ms)
    recoverable: bool = True


class ExecutionState(_Value):
    """
    Immutable snapshot of one run.

    Every transition returns a new value. The serialized form of this model is
    the snapshot persisted by an ArtifactStore.
    """

    run_id: str = Field(..., min_length=1)
    plan_id: str = Field(..., min_length=1)
    status: ExecutionStatus = ExecutionStatus.RUNNING
    stop_reason: StopReason | None = None
    current_step_index: int = Field(default=0, ge=0)
    iteration_count: int = Field(default=0, ge=0)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    errors: tuple[ExecutionError, ...] = ()
    start_time: int = Field(default_factory=now_ms)
    end_time: int | None = None

    @classmethod
    def initial(cls, run_id: str, plan_id: str) -> "ExecutionState":
        return cls(run_id=run_id, plan_id=plan_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def with_error(self, error: ExecutionError) -> "ExecutionState":
        return self.model_copy(update={"errors": self.errors + (error,)})

    def finalize(
        self,
        status: ExecutionStatus,
        stop_reason: StopReason | None = None,
    ) -> "ExecutionState":
        """
        Move a running state to a terminal status.

        Terminal states never revert. A stopped run always carries a reason;
        other statuses never do.
        """
        if self.status.is_terminal:
            raise StateTransitionError(
                f"Run {self.run_id} is already {self.status.value}; cannot move to {status.value}."
            )
        if not status.is_terminal:
            raise StateTransitionError(f"Cannot finalize run {self.run_id} as {status.value}.")
        if (status is ExecutionStatus.STOPPED) != (stop_reason is not None):
            raise StateTransitionError("A stop reason is required for, and only for, stopped runs.")

        # end_time must be strictly after start_time even on sub-millisecond runs
        end_time = max(now_ms(), self.start_time + 1)
        return self.model_copy(update={"status": status, "stop_reason": stop_reason, "end_time": end_time})

    # ------------------------------------------------------------------
    # Snapshot serialization
    # ------------------------------------------------------------------

    def to_snapshot(self) -> str:
        return self.model_dump_json(by_alias=True, indent=2)

    @classmethod
    def from_snapshot(cls, text: str | bytes) -> "ExecutionState":
        return cls.model_validate_json(text)


# ---------------------------------------------------------------------------
# Logs and artifacts
# ---------------------------------------------------------------------------


class LogLevel(str, Enum):
    INFO = "info"
    DEBUG = "debug"
    WARN = "warn"
    ERROR = "error"


class LogEntry(_Value):
    run_id: str
    level: LogLevel
    domain: str
    operation: str
    message: str
    context: dict[str, Any] | None = None
    timestamp: int = Field(default_factory=now_ms)


class ArtifactType(str, Enum):
    PLAN = "plan"
    OUTPUT = "output"
    DIFF = "diff"
    LOG = "log"
    TRACE = "trace"


class ArtifactFormat(str, Enum):
    JSON = "json"
    TEXT = "text"
    MARKDOWN = "markdown"
    BINARY = "binary"


class Artifact(_Schema):
    """A piece of run output persisted alongside the snapshot."""

    id: str = Field(..., min_length=1)
    run_id: str = Field(..., min_length=1)
    step_id: str = Field(..., min_length=1)
    type: ArtifactType
    format: ArtifactFormat
    content: Any = None
    size: int = Field(..., ge=0)
    timestamp: int = Field(default_factory=now_ms)
    metadata: dict[str, Any] | None = None

    @classmethod
    def create(
        cls,
        run_id: str,
        step_id: str,
        type: ArtifactType,
        format: ArtifactFormat,
        content: Any,
        metadata: dict[str, Any] | None = None,
    ) -> "Artifact":
        raw = json.dumps(content) if format in (ArtifactFormat.JSON, ArtifactFormat.BINARY) else str(content)
        timestamp = now_ms()
        return cls(
            id=f"{run_id}-{step_id}-{type.value}-{timestamp}",
            run_id=run_id,
            step_id=step_id,
            type=type,
            format=format,
            content=content,
            size=len(raw.encode("utf-8")),
            timestamp=timestamp,
            metadata=metadata,
        )


# ---------------------------------------------------------------------------
# Traces
# ---------------------------------------------------------------------------


class SpanStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class ExecutionSpan(_Schema):
    """One timed operation. Open spans have no end_time or duration."""

    id: str = Field(..., min_length=1)
    name: str
    start_time: int
    end_time: int | None = None
    duration: int | None = None
    status: SpanStatus = SpanStatus.ACTIVE
    parent_id: str | None = None
    error: str | None = None
    metadata: dict[str, Any] | None = None


class ExecutionTimeline(_Schema):
    run_id: str = Field(..., min_length=1)
    start_time: int
    end_time: int | None = None
    spans: list[ExecutionSpan] = Field(default_factory=list)
