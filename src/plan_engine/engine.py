# engine.py
# Plan Execution Engine
#
# The engine owns the loop; the model provider is a passive responder and the
# artifact store a passive sink. Engine instances hold configuration and
# collaborators only. Everything scoped to one run lives in a RunContext and
# in the ExecutionState values threaded through the loop, so one engine can
# serve many concurrent runs.
#
# Per iteration:
#   cancel? → iteration cap? → token budget? → wall clock?
#   → provider call (one trace span) → next state (advance, or record step error)
#   → snapshot
#
# Terminal: completed | stopped(reason) | failed (storage only).

import asyncio
import logging
import time
from collections.abc import Awaitable
from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, PositiveInt, ValidationError

from plan_engine.errors import ConfigurationError, PlanValidationError, StorageError
from plan_engine.logger import ExecutionLogger
from plan_engine.models import (
    Artifact,
    ArtifactFormat,
    ArtifactType,
    ExecutionError,
    ExecutionState,
    ExecutionStatus,
    Plan,
    SpanStatus,
    Step,
    StopReason,
)
from plan_engine.providers import (
    STEP_SYSTEM_PROMPT,
    ModelProvider,
    ModelRequest,
    ModelResponse,
    build_system_prompt,
    build_user_message,
)
from plan_engine.stores import ArtifactStore
from plan_engine.tracer import ExecutionTracer
from plan_engine.tracker import ExecutionStateTracker

logger = logging.getLogger(__name__)

# Root span of every run's timeline, and the step id its trace artifact is filed under.
RUN_SPAN_ID = "execution"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class EngineConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    max_iterations: PositiveInt
    max_tokens: PositiveInt
    max_execution_time_ms: PositiveInt | None = None
    record_outputs: bool = False


# ---------------------------------------------------------------------------
# Run context
# ---------------------------------------------------------------------------


@dataclass
class RunContext:
    """
    Everything owned by a single run. Passed explicitly through every call.

    Create one up front to keep a handle on the run's logger, snapshot
    history, timeline, and cancellation:

        ctx = RunContext.create("run-1", store)
        task = asyncio.create_task(engine.execute(plan, "/repo", "run-1", context=ctx))
        ctx.cancel()

    A context may be passed to execute() again for the same run id. Each
    execution starts from a clean slate; a cancel requested after the previous
    execution ended still applies to the next one.
    """

    run_id: str
    logger: ExecutionLogger
    tracker: ExecutionStateTracker
    tracer: ExecutionTracer
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.monotonic)
    previous_outputs: dict[str, str] = field(default_factory=dict)
    _ended_cancelled: bool = field(default=False, init=False, repr=False)

    @classmethod
    def create(cls, run_id: str, artifact_store: ArtifactStore | None = None) -> "RunContext":
        return cls(
            run_id=run_id,
            logger=ExecutionLogger(run_id),
            tracker=ExecutionStateTracker(run_id, artifact_store),
            tracer=ExecutionTracer(run_id),
        )

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self.started_at) * 1000

    def begin_run(self) -> None:
        """Discard anything a previous execution left in this context."""
        if self._ended_cancelled:
            self.cancel_event = asyncio.Event()
            self._ended_cancelled = False
        self.previous_outputs.clear()
        self.tracker.clear()
        self.logger.clear_logs()
        self.tracer.reset()
        self.started_at = time.monotonic()

    def end_run(self) -> None:
        self._ended_cancelled = self.cancelled


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class PlanExecutionEngine:
    """
    Drives a plan to a terminal state under iteration, token, and time budgets.

    Example:
        engine = PlanExecutionEngine(
            max_iterations=20,
            max_tokens=10_000,
            model_provider=LocalMockAdapter(),
            artifact_store=InMemoryArtifactStore(),
        )
        state = asyncio.run(engine.execute(plan, "/repo", "run-1"))
    """

    def __init__(
        self,
        max_iterations: int,
        max_tokens: int,
        model_provider: ModelProvider,
        artifact_store: ArtifactStore,
        max_execution_time_ms: int | None = None,
        record_outputs: bool = False,
    ) -> None:
        try:
            self._config = EngineConfig(
                max_iterations=max_iterations,
                max_tokens=max_tokens,
                max_execution_time_ms=max_execution_time_ms,
                record_outputs=record_outputs,
            )
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid engine configuration: {exc}") from exc
        if model_provider is None:
            raise ConfigurationError("A model provider is required.")
        if artifact_store is None:
            raise ConfigurationError("An artifact store is required.")

        self._provider = model_provider
        self._store = artifact_store

    def get_config(self) -> EngineConfig:
        return self._config

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def execute(
        self,
        plan: Plan,
        repo_path: str,
        run_id: str,
        context: RunContext | None = None,
    ) -> ExecutionState:
        """
        Run `plan` to a terminal state and return it.

        Step failures are recorded in state.errors and never raised. A storage
        failure ends the run as failed and raises StorageError. A context bound
        to another run id raises PlanValidationError.
        """
        if not plan.steps:
            raise PlanValidationError(f"Plan {plan.id} has no steps.")
        if context is None:
            context = RunContext.create(run_id, self._store)
        elif context.run_id != run_id:
            raise PlanValidationError(f"Run context is for {context.run_id}, not {run_id}.")

        ctx = context
        # The engine's store is authoritative for every run it executes.
        ctx.tracker.attach_store(self._store)
        ctx.begin_run()
        try:
            return await self._execute(ctx, plan, repo_path)
        finally:
            ctx.end_run()

    async def _execute(self, ctx: RunContext, plan: Plan, repo_path: str) -> ExecutionState:
        state = ExecutionState.initial(ctx.run_id, plan.id)
        ctx.logger.log_event("execution_started", plan_id=plan.id, repo_path=repo_path)
        ctx.tracer.start_span(RUN_SPAN_ID, f"execute {plan.id}", {"plan_id": plan.id})

        total = len(plan.steps)
        while state.current_step_index < total:
            reason = self._stop_reason(ctx, state)
            if reason is not None:
                state = self._stop(ctx, state, reason)
                break

            step = plan.steps[state.current_step_index]
            state = await self._run_iteration(ctx, plan, step, repo_path, state)
            if state.status.is_terminal:
                break
            await self._persist(ctx, state)

        if not state.status.is_terminal:
            state = state.finalize(ExecutionStatus.COMPLETED)
            ctx.logger.log_event("execution_completed", duration=state.end_time - state.start_time)

        await self._record_trace(ctx, state)
        await self._persist(ctx, state)
        return state

    # ------------------------------------------------------------------
    # Stop conditions
    # ------------------------------------------------------------------

    def _stop_reason(self, ctx: RunContext, state: ExecutionState) -> StopReason | None:
        config = self._config
        if ctx.cancelled:
            return StopReason.CANCELLED
        if state.iteration_count >= config.max_iterations:
            return StopReason.MAX_ITERATIONS
        if state.token_usage.total >= config.max_tokens:
            return StopReason.BUDGET_EXHAUSTED
        if config.max_execution_time_ms is not None and ctx.elapsed_ms() > config.max_execution_time_ms:
            # Timeouts surface as the generic error reason.
            return StopReason.ERROR
        return None

    def _stop(self, ctx: RunContext, state: ExecutionState, reason: StopReason) -> ExecutionState:
        if reason is StopReason.ERROR:
            state = state.with_error(
                ExecutionError(
                    message=f"Execution exceeded {self._config.max_execution_time_ms}ms time limit.",
                    recoverable=False,
                )
            )
            ctx.logger.warn("engine", "timeout", f"Elapsed {ctx.elapsed_ms():.0f}ms; stopping run.")
        state = state.finalize(ExecutionStatus.STOPPED, reason)
        ctx.logger.log_event("execution_stopped", reason=reason.value)
        return state

    # ------------------------------------------------------------------
    # One iteration
    # ------------------------------------------------------------------

    async def _run_iteration(
        self,
        ctx: RunContext,
        plan: Plan,
        step: Step,
        repo_path: str,
        state: ExecutionState,
    ) -> ExecutionState:
        ctx.logger.log_event("step_started", step_id=step.id, step_title=step.title)
        started = time.monotonic()
        iteration = state.iteration_count + 1
        span_id = f"{step.id}#{iteration}"
        ctx.tracer.start_span(span_id, step.title, {"step_id": step.id, "iteration": iteration})

        try:
            response = await self._provider.generate(self._build_request(ctx, plan, step, repo_path))
        except Exception as exc:
            ctx.tracer.end_span(span_id, SpanStatus.FAILED, error=str(exc))
            ctx.logger.log_event("step_failed", step_id=step.id, error=str(exc))
            return state.model_copy(
                update={
                    "iteration_count": iteration,
                    "errors": state.errors + (ExecutionError(step_id=step.id, message=str(exc), recoverable=True),),
                }
            )

        try:
            state = await self._apply_response(ctx, step, state, response, started)
        except StorageError as exc:
            ctx.tracer.end_span(span_id, SpanStatus.FAILED, error=str(exc))
            raise

        if state.stop_reason is StopReason.BUDGET_EXHAUSTED:
            ctx.tracer.end_span(span_id, SpanStatus.FAILED, error="Token budget exhausted.")
        else:
            ctx.tracer.end_span(span_id)
        return state

    async def _apply_response(
        self,
        ctx: RunContext,
        step: Step,
        state: ExecutionState,
        response: ModelResponse,
        started: float,
    ) -> ExecutionState:
        usage = state.token_usage.add(response.input_tokens, response.output_tokens)
        if usage.total > self._config.max_tokens:
            # Usage that would overrun the budget is not committed.
            ctx.logger.warn(
                "engine",
                "budget",
                f"Step {step.id} used {response.input_tokens + response.output_tokens} tokens; "
                f"budget of {self._config.max_tokens} would be exceeded.",
                {"step_id": step.id, "committed_total": state.token_usage.total},
            )
            state = state.model_copy(update={"iteration_count": state.iteration_count + 1})
            return self._stop(ctx, state, StopReason.BUDGET_EXHAUSTED)

        ctx.previous_outputs[step.id] = response.content
        if self._config.record_outputs:
            artifact = Artifact.create(
                ctx.run_id,
                step.id,
                ArtifactType.OUTPUT,
                ArtifactFormat.TEXT,
                response.content,
                {"input_tokens": response.input_tokens, "output_tokens": response.output_tokens},
            )
            await self._store_call(ctx, state, ctx.tracker.save_artifact(artifact))

        ctx.logger.log_event(
            "step_completed",
            step_id=step.id,
            duration=round((time.monotonic() - started) * 1000),
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
        )
        return state.model_copy(
            update={
                "current_step_index": state.current_step_index + 1,
                "iteration_count": state.iteration_count + 1,
                "token_usage": usage,
            }
        )

    def _build_request(self, ctx: RunContext, plan: Plan, step: Step, repo_path: str) -> ModelRequest:
        context = {
            **step.input.context,
            "run_id": ctx.run_id,
            "plan_id": plan.id,
            "repo_path": repo_path,
            "step_id": step.id,
            "step_type": step.type.value,
            "previous_outputs": dict(ctx.previous_outputs),
        }
        return ModelRequest(
            system_prompt=build_system_prompt(STEP_SYSTEM_PROMPT, context),
            user_message=build_user_message(step.input.prompt or step.description, step.title, step.description),
            context=context,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def _persist(self, ctx: RunContext, state: ExecutionState) -> None:
        await self._store_call(ctx, state, ctx.tracker.save_snapshot(state))

    async def _record_trace(self, ctx: RunContext, state: ExecutionState) -> None:
        ctx.tracer.end_span(RUN_SPAN_ID)
        timeline = ctx.tracer.finish()
        if not self._config.record_outputs:
            return

        artifact = Artifact.create(
            ctx.run_id,
            RUN_SPAN_ID,
            ArtifactType.TRACE,
            ArtifactFormat.JSON,
            timeline.model_dump(mode="json", by_alias=True),
            {"span_count": len(timeline.spans), "duration": ctx.tracer.get_total_duration()},
        )
        await self._store_call(ctx, state, ctx.tracker.save_artifact(artifact))

    async def _store_call(self, ctx: RunContext, state: ExecutionState, call: Awaitable[None]) -> None:
        """
        Await a store operation. On failure the run cannot be durably
        recorded: finalize as failed, try once to record that, and raise.
        """
        try:
            await call
        except Exception as exc:
            ctx.logger.error("engine", "persist", f"Storage failure: {exc}")
            if state.status.is_terminal:
                raise StorageError(f"Could not persist run {state.run_id}: {exc}", state=state) from exc

            failed = state.with_error(
                ExecutionError(message=f"Storage failure: {exc}", recoverable=False)
            ).finalize(ExecutionStatus.FAILED)
            ctx.logger.log_event("execution_failed", error=str(exc))
            ctx.tracer.end_span(RUN_SPAN_ID, SpanStatus.FAILED, error=str(exc))
            ctx.tracer.finish()
            try:
                await ctx.tracker.save_snapshot(failed)
            except Exception:
                logger.exception("Could not record failed state for run %s", state.run_id)
            raise StorageError(f"Could not persist run {state.run_id}: {exc}", state=failed) from exc
