import asyncio

import pytest

from plan_engine.engine import EngineConfig, PlanExecutionEngine, RunContext
from plan_engine.errors import ConfigurationError, PlanValidationError, StepFailureError, StorageError
from plan_engine.models import ArtifactType, ExecutionStatus, Plan, SpanStatus, Step, StopReason
from plan_engine.providers import LocalMockAdapter, ModelProvider, ModelRequest, ModelResponse
from plan_engine.stores import InMemoryArtifactStore


def make_plan(plan_id: str = "e2e-plan") -> Plan:
    return Plan(
        id=plan_id,
        goal="Test determinism and stop conditions",
        description="Full end-to-end execution test",
        steps=[
            Step(id="step-1", type="analysis", title="Analyze Requirements", description="analyze", input={"prompt": "analyze"}),
            Step(id="step-2", type="code_change", title="Implement Solution", description="implement", input={"prompt": "implement"}),
            Step(id="step-3", type="review", title="Review Changes", description="review", input={"prompt": "review"}),
            Step(id="step-4", type="analysis", title="Final Analysis", description="final", input={"prompt": "analyze final"}),
        ],
    )


def make_engine(store=None, provider=None, **overrides) -> PlanExecutionEngine:
    config = {"max_iterations": 20, "max_tokens": 10_000}
    config.update(overrides)
    return PlanExecutionEngine(
        model_provider=provider or LocalMockAdapter(input_tokens=100, output_tokens=50),
        artifact_store=store if store is not None else InMemoryArtifactStore(),
        **config,
    )


class RecordingStore(InMemoryArtifactStore):
    """Keeps every snapshot written, in order."""

    def __init__(self) -> None:
        super().__init__()
        self.saved = []

    async def save_snapshot(self, state):
        self.saved.append(state)
        await super().save_snapshot(state)


class FlakyProvider(ModelProvider):
    """Fails the first call for each listed step, then succeeds."""

    def __init__(self, flaky_steps):
        self._pending = set(flaky_steps)
        self.requests = []

    @property
    def name(self):
        return "Flaky"

    async def generate(self, request: ModelRequest) -> ModelResponse:
        self.requests.append(request)
        step_id = request.context["step_id"]
        if step_id in self._pending:
            self._pending.discard(step_id)
            raise RuntimeError(f"transient failure in {step_id}")
        return ModelResponse(content=f"done {step_id}", input_tokens=10, output_tokens=5)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "overrides",
    [
        {"max_iterations": 0},
        {"max_iterations": -3},
        {"max_tokens": 0},
        {"max_tokens": -1},
        {"max_execution_time_ms": 0},
    ],
)
def test_invalid_budgets_fail_fast(overrides):
    provider = LocalMockAdapter()
    with pytest.raises(ConfigurationError):
        make_engine(provider=provider, **overrides)
    assert provider.call_count == 0


def test_missing_collaborators_rejected():
    with pytest.raises(ConfigurationError):
        PlanExecutionEngine(max_iterations=1, max_tokens=1, model_provider=None, artifact_store=InMemoryArtifactStore())
    with pytest.raises(ConfigurationError):
        PlanExecutionEngine(max_iterations=1, max_tokens=1, model_provider=LocalMockAdapter(), artifact_store=None)


def test_get_config():
    engine = make_engine(max_execution_time_ms=5000)
    assert engine.get_config() == EngineConfig(max_iterations=20, max_tokens=10_000, max_execution_time_ms=5000)


# ---------------------------------------------------------------------------
# Normal completion
# ---------------------------------------------------------------------------


def test_completes_four_step_plan():
    state = asyncio.run(make_engine(max_tokens=100_000).execute(make_plan(), "/repo", "run-completed-1"))

    assert state.status is ExecutionStatus.COMPLETED
    assert state.stop_reason is None
    assert state.current_step_index == 4
    assert state.iteration_count == 4
    assert state.token_usage.input == 400
    assert state.token_usage.output == 200
    assert state.token_usage.total == 600
    assert state.errors == ()
    assert state.end_time > state.start_time


def test_snapshot_written_every_iteration():
    store = RecordingStore()
    asyncio.run(make_engine(store=store).execute(make_plan(), "/repo", "run-progress"))

    assert [s.iteration_count for s in store.saved] == [1, 2, 3, 4, 4]
    assert [s.status for s in store.saved[:-1]] == [ExecutionStatus.RUNNING] * 4
    assert store.saved[-1].status is ExecutionStatus.COMPLETED
    assert all(s.run_id == "run-progress" for s in store.saved)


# ---------------------------------------------------------------------------
# Stop conditions
# ---------------------------------------------------------------------------


def test_stops_on_token_budget_exhaustion():
    state = asyncio.run(make_engine(max_iterations=100, max_tokens=1).execute(make_plan(), "/repo", "run-budget-1"))

    assert state.status is ExecutionStatus.STOPPED
    assert state.stop_reason is StopReason.BUDGET_EXHAUSTED
    assert state.token_usage.total <= 1
    assert state.current_step_index == 0


def test_budget_overrun_midway_is_not_committed():
    state = asyncio.run(make_engine(max_tokens=400).execute(make_plan(), "/repo", "run-budget-2"))

    assert state.stop_reason is StopReason.BUDGET_EXHAUSTED
    assert state.token_usage.total == 300
    assert state.current_step_index == 2
    assert state.iteration_count == 3


def test_budget_reached_exactly_stops_before_next_step():
    provider = LocalMockAdapter()
    state = asyncio.run(make_engine(provider=provider, max_tokens=300).execute(make_plan(), "/repo", "run-budget-3"))

    assert state.stop_reason is StopReason.BUDGET_EXHAUSTED
    assert state.token_usage.total == 300
    assert state.iteration_count == 2
    assert provider.call_count == 2


def test_stops_on_max_iterations():
    state = asyncio.run(make_engine(max_iterations=1, max_tokens=100_000).execute(make_plan(), "/repo", "run-iter-1"))

    assert state.status is ExecutionStatus.STOPPED
    assert state.stop_reason is StopReason.MAX_ITERATIONS
    assert state.iteration_count <= 1


def test_timeout_maps_to_error_stop_reason():
    provider = LocalMockAdapter(delay_ms=20)
    engine = make_engine(provider=provider, max_iterations=100, max_tokens=100_000, max_execution_time_ms=10)
    state = asyncio.run(engine.execute(make_plan(), "/repo", "run-timeout-1"))

    assert state.status is ExecutionStatus.STOPPED
    assert state.stop_reason is StopReason.ERROR
    assert state.current_step_index < 4
    assert any(not e.recoverable and "time limit" in e.message for e in state.errors)


def test_stop_reason_recorded_in_snapshot():
    store = InMemoryArtifactStore()
    asyncio.run(make_engine(store=store, max_iterations=1).execute(make_plan(), "/repo", "run-stop-reason-1"))

    snapshot = asyncio.run(store.load_snapshot("run-stop-reason-1"))
    assert snapshot.stop_reason is StopReason.MAX_ITERATIONS
    assert snapshot.status is ExecutionStatus.STOPPED


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


def test_cancelled_before_start():
    store = InMemoryArtifactStore()
    ctx = RunContext.create("run-cancel-1", store)
    ctx.cancel()
    provider = LocalMockAdapter()
    state = asyncio.run(make_engine(store=store, provider=provider).execute(make_plan(), "/repo", "run-cancel-1", context=ctx))

    assert state.status is ExecutionStatus.STOPPED
    assert state.stop_reason is StopReason.CANCELLED
    assert state.iteration_count == 0
    assert provider.call_count == 0


def test_cancel_checked_at_iteration_boundary():
    store = InMemoryArtifactStore()
    ctx = RunContext.create("run-cancel-2", store)

    class CancellingProvider(LocalMockAdapter):
        async def generate(self, request):
            response = await super().generate(request)
            ctx.cancel()
            return response

    state = asyncio.run(
        make_engine(store=store, provider=CancellingProvider()).execute(make_plan(), "/repo", "run-cancel-2", context=ctx)
    )

    # The in-flight step finishes; the next boundary observes the cancel.
    assert state.stop_reason is StopReason.CANCELLED
    assert state.current_step_index == 1
    assert state.token_usage.total == 150


def test_context_for_another_run_is_rejected():
    ctx = RunContext.create("other-run")
    with pytest.raises(PlanValidationError, match="other-run"):
        asyncio.run(make_engine().execute(make_plan(), "/repo", "run-x", context=ctx))


def test_reused_context_starts_each_run_clean():
    store = InMemoryArtifactStore()
    ctx = RunContext.create("run-again", store)
    first = FlakyProvider([])
    asyncio.run(make_engine(store=store, provider=first).execute(make_plan(), "/repo", "run-again", context=ctx))
    assert len(ctx.previous_outputs) == 4

    second = FlakyProvider([])
    state = asyncio.run(
        make_engine(store=store, provider=second, max_iterations=2).execute(make_plan(), "/repo", "run-again", context=ctx)
    )

    assert second.requests[0].context["previous_outputs"] == {}
    assert [(s.iteration_count, s.status) for s in ctx.tracker.history()] == [
        (1, ExecutionStatus.RUNNING),
        (2, ExecutionStatus.STOPPED),
    ]
    operations = [entry.operation for entry in ctx.logger.get_logs()]
    assert operations.count("execution_started") == 1
    assert operations[-1] == "execution_stopped"
    assert [span.id for span in ctx.tracer.get_timeline().spans] == ["execution", "step-1#1", "step-2#2"]
    assert state.stop_reason is StopReason.MAX_ITERATIONS


def test_cancel_from_previous_run_does_not_carry_over():
    store = InMemoryArtifactStore()
    ctx = RunContext.create("run-cancel-3", store)

    class CancellingProvider(LocalMockAdapter):
        async def generate(self, request):
            ctx.cancel()
            return await super().generate(request)

    stopped = asyncio.run(
        make_engine(store=store, provider=CancellingProvider()).execute(make_plan(), "/repo", "run-cancel-3", context=ctx)
    )
    assert stopped.stop_reason is StopReason.CANCELLED

    state = asyncio.run(make_engine(store=store).execute(make_plan(), "/repo", "run-cancel-3", context=ctx))
    assert state.status is ExecutionStatus.COMPLETED
    assert not ctx.cancelled


def test_cancel_between_runs_applies_to_next_run():
    store = InMemoryArtifactStore()
    ctx = RunContext.create("run-cancel-4", store)
    asyncio.run(make_engine(store=store).execute(make_plan(), "/repo", "run-cancel-4", context=ctx))

    ctx.cancel()
    provider = LocalMockAdapter()
    state = asyncio.run(make_engine(store=store, provider=provider).execute(make_plan(), "/repo", "run-cancel-4", context=ctx))

    assert state.stop_reason is StopReason.CANCELLED
    assert provider.call_count == 0


# ---------------------------------------------------------------------------
# Error isolation
# ---------------------------------------------------------------------------


def test_persistently_failing_step_is_bounded_by_max_iterations():
    provider = LocalMockAdapter(fail_on_steps=["step-2"])
    state = asyncio.run(make_engine(provider=provider, max_iterations=6).execute(make_plan(), "/repo", "run-fail-1"))

    assert state.status is ExecutionStatus.STOPPED
    assert state.stop_reason is StopReason.MAX_ITERATIONS
    assert state.iteration_count == 6
    assert state.current_step_index == 1
    assert len(state.errors) == 5
    assert {e.step_id for e in state.errors} == {"step-2"}
    assert all(e.recoverable for e in state.errors)


def test_transient_step_failure_is_recorded_and_run_completes():
    provider = FlakyProvider(["step-3"])
    state = asyncio.run(make_engine(provider=provider).execute(make_plan(), "/repo", "run-flaky-1"))

    assert state.status is ExecutionStatus.COMPLETED
    assert state.iteration_count == 5
    assert state.current_step_index == 4
    assert len(state.errors) == 1
    assert state.errors[0].step_id == "step-3"
    assert "transient failure" in state.errors[0].message


def test_step_errors_persisted_in_snapshot():
    store = InMemoryArtifactStore()
    provider = LocalMockAdapter(fail_on_steps=["step-1"])
    asyncio.run(make_engine(store=store, provider=provider, max_iterations=2).execute(make_plan(), "/repo", "run-err-snap"))

    snapshot = asyncio.run(store.load_snapshot("run-err-snap"))
    assert len(snapshot.errors) == 2
    assert snapshot.errors[0].step_id == "step-1"


# ---------------------------------------------------------------------------
# Storage failure
# ---------------------------------------------------------------------------


def test_storage_failure_fails_run_and_propagates():
    class BrokenStore(InMemoryArtifactStore):
        async def save_snapshot(self, state):
            raise OSError("disk full")

    with pytest.raises(StorageError, match="disk full") as exc_info:
        asyncio.run(make_engine(store=BrokenStore()).execute(make_plan(), "/repo", "run-broken"))

    failed = exc_info.value.state
    assert failed.status is ExecutionStatus.FAILED
    assert failed.stop_reason is None
    assert failed.end_time is not None
    assert not failed.errors[-1].recoverable


def test_failed_state_is_recorded_when_store_recovers():
    class OnceBrokenStore(RecordingStore):
        def __init__(self):
            super().__init__()
            self.failures = 1

        async def save_snapshot(self, state):
            if self.failures:
                self.failures -= 1
                raise OSError("transient io error")
            await super().save_snapshot(state)

    store = OnceBrokenStore()
    with pytest.raises(StorageError):
        asyncio.run(make_engine(store=store).execute(make_plan(), "/repo", "run-once-broken"))

    snapshot = asyncio.run(store.load_snapshot("run-once-broken"))
    assert snapshot.status is ExecutionStatus.FAILED


# ---------------------------------------------------------------------------
# Determinism & replay
# ---------------------------------------------------------------------------


def test_identical_inputs_produce_identical_state():
    provider = LocalMockAdapter()
    store = InMemoryArtifactStore()
    state1 = asyncio.run(make_engine(store=store, provider=provider).execute(make_plan(), "/repo", "run-det-1"))
    state2 = asyncio.run(make_engine(store=store, provider=provider).execute(make_plan(), "/repo", "run-det-2"))

    assert state1.status == state2.status
    assert state1.current_step_index == state2.current_step_index
    assert state1.iteration_count == state2.iteration_count
    assert state1.plan_id == state2.plan_id


def test_tracker_histories_match_across_runs():
    store = InMemoryArtifactStore()
    ctx1 = RunContext.create("run-hist-1", store)
    ctx2 = RunContext.create("run-hist-2", store)
    asyncio.run(make_engine(store=store).execute(make_plan(), "/repo", "run-hist-1", context=ctx1))
    asyncio.run(make_engine(store=store).execute(make_plan(), "/repo", "run-hist-2", context=ctx2))

    assert len(ctx1.tracker.history()) == 4
    assert ctx2.tracker.verify_determinism(ctx1.tracker.history())


def test_replay_from_snapshot_is_exact():
    store = InMemoryArtifactStore()
    state = asyncio.run(make_engine(store=store).execute(make_plan(), "/repo", "run-replay-1"))

    loaded = [asyncio.run(store.load_snapshot("run-replay-1")) for _ in range(3)]

    assert loaded[0] == state
    assert loaded[0].to_snapshot() == loaded[1].to_snapshot() == loaded[2].to_snapshot() == state.to_snapshot()


def test_reusing_run_id_overwrites_snapshot():
    store = InMemoryArtifactStore()
    asyncio.run(make_engine(store=store, max_iterations=1).execute(make_plan(), "/repo", "run-reuse"))
    asyncio.run(make_engine(store=store).execute(make_plan(), "/repo", "run-reuse"))

    snapshot = asyncio.run(store.load_snapshot("run-reuse"))
    assert snapshot.status is ExecutionStatus.COMPLETED
    assert store.run_count() == 1


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


def test_concurrent_runs_are_isolated():
    store = InMemoryArtifactStore()
    engine = make_engine(store=store, provider=LocalMockAdapter(delay_ms=5))
    plan = make_plan()

    async def run_all():
        return await asyncio.gather(
            engine.execute(plan, "/repo", "r-a"),
            engine.execute(plan, "/repo", "r-b"),
            engine.execute(plan, "/repo", "r-c"),
        )

    states = asyncio.run(run_all())

    assert [s.run_id for s in states] == ["r-a", "r-b", "r-c"]
    for run_id in ("r-a", "r-b", "r-c"):
        snapshot = asyncio.run(store.load_snapshot(run_id))
        assert snapshot.run_id == run_id
        assert snapshot.status is ExecutionStatus.COMPLETED
        assert snapshot.iteration_count == 4
        assert snapshot.token_usage.total == 600


def test_concurrent_runs_keep_separate_logs():
    engine = make_engine(provider=LocalMockAdapter(delay_ms=2))
    contexts = [RunContext.create(run_id) for run_id in ("r-a", "r-b")]

    async def run_all():
        await asyncio.gather(*(engine.execute(make_plan(), "/repo", c.run_id, context=c) for c in contexts))

    asyncio.run(run_all())

    for ctx in contexts:
        assert {entry.run_id for entry in ctx.logger.get_logs()} == {ctx.run_id}


# ---------------------------------------------------------------------------
# Provider requests, logs, outputs
# ---------------------------------------------------------------------------


def test_requests_carry_run_context_and_prior_outputs():
    provider = FlakyProvider([])
    asyncio.run(make_engine(provider=provider).execute(make_plan(), "/workspace/repo", "run-req"))

    first, second = provider.requests[0], provider.requests[1]
    assert first.context["step_id"] == "step-1"
    assert first.context["repo_path"] == "/workspace/repo"
    assert first.context["previous_outputs"] == {}
    assert second.context["previous_outputs"] == {"step-1": "done step-1"}
    assert "## Step: Implement Solution" in second.user_message
    assert "- step-1: <output>" in second.system_prompt
    assert "done step-1" not in second.system_prompt


def test_run_logs_lifecycle_events():
    ctx = RunContext.create("run-logs")
    asyncio.run(make_engine(max_iterations=2).execute(make_plan(), "/repo", "run-logs", context=ctx))

    operations = [entry.operation for entry in ctx.logger.get_logs()]
    assert operations[0] == "execution_started"
    assert operations.count("step_completed") == 2
    assert operations[-1] == "execution_stopped"


def test_record_outputs_saves_artifacts():
    store = InMemoryArtifactStore()
    engine = make_engine(store=store, provider=LocalMockAdapter(response_content="patched"), record_outputs=True)
    asyncio.run(engine.execute(make_plan(), "/repo", "run-outputs"))

    artifacts = [a for a in asyncio.run(store.list_artifacts("run-outputs")) if a.type is ArtifactType.OUTPUT]
    assert [a.step_id for a in artifacts] == ["step-1", "step-2", "step-3", "step-4"]
    assert all(a.content == "patched" for a in artifacts)


def test_step_failure_error_message_recorded():
    class Failing(LocalMockAdapter):
        async def generate(self, request):
            raise StepFailureError("compile error", step_id=request.context["step_id"])

    state = asyncio.run(make_engine(provider=Failing(), max_iterations=1).execute(make_plan(), "/repo", "run-se"))
    assert state.errors[0].message == "compile error"


# ---------------------------------------------------------------------------
# Trace
# ---------------------------------------------------------------------------


def test_timeline_has_one_span_per_iteration():
    ctx = RunContext.create("run-trace")
    asyncio.run(make_engine(provider=FlakyProvider(["step-2"])).execute(make_plan(), "/repo", "run-trace", context=ctx))

    timeline = ctx.tracer.get_timeline()
    root, *steps = timeline.spans
    assert timeline.end_time is not None
    assert (root.id, root.status) == ("execution", SpanStatus.COMPLETED)
    assert [span.id for span in steps] == ["step-1#1", "step-2#2", "step-2#3", "step-3#4", "step-4#5"]
    assert all(span.parent_id == "execution" for span in steps)
    assert steps[1].status is SpanStatus.FAILED
    assert steps[1].error == "transient failure in step-2"
    assert all(span.status is SpanStatus.COMPLETED for span in steps[2:])
    assert steps[0].metadata == {"step_id": "step-1", "iteration": 1}


def test_budget_stop_marks_step_span_failed():
    ctx = RunContext.create("run-trace-budget")
    asyncio.run(make_engine(max_tokens=200).execute(make_plan(), "/repo", "run-trace-budget", context=ctx))

    spans = {span.id: span for span in ctx.tracer.get_timeline().spans}
    assert spans["step-1#1"].status is SpanStatus.COMPLETED
    assert spans["step-2#2"].status is SpanStatus.FAILED
    assert spans["execution"].status is SpanStatus.COMPLETED


def test_trace_artifact_saved_with_record_outputs():
    store = InMemoryArtifactStore()
    asyncio.run(make_engine(store=store, record_outputs=True).execute(make_plan(), "/repo", "run-trace-out"))

    (trace,) = [a for a in asyncio.run(store.list_artifacts("run-trace-out")) if a.type is ArtifactType.TRACE]
    assert trace.step_id == "execution"
    assert trace.format.value == "json"
    assert trace.content["runId"] == "run-trace-out"
    assert trace.content["endTime"] is not None
    assert len(trace.content["spans"]) == 5
    assert trace.metadata["span_count"] == 5


def test_no_trace_artifact_by_default():
    store = InMemoryArtifactStore()
    asyncio.run(make_engine(store=store).execute(make_plan(), "/repo", "run-trace-none"))
    assert store.artifact_count("run-trace-none") == 0


def test_storage_failure_closes_run_span_as_failed():
    class BrokenStore(InMemoryArtifactStore):
        async def save_snapshot(self, state):
            raise OSError("disk full")

    store = BrokenStore()
    ctx = RunContext.create("run-trace-broken", store)
    with pytest.raises(StorageError):
        asyncio.run(make_engine(store=store).execute(make_plan(), "/repo", "run-trace-broken", context=ctx))

    timeline = ctx.tracer.get_timeline()
    root = timeline.spans[0]
    assert root.status is SpanStatus.FAILED
    assert "disk full" in root.error
    assert timeline.end_time is not None
