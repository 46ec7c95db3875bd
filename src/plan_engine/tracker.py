# tracker.py
# Per-run snapshot history.
#
# Every snapshot the engine persists passes through here: it is kept in
# memory by iteration (for replay and determinism checks) and forwarded to the
# artifact store.

from plan_engine.errors import PlanValidationError
from plan_engine.models import Artifact, ExecutionState
from plan_engine.stores import ArtifactStore


class ExecutionStateTracker:
    def __init__(self, run_id: str, artifact_store: ArtifactStore | None = None) -> None:
        self._run_id = run_id
        self._store = artifact_store
        self._snapshots: dict[int, ExecutionState] = {}

    @property
    def run_id(self) -> str:
        return self._run_id

    def attach_store(self, artifact_store: ArtifactStore) -> None:
        """Persist through `artifact_store` from now on."""
        self._store = artifact_store

    async def save_snapshot(self, state: ExecutionState) -> None:
        """Record the state for its iteration, then persist it."""
        if state.run_id != self._run_id:
            raise PlanValidationError(f"Tracker for run {self._run_id} cannot record run {state.run_id}.")
        # The final state shares an iteration with the last loop state and replaces it.
        self._snapshots[state.iteration_count] = state
        if self._store is not None:
            await self._store.save_snapshot(state)

    async def load_snapshot(self) -> ExecutionState | None:
        if self._store is None:
            return None
        return await self._store.load_snapshot(self._run_id)

    async def save_artifact(self, artifact: Artifact) -> None:
        if self._store is not None:
            await self._store.save_artifact(artifact)

    def snapshot_at(self, iteration: int) -> ExecutionState | None:
        return self._snapshots.get(iteration)

    def history(self) -> list[ExecutionState]:
        """Snapshots in iteration order."""
        return [self._snapshots[i] for i in sorted(self._snapshots)]

    def verify_determinism(self, previous: list[ExecutionState]) -> bool:
        """
        Compare this run's history with another run's.

        Run-identity fields (run id, timestamps) are ignored; step index,
        status, iteration count and token total must match at every snapshot.
        """
        if not previous:
            return True

        current = self.history()
        if len(current) != len(previous):
            return False

        for ours, theirs in zip(current, previous):
            if (
                ours.current_step_index != theirs.current_step_index
                or ours.status is not theirs.status
                or ours.iteration_count != theirs.iteration_count
                or ours.token_usage.total != theirs.token_usage.total
            ):
                return False
        return True

    def clear(self) -> None:
        self._snapshots.clear()
