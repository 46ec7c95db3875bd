# stores.py
# Snapshot and artifact persistence.
#
# An ArtifactStore is keyed by run id. Saving a snapshot for a run id always
# replaces the previous one; readers only ever see a complete snapshot.
#
# Layout of FileArtifactStore under base_path:
#   runs/{run_id}/snapshot.json
#   runs/{run_id}/artifacts/{artifact_id}.json

import asyncio
import logging
import os
import shutil
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import ValidationError

from plan_engine.errors import StorageError
from plan_engine.models import Artifact, ExecutionState

logger = logging.getLogger(__name__)

FILE_MODE = 0o644


class ArtifactStore(ABC):
    """Persistence contract used by the engine. All methods are coroutines."""

    @abstractmethod
    async def save_snapshot(self, state: ExecutionState) -> None:
        """Persist (or overwrite) the full state for state.run_id."""

    @abstractmethod
    async def load_snapshot(self, run_id: str) -> ExecutionState | None:
        """Return the last saved state for run_id, or None."""

    @abstractmethod
    async def save_artifact(self, artifact: Artifact) -> None: ...

    @abstractmethod
    async def get_artifact(self, run_id: str, artifact_id: str) -> Artifact | None: ...

    @abstractmethod
    async def list_artifacts(self, run_id: str) -> list[Artifact]: ...

    @abstractmethod
    async def delete_run(self, run_id: str) -> None:
        """Remove the snapshot and every artifact for run_id."""


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemoryArtifactStore(ArtifactStore):
    """
    Process-lifetime store for tests and ephemeral runs.

    Values are kept serialized so that callers can never mutate what is
    stored, and every load returns a fresh, structurally exact copy.
    """

    def __init__(self) -> None:
        self._snapshots: dict[str, str] = {}
        self._artifacts: dict[str, list[str]] = {}

    async def save_snapshot(self, state: ExecutionState) -> None:
        self._snapshots[state.run_id] = state.to_snapshot()

    async def load_snapshot(self, run_id: str) -> ExecutionState | None:
        raw = self._snapshots.get(run_id)
        return ExecutionState.from_snapshot(raw) if raw is not None else None

    async def save_artifact(self, artifact: Artifact) -> None:
        self._artifacts.setdefault(artifact.run_id, []).append(artifact.model_dump_json(by_alias=True))

    async def get_artifact(self, run_id: str, artifact_id: str) -> Artifact | None:
        for artifact in await self.list_artifacts(run_id):
            if artifact.id == artifact_id:
                return artifact
        return None

    async def list_artifacts(self, run_id: str) -> list[Artifact]:
        return [Artifact.model_validate_json(raw) for raw in self._artifacts.get(run_id, [])]

    async def delete_run(self, run_id: str) -> None:
        self._snapshots.pop(run_id, None)
        self._artifacts.pop(run_id, None)

    def clear(self) -> None:
        self._snapshots.clear()
        self._artifacts.clear()

    def run_count(self) -> int:
        return len(self._snapshots.keys() | self._artifacts.keys())

    def artifact_count(self, run_id: str) -> int:
        return len(self._artifacts.get(run_id, []))


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


def _atomic_write(path: Path, content: str) -> None:
    """Write to a sibling temp file, then rename over the target."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        # mkstemp creates 0600; published files get the usual mode.
        os.chmod(tmp_name, FILE_MODE)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class FileArtifactStore(ArtifactStore):
    """
    Durable store, one directory per run id.

    Distinct run ids never share a file, so concurrent runs do not contend.
    Each write replaces its target atomically; a reader of the same run id
    sees either the previous snapshot or the new one, never a torn write.
    Blocking file I/O runs on a worker thread.
    """

    def __init__(self, base_path: str | Path, auto_create: bool = True) -> None:
        self._base_path = Path(base_path)
        self._auto_create = auto_create

    @property
    def base_path(self) -> Path:
        return self._base_path

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def run_dir(self, run_id: str) -> Path:
        if not run_id or run_id in (".", "..") or "/" in run_id or "\\" in run_id or "\0" in run_id:
            raise StorageError(f"Invalid run id for file storage: {run_id!r}")
        return self._base_path / "runs" / run_id

    def snapshot_path(self, run_id: str) -> Path:
        return self.run_dir(run_id) / "snapshot.json"

    def _artifacts_dir(self, run_id: str) -> Path:
        return self.run_dir(run_id) / "artifacts"

    def _artifact_path(self, run_id: str, artifact_id: str) -> Path:
        if not artifact_id or "/" in artifact_id or "\\" in artifact_id or artifact_id in (".", ".."):
            raise StorageError(f"Invalid artifact id: {artifact_id!r}")
        return self._artifacts_dir(run_id) / f"{artifact_id}.json"

    def _ensure_dir(self, path: Path) -> None:
        if self._auto_create:
            path.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    async def save_snapshot(self, state: ExecutionState) -> None:
        path = self.snapshot_path(state.run_id)
        content = state.to_snapshot()
        await asyncio.to_thread(self._write, path, content)

    async def load_snapshot(self, run_id: str) -> ExecutionState | None:
        path = self.snapshot_path(run_id)
        raw = await asyncio.to_thread(self._read, path)
        if raw is None:
            return None
        try:
            return ExecutionState.from_snapshot(raw)
        except ValidationError as exc:
            raise StorageError(f"Corrupt snapshot at {path}: {exc}") from exc

    # ------------------------------------------------------------------
    # Artifacts
    # ------------------------------------------------------------------

    async def save_artifact(self, artifact: Artifact) -> None:
        path = self._artifact_path(artifact.run_id, artifact.id)
        content = artifact.model_dump_json(by_alias=True, indent=2)
        await asyncio.to_thread(self._write, path, content)

    async def get_artifact(self, run_id: str, artifact_id: str) -> Artifact | None:
        path = self._artifact_path(run_id, artifact_id)
        raw = await asyncio.to_thread(self._read, path)
        if raw is None:
            return None
        return self._parse_artifact(path, raw)

    async def list_artifacts(self, run_id: str) -> list[Artifact]:
        directory = self._artifacts_dir(run_id)
        return await asyncio.to_thread(self._list_artifacts, directory)

    async def delete_run(self, run_id: str) -> None:
        run_dir = self.run_dir(run_id)
        await asyncio.to_thread(shutil.rmtree, run_dir, ignore_errors=True)

    # ------------------------------------------------------------------
    # Blocking helpers (run on worker threads)
    # ------------------------------------------------------------------

    def _write(self, path: Path, content: str) -> None:
        try:
            self._ensure_dir(path.parent)
            _atomic_write(path, content)
        except OSError as exc:
            raise StorageError(f"Failed to write {path}: {exc}") from exc
        logger.debug("Wrote %d bytes to %s", len(content), path)

    def _read(self, path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise StorageError(f"Failed to read {path}: {exc}") from exc

    def _list_artifacts(self, directory: Path) -> list[Artifact]:
        if not directory.is_dir():
            return []
        artifacts = []
        for path in sorted(directory.glob("*.json")):
            raw = self._read(path)
            if raw is not None:
                artifacts.append(self._parse_artifact(path, raw))
        return artifacts

    @staticmethod
    def _parse_artifact(path: Path, raw: str) -> Artifact:
        try:
            return Artifact.model_validate_json(raw)
        except ValidationError as exc:
            raise StorageError(f"Corrupt artifact at {path}: {exc}") from exc
