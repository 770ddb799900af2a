"""Durable phase artifacts keyed by run identifier and phase.

Each pipeline phase reads the artifact of its direct predecessor and
writes its own; nothing is discovered by location or convention. A
phase may re-read its own earlier artifact (a resumed deploy reads its
last checkpoint), but never an artifact two phases back.

Artifacts are opaque JSON documents to the store.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from enum import Enum
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

# Run ids become directory names; keep them path-safe
RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")


class Phase(str, Enum):
    """Pipeline phases in execution order."""

    PLAN = "plan"
    VALIDATE = "validate"
    APPROVE = "approve"
    DEPLOY = "deploy"
    CONFIRM = "confirm"

    @property
    def predecessor(self) -> Phase | None:
        """The phase whose artifact this phase consumes."""
        order = list(Phase)
        index = order.index(self)
        return order[index - 1] if index > 0 else None


class ArtifactError(Exception):
    """Base error for artifact store access."""

    pass


class ArtifactNotFound(ArtifactError):
    """Raised when a required artifact has not been written."""

    def __init__(self, run_id: str, phase: Phase) -> None:
        self.run_id = run_id
        self.phase = phase
        super().__init__(f"No '{phase.value}' artifact for run '{run_id}'")


class ArtifactAccessDenied(ArtifactError):
    """Raised when a phase reads an artifact other than its predecessor's."""

    pass


class InvalidRunId(ArtifactError):
    """Raised when a run identifier is not path-safe."""

    pass


def validate_run_id(run_id: str) -> str:
    """Return ``run_id`` if valid.

    Raises:
        InvalidRunId: If it is empty, too long or contains unsafe characters.
    """
    if not RUN_ID_PATTERN.match(run_id or ""):
        raise InvalidRunId(
            f"Invalid run id '{run_id}': use letters, digits, '.', '_' or '-' (max 128)"
        )
    return run_id


@runtime_checkable
class ArtifactStore(Protocol):
    """Key-value persistence for phase artifacts."""

    def put(self, run_id: str, phase: Phase, artifact: dict[str, Any]) -> None: ...

    def get(self, run_id: str, phase: Phase) -> dict[str, Any] | None: ...

    def delete(self, run_id: str, phase: Phase) -> bool: ...


class MemoryArtifactStore:
    """In-process store, used for tests and embedded pipelines."""

    def __init__(self) -> None:
        self._artifacts: dict[tuple[str, Phase], str] = {}
        self._lock = threading.Lock()

    def put(self, run_id: str, phase: Phase, artifact: dict[str, Any]) -> None:
        # Stored serialized so callers cannot mutate a persisted snapshot
        payload = json.dumps(artifact, sort_keys=True, default=str)
        with self._lock:
            self._artifacts[(validate_run_id(run_id), phase)] = payload

    def get(self, run_id: str, phase: Phase) -> dict[str, Any] | None:
        with self._lock:
            payload = self._artifacts.get((validate_run_id(run_id), phase))
        return json.loads(payload) if payload is not None else None

    def delete(self, run_id: str, phase: Phase) -> bool:
        with self._lock:
            return self._artifacts.pop((validate_run_id(run_id), phase), None) is not None


class FileArtifactStore:
    """JSON files at ``<root>/<run_id>/<phase>.json``.

    Writes go to a uniquely named temporary file in the run directory and
    are then renamed over the target, so a crash mid-write never leaves a
    truncated artifact.
    """

    def __init__(self, root: Path | str) -> None:
        self.root = Path(root)

    def path_for(self, run_id: str, phase: Phase) -> Path:
        return self.root / validate_run_id(run_id) / f"{phase.value}.json"

    def put(self, run_id: str, phase: Phase, artifact: dict[str, Any]) -> None:
        path = self.path_for(run_id, phase)
        path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(artifact, indent=2, sort_keys=True, default=str)
        fd, tmp_name = tempfile.mkstemp(
            dir=path.parent, prefix=f".{phase.value}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(
            "Artifact written",
            extra={"run_id": run_id, "phase": phase.value, "path": str(path)},
        )

    def get(self, run_id: str, phase: Phase) -> dict[str, Any] | None:
        path = self.path_for(run_id, phase)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ArtifactError(f"Corrupt artifact {path}: {e}") from e
        if not isinstance(data, dict):
            raise ArtifactError(f"Corrupt artifact {path}: expected a JSON object")
        return data

    def delete(self, run_id: str, phase: Phase) -> bool:
        path = self.path_for(run_id, phase)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug(
            "Artifact deleted",
            extra={"run_id": run_id, "phase": phase.value, "path": str(path)},
        )
        return True


class PhaseArtifacts:
    """A phase's view of the store: its predecessor's artifact and its own."""

    def __init__(self, store: ArtifactStore, run_id: str, phase: Phase) -> None:
        self.store = store
        self.run_id = validate_run_id(run_id)
        self.phase = phase

    def read(self, phase: Phase) -> dict[str, Any]:
        """Read the artifact of ``phase``.

        Raises:
            ArtifactAccessDenied: If ``phase`` is neither this phase nor its predecessor.
            ArtifactNotFound: If the artifact does not exist.
        """
        if phase not in (self.phase, self.phase.predecessor):
            raise ArtifactAccessDenied(
                f"Phase '{self.phase.value}' may not read the '{phase.value}' artifact"
            )
        artifact = self.store.get(self.run_id, phase)
        if artifact is None:
            raise ArtifactNotFound(self.run_id, phase)
        return artifact

    def read_input(self) -> dict[str, Any]:
        """Read the predecessor's artifact."""
        predecessor = self.phase.predecessor
        if predecessor is None:
            raise ArtifactAccessDenied(f"Phase '{self.phase.value}' has no predecessor")
        return self.read(predecessor)

    def read_own(self) -> dict[str, Any] | None:
        """Read this phase's previous artifact, if any."""
        try:
            return self.read(self.phase)
        except ArtifactNotFound:
            return None

    def write(self, artifact: dict[str, Any]) -> None:
        self.store.put(self.run_id, self.phase, artifact)

    def clear_downstream(self) -> list[Phase]:
        """Delete the artifacts of every later phase.

        Returns:
            The phases whose artifacts existed and were removed.
        """
        order = list(Phase)
        return [
            phase
            for phase in order[order.index(self.phase) + 1 :]
            if self.store.delete(self.run_id, phase)
        ]
