"""ArtifactStore Protocol + StoredArtifact + InMemoryArtifactStore.

Persistence is an external collaborator. The service calls
``save_artifact()`` only after every generation stage has passed; any
failure must surface as ``StorageError`` so the service can answer with
``STORAGE_FAILED`` instead of a refusal.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from promptcalc.utils.ids import generate_ulid
from promptcalc.utils.logger import get_logger

logger = get_logger(__name__)


class StorageError(Exception):
    """Persisting an accepted artifact failed."""


@dataclass(frozen=True)
class StoredArtifact:
    calc_id: str
    version_id: str
    manifest: dict[str, Any]
    artifact_html: str


# ─── ArtifactStore Protocol ───────────────────────────────────────────────────


@runtime_checkable
class ArtifactStore(Protocol):
    """Pluggable artifact persistence."""

    async def save_artifact(
        self,
        prompt: str,
        manifest: dict[str, Any],
        artifact_html: str,
    ) -> StoredArtifact:
        """Persist a new calculator version.

        Raises:
            StorageError: the write failed.
        """
        ...

    async def get_artifact(self, calc_id: str, version_id: str) -> Optional[StoredArtifact]:
        ...


# ─── InMemoryArtifactStore ────────────────────────────────────────────────────


class InMemoryArtifactStore:
    """Process-local store for development and tests. Ids are ULIDs."""

    def __init__(self) -> None:
        self._items: dict[tuple[str, str], StoredArtifact] = {}
        self._lock = asyncio.Lock()

    async def save_artifact(
        self,
        prompt: str,
        manifest: dict[str, Any],
        artifact_html: str,
    ) -> StoredArtifact:
        stored = StoredArtifact(
            calc_id=generate_ulid(),
            version_id=generate_ulid(),
            manifest=manifest,
            artifact_html=artifact_html,
        )
        async with self._lock:
            self._items[(stored.calc_id, stored.version_id)] = stored
        logger.debug("storage.saved", calc_id=stored.calc_id, version_id=stored.version_id)
        return stored

    async def get_artifact(self, calc_id: str, version_id: str) -> Optional[StoredArtifact]:
        async with self._lock:
            return self._items.get((calc_id, version_id))

    def __len__(self) -> int:
        return len(self._items)


assert isinstance(InMemoryArtifactStore(), ArtifactStore), (
    "InMemoryArtifactStore does not satisfy ArtifactStore protocol"
)
