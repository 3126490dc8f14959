"""PromptCalc artifact persistence.

    from promptcalc.storage import ArtifactStore, InMemoryArtifactStore, StorageError

Layout:
    protocol.py  ArtifactStore Protocol, StoredArtifact, StorageError,
                 InMemoryArtifactStore
"""

from promptcalc.storage.protocol import (
    ArtifactStore,
    InMemoryArtifactStore,
    StorageError,
    StoredArtifact,
)

__all__ = [
    "ArtifactStore",
    "InMemoryArtifactStore",
    "StorageError",
    "StoredArtifact",
]
