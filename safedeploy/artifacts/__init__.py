"""Artifact storage for pipeline executions."""

from __future__ import annotations

from typing import Optional

from ..config import SafeDeployConfig, load_config
from .bundle import REQUIRED_ENTRIES, BuildBundle, parse_reference, read_reference
from .store import (
    ArtifactStore,
    FileSystemArtifactStore,
    InMemoryArtifactStore,
    content_revision,
)


def get_artifact_store(
    backend: Optional[str] = None, config: Optional[SafeDeployConfig] = None
) -> ArtifactStore:
    """Factory function to get the configured artifact store."""

    config = config or load_config()
    backend = (backend or config.artifact_store.backend).lower()

    if backend == "inmemory":
        return InMemoryArtifactStore()
    elif backend == "filesystem":
        return FileSystemArtifactStore(config.artifact_store.path)
    else:
        raise ValueError(f"Unsupported artifact store backend: {backend}")


__all__ = [
    "ArtifactStore",
    "InMemoryArtifactStore",
    "FileSystemArtifactStore",
    "BuildBundle",
    "REQUIRED_ENTRIES",
    "content_revision",
    "parse_reference",
    "read_reference",
    "get_artifact_store",
]
