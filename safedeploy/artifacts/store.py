"""Content-addressed storage of artifacts passed between actions."""

from __future__ import annotations

import abc
import asyncio
import hashlib
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from ..contracts import Artifact
from ..errors import ArtifactConflict, ArtifactNotFound

logger = logging.getLogger(__name__)


def content_revision(data: bytes) -> str:
    """Revision identifier of a payload: its sha256 hex digest."""
    return hashlib.sha256(data).hexdigest()


class ArtifactStore(metaclass=abc.ABCMeta):
    """Arena of artifact records indexed by name and revision.

    Payloads are immutable per revision. Within one execution a name can be
    written only once; a later execution adds a new record for the same name.
    """

    def __init__(self) -> None:
        self._records: Dict[str, List[Artifact]] = {}
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Payload backend
    @abc.abstractmethod
    async def _write_blob(self, revision: str, data: bytes) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    async def _read_blob(self, revision: str) -> Optional[bytes]:
        raise NotImplementedError

    async def _persist_index(self) -> None:
        """Hook for backends that keep the record index durable."""

    # ------------------------------------------------------------------
    # Store API
    async def put(
        self, name: str, data: bytes, execution_id: str, producer: str
    ) -> str:
        """Store ``data`` under ``name`` and return its revision."""
        revision = content_revision(data)
        async with self._lock:
            for record in self._records.get(name, []):
                if record.execution_id == execution_id:
                    raise ArtifactConflict(
                        f"Artifact {name} already written in execution {execution_id} "
                        f"by {record.producer}",
                        action=producer,
                    )
            await self._write_blob(revision, data)
            self._records.setdefault(name, []).append(
                Artifact(
                    name=name,
                    revision=revision,
                    size=len(data),
                    producer=producer,
                    execution_id=execution_id,
                )
            )
            await self._persist_index()
        logger.debug(f"Stored artifact {name}@{revision[:12]} from {producer}")
        return revision

    async def get(self, name: str, revision: str) -> bytes:
        """Return the payload stored for ``name`` at ``revision``."""
        if not any(r.revision == revision for r in self._records.get(name, [])):
            raise ArtifactNotFound(f"Artifact {name}@{revision} not found")
        data = await self._read_blob(revision)
        if data is None:
            raise ArtifactNotFound(f"Payload of artifact {name}@{revision} missing")
        return data

    async def latest(self, name: str) -> str:
        """Return the most recently written revision of ``name``."""
        records = self._records.get(name)
        if not records:
            raise ArtifactNotFound(f"Artifact {name} not found")
        return records[-1].revision

    async def resolve(self, name: str, execution_id: str) -> Artifact:
        """Return the record of ``name`` produced within ``execution_id``."""
        for record in reversed(self._records.get(name, [])):
            if record.execution_id == execution_id:
                return record
        raise ArtifactNotFound(
            f"Artifact {name} not produced in execution {execution_id}"
        )

    async def exists(self, name: str, execution_id: str) -> bool:
        return any(
            r.execution_id == execution_id for r in self._records.get(name, [])
        )

    async def history(self, name: str) -> List[Artifact]:
        return list(self._records.get(name, []))


class InMemoryArtifactStore(ArtifactStore):
    """Keep artifacts in process memory. Useful for tests."""

    def __init__(self) -> None:
        super().__init__()
        self._blobs: Dict[str, bytes] = {}

    async def _write_blob(self, revision: str, data: bytes) -> None:
        self._blobs.setdefault(revision, data)

    async def _read_blob(self, revision: str) -> Optional[bytes]:
        return self._blobs.get(revision)


class FileSystemArtifactStore(ArtifactStore):
    """Persist blobs and the record index under a directory.

    Survives process restarts so a resumed execution still finds the
    artifacts of its completed stages.
    """

    def __init__(self, root: str | Path) -> None:
        super().__init__()
        self.root = Path(root)
        self._blob_dir = self.root / "blobs"
        self._index_path = self.root / "index.json"
        self._blob_dir.mkdir(parents=True, exist_ok=True)
        if self._index_path.exists():
            raw = json.loads(self._index_path.read_text())
            self._records = {
                name: [Artifact.model_validate(r) for r in records]
                for name, records in raw.items()
            }

    def _write_blob_sync(self, revision: str, data: bytes) -> None:
        path = self._blob_dir / revision
        if not path.exists():
            tmp = path.with_suffix(".tmp")
            tmp.write_bytes(data)
            tmp.replace(path)

    def _read_blob_sync(self, revision: str) -> Optional[bytes]:
        path = self._blob_dir / revision
        return path.read_bytes() if path.exists() else None

    def _write_index_sync(self, payload: str) -> None:
        tmp = self._index_path.with_suffix(".tmp")
        tmp.write_text(payload)
        tmp.replace(self._index_path)

    async def _write_blob(self, revision: str, data: bytes) -> None:
        await asyncio.to_thread(self._write_blob_sync, revision, data)

    async def _read_blob(self, revision: str) -> Optional[bytes]:
        return await asyncio.to_thread(self._read_blob_sync, revision)

    async def _persist_index(self) -> None:
        payload = json.dumps(
            {
                name: [r.model_dump(mode="json") for r in records]
                for name, records in self._records.items()
            }
        )
        await asyncio.to_thread(self._write_index_sync, payload)
