import hashlib

import pytest

from safedeploy.artifacts import (
    FileSystemArtifactStore,
    InMemoryArtifactStore,
    content_revision,
    get_artifact_store,
)
from safedeploy.config import SafeDeployConfig
from safedeploy.errors import ArtifactConflict, ArtifactNotFound


@pytest.mark.asyncio
async def test_put_returns_content_revision_and_get_returns_payload():
    store = InMemoryArtifactStore()
    revision = await store.put("BuildOutput", b"bundle", "ex-1", "PackageModel")

    assert revision == hashlib.sha256(b"bundle").hexdigest()
    assert revision == content_revision(b"bundle")
    assert await store.get("BuildOutput", revision) == b"bundle"
    assert await store.latest("BuildOutput") == revision


@pytest.mark.asyncio
async def test_second_put_in_same_execution_conflicts():
    store = InMemoryArtifactStore()
    await store.put("BuildOutput", b"first", "ex-1", "PackageModel")

    with pytest.raises(ArtifactConflict) as exc:
        await store.put("BuildOutput", b"second", "ex-1", "Other")
    assert exc.value.retryable is False

    # the original record is untouched
    record = await store.resolve("BuildOutput", "ex-1")
    assert await store.get("BuildOutput", record.revision) == b"first"
    assert record.producer == "PackageModel"


@pytest.mark.asyncio
async def test_executions_keep_their_own_revisions():
    store = InMemoryArtifactStore()
    rev1 = await store.put("BuildOutput", b"one", "ex-1", "PackageModel")
    rev2 = await store.put("BuildOutput", b"two", "ex-2", "PackageModel")

    assert (await store.resolve("BuildOutput", "ex-1")).revision == rev1
    assert (await store.resolve("BuildOutput", "ex-2")).revision == rev2
    assert await store.latest("BuildOutput") == rev2
    assert [a.execution_id for a in await store.history("BuildOutput")] == ["ex-1", "ex-2"]
    assert await store.exists("BuildOutput", "ex-1")
    assert not await store.exists("BuildOutput", "ex-3")


@pytest.mark.asyncio
async def test_missing_artifacts_raise_not_found():
    store = InMemoryArtifactStore()
    await store.put("BuildOutput", b"one", "ex-1", "PackageModel")

    with pytest.raises(ArtifactNotFound):
        await store.get("BuildOutput", "deadbeef")
    with pytest.raises(ArtifactNotFound):
        await store.latest("Missing")
    with pytest.raises(ArtifactNotFound):
        await store.resolve("BuildOutput", "ex-2")


@pytest.mark.asyncio
async def test_filesystem_store_survives_restart(tmp_path):
    store = FileSystemArtifactStore(tmp_path / "artifacts")
    revision = await store.put("ModelSourceOutput", b"source", "ex-1", "GitSource")

    reopened = FileSystemArtifactStore(tmp_path / "artifacts")
    assert await reopened.get("ModelSourceOutput", revision) == b"source"
    record = await reopened.resolve("ModelSourceOutput", "ex-1")
    assert record.producer == "GitSource"
    assert record.size == len(b"source")

    with pytest.raises(ArtifactConflict):
        await reopened.put("ModelSourceOutput", b"again", "ex-1", "GitSource")


def test_get_artifact_store_uses_config(tmp_path):
    config = SafeDeployConfig(
        artifact_store={"backend": "filesystem", "path": str(tmp_path / "store")}
    )
    store = get_artifact_store(config=config)
    assert isinstance(store, FileSystemArtifactStore)
    assert isinstance(get_artifact_store("inmemory", config=config), InMemoryArtifactStore)

    with pytest.raises(ValueError):
        get_artifact_store("s3", config=config)
