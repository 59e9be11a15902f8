"""Tests for blob storage (gennie/assistant/persistence.py)."""

from __future__ import annotations

import pytest
from gennie.assistant.persistence import BlobStore

pytestmark = pytest.mark.anyio


async def test_put_get_delete(tmp_path):
    store = BlobStore(tmp_path / "blobs")
    assert await store.get("transfer-examples") is None
    assert not await store.exists("transfer-examples")
    await store.put("transfer-examples", b"payload")
    assert await store.get("transfer-examples") == b"payload"
    assert (tmp_path / "blobs" / "transfer-examples.blob").is_file()
    assert not (tmp_path / "blobs" / "transfer-examples.tmp").exists()
    assert await store.delete("transfer-examples")
    assert not await store.delete("transfer-examples")


async def test_overwrite(tmp_path):
    store = BlobStore(tmp_path)
    await store.put("k", b"one")
    await store.put("k", b"two")
    assert await store.get("k") == b"two"


@pytest.mark.parametrize("key", ["", "../escape", "a/b", ".hidden"])
async def test_rejects_bad_keys(tmp_path, key):
    with pytest.raises(ValueError):
        await BlobStore(tmp_path).get(key)
