"""
Unit tests for the SQLite document store.

Tests cover:
- Typed value round-trips through tagged JSON
- Filter, projection and update semantics shared with the in-memory store
- Transactions
"""

import datetime
import os
import tempfile
import uuid

import pytest

from denormdb.store import DuplicateDocumentError, SQLiteDocumentStore, transaction
from denormdb.store.sqlite import decode_value, encode_value


class TestTaggedJson:
    """Tests for the value codec."""

    def test_typed_values(self):
        value = {
            "id": uuid.uuid4(),
            "at": datetime.datetime(2024, 1, 2, 3, 4, 5),
            "blob": b"\x00\x01",
            "list": [uuid.uuid4(), 1, "x", None],
        }
        assert decode_value(encode_value(value)) == value

    def test_plain_dicts_untouched(self):
        value = {"a": {"b": 1}, "c": [True, 1.5]}
        assert encode_value(value) == value


class TestSQLiteDocumentStore:
    """Tests for SQLiteDocumentStore."""

    @pytest.fixture
    def data_dir(self):
        """Create temporary data directory."""
        with tempfile.TemporaryDirectory() as tmpdir:
            yield tmpdir

    @pytest.fixture
    async def store(self, data_dir):
        """Create connected store."""
        store = SQLiteDocumentStore(os.path.join(data_dir, "docs.sqlite3"), wal_mode=False)
        await store.connect()
        yield store
        await store.close()

    @pytest.mark.asyncio
    async def test_round_trip(self, store):
        """Documents keep UUID, datetime and bytes values."""
        photo_id = uuid.uuid4()
        doc = {
            "_id": photo_id,
            "url": "a.png",
            "taken": datetime.datetime(2024, 5, 1, 12, 0),
            "thumb": b"png",
        }
        await store.insert_one("Photo", doc)

        assert await store.find_one("Photo", {"_id": photo_id}) == doc

    @pytest.mark.asyncio
    async def test_duplicate_id(self, store):
        photo_id = uuid.uuid4()
        await store.insert_one("Photo", {"_id": photo_id})

        with pytest.raises(DuplicateDocumentError):
            await store.insert_one("Photo", {"_id": photo_id})

    @pytest.mark.asyncio
    async def test_collections_are_separate(self, store):
        doc_id = uuid.uuid4()
        await store.insert_one("Photo", {"_id": doc_id, "kind": "photo"})
        await store.insert_one("User", {"_id": doc_id, "kind": "user"})

        assert (await store.find_one("User", {"_id": doc_id}))["kind"] == "user"

    @pytest.mark.asyncio
    async def test_projection_and_order(self, store):
        ids = [uuid.uuid4() for _ in range(3)]
        for n, doc_id in enumerate(ids):
            await store.insert_one("Photo", {"_id": doc_id, "n": n, "url": f"{n}.png"})

        found = await store.find("Photo", {"n": {"$in": [0, 2]}}, {"_id": 0, "url": 1})

        assert found == [{"url": "0.png"}, {"url": "2.png"}]

    @pytest.mark.asyncio
    async def test_update_many_with_array_filters(self, store):
        photo_id = uuid.uuid4()
        other_id = uuid.uuid4()
        post_id = uuid.uuid4()
        await store.insert_one(
            "Post",
            {
                "_id": post_id,
                "photos": [{"_id": photo_id, "url": "a"}, {"_id": other_id, "url": "b"}],
            },
        )

        modified = await store.update_many(
            "Post",
            {"photos": {"$elemMatch": {"_id": photo_id}}},
            {"photos.$[e0].url": "z"},
            {"e0": {"_id": photo_id}},
        )

        assert modified == 1
        post = await store.find_one("Post", {"_id": post_id})
        assert [p["url"] for p in post["photos"]] == ["z", "b"]

    @pytest.mark.asyncio
    async def test_replace_one(self, store):
        photo_id = uuid.uuid4()
        await store.insert_one("Photo", {"_id": photo_id, "url": "a"})

        assert await store.replace_one("Photo", {"_id": photo_id}, {"url": "b"}) == 1
        assert await store.find_one("Photo", {"_id": photo_id}) == {"_id": photo_id, "url": "b"}
        assert await store.replace_one("Photo", {"_id": uuid.uuid4()}, {"url": "c"}) == 0

    @pytest.mark.asyncio
    async def test_transaction_rollback(self, store):
        """Writes made through an aborted session are discarded."""
        photo_id = uuid.uuid4()
        await store.insert_one("Photo", {"_id": photo_id, "url": "a"})

        with pytest.raises(RuntimeError):
            async with transaction(store) as session:
                await store.replace_one("Photo", {"_id": photo_id}, {"url": "x"}, session=session)
                seen = await store.find_one("Photo", {"_id": photo_id}, session=session)
                assert seen["url"] == "x"
                raise RuntimeError("boom")

        assert (await store.find_one("Photo", {"_id": photo_id}))["url"] == "a"

    @pytest.mark.asyncio
    async def test_transaction_commit(self, store):
        photo_id = uuid.uuid4()

        async with transaction(store) as session:
            await store.insert_one("Photo", {"_id": photo_id, "url": "a"}, session=session)

        assert await store.find_one("Photo", {"_id": photo_id}) is not None
