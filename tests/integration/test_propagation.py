"""
Integration tests for denormalization propagation.

Tests cover:
- The Photo/User/Post propagation scenario on both backends
- Nested array embeddings
- Filter and update construction
- Transaction handling
"""

import os
import tempfile
import uuid

import pytest

from denormdb import DocumentNotFound, define_collection, define_database
from denormdb.graph import ReferenceLocation
from denormdb.propagate import build_filter, build_update
from denormdb.schema import (
    array,
    full_document,
    identifier,
    obj,
    optional,
    partial_document,
    string,
)
from denormdb.store import InMemoryDocumentStore, SQLiteDocumentStore


def make_definitions():
    photo = define_collection(
        "Photo",
        obj({"_id": identifier(), "url": string(), "description": optional(string())}),
    )
    user = define_collection(
        "User", obj({"_id": identifier(), "photo": partial_document(photo, "url")})
    )
    post = define_collection(
        "Post", obj({"_id": identifier(), "photos": array(full_document(photo))})
    )
    album = define_collection(
        "Album",
        obj(
            {
                "_id": identifier(),
                "pages": array(obj({"title": string(), "photos": array(full_document(photo))})),
            }
        ),
    )
    return [photo, user, post, album]


class TestBuilders:
    """Tests for filter and update construction."""

    def test_plain_path(self):
        doc_id = uuid.uuid4()
        location = ReferenceLocation("photo", {"url": True})

        assert build_filter("photo", doc_id) == {"photo._id": doc_id}
        update = build_update(location, {"_id": doc_id, "url": "b", "description": "d"}, doc_id)
        assert update.set_fields == {"photo.url": "b"}
        assert update.array_filters == {}

    def test_array_path(self):
        doc_id = uuid.uuid4()
        location = ReferenceLocation("photos.$", None)

        assert build_filter("photos.$", doc_id) == {"photos": {"$elemMatch": {"_id": doc_id}}}
        update = build_update(location, {"_id": doc_id, "url": "b", "description": "d"}, doc_id)
        assert update.set_fields == {"photos.$[e0].url": "b", "photos.$[e0].description": "d"}
        assert update.array_filters == {"e0": {"_id": doc_id}}

    def test_nested_array_path(self):
        doc_id = uuid.uuid4()
        location = ReferenceLocation("a.$.b.$.c", {"url": True})

        assert build_filter(location.path, doc_id) == {
            "a": {"$elemMatch": {"b": {"$elemMatch": {"c._id": doc_id}}}}
        }
        update = build_update(location, {"_id": doc_id, "url": "b"}, doc_id)
        assert update.set_fields == {"a.$[e0].b.$[e1].c.url": "b"}
        assert update.array_filters == {
            "e0": {"b": {"$elemMatch": {"c._id": doc_id}}},
            "e1": {"c._id": doc_id},
        }

    def test_empty_mask(self):
        doc_id = uuid.uuid4()
        update = build_update(ReferenceLocation("photo", {}), {"_id": doc_id, "url": "b"}, doc_id)
        assert update.set_fields == {}


class PropagationScenario:
    """Shared propagation scenarios, run against each backend."""

    @pytest.fixture
    async def db(self, store):
        db = define_database(store, make_definitions())
        await db.connect()
        yield db
        await db.close()

    @pytest.fixture
    async def scenario(self, store, db):
        photo = await db.create("Photo", {"url": "a.png", "description": "sunset"})
        other = await db.create("Photo", {"url": "o.png"})
        user = await db.create("User", {"photo": photo["_id"]})
        post = await db.create("Post", {"photos": [photo, other, photo]})
        return {"photo": photo, "other": other, "user": user, "post": post}

    async def raw(self, store, collection, doc_id):
        return await store.find_one(collection, {"_id": doc_id})

    @pytest.mark.asyncio
    async def test_propagate_update(self, store, db, scenario):
        """Masked copies get masked fields, full copies get every field."""
        photo_id = scenario["photo"]["_id"]
        await store.replace_one(
            "Photo", {"_id": photo_id}, {"url": "b.png", "description": "sunrise"}
        )

        modified = await db.propagator.propagate_update("Photo", photo_id)

        assert modified == 2
        user = await self.raw(store, "User", scenario["user"]["_id"])
        assert user["photo"] == {"_id": photo_id, "url": "b.png"}

        post = await self.raw(store, "Post", scenario["post"]["_id"])
        assert post["photos"][0] == {"_id": photo_id, "url": "b.png", "description": "sunrise"}
        assert post["photos"][2] == {"_id": photo_id, "url": "b.png", "description": "sunrise"}
        assert post["photos"][1]["url"] == "o.png"

    @pytest.mark.asyncio
    async def test_update_propagates(self, store, db, scenario):
        """Database.update re-propagates by default."""
        photo_id = scenario["photo"]["_id"]

        await db.update("Photo", photo_id, {"url": "c.png"})

        user = await self.raw(store, "User", scenario["user"]["_id"])
        assert user["photo"]["url"] == "c.png"
        post = await self.raw(store, "Post", scenario["post"]["_id"])
        assert post["photos"][0]["url"] == "c.png"
        assert post["photos"][0]["description"] == "sunset"

    @pytest.mark.asyncio
    async def test_update_without_propagation(self, store, db, scenario):
        photo_id = scenario["photo"]["_id"]

        await db.update("Photo", photo_id, {"url": "c.png"}, update_references=False)

        user = await self.raw(store, "User", scenario["user"]["_id"])
        assert user["photo"]["url"] == "a.png"

        await db.update_references("Photo", photo_id)
        user = await self.raw(store, "User", scenario["user"]["_id"])
        assert user["photo"]["url"] == "c.png"

    @pytest.mark.asyncio
    async def test_nested_arrays(self, store, db, scenario):
        """Every matching element of nested arrays is patched."""
        photo, other = scenario["photo"], scenario["other"]
        photo_id = photo["_id"]
        album = await db.create(
            "Album",
            {
                "pages": [
                    {"title": "one", "photos": [photo, other]},
                    {"title": "two", "photos": [other]},
                    {"title": "three", "photos": [photo]},
                ]
            },
        )

        await db.update("Photo", photo_id, {"url": "n.png"})

        raw = await self.raw(store, "Album", album["_id"])
        urls = [[p["url"] for p in page["photos"]] for page in raw["pages"]]
        assert urls == [["n.png", "o.png"], ["o.png"], ["n.png"]]

    @pytest.mark.asyncio
    async def test_missing_document(self, db):
        with pytest.raises(DocumentNotFound):
            await db.propagator.propagate_update("Photo", uuid.uuid4())


class TestPropagationInMemory(PropagationScenario):
    """Propagation on the in-memory store."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.mark.asyncio
    async def test_failure_rolls_back(self, store, db, scenario, monkeypatch):
        """A failing propagation undoes the update that triggered it."""
        photo_id = scenario["photo"]["_id"]
        calls = []
        original = store.update_many

        async def failing_update_many(*args, **kwargs):
            calls.append(args[0])
            if len(calls) == 2:
                raise RuntimeError("storage failure")
            return await original(*args, **kwargs)

        monkeypatch.setattr(store, "update_many", failing_update_many)

        with pytest.raises(RuntimeError):
            await db.update("Photo", photo_id, {"url": "x.png"})

        photo = await self.raw(store, "Photo", photo_id)
        user = await self.raw(store, "User", scenario["user"]["_id"])
        assert photo["url"] == "a.png"
        assert user["photo"]["url"] == "a.png"


class TestPropagationSQLite(PropagationScenario):
    """Propagation on the SQLite store."""

    @pytest.fixture
    def store(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            yield SQLiteDocumentStore(os.path.join(tmpdir, "docs.sqlite3"), wal_mode=False)
