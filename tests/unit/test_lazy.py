"""
Unit tests for the lazy document engine.

Tests cover:
- Coalescing concurrent field requests into one read
- Requests after a scheduler turn opening a new batch
- Per-field memoization
- Failure fan-out
- Validation of loaded fields
"""

import asyncio
import datetime
import uuid

import pytest

from denormdb import (
    DocumentNotFound,
    LazyDocument,
    UnknownFieldError,
    ValidationFailure,
    define_collection,
    define_database,
)
from denormdb.schema import (
    date,
    discriminated_union,
    identifier,
    integer,
    literal,
    obj,
    optional,
    string,
    with_default,
)
from denormdb.store import InMemoryDocumentStore


class TestLazyDocument:
    """Tests for LazyDocument."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.fixture
    async def db(self, store):
        photo = define_collection(
            "Photo",
            obj(
                {
                    "_id": identifier(),
                    "url": string(),
                    "description": optional(string()),
                    "likes": with_default(integer(), 0),
                    "taken": optional(date()),
                }
            ),
        )
        media = define_collection(
            "Media",
            discriminated_union(
                "kind",
                obj({"_id": identifier(), "kind": literal("text"), "body": string()}),
                obj({"_id": identifier(), "kind": literal("image"), "width": integer()}),
            ),
        )
        db = define_database(store, [photo, media])
        await db.connect()
        return db

    @pytest.fixture
    async def photo_id(self, store, db):
        photo_id = uuid.uuid4()
        await store.insert_one(
            "Photo",
            {
                "_id": photo_id,
                "url": "a.png",
                "description": "sunset",
                "taken": "2024-05-01T12:00:00",
            },
        )
        store.clear_reads()
        return photo_id

    @pytest.mark.asyncio
    async def test_concurrent_fields_one_read(self, store, db, photo_id):
        """N fields requested in one turn cost exactly one read."""
        doc = db.find_one_lazy("Photo", photo_id)

        url, description, likes = await asyncio.gather(
            doc.get("url"), doc.get("description"), doc.get("likes")
        )

        assert (url, description, likes) == ("a.png", "sunset", 0)
        assert store.read_count("Photo") == 1
        read = store.reads[0]
        assert read.filter == {"_id": photo_id}
        assert read.projection == {"_id": 0, "url": 1, "description": 1, "likes": 1}

    @pytest.mark.asyncio
    async def test_futures_created_before_await_coalesce(self, store, db, photo_id):
        """get() starts eagerly, so futures taken before awaiting share a read."""
        doc = db.find_one_lazy("Photo", photo_id)

        url_future = doc.get("url")
        description_future = doc.get("description")

        assert await url_future == "a.png"
        assert await description_future == "sunset"
        assert store.read_count("Photo") == 1

    @pytest.mark.asyncio
    async def test_memoized_per_field(self, store, db, photo_id):
        """A field is never read twice; later turns read only new fields."""
        doc = db.find_one_lazy("Photo", photo_id)

        assert await doc.get("url") == "a.png"
        assert await doc.get("url") == "a.png"
        assert store.read_count("Photo") == 1

        assert await doc.get("description") == "sunset"
        assert store.read_count("Photo") == 2
        assert store.reads[1].projection == {"_id": 0, "description": 1}

    @pytest.mark.asyncio
    async def test_id_needs_no_read(self, store, db, photo_id):
        doc = db.find_one_lazy("Photo", photo_id)

        assert await doc.get("_id") == photo_id
        assert store.read_count() == 0

    @pytest.mark.asyncio
    async def test_validation_coerces(self, db, photo_id):
        """Raw values are parsed through the field schema."""
        doc = db.find_one_lazy("Photo", photo_id)

        assert await doc.get("taken") == datetime.datetime(2024, 5, 1, 12, 0)
        assert await doc.get("taken", validate=False) == "2024-05-01T12:00:00"

    @pytest.mark.asyncio
    async def test_invalid_stored_value(self, store, db):
        photo_id = uuid.uuid4()
        await store.insert_one("Photo", {"_id": photo_id, "url": 5})

        with pytest.raises(ValidationFailure):
            await db.find_one_lazy("Photo", photo_id).get("url")

    @pytest.mark.asyncio
    async def test_missing_document_fails_every_request(self, store, db):
        """DocumentNotFound reaches every joined request and is not retried."""
        doc = db.find_one_lazy("Photo", uuid.uuid4())

        results = await asyncio.gather(
            doc.get("url"), doc.get("description"), return_exceptions=True
        )

        assert all(isinstance(r, DocumentNotFound) for r in results)
        assert store.read_count() == 1

        with pytest.raises(DocumentNotFound):
            await doc.get("url")
        assert store.read_count() == 1

    @pytest.mark.asyncio
    async def test_unknown_field(self, store, db, photo_id):
        """Unknown fields raise with suggestions and cause no read."""
        doc = db.find_one_lazy("Photo", photo_id)

        with pytest.raises(UnknownFieldError) as exc_info:
            await doc.get("ulr")

        assert exc_info.value.suggestions == ["url"]
        assert exc_info.value.code == "UNKNOWN_FIELD"
        assert store.read_count() == 0

    @pytest.mark.asyncio
    async def test_discriminated_union(self, store, db):
        """The discriminator is loaded first to pick the branch."""
        media_id = uuid.uuid4()
        await store.insert_one("Media", {"_id": media_id, "kind": "image", "width": "640"})
        store.clear_reads()

        doc = db.find_one_lazy("Media", media_id)

        assert await doc.get("width") == 640
        assert store.reads[0].projection == {"_id": 0, "kind": 1}
        assert store.read_count() == 2

        with pytest.raises(UnknownFieldError):
            await doc.get("body")

    @pytest.mark.asyncio
    async def test_seeded_fields(self, store, db, photo_id):
        """Existing values are served without reads."""
        doc = LazyDocument(db.get_definition("Photo"), photo_id, {"url": "cached.png"})

        assert await doc.get("url") == "cached.png"
        assert store.read_count() == 0

    @pytest.mark.asyncio
    async def test_collect(self, store, db, photo_id):
        doc = db.find_one_lazy("Photo", photo_id)

        values = await doc.collect("url", "likes")

        assert values == {"url": "a.png", "likes": 0}
        assert store.read_count() == 1

    @pytest.mark.asyncio
    async def test_request_after_turn_opens_new_batch(self, store, db, photo_id):
        """A request issued once the loop has run joins a new batch."""
        doc = db.find_one_lazy("Photo", photo_id)

        url_future = doc.get("url")
        await asyncio.sleep(0)
        description_future = doc.get("description")

        assert await asyncio.gather(url_future, description_future) == ["a.png", "sunset"]
        assert store.read_count("Photo") == 2
        assert store.reads[0].projection == {"_id": 0, "url": 1}
        assert store.reads[1].projection == {"_id": 0, "description": 1}

    @pytest.mark.asyncio
    async def test_known_fields_validated_together(self, store, db):
        """Validation covers every field known so far, not just the requested one."""
        photo_id = uuid.uuid4()
        await store.insert_one("Photo", {"_id": photo_id, "url": 5, "description": "x"})
        doc = db.find_one_lazy("Photo", photo_id)

        assert await doc.get("url", validate=False) == 5

        with pytest.raises(ValidationFailure) as exc_info:
            await doc.get("description")

        assert exc_info.value.issues[0][0] == "url"

    @pytest.mark.asyncio
    async def test_parsed_fields_memoized(self, store, db, photo_id):
        """Fields parsed alongside the requested one are served from memory."""
        doc = db.find_one_lazy("Photo", photo_id)

        await doc.collect("url", "taken")
        assert await doc.get("taken") == datetime.datetime(2024, 5, 1, 12, 0)
        assert doc.loaded_fields == ["_id", "url", "taken"]
        assert store.read_count() == 1

    @pytest.mark.asyncio
    async def test_reads_join_session(self, store, db, photo_id):
        session = store.start_session()
        doc = db.find_one_lazy("Photo", photo_id, session=session)

        assert await doc.get("url") == "a.png"
        assert store.reads[0].session is session
        await session.end_session()
