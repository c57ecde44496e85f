"""
Unit tests for document references.

Tests cover:
- Parse rules for ids, objects and existing references
- get_existing / resolve / resolve_full read behaviour
- Flattening to raw documents
"""

import uuid

import pytest

from denormdb import (
    DocumentReference,
    ValidationFailure,
    define_collection,
    define_database,
    get_raw_document,
)
from denormdb.schema import (
    array,
    full_document,
    id_reference,
    identifier,
    obj,
    optional,
    partial_document,
    string,
)
from denormdb.store import InMemoryDocumentStore


class TestDocumentReference:
    """Tests for DocumentReference values."""

    @pytest.fixture
    def photo(self):
        return define_collection(
            "Photo", obj({"_id": identifier(), "url": string(), "description": optional(string())})
        )

    def test_id_always_cached(self, photo):
        photo_id = uuid.uuid4()
        ref = DocumentReference(photo_id, photo, {"url": "a"}, ("url",))

        assert ref.get_existing() == {"_id": photo_id, "url": "a"}

    def test_immutable_merge(self, photo):
        """merged() returns a new reference, the original is unchanged."""
        ref = DocumentReference(uuid.uuid4(), photo, None, ("url",))
        merged = ref.merged({"url": "a"})

        assert "url" not in ref.get_existing()
        assert merged.get_existing()["url"] == "a"
        assert merged.id == ref.id
        assert merged.mask == ("url",)

    def test_get_existing_is_a_copy(self, photo):
        ref = DocumentReference(uuid.uuid4(), photo, {"url": "a"})
        ref.get_existing()["url"] = "changed"
        assert ref.get_existing()["url"] == "a"

    def test_equality(self, photo):
        photo_id = uuid.uuid4()
        assert DocumentReference(photo_id, photo, {"url": "a"}) == DocumentReference(
            photo_id, photo, {"url": "a"}
        )
        assert DocumentReference(photo_id, photo) != DocumentReference(photo_id, photo, None, ())

    def test_get_raw_document_flattens(self, photo):
        """References become their cache, recursively, inside lists and dicts."""
        photo_id = uuid.uuid4()
        inner = DocumentReference(photo_id, photo, {"url": "a"}, ("url",))
        value = {"cover": inner, "gallery": [inner, {"nested": inner}], "n": 1}

        assert get_raw_document(value) == {
            "cover": {"_id": photo_id, "url": "a"},
            "gallery": [{"_id": photo_id, "url": "a"}, {"nested": {"_id": photo_id, "url": "a"}}],
            "n": 1,
        }


class TestReferenceParsing:
    """Tests for reference fields parsed through a database."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.fixture
    async def db(self, store):
        photo = define_collection(
            "Photo",
            obj({"_id": identifier(), "url": string(), "description": optional(string())}),
        )
        other = define_collection("Other", obj({"_id": identifier()}))
        user = define_collection(
            "User",
            obj(
                {
                    "_id": identifier(),
                    "photo": partial_document(photo, "url"),
                    "favorite": optional(full_document(photo)),
                    "seen": optional(array(id_reference(photo))),
                }
            ),
        )
        db = define_database(store, [photo, other, user])
        await db.connect()
        return db

    @pytest.fixture
    async def photo_id(self, store, db):
        photo_id = uuid.uuid4()
        await store.insert_one(
            "Photo", {"_id": photo_id, "url": "a.png", "description": "sunset"}
        )
        store.clear_reads()
        return photo_id

    @pytest.mark.asyncio
    async def test_bare_id_masked_loads_fields(self, store, db, photo_id):
        """A masked reference from an id loads its masked fields in one read."""
        user = await db.hydrate("User", {"_id": uuid.uuid4(), "photo": photo_id})

        ref = user["photo"]
        assert isinstance(ref, DocumentReference)
        assert ref.get_existing() == {"_id": photo_id, "url": "a.png"}
        assert store.read_count("Photo") == 1
        assert store.reads[0].projection == {"_id": 0, "url": 1}

    @pytest.mark.asyncio
    async def test_bare_id_full_is_deferred(self, store, db, photo_id):
        """An unmasked reference from an id reads nothing."""
        user = await db.hydrate(
            "User",
            {"_id": uuid.uuid4(), "photo": {"_id": photo_id, "url": "a.png"}, "favorite": str(photo_id)},
        )

        assert user["favorite"].get_existing() == {"_id": photo_id}
        assert user["favorite"].mask is None
        assert store.read_count() == 0

    @pytest.mark.asyncio
    async def test_object_populates_cache(self, store, db, photo_id):
        """Objects carrying _id fill the cache with the masked subset, no read."""
        user = await db.hydrate(
            "User",
            {
                "_id": uuid.uuid4(),
                "photo": {"_id": photo_id, "url": "a.png", "description": "ignored"},
            },
        )

        assert user["photo"].get_existing() == {"_id": photo_id, "url": "a.png"}
        assert store.read_count() == 0

    @pytest.mark.asyncio
    async def test_object_cache_is_validated(self, db, photo_id):
        with pytest.raises(ValidationFailure) as exc_info:
            await db.hydrate("User", {"_id": uuid.uuid4(), "photo": {"_id": photo_id, "url": 5}})

        assert exc_info.value.issues[0][0] == "photo.url"

    @pytest.mark.asyncio
    async def test_object_missing_masked_field_is_loaded(self, store, db, photo_id):
        user = await db.hydrate("User", {"_id": uuid.uuid4(), "photo": {"_id": photo_id}})

        assert user["photo"].get_existing()["url"] == "a.png"
        assert store.read_count("Photo") == 1

    @pytest.mark.asyncio
    async def test_id_reference(self, store, db, photo_id):
        """Empty masks keep only the id and never read."""
        user = await db.hydrate(
            "User",
            {"_id": uuid.uuid4(), "photo": {"_id": photo_id, "url": "a"}, "seen": [photo_id]},
        )

        assert user["seen"][0].get_existing() == {"_id": photo_id}
        assert store.read_count() == 0

    @pytest.mark.asyncio
    async def test_existing_reference_input(self, store, db, photo_id):
        photo = db.get_definition("Photo")
        ref = DocumentReference(photo_id, photo, {"url": "a.png", "description": "sunset"})

        user = await db.hydrate("User", {"_id": uuid.uuid4(), "photo": ref, "favorite": ref})

        assert user["photo"].get_existing() == {"_id": photo_id, "url": "a.png"}
        assert user["photo"].mask == ("url",)
        assert user["favorite"].mask is None
        assert store.read_count() == 0

    @pytest.mark.asyncio
    async def test_reference_to_other_model_rejected(self, db, photo_id):
        other = DocumentReference(uuid.uuid4(), db.get_definition("Other"))

        with pytest.raises(ValidationFailure):
            await db.hydrate("User", {"_id": uuid.uuid4(), "photo": other})

    @pytest.mark.asyncio
    async def test_invalid_input_rejected(self, db):
        with pytest.raises(ValidationFailure) as exc_info:
            await db.hydrate("User", {"_id": uuid.uuid4(), "photo": 42})

        assert exc_info.value.issues[0][0] == "photo"

    @pytest.mark.asyncio
    async def test_get_existing_never_reads(self, store, db, photo_id):
        ref = DocumentReference(photo_id, db.get_definition("Photo"), {"url": "a.png"}, ("url",))

        assert ref.get_existing()["url"] == "a.png"
        assert store.read_count() == 0

    @pytest.mark.asyncio
    async def test_resolve_full_masked_reads_complement(self, store, db, photo_id):
        """Masked resolve_full reads once, excluding the known fields."""
        ref = DocumentReference(photo_id, db.get_definition("Photo"), {"url": "a.png"}, ("url",))

        full = await ref.resolve_full()

        assert full == {"_id": photo_id, "url": "a.png", "description": "sunset"}
        assert store.read_count() == 1
        assert store.reads[0].projection == {"url": 0}

    @pytest.mark.asyncio
    async def test_resolve_full_unmasked(self, store, db, photo_id):
        ref = DocumentReference(photo_id, db.get_definition("Photo"))

        full = await ref.resolve_full()

        assert full["description"] == "sunset"
        assert store.read_count() == 1
        assert store.reads[0].projection is None

    @pytest.mark.asyncio
    async def test_resolve_returns_seeded_lazy_document(self, store, db, photo_id):
        ref = DocumentReference(photo_id, db.get_definition("Photo"), {"url": "a.png"}, ("url",))
        doc = ref.resolve()

        assert await doc.get("url") == "a.png"
        assert store.read_count() == 0
        assert await doc.get("description") == "sunset"
        assert store.read_count() == 1
