"""Tests for DocumentStore."""

import json
import threading

import pytest

from orderledger.document_store import DocumentStore
from orderledger.errors import (
    DocumentExistsError,
    DocumentNotFoundError,
    FieldMismatchError,
    RevisionMismatchError,
    StoreUnavailableError,
)


class TestDocumentStore:
    """Tests for DocumentStore class."""

    def test_create_and_get(self, store):
        doc = store.create("orders", "A-1", {"status": "Pending"})

        assert doc.revision == 1
        loaded = store.get("orders", "A-1")
        assert loaded.data == {"status": "Pending"}
        assert loaded.revision == 1

    def test_file_layout(self, store):
        store.create("orders", "A-1", {"status": "Pending"})

        path = store.data_dir / "orders" / "A-1.json"
        raw = json.loads(path.read_text())
        assert raw == {"revision": 1, "data": {"status": "Pending"}}

    def test_create_existing_raises(self, store):
        store.create("orders", "A-1", {})
        with pytest.raises(DocumentExistsError):
            store.create("orders", "A-1", {})

    def test_get_missing_raises(self, store):
        with pytest.raises(DocumentNotFoundError):
            store.get("orders", "nope")
        assert store.find("orders", "nope") is None
        assert not store.exists("orders", "nope")

    def test_unsafe_keys_do_not_exist(self, store):
        assert store.find("orders", "../escape") is None
        with pytest.raises(DocumentNotFoundError):
            store.get("orders", ".hidden")

    def test_keys_sorted_and_skip_lock_files(self, store):
        store.create("orders", "B", {})
        store.create("orders", "A", {})
        store.merge("orders", "A", {"x": 1})

        assert store.keys("orders") == ["A", "B"]
        assert store.keys("empty") == []

    def test_merge_replaces_only_supplied_keys(self, store):
        store.create("orders", "A", {"customer": {"name": "Ada"}, "total": "22.40"})

        doc = store.merge("orders", "A", {"payment": {"method": "e-transfer"}})

        assert doc.revision == 2
        assert doc.data == {
            "customer": {"name": "Ada"},
            "total": "22.40",
            "payment": {"method": "e-transfer"},
        }

    def test_merge_missing_raises(self, store):
        with pytest.raises(DocumentNotFoundError):
            store.merge("orders", "A", {"x": 1})

    def test_merge_create(self, store):
        doc = store.merge("orders", "A", {"x": 1}, create=True)
        assert doc.revision == 1

        with pytest.raises(DocumentExistsError):
            store.merge("orders", "A", {"x": 2}, create=True)

    def test_merge_expected_revision(self, store):
        store.create("orders", "A", {"x": 1})
        store.merge("orders", "A", {"x": 2}, expected_revision=1)

        with pytest.raises(RevisionMismatchError) as exc_info:
            store.merge("orders", "A", {"x": 3}, expected_revision=1)
        assert exc_info.value.found == 2
        assert store.get("orders", "A").data == {"x": 2}

    def test_merge_expect_field(self, store):
        store.create("certificates", "GC-1", {"remainingBalance": "30.00"})

        store.merge(
            "certificates", "GC-1", {"remainingBalance": "0.00"},
            expect={"remainingBalance": "30.00"},
        )
        with pytest.raises(FieldMismatchError) as exc_info:
            store.merge(
                "certificates", "GC-1", {"remainingBalance": "10.00"},
                expect={"remainingBalance": "30.00"},
            )
        assert exc_info.value.found == "0.00"

    def test_precondition_aborts_write(self, store):
        store.create("orders", "A", {"x": 1})

        def refuse(current, merged):
            if merged["x"] > 5:
                raise ValueError("too big")

        with pytest.raises(ValueError):
            store.merge("orders", "A", {"x": 9}, precondition=refuse)
        assert store.get("orders", "A").revision == 1

    def test_corrupt_document_is_unavailable(self, store):
        store.create("orders", "A", {})
        (store.data_dir / "orders" / "A.json").write_text("{not json")

        with pytest.raises(StoreUnavailableError):
            store.get("orders", "A")
        assert store.list_documents("orders") == []

    def test_concurrent_merges_keep_every_field(self, store):
        store.create("orders", "A", {})
        errors = []

        def writer(n):
            try:
                for i in range(10):
                    store.merge("orders", "A", {f"field{n}": i})
            except Exception as e:  # pragma: no cover
                errors.append(e)

        threads = [threading.Thread(target=writer, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        doc = store.get("orders", "A")
        assert doc.revision == 41
        assert doc.data == {f"field{n}": 9 for n in range(4)}

    def test_separate_store_instances_share_locks(self, temp_dir):
        first = DocumentStore(temp_dir / "data")
        second = DocumentStore(temp_dir / "data")
        first.create("orders", "A", {"x": 1})

        second.merge("orders", "A", {"y": 2})

        assert first.get("orders", "A").data == {"x": 1, "y": 2}
