"""Keyed JSON document storage for orderledger.

Each document lives in its own file, ``<data_dir>/<collection>/<key>.json``,
holding ``{"revision": n, "data": {...}}``. Writes take an exclusive lock on
a per-document lock file and land through write-to-temp-then-rename, so a
reader sees either the old or the new document, never a torn one.
"""

import fcntl
import json
import os
import re
import tempfile
import time
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Iterator

import structlog

from .errors import (
    DocumentExistsError,
    DocumentNotFoundError,
    FieldMismatchError,
    RevisionMismatchError,
    StoreUnavailableError,
)

logger = structlog.get_logger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_LOCK_POLL_INTERVAL = 0.01

# Called with (current data or None, merged data) before a merge is written
Precondition = Callable[[dict[str, Any] | None, dict[str, Any]], None]


@dataclass
class Document:
    """A stored document and its revision."""

    collection: str
    key: str
    revision: int
    data: dict[str, Any]

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.key}"


class DocumentStore:
    """Manages keyed documents grouped into collections."""

    def __init__(self, data_dir: Path, lock_timeout: float = 5.0):
        """
        Initialize DocumentStore.

        Args:
            data_dir: Root directory holding one subdirectory per collection.
            lock_timeout: Seconds to wait for a document lock before giving up.
        """
        self.data_dir = Path(data_dir)
        self.lock_timeout = lock_timeout

    def _collection_dir(self, collection: str) -> Path:
        return self.data_dir / collection

    def _path(self, collection: str, key: str) -> Path:
        """Resolve a document path; keys that could escape the collection don't exist."""
        if not _KEY_PATTERN.match(key):
            raise DocumentNotFoundError(f"{collection}/{key}")
        return self._collection_dir(collection) / f"{key}.json"

    def _ensure_dir(self, collection: str) -> Path:
        path = self._collection_dir(collection)
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StoreUnavailableError("mkdir", str(e))
        return path

    @contextmanager
    def _lock(self, collection: str, key: str) -> Iterator[None]:
        """Acquire the exclusive lock for one document, waiting up to lock_timeout."""
        self._path(collection, key)
        lock_path = self._ensure_dir(collection) / f".{key}.lock"
        deadline = time.monotonic() + self.lock_timeout
        try:
            lock_file = open(lock_path, "w")
        except OSError as e:
            raise StoreUnavailableError("lock", str(e))
        with lock_file:
            while True:
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise StoreUnavailableError(
                            "lock", f"timed out waiting for {collection}/{key}"
                        )
                    time.sleep(_LOCK_POLL_INTERVAL)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _read(self, collection: str, key: str) -> Document | None:
        path = self._path(collection, key)
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise StoreUnavailableError("read", f"{collection}/{key}: {e}")
        return Document(
            collection=collection,
            key=key,
            revision=raw.get("revision", 0),
            data=raw.get("data", {}),
        )

    def _write(self, collection: str, key: str, revision: int, data: dict[str, Any]) -> Document:
        """Write a document atomically (temp file + rename)."""
        directory = self._ensure_dir(collection)
        path = self._path(collection, key)
        try:
            fd, temp_path = tempfile.mkstemp(dir=directory, prefix=f".{key}_", suffix=".tmp")
        except OSError as e:
            raise StoreUnavailableError("write", str(e))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"revision": revision, "data": data}, f, indent=2)
                f.write("\n")
            os.replace(temp_path, path)
        except Exception as e:
            try:
                os.unlink(temp_path)
            except OSError:
                pass
            if isinstance(e, OSError):
                raise StoreUnavailableError("write", str(e))
            raise
        # Reload through JSON so callers never share mutable state with the write
        return Document(
            collection=collection,
            key=key,
            revision=revision,
            data=json.loads(json.dumps(data)),
        )

    def exists(self, collection: str, key: str) -> bool:
        return self.find(collection, key) is not None

    def find(self, collection: str, key: str) -> Document | None:
        """Get a document, or None if it doesn't exist."""
        try:
            return self._read(collection, key)
        except DocumentNotFoundError:
            return None

    def get(self, collection: str, key: str) -> Document:
        """
        Get a document.

        Raises:
            DocumentNotFoundError: If the document doesn't exist.
        """
        doc = self._read(collection, key)
        if doc is None:
            raise DocumentNotFoundError(f"{collection}/{key}")
        return doc

    def keys(self, collection: str) -> list[str]:
        """List document keys in a collection, sorted."""
        directory = self._collection_dir(collection)
        if not directory.exists():
            return []
        return sorted(
            p.stem for p in directory.glob("*.json") if not p.name.startswith(".")
        )

    def list_documents(self, collection: str) -> list[Document]:
        """Load every readable document in a collection."""
        documents: list[Document] = []
        for key in self.keys(collection):
            try:
                doc = self._read(collection, key)
            except StoreUnavailableError as e:
                logger.warning("document_unreadable", collection=collection, key=key, error=str(e))
                continue
            if doc is not None:
                documents.append(doc)
        return documents

    def create(self, collection: str, key: str, data: dict[str, Any]) -> Document:
        """
        Create a new document at revision 1.

        Raises:
            DocumentExistsError: If the key is already taken.
        """
        with self._lock(collection, key):
            if self._read(collection, key) is not None:
                raise DocumentExistsError(f"{collection}/{key}")
            return self._write(collection, key, 1, dict(data))

    def merge(
        self,
        collection: str,
        key: str,
        fields: dict[str, Any],
        *,
        expected_revision: int | None = None,
        expect: dict[str, Any] | None = None,
        create: bool = False,
        precondition: Precondition | None = None,
    ) -> Document:
        """
        Merge top-level fields into a document under its lock.

        Keys present in ``fields`` replace the stored values; every other key
        is left exactly as stored. The read happens inside the lock, so the
        merge always applies on top of the latest write.

        Args:
            collection: Collection name.
            key: Document key.
            fields: Top-level fields to set.
            expected_revision: Only write if the stored revision matches
                (0 for a document that doesn't exist yet).
            expect: Only write if each named field currently holds the given value.
            create: Merge onto an empty document; the key must not exist yet.
            precondition: Callable run on (current, merged) before writing;
                raise from it to abort the write.

        Returns:
            The merged document at its new revision.

        Raises:
            DocumentNotFoundError: If the document doesn't exist and create is False.
            DocumentExistsError: If create is True and the document exists.
            RevisionMismatchError: If expected_revision doesn't match.
            FieldMismatchError: If a field named in expect holds another value.
        """
        path = f"{collection}/{key}"
        with self._lock(collection, key):
            current = self._read(collection, key)
            if current is None:
                if not create:
                    raise DocumentNotFoundError(path)
                base: dict[str, Any] = {}
                revision = 0
            else:
                if create:
                    raise DocumentExistsError(path)
                base = current.data
                revision = current.revision

            if expected_revision is not None and expected_revision != revision:
                raise RevisionMismatchError(path, expected_revision, revision)

            for name, value in (expect or {}).items():
                if base.get(name) != value:
                    raise FieldMismatchError(path, name, value, base.get(name))

            merged = dict(base)
            merged.update(fields)

            if precondition is not None:
                precondition(current.data if current else None, merged)

            doc = self._write(collection, key, revision + 1, merged)

        logger.debug(
            "document_merged", path=path, revision=doc.revision, fields=sorted(fields)
        )
        return doc
