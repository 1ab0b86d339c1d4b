from __future__ import annotations

import copy
import json
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from gatekeep.deadline import Deadline, check_deadline
from gatekeep.logging import get_logger
from gatekeep.storage.common import (
    DEFAULT_COLLECTIONS,
    apply_window,
    decode_value,
    encode_value,
    ensure_collection,
    matches_all,
    order_documents,
    stamp_created,
    stamp_updated,
    validate_batch_operation,
)
from gatekeep.storage.errors import BatchCommitError, DocumentNotFound, StoreError
from gatekeep.storage.models import (
    BatchOperation,
    BatchOpType,
    Document,
    QueryFilter,
    QueryOptions,
    utcnow,
)

Collections = Dict[str, Dict[str, Dict[str, Any]]]


class MemoryDocumentStore:
    """In-process document store with the same contract as the Postgres store.

    Every operation runs under one re-entrant lock, so single-document writes,
    conditional updates and batch commits are atomic with respect to each
    other. When ``fs_root`` is given the full state is rewritten to
    ``<fs_root>/state/document_store.json`` after each write and reloaded on
    start.
    """

    def __init__(
        self,
        fs_root: Optional[str] = None,
        *,
        collections: Optional[Iterable[str]] = None,
    ) -> None:
        self.logger = get_logger(__name__)
        self.allowed_collections = frozenset(collections or DEFAULT_COLLECTIONS)
        self._collections: Collections = {name: {} for name in self.allowed_collections}
        # RLock so helpers can be called while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "document_store.json"

    @staticmethod
    def _new_id() -> str:
        return uuid.uuid4().hex

    def _docs(self, collection: str) -> Dict[str, Dict[str, Any]]:
        ensure_collection(collection, self.allowed_collections)
        return self._collections.setdefault(collection, {})

    def _write(self, collection: str, doc_id: str, data: Optional[Dict[str, Any]]) -> None:
        """Persist a copy with one document replaced (or removed), then swap it in."""
        docs = dict(self._docs(collection))
        if data is None:
            docs.pop(doc_id, None)
        else:
            docs[doc_id] = data
        merged = {**self._collections, collection: docs}
        self._persist_state(merged)
        self._collections = merged

    # single-document operations
    def get(
        self, collection: str, doc_id: str, *, deadline: Optional[Deadline] = None
    ) -> Document:
        check_deadline(deadline, "get")
        with self._data_lock:
            data = self._docs(collection).get(doc_id)
            if data is None:
                raise DocumentNotFound(collection, doc_id)
            return Document(id=doc_id, data=copy.deepcopy(data))

    def exists(
        self, collection: str, doc_id: str, *, deadline: Optional[Deadline] = None
    ) -> bool:
        check_deadline(deadline, "exists")
        with self._data_lock:
            return doc_id in self._docs(collection)

    def create(
        self,
        collection: str,
        data: Mapping[str, Any],
        *,
        deadline: Optional[Deadline] = None,
    ) -> str:
        with self._data_lock:
            self._docs(collection)
            check_deadline(deadline, "create")
            doc_id = self._new_id()
            self._write(collection, doc_id, stamp_created(copy.deepcopy(dict(data))))
            return doc_id

    def create_with_id(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        deadline: Optional[Deadline] = None,
    ) -> None:
        with self._data_lock:
            self._docs(collection)
            check_deadline(deadline, "create_with_id")
            self._write(collection, doc_id, stamp_created(copy.deepcopy(dict(data))))

    def update(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        upsert: bool = False,
        deadline: Optional[Deadline] = None,
    ) -> None:
        with self._data_lock:
            docs = self._docs(collection)
            current = docs.get(doc_id)
            if current is None and not upsert:
                raise DocumentNotFound(collection, doc_id)
            check_deadline(deadline, "update")
            if current is None:
                updated = stamp_created(copy.deepcopy(dict(data)))
            else:
                updated = {**current, **stamp_updated(copy.deepcopy(dict(data)))}
            self._write(collection, doc_id, updated)

    def update_if(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        expected: Mapping[str, Any],
        deadline: Optional[Deadline] = None,
    ) -> bool:
        with self._data_lock:
            docs = self._docs(collection)
            current = docs.get(doc_id)
            if current is None:
                raise DocumentNotFound(collection, doc_id)
            if any(
                key not in current or current[key] != value
                for key, value in expected.items()
            ):
                return False
            check_deadline(deadline, "update_if")
            self._write(
                collection, doc_id, {**current, **stamp_updated(copy.deepcopy(dict(data)))}
            )
            return True

    def delete(
        self, collection: str, doc_id: str, *, deadline: Optional[Deadline] = None
    ) -> None:
        with self._data_lock:
            docs = self._docs(collection)
            check_deadline(deadline, "delete")
            if doc_id in docs:
                self._write(collection, doc_id, None)

    # queries
    def query(
        self,
        collection: str,
        options: Optional[QueryOptions] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> List[Document]:
        options = options or QueryOptions()
        check_deadline(deadline, "query")
        with self._data_lock:
            matched = [
                Document(id=doc_id, data=copy.deepcopy(data))
                for doc_id, data in self._docs(collection).items()
                if matches_all(data, options.filters)
            ]
        ordered = order_documents(matched, options.order_by, options.order_dir)
        return apply_window(ordered, options)

    def count(
        self,
        collection: str,
        filters: Optional[Sequence[QueryFilter]] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> int:
        check_deadline(deadline, "count")
        with self._data_lock:
            return sum(
                1
                for data in self._docs(collection).values()
                if matches_all(data, filters or [])
            )

    def list_documents(
        self, collection: str, *, deadline: Optional[Deadline] = None
    ) -> List[Document]:
        return self.query(collection, QueryOptions(), deadline=deadline)

    # batch
    def commit_batch(
        self,
        operations: Sequence[BatchOperation],
        *,
        deadline: Optional[Deadline] = None,
    ) -> List[str]:
        """Apply every operation or none of them.

        Operations are applied to copies of the touched collections; the copies
        replace the live collections only after the whole batch succeeded and
        the deadline (if any) has not passed.
        """
        with self._data_lock:
            op_types: List[BatchOpType] = []
            for index, op in enumerate(operations):
                try:
                    op_types.append(
                        validate_batch_operation(op, self.allowed_collections)
                    )
                except StoreError as exc:
                    raise BatchCommitError(
                        f"batch operation {index} rejected: {exc.message}",
                        index=index,
                        operation=op,
                    ) from exc

            staged: Collections = {}
            touched: List[str] = []
            now = utcnow()
            for index, (op, op_type) in enumerate(zip(operations, op_types)):
                if op.collection not in staged:
                    staged[op.collection] = dict(self._collections.get(op.collection, {}))
                docs = staged[op.collection]
                try:
                    if op_type is BatchOpType.CREATE:
                        doc_id = op.document_id or self._new_id()
                        docs[doc_id] = stamp_created(copy.deepcopy(op.data or {}), now)
                    elif op_type is BatchOpType.UPDATE:
                        doc_id = op.document_id or ""
                        current = docs.get(doc_id)
                        if current is None:
                            raise DocumentNotFound(op.collection, doc_id)
                        docs[doc_id] = {
                            **current,
                            **stamp_updated(copy.deepcopy(op.data or {}), now),
                        }
                    else:
                        doc_id = op.document_id or ""
                        docs.pop(doc_id, None)
                except StoreError as exc:
                    raise BatchCommitError(
                        f"batch operation {index} failed: {exc.message}",
                        index=index,
                        operation=op,
                    ) from exc
                touched.append(doc_id)

            check_deadline(deadline, "commit_batch")
            if not staged:
                return touched
            merged = {**self._collections, **staged}
            self._persist_state(merged)
            self._collections = merged
            return touched

    # persistence
    def _persist_state(self, collections: Optional[Collections] = None) -> None:
        if self.fs_root is None:
            return
        state = {
            name: encode_value(docs)
            for name, docs in (collections or self._collections).items()
        }
        path = self._state_path()
        try:
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
        except OSError as exc:
            raise StoreError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except (OSError, ValueError) as exc:
            raise StoreError(f"failed to load in-memory state: {exc}") from exc
        for name, docs in data.items():
            if name not in self.allowed_collections:
                self.logger.warning("memory_store_unknown_collection_skipped", collection=name)
                continue
            self._collections[name] = decode_value(docs)
        return True


__all__ = ["MemoryDocumentStore"]
