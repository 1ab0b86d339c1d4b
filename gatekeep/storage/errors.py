from __future__ import annotations

from typing import Any, Dict, Optional


class StoreError(Exception):
    """Base class for document store failures."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class DocumentNotFound(StoreError):
    """Raised when a document does not exist in its collection."""

    def __init__(self, collection: str, doc_id: str):
        super().__init__(
            f"document not found in collection '{collection}' with ID '{doc_id}'",
            {"collection": collection, "doc_id": doc_id},
        )
        self.collection = collection
        self.doc_id = doc_id


class ConstraintViolation(StoreError):
    """Raised when a write breaks a storage-layer constraint."""


class UnknownCollection(ConstraintViolation):
    """Raised when an operation targets a collection the store does not host."""

    def __init__(self, collection: str):
        super().__init__(
            f"unknown collection '{collection}'", {"collection": collection}
        )
        self.collection = collection


class MalformedDocument(StoreError):
    """Raised when a stored document lacks a field or holds the wrong type."""

    def __init__(self, collection: str, doc_id: str, field: str):
        super().__init__(
            f"document '{doc_id}' in collection '{collection}' has a malformed '{field}' field",
            {"collection": collection, "doc_id": doc_id, "field": field},
        )
        self.collection = collection
        self.doc_id = doc_id
        self.field = field


class BatchCommitError(StoreError):
    """Raised when a batch commit fails; none of its operations were applied."""

    def __init__(self, message: str, *, index: int, operation: Any = None):
        super().__init__(message, {"index": index})
        self.index = index
        self.operation = operation


__all__ = [
    "StoreError",
    "DocumentNotFound",
    "ConstraintViolation",
    "UnknownCollection",
    "MalformedDocument",
    "BatchCommitError",
]
