"""Common storage utilities shared between the memory and postgres stores.

Both backends agree on value encoding, filter semantics and ordering here so
that services behave the same whichever store a runtime is built with.
"""

from __future__ import annotations

from datetime import datetime
from typing import (
    Any,
    Dict,
    FrozenSet,
    Iterable,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
)

from gatekeep.deadline import Deadline
from gatekeep.storage.errors import StoreError, UnknownCollection
from gatekeep.storage.models import (
    USER_ACTIVITY,
    USER_CLAIMS,
    USER_CREDENTIALS,
    USER_OTPS,
    USER_SESSIONS,
    USERS,
    BatchOperation,
    BatchOpType,
    Document,
    QueryFilter,
    QueryOptions,
    as_utc,
    utcnow,
)

DEFAULT_COLLECTIONS: FrozenSet[str] = frozenset(
    {USERS, USER_CLAIMS, USER_CREDENTIALS, USER_OTPS, USER_SESSIONS, USER_ACTIVITY}
)

FILTER_OPERATORS = frozenset(
    {"==", "!=", "<", "<=", ">", ">=", "in", "not-in", "array-contains"}
)

TIMESTAMP_FIELDS = ("created_at", "updated_at")

_DATE_TAG = "$date"


class DocumentStore(Protocol):
    def get(
        self, collection: str, doc_id: str, *, deadline: Optional[Deadline] = None
    ) -> Document: ...

    def exists(
        self, collection: str, doc_id: str, *, deadline: Optional[Deadline] = None
    ) -> bool: ...

    def create(
        self,
        collection: str,
        data: Mapping[str, Any],
        *,
        deadline: Optional[Deadline] = None,
    ) -> str: ...

    def create_with_id(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        deadline: Optional[Deadline] = None,
    ) -> None: ...

    def update(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        upsert: bool = False,
        deadline: Optional[Deadline] = None,
    ) -> None: ...

    def update_if(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        expected: Mapping[str, Any],
        deadline: Optional[Deadline] = None,
    ) -> bool: ...

    def delete(
        self, collection: str, doc_id: str, *, deadline: Optional[Deadline] = None
    ) -> None: ...

    def query(
        self,
        collection: str,
        options: Optional[QueryOptions] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> List[Document]: ...

    def count(
        self,
        collection: str,
        filters: Optional[Sequence[QueryFilter]] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> int: ...

    def list_documents(
        self, collection: str, *, deadline: Optional[Deadline] = None
    ) -> List[Document]: ...

    def commit_batch(
        self,
        operations: Sequence[BatchOperation],
        *,
        deadline: Optional[Deadline] = None,
    ) -> List[str]: ...


def ensure_collection(collection: str, allowed: Iterable[str]) -> None:
    if collection not in allowed:
        raise UnknownCollection(collection)


def stamp_created(data: Mapping[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    stamped = dict(data)
    ts = now or utcnow()
    stamped["created_at"] = ts
    stamped["updated_at"] = ts
    return stamped


def stamp_updated(data: Mapping[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    stamped = dict(data)
    stamped["updated_at"] = now or utcnow()
    return stamped


def validate_batch_operation(op: BatchOperation, allowed: Iterable[str]) -> BatchOpType:
    """Check an operation is well formed before any batch write happens."""
    try:
        op_type = BatchOpType(op.type)
    except ValueError:
        raise StoreError(f"unsupported batch operation type: {op.type}") from None
    ensure_collection(op.collection, allowed)
    if op_type in (BatchOpType.UPDATE, BatchOpType.DELETE) and not op.document_id:
        raise StoreError(f"batch {op_type.value} requires a document_id")
    if op_type in (BatchOpType.CREATE, BatchOpType.UPDATE) and op.data is None:
        raise StoreError(f"batch {op_type.value} requires data")
    return op_type


# ============================================================================
# VALUE ENCODING - datetimes survive JSON (state file, JSONB column)
# ============================================================================


def encode_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return {_DATE_TAG: as_utc(value).isoformat()}
    if isinstance(value, Mapping):
        return {str(k): encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(v) for v in value]
    return value


def decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if len(value) == 1 and _DATE_TAG in value and isinstance(value[_DATE_TAG], str):
            return as_utc(datetime.fromisoformat(value[_DATE_TAG]))
        return {k: decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    return value


# ============================================================================
# FILTERING AND ORDERING - in-process evaluation used by the memory store
# ============================================================================


def _comparable(value: Any) -> Any:
    if isinstance(value, datetime):
        return as_utc(value)
    return value


def matches_filter(data: Mapping[str, Any], flt: QueryFilter) -> bool:
    if flt.operator not in FILTER_OPERATORS:
        raise StoreError(f"unsupported filter operator: {flt.operator}")
    present = flt.field in data
    actual = _comparable(data.get(flt.field))
    expected = _comparable(flt.value)
    op = flt.operator
    if op == "==":
        return present and actual == expected
    if op == "!=":
        return present and actual != expected
    if op == "in":
        return present and actual in [_comparable(v) for v in expected]
    if op == "not-in":
        return present and actual not in [_comparable(v) for v in expected]
    if op == "array-contains":
        return isinstance(actual, list) and expected in actual
    if not present or actual is None:
        return False
    try:
        if op == "<":
            return actual < expected
        if op == "<=":
            return actual <= expected
        if op == ">":
            return actual > expected
        return actual >= expected
    except TypeError:
        # Mismatched types never match, mirroring typed index behaviour
        return False


def matches_all(data: Mapping[str, Any], filters: Sequence[QueryFilter]) -> bool:
    return all(matches_filter(data, flt) for flt in filters)


def order_documents(
    documents: List[Document], order_by: Optional[str], order_dir: str = "asc"
) -> List[Document]:
    """Sort documents by one field; documents lacking the field sort last."""
    if not order_by:
        return documents
    reverse = (order_dir or "asc").lower() == "desc"
    present = [d for d in documents if d.data.get(order_by) is not None]
    missing = [d for d in documents if d.data.get(order_by) is None]
    try:
        present.sort(key=lambda d: _comparable(d.data[order_by]), reverse=reverse)
    except TypeError as exc:
        raise StoreError(f"cannot order by mixed-type field '{order_by}'") from exc
    return present + missing


def apply_window(documents: List[Document], options: QueryOptions) -> List[Document]:
    start = max(options.offset, 0)
    if options.limit and options.limit > 0:
        return documents[start : start + options.limit]
    return documents[start:]


__all__ = [
    "DEFAULT_COLLECTIONS",
    "FILTER_OPERATORS",
    "DocumentStore",
    "apply_window",
    "decode_value",
    "encode_value",
    "ensure_collection",
    "matches_all",
    "matches_filter",
    "order_documents",
    "stamp_created",
    "stamp_updated",
    "validate_batch_operation",
]
