from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatekeep.deadline import Deadline, DeadlineExceeded, check_deadline
from gatekeep.logging import get_logger
from gatekeep.storage.common import (
    DEFAULT_COLLECTIONS,
    FILTER_OPERATORS,
    TIMESTAMP_FIELDS,
    decode_value,
    encode_value,
    ensure_collection,
    stamp_created,
    stamp_updated,
    validate_batch_operation,
)
from gatekeep.storage.errors import (
    BatchCommitError,
    ConstraintViolation,
    DocumentNotFound,
    StoreError,
)
from gatekeep.storage.models import (
    BatchOperation,
    BatchOpType,
    Document,
    QueryFilter,
    QueryOptions,
    utcnow,
)

_RANGE_OPERATORS = {"<": "<", "<=": "<=", ">": ">", ">=": ">="}


def _jsonb(value: Any) -> str:
    return json.dumps(encode_value(value))


def filter_clause(flt: QueryFilter) -> Tuple[str, List[Any]]:
    """Translate one filter into a SQL predicate over the ``data`` column.

    Semantics match the in-process evaluation in ``storage.common``: a
    document lacking the field never satisfies a filter, and range operators
    only compare values of the same JSON type.
    """
    op = flt.operator
    if op not in FILTER_OPERATORS:
        raise StoreError(f"unsupported filter operator: {op}")
    field = flt.field
    if op == "==":
        return "data -> %s = %s::jsonb", [field, _jsonb(flt.value)]
    if op == "!=":
        return "(data ? %s AND data -> %s <> %s::jsonb)", [field, field, _jsonb(flt.value)]
    if op in ("in", "not-in"):
        values = [_jsonb(v) for v in flt.value]
        if op == "in":
            return "data -> %s = ANY(%s::jsonb[])", [field, values]
        return (
            "(data ? %s AND NOT (data -> %s = ANY(%s::jsonb[])))",
            [field, field, values],
        )
    if op == "array-contains":
        return (
            "(jsonb_typeof(data -> %s) = 'array' AND data -> %s @> %s::jsonb)",
            [field, field, _jsonb([flt.value])],
        )
    sql_op = _RANGE_OPERATORS[op]
    value = flt.value
    if isinstance(value, datetime):
        return (
            "CASE WHEN jsonb_typeof(data -> %s) = 'object' "
            f"THEN (data -> %s ->> '$date')::timestamptz END {sql_op} %s",
            [field, field, value],
        )
    if isinstance(value, bool):
        return (
            "CASE WHEN jsonb_typeof(data -> %s) = 'boolean' "
            f"THEN (data ->> %s)::boolean END {sql_op} %s",
            [field, field, value],
        )
    if isinstance(value, (int, float)):
        return (
            "CASE WHEN jsonb_typeof(data -> %s) = 'number' "
            f"THEN (data ->> %s)::numeric END {sql_op} %s",
            [field, field, value],
        )
    return (
        "CASE WHEN jsonb_typeof(data -> %s) = 'string' "
        f"THEN data ->> %s END {sql_op} %s",
        [field, field, str(value)],
    )


def where_clause(collection: str, filters: Sequence[QueryFilter]) -> Tuple[str, List[Any]]:
    clauses = ["collection = %s"]
    params: List[Any] = [collection]
    for flt in filters:
        sql, flt_params = filter_clause(flt)
        clauses.append(sql)
        params.extend(flt_params)
    return " WHERE " + " AND ".join(clauses), params


def order_clause(order_by: Optional[str], order_dir: str) -> Tuple[str, List[Any]]:
    if not order_by:
        return " ORDER BY created_at ASC, id ASC", []
    direction = "DESC" if (order_dir or "asc").lower() == "desc" else "ASC"
    if order_by in TIMESTAMP_FIELDS:
        return f" ORDER BY {order_by} {direction}", []
    return (
        f" ORDER BY NULLIF(data -> %s, 'null'::jsonb) {direction} NULLS LAST",
        [order_by],
    )


class PostgresDocumentStore:
    """Document store persisted in a single Postgres ``documents`` table.

    Documents live as JSONB rows keyed by ``(collection, id)``. Batches and
    read-modify-write updates run inside one transaction, and a caller's
    deadline becomes the transaction's ``statement_timeout``.
    """

    def __init__(
        self,
        dsn: str,
        *,
        collections: Optional[Iterable[str]] = None,
        min_size: int = 2,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.allowed_collections = frozenset(collections or DEFAULT_COLLECTIONS)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_documents_table()

    def close(self) -> None:
        self.pool.close()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _transaction(self, operation: str, deadline: Optional[Deadline]) -> Iterator[Any]:
        check_deadline(deadline, operation)
        try:
            with self._connect() as conn, conn.transaction():
                if deadline is not None:
                    timeout_ms = max(1, int(deadline.remaining() * 1000))
                    conn.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        (str(timeout_ms),),
                    )
                yield conn
        except errors.QueryCanceled as exc:
            raise DeadlineExceeded(operation) from exc
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "document already exists", {"operation": operation}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error("document_store_query_failed", operation=operation, error=str(exc))
            raise StoreError(f"{operation} failed: {exc}", {"operation": operation}) from exc

    def _ensure_documents_table(self) -> None:
        """Create the ``documents`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    data JSONB NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    PRIMARY KEY (collection, id)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS documents_collection_created_idx ON documents (collection, created_at)"
            )

    @staticmethod
    def _row_to_document(row: Mapping[str, Any]) -> Document:
        data = row["data"]
        if isinstance(data, str):
            data = json.loads(data)
        return Document(id=str(row["id"]), data=decode_value(data))

    @staticmethod
    def _insert(conn: Any, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        conn.execute(
            """
            INSERT INTO documents (collection, id, data, created_at, updated_at)
            VALUES (%s, %s, %s::jsonb, %s, %s)
            ON CONFLICT (collection, id) DO UPDATE
            SET data = EXCLUDED.data,
                created_at = EXCLUDED.created_at,
                updated_at = EXCLUDED.updated_at
            """,
            (
                collection,
                doc_id,
                _jsonb(data),
                data["created_at"],
                data["updated_at"],
            ),
        )

    @staticmethod
    def _merge(conn: Any, collection: str, doc_id: str, data: Dict[str, Any]) -> bool:
        result = conn.execute(
            """
            UPDATE documents
            SET data = data || %s::jsonb, updated_at = %s
            WHERE collection = %s AND id = %s
            """,
            (_jsonb(data), data["updated_at"], collection, doc_id),
        )
        return result.rowcount > 0

    # single-document operations
    def get(
        self, collection: str, doc_id: str, *, deadline: Optional[Deadline] = None
    ) -> Document:
        ensure_collection(collection, self.allowed_collections)
        with self._transaction("get", deadline) as conn:
            row = conn.execute(
                "SELECT id, data FROM documents WHERE collection = %s AND id = %s",
                (collection, doc_id),
            ).fetchone()
        if not row:
            raise DocumentNotFound(collection, doc_id)
        return self._row_to_document(row)

    def exists(
        self, collection: str, doc_id: str, *, deadline: Optional[Deadline] = None
    ) -> bool:
        ensure_collection(collection, self.allowed_collections)
        with self._transaction("exists", deadline) as conn:
            row = conn.execute(
                "SELECT 1 AS found FROM documents WHERE collection = %s AND id = %s",
                (collection, doc_id),
            ).fetchone()
        return row is not None

    def create(
        self,
        collection: str,
        data: Mapping[str, Any],
        *,
        deadline: Optional[Deadline] = None,
    ) -> str:
        doc_id = uuid.uuid4().hex
        self.create_with_id(collection, doc_id, data, deadline=deadline)
        return doc_id

    def create_with_id(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        deadline: Optional[Deadline] = None,
    ) -> None:
        ensure_collection(collection, self.allowed_collections)
        with self._transaction("create", deadline) as conn:
            self._insert(conn, collection, doc_id, stamp_created(data))

    def update(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        upsert: bool = False,
        deadline: Optional[Deadline] = None,
    ) -> None:
        ensure_collection(collection, self.allowed_collections)
        now = utcnow()
        with self._transaction("update", deadline) as conn:
            if self._merge(conn, collection, doc_id, stamp_updated(data, now)):
                return
            if not upsert:
                raise DocumentNotFound(collection, doc_id)
            self._insert(conn, collection, doc_id, stamp_created(data, now))

    def update_if(
        self,
        collection: str,
        doc_id: str,
        data: Mapping[str, Any],
        *,
        expected: Mapping[str, Any],
        deadline: Optional[Deadline] = None,
    ) -> bool:
        """Merge ``data`` only while the stored document still holds ``expected``.

        The guard and the write are one statement, so two callers racing on
        the same document cannot both succeed.
        """
        ensure_collection(collection, self.allowed_collections)
        stamped = stamp_updated(data)
        with self._transaction("update_if", deadline) as conn:
            row = conn.execute(
                """
                UPDATE documents
                SET data = data || %s::jsonb, updated_at = %s
                WHERE collection = %s AND id = %s AND data @> %s::jsonb
                RETURNING id
                """,
                (
                    _jsonb(stamped),
                    stamped["updated_at"],
                    collection,
                    doc_id,
                    _jsonb(dict(expected)),
                ),
            ).fetchone()
            if row:
                return True
            present = conn.execute(
                "SELECT 1 AS found FROM documents WHERE collection = %s AND id = %s",
                (collection, doc_id),
            ).fetchone()
        if not present:
            raise DocumentNotFound(collection, doc_id)
        return False

    def delete(
        self, collection: str, doc_id: str, *, deadline: Optional[Deadline] = None
    ) -> None:
        ensure_collection(collection, self.allowed_collections)
        with self._transaction("delete", deadline) as conn:
            conn.execute(
                "DELETE FROM documents WHERE collection = %s AND id = %s",
                (collection, doc_id),
            )

    # queries
    def query(
        self,
        collection: str,
        options: Optional[QueryOptions] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> List[Document]:
        ensure_collection(collection, self.allowed_collections)
        options = options or QueryOptions()
        where_sql, params = where_clause(collection, options.filters)
        order_sql, order_params = order_clause(options.order_by, options.order_dir)
        query = "SELECT id, data FROM documents" + where_sql + order_sql
        params.extend(order_params)
        if options.limit and options.limit > 0:
            query += " LIMIT %s"
            params.append(options.limit)
        if options.offset and options.offset > 0:
            query += " OFFSET %s"
            params.append(options.offset)
        with self._transaction("query", deadline) as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_document(row) for row in rows]

    def count(
        self,
        collection: str,
        filters: Optional[Sequence[QueryFilter]] = None,
        *,
        deadline: Optional[Deadline] = None,
    ) -> int:
        ensure_collection(collection, self.allowed_collections)
        where_sql, params = where_clause(collection, filters or [])
        with self._transaction("count", deadline) as conn:
            row = conn.execute(
                "SELECT count(*) AS total FROM documents" + where_sql, params
            ).fetchone()
        return int(row["total"]) if row else 0

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
        op_types: List[BatchOpType] = []
        for index, op in enumerate(operations):
            try:
                op_types.append(validate_batch_operation(op, self.allowed_collections))
            except StoreError as exc:
                raise BatchCommitError(
                    f"batch operation {index} rejected: {exc.message}",
                    index=index,
                    operation=op,
                ) from exc
        if not operations:
            return []

        touched: List[str] = []
        now = utcnow()
        with self._transaction("commit_batch", deadline) as conn:
            for index, (op, op_type) in enumerate(zip(operations, op_types)):
                doc_id = op.document_id or uuid.uuid4().hex
                try:
                    if op_type is BatchOpType.CREATE:
                        self._insert(conn, op.collection, doc_id, stamp_created(op.data or {}, now))
                    elif op_type is BatchOpType.UPDATE:
                        if not self._merge(
                            conn, op.collection, doc_id, stamp_updated(op.data or {}, now)
                        ):
                            raise DocumentNotFound(op.collection, doc_id)
                    else:
                        conn.execute(
                            "DELETE FROM documents WHERE collection = %s AND id = %s",
                            (op.collection, doc_id),
                        )
                except psycopg.Error as exc:
                    raise BatchCommitError(
                        f"batch operation {index} failed: {exc}",
                        index=index,
                        operation=op,
                    ) from exc
                except StoreError as exc:
                    raise BatchCommitError(
                        f"batch operation {index} failed: {exc.message}",
                        index=index,
                        operation=op,
                    ) from exc
                touched.append(doc_id)
            # Leaving the block with an exception rolls the transaction back
            check_deadline(deadline, "commit_batch")
        return touched


__all__ = ["PostgresDocumentStore", "filter_clause", "order_clause", "where_clause"]
