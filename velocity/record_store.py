"""
Document-style record store used for job records and reference data.

Every backend exposes the same surface: get / set (merge) / query by field
equality with ordering and limit, plus run_transaction(fn) where fn receives
a transaction offering the same calls. Writes issued inside a transaction are
applied atomically when fn returns and discarded when it raises.
"""

from __future__ import annotations

import copy
import json
import os
import re
import sqlite3
import threading
from collections.abc import Callable, Mapping
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol, TypeVar

from velocity.db.postgres import PostgresTxRunner

T = TypeVar("T")


def _validate_identifier(name: str) -> str:
    if not re.fullmatch(r"[A-Za-z_][A-Za-z0-9_]*", name):
        raise ValueError(f"invalid field name: {name}")
    return name


@dataclass
class RecordSnapshot:
    doc_id: str
    data: dict[str, Any]


class Transaction(Protocol):
    # query(lock=True) locks matched rows and skips rows held elsewhere; backends
    # that serialize whole transactions ignore it.

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    def query(
        self,
        collection: str,
        *,
        where_equals: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
        lock: bool = False,
    ) -> list[RecordSnapshot]: ...

    def set(self, collection: str, doc_id: str, fields: Mapping[str, Any], *, merge: bool = True) -> None: ...


class RecordStore(Protocol):
    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None: ...

    def query(
        self,
        collection: str,
        *,
        where_equals: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[RecordSnapshot]: ...

    def set(self, collection: str, doc_id: str, fields: Mapping[str, Any], *, merge: bool = True) -> None: ...

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T: ...


def _merge(existing: dict[str, Any] | None, fields: Mapping[str, Any], *, merge: bool) -> dict[str, Any]:
    if existing is None or not merge:
        return copy.deepcopy(dict(fields))
    out = dict(existing)
    out.update(copy.deepcopy(dict(fields)))
    return out


def _select(
    rows: dict[str, dict[str, Any]],
    *,
    where_equals: Mapping[str, Any] | None,
    order_by: str | None,
    limit: int | None,
) -> list[RecordSnapshot]:
    matched: list[RecordSnapshot] = []
    for doc_id, data in rows.items():
        if where_equals and any(data.get(k) != v for k, v in where_equals.items()):
            continue
        if order_by and data.get(order_by) is None:
            # Records without the ordering field are not part of an ordered query.
            continue
        matched.append(RecordSnapshot(doc_id=doc_id, data=copy.deepcopy(data)))
    if order_by:
        matched.sort(key=lambda snap: (str(snap.data.get(order_by)), snap.doc_id))
    if limit is not None:
        matched = matched[: max(0, int(limit))]
    return matched


class _InMemoryTransaction:
    def __init__(self, store: "InMemoryRecordStore") -> None:
        self._store = store
        self._pending: dict[tuple[str, str], dict[str, Any]] = {}

    def _view(self, collection: str) -> dict[str, dict[str, Any]]:
        rows = dict(self._store._collections.get(collection, {}))
        for (coll, doc_id), data in self._pending.items():
            if coll == collection:
                rows[doc_id] = data
        return rows

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        row = self._view(collection).get(doc_id)
        return copy.deepcopy(row) if row is not None else None

    def query(
        self,
        collection: str,
        *,
        where_equals: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
        lock: bool = False,
    ) -> list[RecordSnapshot]:
        return _select(self._view(collection), where_equals=where_equals, order_by=order_by, limit=limit)

    def set(self, collection: str, doc_id: str, fields: Mapping[str, Any], *, merge: bool = True) -> None:
        existing = self._view(collection).get(doc_id)
        self._pending[(collection, doc_id)] = _merge(existing, fields, merge=merge)

    def _commit(self) -> None:
        for (collection, doc_id), data in self._pending.items():
            self._store._collections.setdefault(collection, {})[doc_id] = data
        self._pending.clear()


class InMemoryRecordStore:
    """Thread-locked record store; a transaction holds the lock for its whole body."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._collections.get(collection, {}).get(doc_id)
            return copy.deepcopy(row) if row is not None else None

    def query(
        self,
        collection: str,
        *,
        where_equals: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[RecordSnapshot]:
        with self._lock:
            return _select(
                self._collections.get(collection, {}),
                where_equals=where_equals,
                order_by=order_by,
                limit=limit,
            )

    def set(self, collection: str, doc_id: str, fields: Mapping[str, Any], *, merge: bool = True) -> None:
        with self._lock:
            rows = self._collections.setdefault(collection, {})
            rows[doc_id] = _merge(rows.get(doc_id), fields, merge=merge)

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        with self._lock:
            tx = _InMemoryTransaction(self)
            result = fn(tx)
            tx._commit()
            return result

    def reset(self) -> None:
        with self._lock:
            self._collections.clear()


class _SqliteTransaction:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT payload FROM records WHERE collection = ? AND doc_id = ? LIMIT 1",
            (collection, doc_id),
        ).fetchone()
        if row is None:
            return None
        return json.loads(row["payload"])

    def query(
        self,
        collection: str,
        *,
        where_equals: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
        lock: bool = False,
    ) -> list[RecordSnapshot]:
        clauses = ["collection = ?"]
        params: list[Any] = [collection]
        for name, value in (where_equals or {}).items():
            clauses.append(f"json_extract(payload, '$.{_validate_identifier(name)}') = ?")
            params.append(value)
        sql = f"SELECT doc_id, payload FROM records WHERE {' AND '.join(clauses)}"
        if order_by:
            path = f"json_extract(payload, '$.{_validate_identifier(order_by)}')"
            sql += f" AND {path} IS NOT NULL ORDER BY {path} ASC, doc_id ASC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(0, int(limit)))
        rows = self._conn.execute(sql, params).fetchall()
        return [RecordSnapshot(doc_id=row["doc_id"], data=json.loads(row["payload"])) for row in rows]

    def set(self, collection: str, doc_id: str, fields: Mapping[str, Any], *, merge: bool = True) -> None:
        payload = _merge(self.get(collection, doc_id), fields, merge=merge)
        self._conn.execute(
            """
            INSERT INTO records(collection, doc_id, payload) VALUES (?, ?, ?)
            ON CONFLICT(collection, doc_id) DO UPDATE SET payload = excluded.payload
            """,
            (collection, doc_id, json.dumps(payload, ensure_ascii=True, sort_keys=True)),
        )


class SqliteRecordStore:
    """SQLite-backed record store; transactions run under BEGIN IMMEDIATE."""

    def __init__(self, db_path: str | Path) -> None:
        self._lock = threading.RLock()
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with closing(self._connect()) as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    collection TEXT NOT NULL,
                    doc_id TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    PRIMARY KEY (collection, doc_id)
                )
                """
            )

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        with self._lock:
            with closing(self._connect()) as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    result = fn(_SqliteTransaction(conn))
                except Exception:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
                return result

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        return self.run_transaction(lambda tx: tx.get(collection, doc_id))

    def query(
        self,
        collection: str,
        *,
        where_equals: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[RecordSnapshot]:
        return self.run_transaction(
            lambda tx: tx.query(collection, where_equals=where_equals, order_by=order_by, limit=limit)
        )

    def set(self, collection: str, doc_id: str, fields: Mapping[str, Any], *, merge: bool = True) -> None:
        self.run_transaction(lambda tx: tx.set(collection, doc_id, fields, merge=merge))

    def reset(self) -> None:
        with self._lock:
            with closing(self._connect()) as conn:
                conn.execute("DELETE FROM records")


def _json_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class _PostgresTransaction:
    def __init__(self, conn: Any, table_name: str) -> None:
        self._conn = conn
        self._table = table_name

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        sql = f"SELECT payload FROM {self._table} WHERE collection = %s AND doc_id = %s FOR UPDATE"
        with self._conn.cursor() as cur:
            cur.execute(sql, (collection, doc_id))
            row = cur.fetchone()
        if row is None:
            return None
        payload = row[0]
        return payload if isinstance(payload, dict) else json.loads(payload)

    def query(
        self,
        collection: str,
        *,
        where_equals: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
        lock: bool = False,
    ) -> list[RecordSnapshot]:
        clauses = ["collection = %s"]
        params: list[Any] = [collection]
        for name, value in (where_equals or {}).items():
            clauses.append("payload->>%s = %s")
            params.extend([_validate_identifier(name), _json_text(value)])
        sql = f"SELECT doc_id, payload FROM {self._table} WHERE {' AND '.join(clauses)}"
        if order_by:
            sql += " AND payload->>%s IS NOT NULL ORDER BY payload->>%s ASC, doc_id ASC"
            params.extend([_validate_identifier(order_by), order_by])
        if limit is not None:
            sql += " LIMIT %s"
            params.append(max(0, int(limit)))
        if lock:
            sql += " FOR UPDATE SKIP LOCKED"
        with self._conn.cursor() as cur:
            cur.execute(sql, tuple(params))
            rows = cur.fetchall() or []
        out: list[RecordSnapshot] = []
        for row in rows:
            payload = row[1] if isinstance(row[1], dict) else json.loads(row[1])
            out.append(RecordSnapshot(doc_id=str(row[0]), data=payload))
        return out

    def set(self, collection: str, doc_id: str, fields: Mapping[str, Any], *, merge: bool = True) -> None:
        update = f"{self._table}.payload || EXCLUDED.payload" if merge else "EXCLUDED.payload"
        sql = f"""
            INSERT INTO {self._table} (collection, doc_id, payload) VALUES (%s, %s, %s::jsonb)
            ON CONFLICT (collection, doc_id) DO UPDATE SET payload = {update}
        """
        with self._conn.cursor() as cur:
            cur.execute(sql, (collection, doc_id, json.dumps(dict(fields), ensure_ascii=True, sort_keys=True)))


class PostgresRecordStore:
    """Records as JSONB rows; locked queries skip rows another transaction holds."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "velocity_records") -> None:
        self._tx_runner = tx_runner
        self._table_name = _validate_identifier(table_name)

    def ensure_schema(self) -> None:
        sql = f"""
            CREATE TABLE IF NOT EXISTS {self._table_name} (
                collection TEXT NOT NULL,
                doc_id TEXT NOT NULL,
                payload JSONB NOT NULL,
                PRIMARY KEY (collection, doc_id)
            )
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql)

        self._tx_runner.run_in_tx(fn=_op)

    def run_transaction(self, fn: Callable[[Transaction], T]) -> T:
        return self._tx_runner.run_in_tx(fn=lambda conn: fn(_PostgresTransaction(conn, self._table_name)))

    def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        return self.run_transaction(lambda tx: tx.get(collection, doc_id))

    def query(
        self,
        collection: str,
        *,
        where_equals: Mapping[str, Any] | None = None,
        order_by: str | None = None,
        limit: int | None = None,
    ) -> list[RecordSnapshot]:
        return self.run_transaction(
            lambda tx: tx.query(collection, where_equals=where_equals, order_by=order_by, limit=limit)
        )

    def set(self, collection: str, doc_id: str, fields: Mapping[str, Any], *, merge: bool = True) -> None:
        self.run_transaction(lambda tx: tx.set(collection, doc_id, fields, merge=merge))


def create_record_store_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryRecordStore | SqliteRecordStore | PostgresRecordStore:
    env = os.environ if environ is None else environ
    backend = env.get("VELOCITY_RECORD_STORE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryRecordStore()
    if backend == "sqlite":
        db_path = env.get("VELOCITY_RECORD_STORE_SQLITE_PATH", ".runtime/velocity_records.sqlite3")
        return SqliteRecordStore(db_path)
    if backend == "postgres":
        dsn = env.get("POSTGRES_DSN", "").strip()
        if not dsn:
            raise ValueError("POSTGRES_DSN must be set when VELOCITY_RECORD_STORE_BACKEND=postgres")
        store = PostgresRecordStore(tx_runner=PostgresTxRunner(dsn))
        store.ensure_schema()
        return store
    raise RuntimeError(f"unsupported record store backend: {backend}")
