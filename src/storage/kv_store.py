from __future__ import annotations

import json
import os
import re
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Sequence


_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_OPS = {
    "eq": "=",
    "ne": "!=",
    "lt": "<",
    "le": "<=",
    "gt": ">",
    "ge": ">=",
}


class KVStoreError(RuntimeError):
    pass


class ObjectNotFoundError(KVStoreError):
    def __init__(self, bucket: str, key: str) -> None:
        super().__init__(f"{bucket}::{key} does not exist")
        self.bucket = bucket
        self.key = key


class BucketNotFoundError(KVStoreError):
    def __init__(self, bucket: str) -> None:
        super().__init__(f"Bucket {bucket} does not exist")
        self.bucket = bucket


class EtagConflictError(KVStoreError):
    """Raised when a conditional put carries a stale etag."""

    def __init__(self, bucket: str, key: str, expected: str) -> None:
        super().__init__(f"{bucket}::{key} has been modified (expected etag {expected})")
        self.bucket = bucket
        self.key = key
        self.expected = expected


class StoreTransportError(KVStoreError):
    pass


@dataclass(frozen=True)
class StoredObject:
    key: str
    etag: str
    value: dict[str, Any]
    mtime: float


def default_db_path() -> str:
    return os.getenv("WF_SQLITE_PATH", "data/wf.db")


def _new_etag() -> str:
    return uuid.uuid4().hex


def _json_dumps(payload: Any) -> str:
    return json.dumps(payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True)


def _ident(value: str, *, kind: str) -> str:
    if not isinstance(value, str) or not _IDENT_RE.match(value):
        raise ValueError(f"Invalid {kind} name: {value!r}")
    return value


def _field_expr(field: str) -> str:
    # Field names are validated identifiers, so they can be inlined. Inlining keeps
    # the expression identical to the one used by the bucket's expression indexes.
    return f"json_extract(value_json, '$.{_ident(field, kind='field')}')"


class SQLiteKVStore:
    """Bucketed key/value store with per-object etags on top of SQLite.

    Every object is a JSON document. Each successful write assigns a fresh etag;
    a put that carries an etag only lands if the stored object still has it,
    which gives callers a compare-and-swap primitive without any lock manager.

    The connection is shared across threads and serialized with a lock. Other
    processes may open the same file; conditional writes remain atomic because
    they are a single `UPDATE ... WHERE etag = ?` statement.
    """

    def __init__(self, db_path: str | Path | None = None, *, busy_timeout_s: float = 5.0) -> None:
        self.db_path = Path(db_path or default_db_path()).expanduser().resolve()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        try:
            self._conn = sqlite3.connect(
                str(self.db_path),
                timeout=float(busy_timeout_s),
                check_same_thread=False,
                isolation_level=None,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode = WAL;")
            self._conn.execute("PRAGMA synchronous = NORMAL;")
            self._init_schema()
        except sqlite3.OperationalError as e:
            raise StoreTransportError(f"Cannot open store at {self.db_path}: {e}") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _locked(self) -> Iterable[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.OperationalError as e:
                raise StoreTransportError(str(e)) from e

    @contextmanager
    def _transaction(self, conn: sqlite3.Connection) -> Iterable[None]:
        conn.execute("BEGIN IMMEDIATE;")
        try:
            yield
            conn.execute("COMMIT;")
        except Exception:
            conn.execute("ROLLBACK;")
            raise

    @contextmanager
    def atomic(self) -> Iterable[None]:
        """Run the enclosed reads and writes as one `BEGIN IMMEDIATE` transaction.

        The connection lock is held for the whole block (other threads wait) and
        SQLite's write lock keeps other processes out, so a uniqueness check and
        the insert that follows it cannot interleave with another writer. Any
        exception rolls the block back.
        """
        with self._locked() as conn:
            if conn.in_transaction:
                # Nested use joins the enclosing transaction.
                yield
                return
            with self._transaction(conn):
                yield

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS buckets (
              name TEXT PRIMARY KEY,
              schema_json TEXT NOT NULL,
              created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS objects (
              bucket TEXT NOT NULL,
              key TEXT NOT NULL,
              etag TEXT NOT NULL,
              value_json TEXT NOT NULL,
              mtime REAL NOT NULL,
              PRIMARY KEY (bucket, key)
            );
            """
        )

    # --- Bucket lifecycle
    def ensure_bucket(self, name: str, schema: dict[str, Any] | None = None) -> None:
        """Create the bucket if missing and (re)build indexes for `schema['index']` fields."""
        bucket = _ident(name, kind="bucket")
        schema = dict(schema or {})
        index_fields = [_ident(f, kind="field") for f in (schema.get("index") or {})]

        with self._locked() as conn, self._transaction(conn):
            conn.execute(
                """
                INSERT INTO buckets(name, schema_json, created_at) VALUES(?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET schema_json = excluded.schema_json;
                """,
                (bucket, _json_dumps(schema), time.time()),
            )
            for field in index_fields:
                conn.execute(
                    f"""
                    CREATE INDEX IF NOT EXISTS idx_{bucket}__{field}
                    ON objects(bucket, {_field_expr(field)});
                    """
                )

    def bucket_exists(self, name: str) -> bool:
        with self._locked() as conn:
            row = conn.execute("SELECT 1 FROM buckets WHERE name = ? LIMIT 1;", (name,)).fetchone()
        return row is not None

    def get_bucket_schema(self, name: str) -> dict[str, Any]:
        with self._locked() as conn:
            row = conn.execute("SELECT schema_json FROM buckets WHERE name = ?;", (name,)).fetchone()
        if row is None:
            raise BucketNotFoundError(name)
        return json.loads(row["schema_json"])

    def delete_bucket(self, name: str) -> None:
        schema = self.get_bucket_schema(name)
        bucket = _ident(name, kind="bucket")
        with self._locked() as conn, self._transaction(conn):
            for field in schema.get("index") or {}:
                conn.execute(f"DROP INDEX IF EXISTS idx_{bucket}__{_ident(field, kind='field')};")
            conn.execute("DELETE FROM objects WHERE bucket = ?;", (bucket,))
            conn.execute("DELETE FROM buckets WHERE name = ?;", (bucket,))

    def _require_bucket(self, conn: sqlite3.Connection, bucket: str) -> None:
        row = conn.execute("SELECT 1 FROM buckets WHERE name = ? LIMIT 1;", (bucket,)).fetchone()
        if row is None:
            raise BucketNotFoundError(bucket)

    # --- Objects
    def get(self, bucket: str, key: str) -> StoredObject:
        with self._locked() as conn:
            self._require_bucket(conn, bucket)
            row = conn.execute(
                "SELECT key, etag, value_json, mtime FROM objects WHERE bucket = ? AND key = ?;",
                (bucket, key),
            ).fetchone()
        if row is None:
            raise ObjectNotFoundError(bucket, key)
        return _row_to_object(row)

    def put(self, bucket: str, key: str, value: dict[str, Any], *, etag: str | None = None) -> str:
        """Write `value` under `key` and return the new etag.

        When `etag` is given the write is conditional on the stored etag still
        matching; otherwise it is last-writer-wins.
        """
        new_etag = _new_etag()
        mtime = time.time()
        payload = _json_dumps(value)

        with self._locked() as conn:
            self._require_bucket(conn, bucket)
            if etag is None:
                conn.execute(
                    """
                    INSERT INTO objects(bucket, key, etag, value_json, mtime) VALUES(?, ?, ?, ?, ?)
                    ON CONFLICT(bucket, key) DO UPDATE SET
                      etag = excluded.etag,
                      value_json = excluded.value_json,
                      mtime = excluded.mtime;
                    """,
                    (bucket, key, new_etag, payload, mtime),
                )
                return new_etag

            updated = conn.execute(
                """
                UPDATE objects
                SET etag = ?, value_json = ?, mtime = ?
                WHERE bucket = ? AND key = ? AND etag = ?;
                """,
                (new_etag, payload, mtime, bucket, key, etag),
            )
            if updated.rowcount != 1:
                raise EtagConflictError(bucket, key, etag)
            return new_etag

    def get_field(self, bucket: str, key: str, field: str) -> tuple[bool, Any]:
        """Read one top-level field without loading the whole document.

        Returns `(present, value)`; `present` is False when the document has no
        such field (as opposed to a field explicitly set to null).
        """
        expr = _field_expr(field)
        type_expr = expr.replace("json_extract", "json_type", 1)
        with self._locked() as conn:
            self._require_bucket(conn, bucket)
            row = conn.execute(
                f"SELECT {type_expr} AS t, {expr} AS v FROM objects WHERE bucket = ? AND key = ?;",
                (bucket, key),
            ).fetchone()
        if row is None:
            raise ObjectNotFoundError(bucket, key)

        kind = row["t"]
        if kind is None:
            return False, None
        if kind in {"object", "array"}:
            return True, json.loads(row["v"])
        if kind in {"true", "false"}:
            return True, kind == "true"
        if kind == "null":
            return True, None
        return True, row["v"]

    def delete(self, bucket: str, key: str) -> None:
        with self._locked() as conn:
            self._require_bucket(conn, bucket)
            deleted = conn.execute("DELETE FROM objects WHERE bucket = ? AND key = ?;", (bucket, key))
        if deleted.rowcount != 1:
            raise ObjectNotFoundError(bucket, key)

    def count(self, bucket: str, filters: Sequence[tuple[str, str, Any]] = ()) -> int:
        where, params = _where_clause(bucket, filters)
        with self._locked() as conn:
            self._require_bucket(conn, bucket)
            row = conn.execute(f"SELECT COUNT(1) AS n FROM objects WHERE {where};", params).fetchone()
        return int(row["n"])

    def query(
        self,
        bucket: str,
        filters: Sequence[tuple[str, str, Any]] = (),
        *,
        order_by: Sequence[tuple[str, str]] = (),
        offset: int = 0,
        limit: int | None = None,
    ) -> list[StoredObject]:
        """Return objects matching every `(field, op, value)` filter.

        Results are ordered by `order_by` (`(field, "asc"|"desc")` pairs) and then
        by key, so equal sort values always come back in the same order.
        """
        where, params = _where_clause(bucket, filters)

        order_sql: list[str] = []
        for field, direction in order_by:
            d = str(direction).lower()
            if d not in {"asc", "desc"}:
                raise ValueError(f"Unsupported order direction: {direction!r}")
            order_sql.append(f"{_field_expr(field)} {d.upper()}")
        order_sql.append("key ASC")

        sql = (
            "SELECT key, etag, value_json, mtime FROM objects WHERE "
            + where
            + " ORDER BY "
            + ", ".join(order_sql)
            + " LIMIT ? OFFSET ?;"
        )
        params.extend([-1 if limit is None else max(0, int(limit)), max(0, int(offset))])

        with self._locked() as conn:
            self._require_bucket(conn, bucket)
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_object(r) for r in rows]


def _where_clause(bucket: str, filters: Sequence[tuple[str, str, Any]]) -> tuple[str, list[Any]]:
    where = ["bucket = ?"]
    params: list[Any] = [bucket]
    for field, op, value in filters:
        expr = _field_expr(field)
        if op not in _OPS:
            raise ValueError(f"Unsupported filter op: {op!r}")
        if value is None and op in {"eq", "ne"}:
            where.append(f"{expr} IS {'NOT ' if op == 'ne' else ''}NULL")
            continue
        if isinstance(value, bool):
            value = int(value)
        where.append(f"{expr} {_OPS[op]} ?")
        params.append(value)
    return " AND ".join(where), params


def _row_to_object(row: sqlite3.Row) -> StoredObject:
    return StoredObject(
        key=str(row["key"]),
        etag=str(row["etag"]),
        value=json.loads(row["value_json"]),
        mtime=float(row["mtime"]),
    )
