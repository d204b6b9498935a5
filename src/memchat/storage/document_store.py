"""SQLite-backed JSON document store with secondary search indexes.

Documents are JSON values at string keys. Array and merge primitives run
inside SQLite (``json_insert``/``json_patch``/``json_array_length``) so an
append is atomic per document and length/last-element reads never ship the
whole array to the client. Search indexes are definitions over a key prefix;
queries are evaluated against the live documents under that prefix.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Iterable

import numpy as np

from memchat.exceptions import (
    IndexAlreadyExists,
    IndexNotFound,
    NotFound,
    StorageError,
    StoreUnavailable,
)
from memchat.storage.schema import (
    Document,
    IndexDefinition,
    IndexSchema,
    KnnQuery,
    SchemaField,
    SearchResults,
    TagField,
    TagFilter,
    TagQuery,
    VectorField,
)
from memchat.storage.vector import VectorSearcher, to_vector
from memchat.utils import iso_str, json_dumps, json_loads, utcnow

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL
);
CREATE INDEX IF NOT EXISTS idx_documents_expiry ON documents(expires_at);

CREATE TABLE IF NOT EXISTS search_indexes (
    name TEXT PRIMARY KEY,
    prefix TEXT NOT NULL,
    schema TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""

_LIVE = "(expires_at IS NULL OR expires_at > ?)"
_PREFIX_END = "\U0010ffff"
_TRANSIENT_MARKERS = ("locked", "busy", "unable to open", "disk i/o")


def _is_transient(exc: sqlite3.Error) -> bool:
    msg = str(exc).lower()
    return any(marker in msg for marker in _TRANSIENT_MARKERS)


class DocumentStore:
    """JSON documents at string keys, backed by a single SQLite connection."""

    def __init__(
        self,
        db_path: Path | str = ":memory:",
        *,
        retry_attempts: int = 5,
        retry_delay: float = 0.2,
        busy_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = str(db_path)
        self.retry_attempts = max(1, retry_attempts)
        self.retry_delay = retry_delay
        self.busy_timeout = busy_timeout
        self.clock = clock
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()
        self._closed = False
        self._writes = 0
        self._unavailable_logged = False
        self._searcher = VectorSearcher()

    # --- Connection handling ---

    def _connection(self) -> sqlite3.Connection:
        if self._closed:
            raise StoreUnavailable(f"store {self.db_path} is closed")
        if self._conn is None:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=self.busy_timeout)
            conn.row_factory = sqlite3.Row
            if self.db_path != ":memory:":
                conn.execute("PRAGMA journal_mode=WAL")
            conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout * 1000)}")
            conn.executescript(_SCHEMA)
            conn.commit()
            self._conn = conn
        return self._conn

    def _drop_connection(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except sqlite3.Error:
                pass
            self._conn = None

    def _execute(self, fn: Callable[..., Any], *args: Any) -> Any:
        delay = self.retry_delay
        for attempt in range(1, self.retry_attempts + 1):
            try:
                with self._lock:
                    result = fn(self._connection(), *args)
                self._unavailable_logged = False
                return result
            except sqlite3.OperationalError as exc:
                if not _is_transient(exc):
                    raise StorageError(f"store operation failed: {exc}") from exc
                if not self._unavailable_logged:
                    logger.warning("Store %s unavailable: %s", self.db_path, exc)
                    self._unavailable_logged = True
                if attempt >= self.retry_attempts:
                    raise StoreUnavailable(
                        f"store {self.db_path} unavailable after {attempt} attempts: {exc}"
                    ) from exc
                with self._lock:
                    self._drop_connection()
                time.sleep(delay)
                delay *= 2
            except sqlite3.ProgrammingError as exc:
                raise StoreUnavailable(f"store {self.db_path} is not usable: {exc}") from exc
        raise StoreUnavailable(f"store {self.db_path} unavailable")

    async def _call(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await asyncio.to_thread(self._execute, fn, *args)

    async def ping(self) -> bool:
        return await self._call(lambda conn: conn.execute("SELECT 1").fetchone()[0] == 1)

    async def close(self) -> None:
        with self._lock:
            self._drop_connection()
            self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

    # --- Documents ---

    async def get(self, key: str, path: str | None = None) -> Any:
        return await self._call(self._get, key, path)

    def _get(self, conn: sqlite3.Connection, key: str, path: str | None) -> Any:
        if path in (None, "$"):
            row = conn.execute(
                f"SELECT value FROM documents WHERE key=? AND {_LIVE}", (key, self.clock())
            ).fetchone()
            return json_loads(row[0]) if row else None
        row = conn.execute(
            f"SELECT json_quote(json_extract(value, ?)) FROM documents WHERE key=? AND {_LIVE}",
            (path, key, self.clock()),
        ).fetchone()
        return json_loads(row[0]) if row and row[0] is not None else None

    async def set(self, key: str, value: Any) -> None:
        await self._call(self._mset, [(key, value)])

    async def mset(self, items: Iterable[tuple[str, Any]]) -> None:
        await self._call(self._mset, list(items))

    def _mset(self, conn: sqlite3.Connection, items: list[tuple[str, Any]]) -> None:
        now = self.clock()
        with conn:
            conn.executemany(
                """INSERT INTO documents(key, value, expires_at) VALUES (?, ?, NULL)
                   ON CONFLICT(key) DO UPDATE SET
                       value=excluded.value,
                       expires_at=CASE
                           WHEN documents.expires_at IS NOT NULL AND documents.expires_at <= ?
                           THEN NULL ELSE documents.expires_at END""",
                [(key, json_dumps(value), now) for key, value in items],
            )
        self._writes += 1

    async def set_if_absent(self, key: str, value: Any) -> bool:
        """Write ``value`` only when no live document exists at ``key``.

        Returns True when this call created the document.
        """
        return await self._call(self._set_if_absent, key, value)

    def _set_if_absent(self, conn: sqlite3.Connection, key: str, value: Any) -> bool:
        with conn:
            cur = conn.execute(
                """INSERT INTO documents(key, value, expires_at) VALUES (?, ?, NULL)
                   ON CONFLICT(key) DO UPDATE SET value=excluded.value, expires_at=NULL
                   WHERE documents.expires_at IS NOT NULL AND documents.expires_at <= ?""",
                (key, json_dumps(value), self.clock()),
            )
        if cur.rowcount > 0:
            self._writes += 1
            return True
        return False

    async def merge(self, key: str, patch: dict[str, Any]) -> None:
        """Merge ``patch`` into the document, creating it when absent."""
        await self._call(self._merge, key, patch)

    def _merge(self, conn: sqlite3.Connection, key: str, patch: dict[str, Any]) -> None:
        now = self.clock()
        with conn:
            cur = conn.execute(
                f"UPDATE documents SET value=json_patch(value, ?) WHERE key=? AND {_LIVE}",
                (json_dumps(patch), key, now),
            )
            if cur.rowcount == 0:
                clean = {k: v for k, v in patch.items() if v is not None}
                conn.execute(
                    "INSERT OR REPLACE INTO documents(key, value, expires_at) VALUES (?, ?, NULL)",
                    (key, json_dumps(clean)),
                )
        self._writes += 1

    async def delete(self, *keys: str) -> int:
        return await self._call(self._delete, list(keys))

    def _delete(self, conn: sqlite3.Connection, keys: list[str]) -> int:
        if not keys:
            return 0
        with conn:
            cur = conn.executemany("DELETE FROM documents WHERE key=?", [(k,) for k in keys])
        self._writes += 1
        return cur.rowcount

    async def delete_prefix(self, prefix: str) -> int:
        return await self._call(self._delete_prefix, prefix)

    def _delete_prefix(self, conn: sqlite3.Connection, prefix: str) -> int:
        with conn:
            cur = conn.execute(
                "DELETE FROM documents WHERE key >= ? AND key < ?", (prefix, prefix + _PREFIX_END)
            )
        self._writes += 1
        return cur.rowcount

    async def exists(self, key: str) -> bool:
        return await self._call(self._exists, key)

    def _exists(self, conn: sqlite3.Connection, key: str) -> bool:
        row = conn.execute(
            f"SELECT 1 FROM documents WHERE key=? AND {_LIVE}", (key, self.clock())
        ).fetchone()
        return row is not None

    async def keys(self, prefix: str = "") -> list[str]:
        return await self._call(self._keys, prefix)

    def _keys(self, conn: sqlite3.Connection, prefix: str) -> list[str]:
        rows = conn.execute(
            f"SELECT key FROM documents WHERE key >= ? AND key < ? AND {_LIVE} ORDER BY key",
            (prefix, prefix + _PREFIX_END, self.clock()),
        ).fetchall()
        return [r[0] for r in rows]

    async def expire(self, key: str, seconds: float) -> bool:
        """Set a time-to-live. Non-positive ``seconds`` deletes the key."""
        return await self._call(self._expire, key, seconds)

    def _expire(self, conn: sqlite3.Connection, key: str, seconds: float) -> bool:
        now = self.clock()
        with conn:
            if seconds <= 0:
                cur = conn.execute("DELETE FROM documents WHERE key=?", (key,))
            else:
                cur = conn.execute(
                    f"UPDATE documents SET expires_at=? WHERE key=? AND {_LIVE}",
                    (now + seconds, key, now),
                )
        self._writes += 1
        return cur.rowcount > 0

    async def ttl(self, key: str) -> float | None:
        """Remaining seconds to live, None when the key has no expiry or is absent."""
        return await self._call(self._ttl, key)

    def _ttl(self, conn: sqlite3.Connection, key: str) -> float | None:
        now = self.clock()
        row = conn.execute(
            f"SELECT expires_at FROM documents WHERE key=? AND {_LIVE}", (key, now)
        ).fetchone()
        if row is None or row[0] is None:
            return None
        return float(row[0]) - now

    # --- Arrays and numbers ---

    async def append(self, key: str, path: str, value: Any) -> int:
        """Atomically append ``value`` to the array at ``path``; returns the new length."""
        return await self._call(self._append, key, path, value)

    def _append(self, conn: sqlite3.Connection, key: str, path: str, value: Any) -> int:
        now = self.clock()
        with conn:
            cur = conn.execute(
                f"UPDATE documents SET value=json_insert(value, ?, json(?)) WHERE key=? AND {_LIVE}",
                (f"{path}[#]", json_dumps(value), key, now),
            )
            if cur.rowcount == 0:
                raise NotFound(f"document {key} does not exist")
            row = conn.execute(
                "SELECT json_array_length(value, ?) FROM documents WHERE key=?", (path, key)
            ).fetchone()
        self._writes += 1
        if row is None or row[0] is None:
            raise StorageError(f"{path} in {key} is not an array")
        return int(row[0])

    async def array_length(self, key: str, path: str) -> int | None:
        return await self._call(self._array_length, key, path)

    def _array_length(self, conn: sqlite3.Connection, key: str, path: str) -> int | None:
        row = conn.execute(
            f"SELECT json_array_length(value, ?) FROM documents WHERE key=? AND {_LIVE}",
            (path, key, self.clock()),
        ).fetchone()
        if row is None or row[0] is None:
            return None
        return int(row[0])

    async def array_get(self, key: str, path: str, index: int) -> Any:
        """One array element; negative ``index`` counts from the end."""
        element = f"{path}[#{index}]" if index < 0 else f"{path}[{index}]"
        return await self._call(self._get, key, element)

    async def array_set(self, key: str, path: str, index: int, value: Any) -> None:
        await self._call(self._array_set, key, path, index, value)

    def _array_set(self, conn: sqlite3.Connection, key: str, path: str, index: int, value: Any) -> None:
        length = self._array_length(conn, key, path)
        if length is None:
            raise NotFound(f"no array at {path} in {key}")
        if index < 0:
            index += length
        if not 0 <= index < length:
            raise IndexError(f"index {index} out of range for {path} in {key}")
        with conn:
            conn.execute(
                "UPDATE documents SET value=json_replace(value, ?, json(?)) WHERE key=?",
                (f"{path}[{index}]", json_dumps(value), key),
            )
        self._writes += 1

    async def array_clear(self, key: str, path: str) -> None:
        await self._call(self._set_path, key, path, [])

    async def set_path(self, key: str, path: str, value: Any) -> None:
        await self._call(self._set_path, key, path, value)

    def _set_path(self, conn: sqlite3.Connection, key: str, path: str, value: Any) -> None:
        with conn:
            cur = conn.execute(
                f"UPDATE documents SET value=json_set(value, ?, json(?)) WHERE key=? AND {_LIVE}",
                (path, json_dumps(value), key, self.clock()),
            )
        if cur.rowcount == 0:
            raise NotFound(f"document {key} does not exist")
        # scalar values never feed a vector index
        if isinstance(value, (list, dict)):
            self._writes += 1

    async def increment(self, key: str, path: str, by: float = 1) -> float:
        return await self._call(self._increment, key, path, by)

    def _increment(self, conn: sqlite3.Connection, key: str, path: str, by: float) -> float:
        now = self.clock()
        with conn:
            cur = conn.execute(
                f"""UPDATE documents
                    SET value=json_set(value, ?, coalesce(json_extract(value, ?), 0) + ?)
                    WHERE key=? AND {_LIVE}""",
                (path, path, by, key, now),
            )
            if cur.rowcount == 0:
                raise NotFound(f"document {key} does not exist")
            row = conn.execute(
                "SELECT json_extract(value, ?) FROM documents WHERE key=?", (path, key)
            ).fetchone()
        return row[0]

    # --- Indexes ---

    async def create_index(self, name: str, schema: IndexSchema, prefix: str) -> None:
        await self._call(self._create_index, name, schema, prefix)

    def _create_index(self, conn: sqlite3.Connection, name: str, schema: IndexSchema, prefix: str) -> None:
        with conn:
            row = conn.execute("SELECT 1 FROM search_indexes WHERE name=?", (name,)).fetchone()
            if row is not None:
                raise IndexAlreadyExists(f"index {name} already exists")
            conn.execute(
                "INSERT INTO search_indexes(name, prefix, schema, created_at) VALUES (?, ?, ?, ?)",
                (name, prefix, json_dumps(schema.to_dict()), iso_str(utcnow())),
            )
        self._searcher.invalidate(name)

    async def list_indexes(self) -> list[str]:
        return await self._call(
            lambda conn: [r[0] for r in conn.execute("SELECT name FROM search_indexes ORDER BY name")]
        )

    async def index_info(self, name: str) -> IndexDefinition | None:
        return await self._call(self._index_info, name)

    def _index_info(self, conn: sqlite3.Connection, name: str) -> IndexDefinition | None:
        row = conn.execute(
            "SELECT name, prefix, schema FROM search_indexes WHERE name=?", (name,)
        ).fetchone()
        if row is None:
            return None
        return IndexDefinition(
            name=row["name"],
            prefix=row["prefix"],
            schema=IndexSchema.from_dict(json_loads(row["schema"])),
        )

    async def drop_index(self, name: str, delete_documents: bool = False) -> None:
        await self._call(self._drop_index, name, delete_documents)

    def _drop_index(self, conn: sqlite3.Connection, name: str, delete_documents: bool) -> None:
        definition = self._index_info(conn, name)
        if definition is None:
            raise IndexNotFound(f"index {name} does not exist")
        with conn:
            conn.execute("DELETE FROM search_indexes WHERE name=?", (name,))
            if delete_documents:
                conn.execute(
                    "DELETE FROM documents WHERE key >= ? AND key < ?",
                    (definition.prefix, definition.prefix + _PREFIX_END),
                )
        self._writes += 1
        self._searcher.invalidate(name)

    # --- Search ---

    async def search(self, index_name: str, query: KnnQuery | TagQuery) -> SearchResults:
        return await self._call(self._search, index_name, query)

    def _search(self, conn: sqlite3.Connection, index_name: str, query: KnnQuery | TagQuery) -> SearchResults:
        definition = self._index_info(conn, index_name)
        if definition is None:
            raise IndexNotFound(f"index {index_name} does not exist")
        self._purge_expired(conn)
        # only the queried vector is loaded, never whole documents
        fields = [f for f in definition.schema.fields if not isinstance(f, VectorField)]
        if isinstance(query, KnnQuery):
            fields.append(definition.schema.field(query.field))
        docs = self._load_prefix(conn, definition.prefix, fields)
        docs = [(key, doc) for key, doc in docs if self._matches(definition, doc, query.filters)]

        if isinstance(query, TagQuery):
            window = docs[query.offset: query.offset + query.limit]
            return SearchResults(
                total=len(docs),
                documents=[
                    Document(key=key, value=self._project(definition, doc, query.return_fields))
                    for key, doc in window
                ],
            )

        field = definition.schema.field(query.field)
        if not isinstance(field, VectorField):
            raise StorageError(f"{query.field} is not a vector field of {index_name}")
        query_vec = to_vector(list(query.vector), field.dims)
        if query_vec is None:
            raise StorageError(
                f"query vector for {index_name}.{field.name} must have {field.dims} dimensions"
            )
        by_key = dict(docs)
        candidates: list[tuple[str, np.ndarray]] = []
        for key, doc in docs:
            vec = to_vector(doc.get(field.name), field.dims)
            if vec is not None:
                candidates.append((key, vec))
        hits = self._searcher.knn(
            index_name,
            field,
            candidates,
            query_vec,
            query.k,
            generation=self._generation(conn),
            filtered=bool(query.filters),
        )
        documents = []
        for key, distance in hits:
            if key not in by_key:
                continue
            value = self._project(definition, by_key[key], query.return_fields)
            value["distance"] = distance
            documents.append(Document(key=key, value=value))
        return SearchResults(total=len(documents), documents=documents)

    def _generation(self, conn: sqlite3.Connection) -> tuple[int, int]:
        # data_version moves when another connection commits to the same file
        row = conn.execute("PRAGMA data_version").fetchone()
        return (self._writes, int(row[0]))

    def _purge_expired(self, conn: sqlite3.Connection) -> None:
        with conn:
            cur = conn.execute(
                "DELETE FROM documents WHERE expires_at IS NOT NULL AND expires_at <= ?",
                (self.clock(),),
            )
        if cur.rowcount > 0:
            self._writes += 1

    def _load_prefix(
        self, conn: sqlite3.Connection, prefix: str, fields: list[SchemaField]
    ) -> list[tuple[str, dict[str, Any]]]:
        """Live documents under ``prefix``, reduced in SQL to the given indexed fields."""
        columns = "".join(", json_quote(json_extract(value, ?))" for _ in fields)
        rows = conn.execute(
            f"SELECT key{columns} FROM documents WHERE key >= ? AND key < ? AND {_LIVE} ORDER BY key",
            (*(f.json_path for f in fields), prefix, prefix + _PREFIX_END, self.clock()),
        ).fetchall()
        docs = []
        for row in rows:
            doc: dict[str, Any] = {}
            for i, f in enumerate(fields, start=1):
                value = json_loads(row[i]) if row[i] is not None else None
                if value is not None:
                    doc[f.name] = value
            docs.append((row[0], doc))
        return docs

    @staticmethod
    def _matches(definition: IndexDefinition, doc: dict[str, Any], filters: list[TagFilter]) -> bool:
        for tag_filter in filters:
            field = definition.schema.field(tag_filter.field)
            if not isinstance(field, TagField):
                raise StorageError(f"{tag_filter.field} is not a tag field of {definition.name}")
            value = doc.get(field.name)
            if value is None or value == []:
                if tag_filter.include_missing:
                    continue
                return False
            values = value if isinstance(value, list) else [value]
            if not any(str(v) in tag_filter.values for v in values):
                return False
        return True

    @staticmethod
    def _project(definition: IndexDefinition, doc: dict[str, Any], return_fields: list[str] | None) -> dict[str, Any]:
        if return_fields is None:
            vector_names = {f.name for f in definition.schema.vector_fields}
            return {k: v for k, v in doc.items() if k not in vector_names}
        return {name: doc[name] for name in return_fields if name in doc}


__all__ = ["DocumentStore"]
