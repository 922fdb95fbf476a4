from __future__ import annotations

import contextlib
import json
import sqlite3
from typing import Callable, Iterator, Mapping

from .sqlite_backend import SQLiteBackend
from .store import Document, HubStore, StoreUnavailable, _now_ms, collection_of


class SQLiteStore(HubStore):
    """Durable document store backed by SQLite.

    Every commit runs inside one ``BEGIN IMMEDIATE`` transaction, so a batch
    that fails a precondition leaves no partial state behind.
    """

    def __init__(self, backend: SQLiteBackend, *, now_func: Callable[[], int] = _now_ms) -> None:
        super().__init__(now_func=now_func)
        self._backend = backend

    @contextlib.contextmanager
    def _transaction(self) -> Iterator[None]:
        conn = self._backend.connection
        with self._backend.lock:
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.OperationalError as exc:
                raise StoreUnavailable(str(exc)) from exc
            try:
                yield
                conn.commit()
            except sqlite3.DatabaseError as exc:
                conn.rollback()
                raise StoreUnavailable(str(exc)) from exc
            except BaseException:
                conn.rollback()
                raise

    def _read(self, path: str) -> dict | None:
        with self._backend.lock:
            row = self._backend.connection.execute("SELECT data FROM documents WHERE path=?", (path,)).fetchone()
        if row is None:
            return None
        return json.loads(row[0])

    def _read_collection(self, collection: str) -> list[Document]:
        with self._backend.lock:
            rows = self._backend.connection.execute(
                "SELECT path, data FROM documents WHERE collection=?", (collection,)
            ).fetchall()
        return [Document(path=row[0], data=json.loads(row[1])) for row in rows]

    def _persist(self, staged: Mapping[str, dict | None]) -> None:
        conn = self._backend.connection
        now_ms = self._now()
        for path, data in staged.items():
            if data is None:
                conn.execute("DELETE FROM documents WHERE path=?", (path,))
                continue
            conn.execute(
                """
                INSERT INTO documents (path, collection, data, updated_ms) VALUES (?, ?, ?, ?)
                ON CONFLICT(path) DO UPDATE SET data=excluded.data, updated_ms=excluded.updated_ms
                """,
                (path, collection_of(path), json.dumps(data, sort_keys=True), now_ms),
            )

    def count(self) -> int:
        with self._backend.lock:
            return int(self._backend.connection.execute("SELECT COUNT(*) FROM documents").fetchone()[0])
