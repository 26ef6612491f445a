from __future__ import annotations

import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterator

from .errors import IntegrityViolation, StorageError
from .migrations import apply_migrations
from .migrations_pg import apply_migrations_pg

_MIGRATED: set[str] = set()
_MIGRATED_LOCK = threading.Lock()


def get_db_url() -> str | None:
    url = os.environ.get("PS_DB_URL", "").strip()
    return url or None


def is_postgres_url(url: str | None) -> bool:
    if not url:
        return False
    return url.startswith("postgres://") or url.startswith("postgresql://")


class DBConn:
    def __init__(self, conn: Any, backend: str, integrity_error: type, base_error: type) -> None:
        self._conn = conn
        self.backend = backend
        self._integrity_error = integrity_error
        self._base_error = base_error

    def execute(self, sql: str, params: tuple | list | None = None):
        sql = _normalize_sql(sql, self.backend)
        params = params or ()
        cursor = self._conn.cursor()
        try:
            cursor.execute(sql, params)
        except self._integrity_error as exc:
            self._rollback_quietly()
            raise IntegrityViolation(str(exc)) from exc
        except self._base_error as exc:
            self._rollback_quietly()
            raise StorageError(str(exc)) from exc
        return cursor

    def executemany(self, sql: str, seq_of_params):
        sql = _normalize_sql(sql, self.backend)
        cursor = self._conn.cursor()
        try:
            cursor.executemany(sql, seq_of_params)
        except self._base_error as exc:
            self._rollback_quietly()
            raise StorageError(str(exc)) from exc
        return cursor

    @contextmanager
    def transaction(self) -> Iterator["DBConn"]:
        if self.backend == "sqlite" and not self._conn.in_transaction:
            # take the write lock up front so busy_timeout applies to contended claims
            self.execute("BEGIN IMMEDIATE")
        try:
            yield self
        except Exception:
            self._rollback_quietly()
            raise
        else:
            self.commit()

    def commit(self) -> None:
        try:
            self._conn.commit()
        except self._base_error as exc:
            raise StorageError(str(exc)) from exc

    def rollback(self) -> None:
        self._conn.rollback()

    def close(self) -> None:
        self._conn.close()

    def _rollback_quietly(self) -> None:
        try:
            self._conn.rollback()
        except self._base_error:
            pass

    def __getattr__(self, name: str):
        return getattr(self._conn, name)


def connect_db(path: str) -> DBConn:
    url = get_db_url()
    if url and is_postgres_url(url):
        try:
            import psycopg
        except ImportError as exc:  # pragma: no cover - depends on env
            raise RuntimeError("psycopg is required for PostgreSQL support") from exc
        raw = psycopg.connect(url)
        conn = DBConn(raw, "postgres", psycopg.IntegrityError, psycopg.Error)
        _migrate_once(url, lambda: apply_migrations_pg(conn))
        return conn

    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)
    raw = sqlite3.connect(path, timeout=10)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=5000")
    raw.execute("PRAGMA foreign_keys=ON")
    _migrate_once(os.path.abspath(path), lambda: apply_migrations(raw))
    return DBConn(raw, "sqlite", sqlite3.IntegrityError, sqlite3.Error)


def _migrate_once(key: str, apply) -> None:
    with _MIGRATED_LOCK:
        if key in _MIGRATED:
            return
        apply()
        _MIGRATED.add(key)


def _normalize_sql(sql: str, backend: str) -> str:
    if backend != "postgres":
        return sql
    normalized = _replace_insert_or_ignore(sql)
    normalized = normalized.replace("BEGIN IMMEDIATE", "BEGIN")
    normalized = _convert_qmark_to_percent(normalized)
    return normalized


def _replace_insert_or_ignore(sql: str) -> str:
    upper = sql.upper()
    if "INSERT OR IGNORE" not in upper:
        return sql
    idx = upper.find("INSERT OR IGNORE")
    replaced = sql[:idx] + "INSERT" + sql[idx + len("INSERT OR IGNORE") :]
    if "ON CONFLICT" in replaced.upper():
        return replaced
    stripped = replaced.rstrip().rstrip(";")
    return stripped + " ON CONFLICT DO NOTHING"


def _convert_qmark_to_percent(sql: str) -> str:
    out = []
    in_single = False
    in_double = False
    for ch in sql:
        if ch == "'" and not in_double:
            in_single = not in_single
        elif ch == '"' and not in_single:
            in_double = not in_double
        if ch == "?" and not in_single and not in_double:
            out.append("%s")
        else:
            out.append(ch)
    return "".join(out)
