import asyncio
import sqlite3
from typing import Any, Optional

from storyweaver.core.config import DB_PATH

db_lock = asyncio.Lock()
db_conn: sqlite3.Connection | None = None


def init_db(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        create table if not exists jobs (
          job_id text primary key,
          type text not null default 'image_generation',
          status text not null default 'pending',
          priority integer not null default 0,
          payload_json text not null,
          result_json text,
          error text,
          retry_count integer not null default 0,
          max_retries integer not null default 3,
          created_at text not null,
          updated_at text not null,
          started_at text,
          completed_at text
        );
        """
    )
    conn.execute(
        """
        create index if not exists idx_jobs_status_priority
        on jobs (status, priority desc, created_at asc);
        """
    )
    conn.commit()


def open_db(path: Optional[str] = None) -> sqlite3.Connection:
    global db_conn, db_lock
    if db_conn is not None:
        db_conn.close()
    db_conn = sqlite3.connect(path or DB_PATH, check_same_thread=False)
    db_conn.row_factory = sqlite3.Row
    db_conn.execute("pragma journal_mode = wal")
    init_db(db_conn)
    db_lock = asyncio.Lock()
    return db_conn


async def connect_db(path: Optional[str] = None) -> None:
    open_db(path)


async def close_db() -> None:
    global db_conn
    if db_conn:
        db_conn.close()
        db_conn = None


def _ensure_conn() -> sqlite3.Connection:
    if db_conn is None:
        raise RuntimeError("database not initialized")
    return db_conn


async def execute(query: str, params: tuple[Any, ...] = ()) -> int:
    async with db_lock:
        return await asyncio.to_thread(_execute_sync, query, params)


def _execute_sync(query: str, params: tuple[Any, ...]) -> int:
    conn = _ensure_conn()
    cur = conn.execute(query, params)
    conn.commit()
    return cur.rowcount


async def fetchone(
    query: str, params: tuple[Any, ...] = ()
) -> Optional[sqlite3.Row]:
    async with db_lock:
        return await asyncio.to_thread(_fetchone_sync, query, params)


def _fetchone_sync(
    query: str, params: tuple[Any, ...]
) -> Optional[sqlite3.Row]:
    conn = _ensure_conn()
    cur = conn.execute(query, params)
    return cur.fetchone()


async def fetchall(
    query: str, params: tuple[Any, ...] = ()
) -> list[sqlite3.Row]:
    async with db_lock:
        return await asyncio.to_thread(_fetchall_sync, query, params)


def _fetchall_sync(
    query: str, params: tuple[Any, ...]
) -> list[sqlite3.Row]:
    conn = _ensure_conn()
    cur = conn.execute(query, params)
    return cur.fetchall()
