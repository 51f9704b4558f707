import json
import sqlite3
from typing import Any, Dict, List, Optional

from storyweaver.db.connection import execute, fetchall, fetchone
from storyweaver.utils.time import utc_now

JOB_STATUSES = ("pending", "processing", "completed", "failed")
TERMINAL_STATUSES = {"completed", "failed"}

_UNSET: Any = object()


class JobExistsError(ValueError):
    pass


def _row_to_job(row: Any) -> Dict[str, Any]:
    return {
        "job_id": row["job_id"],
        "type": row["type"],
        "status": row["status"],
        "priority": row["priority"],
        "payload": json.loads(row["payload_json"]) if row["payload_json"] else {},
        "result": json.loads(row["result_json"]) if row["result_json"] else None,
        "error": row["error"],
        "retry_count": row["retry_count"],
        "max_retries": row["max_retries"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "started_at": row["started_at"],
        "completed_at": row["completed_at"],
    }


async def create_job(
    job_id: str,
    job_type: str,
    payload: Dict[str, Any],
    priority: int = 0,
    max_retries: int = 3,
) -> Dict[str, Any]:
    now = utc_now()
    try:
        await execute(
            """
            insert into jobs (
              job_id, type, status, priority, payload_json, result_json, error,
              retry_count, max_retries, created_at, updated_at, started_at,
              completed_at
            )
            values (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job_id,
                job_type,
                "pending",
                priority,
                json.dumps(payload),
                None,
                None,
                0,
                max_retries,
                now,
                now,
                None,
                None,
            ),
        )
    except sqlite3.IntegrityError as exc:
        raise JobExistsError(f"job {job_id} already exists") from exc
    job = await fetch_job(job_id)
    if job is None:
        raise RuntimeError(f"job {job_id} missing after insert")
    return job


async def get_pending_jobs(limit: int = 10) -> List[Dict[str, Any]]:
    rows = await fetchall(
        """
        select * from jobs
        where status = 'pending'
        order by priority desc, created_at asc, rowid asc
        limit ?
        """,
        (limit,),
    )
    return [_row_to_job(row) for row in rows]


async def update_job(
    job_id: str,
    status: Optional[str] = None,
    result: Any = _UNSET,
    error: Any = _UNSET,
    retry_count: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    now = utc_now()
    columns = ["updated_at = ?"]
    values: List[Any] = [now]
    if status is not None:
        if status not in JOB_STATUSES:
            raise ValueError(f"invalid job status: {status}")
        columns.append("status = ?")
        values.append(status)
        if status == "processing":
            columns.append("started_at = coalesce(started_at, ?)")
            values.append(now)
        elif status in TERMINAL_STATUSES:
            columns.append("completed_at = ?")
            values.append(now)
    if result is not _UNSET:
        columns.append("result_json = ?")
        values.append(json.dumps(result) if result is not None else None)
    if error is not _UNSET:
        columns.append("error = ?")
        values.append(error)
    if retry_count is not None:
        columns.append("retry_count = ?")
        values.append(retry_count)
    values.append(job_id)
    changed = await execute(
        f"update jobs set {', '.join(columns)} where job_id = ?",
        tuple(values),
    )
    if not changed:
        return None
    return await fetch_job(job_id)


async def claim_job(job_id: str) -> bool:
    """Move a job from pending to processing in one statement.

    Returns False when the job is gone or no longer pending, so two callers
    racing on the same id cannot both start it.
    """
    now = utc_now()
    changed = await execute(
        """
        update jobs
        set status = 'processing', started_at = coalesce(started_at, ?),
            updated_at = ?
        where job_id = ? and status = 'pending'
        """,
        (now, now, job_id),
    )
    return changed == 1


async def requeue_stale_jobs() -> int:
    """Put jobs left in processing by a previous run back into the queue."""
    return await execute(
        "update jobs set status = 'pending', updated_at = ? where status = 'processing'",
        (utc_now(),),
    )


async def fetch_job(job_id: str) -> Optional[Dict[str, Any]]:
    row = await fetchone("select * from jobs where job_id = ?", (job_id,))
    if row is None:
        return None
    return _row_to_job(row)


async def fetch_jobs_by_status(status: str, limit: int = 100) -> List[Dict[str, Any]]:
    rows = await fetchall(
        """
        select * from jobs where status = ?
        order by created_at desc, rowid desc
        limit ?
        """,
        (status, limit),
    )
    return [_row_to_job(row) for row in rows]


async def fetch_active_jobs(limit: int = 100) -> List[Dict[str, Any]]:
    rows = await fetchall(
        """
        select * from jobs where status in ('pending', 'processing')
        order by created_at desc, rowid desc
        limit ?
        """,
        (limit,),
    )
    return [_row_to_job(row) for row in rows]


async def cleanup_completed_jobs(keep_recent: int = 1000) -> int:
    # Failed jobs stay for inspection; only completed ones are pruned.
    return await execute(
        """
        delete from jobs
        where status = 'completed'
          and job_id not in (
            select job_id from jobs
            where status = 'completed'
            order by completed_at desc, rowid desc
            limit ?
          )
        """,
        (max(keep_recent, 0),),
    )
