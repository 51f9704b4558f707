import time
from typing import Any, Dict

from fastapi import APIRouter, Depends

from storyweaver.api.deps import verify_token
from storyweaver.db import jobs_repo
from storyweaver.services.scheduler import scheduler

router = APIRouter()

started_at = time.time()


@router.get("/status")
async def status(_: None = Depends(verify_token)) -> Dict[str, Any]:
    active = await jobs_repo.fetch_active_jobs()
    return {
        "uptime_sec": int(time.time() - started_at),
        "queue_depth": sum(1 for job in active if job["status"] == "pending"),
        "scheduler": scheduler.snapshot(),
    }
