from typing import Any, Dict

from fastapi import APIRouter, Depends

from storyweaver.api.deps import verify_token
from storyweaver.services.scheduler import scheduler
from storyweaver.utils.time import utc_now

router = APIRouter()


@router.get("/health")
async def health(_: None = Depends(verify_token)) -> Dict[str, Any]:
    return {"status": "ok", "time": utc_now(), "worker_running": scheduler.running}
