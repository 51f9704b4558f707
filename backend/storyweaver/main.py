import os

from fastapi import FastAPI

from storyweaver.api import events, health, image, jobs, status
from storyweaver.core.config import BACKEND_PORT, ensure_dirs
from storyweaver.core.logging import logger
from storyweaver.db import jobs_repo
from storyweaver.db.connection import close_db, connect_db
from storyweaver.services.scheduler import scheduler
from storyweaver.websocket.manager import manager

app = FastAPI(title="Storyweaver Backend", version="0.1.0")

app.include_router(health.router)
app.include_router(status.router)
app.include_router(jobs.router)
app.include_router(image.router)
app.include_router(events.router)


@app.on_event("startup")
async def on_startup() -> None:
    ensure_dirs()
    await connect_db()
    requeued = await jobs_repo.requeue_stale_jobs()
    if requeued:
        logger.warning("requeued %d jobs left in processing", requeued)
    await scheduler.start()
    await manager.emit_log("info", "backend started")


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await scheduler.stop()
    await scheduler.drain()
    await close_db()


def run() -> None:
    import uvicorn

    port = int(os.environ.get("BACKEND_PORT", str(BACKEND_PORT)))
    uvicorn.run(
        "storyweaver.main:app",
        host="127.0.0.1",
        port=port,
        log_level="info",
    )


if __name__ == "__main__":
    run()
