import uuid
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Request

from storyweaver.api.deps import extract_api_key, verify_token
from storyweaver.core.config import DEFAULT_STYLE, GENERATION_RETRY_LIMIT
from storyweaver.db import jobs_repo
from storyweaver.schemas.jobs import (
    BatchJobCreate,
    BatchJobResponse,
    ImageJobCreate,
    JobList,
    JobRecord,
    JobResponse,
)
from storyweaver.services.executor import IMAGE_GENERATION
from storyweaver.services.scheduler import scheduler
from storyweaver.websocket.manager import manager

router = APIRouter(prefix="/image", tags=["jobs"])

ACTIVE_JOBS_LIMIT = 100


def _image_payload(
    prompt: str,
    style: str | None,
    references: Dict[str, str],
    options: Dict[str, Any],
    correlation_id: str | None,
    api_key: str | None,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "prompt": prompt,
        "style": style or DEFAULT_STYLE,
        "references": references,
        "options": options,
        "correlation_id": correlation_id,
    }
    if api_key:
        payload["api_key"] = api_key
    return payload


@router.post("/generate-queue", response_model=JobResponse)
async def enqueue_image_job(
    body: ImageJobCreate, request: Request, _: None = Depends(verify_token)
) -> JobResponse:
    prompt = body.prompt.strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="prompt is required")
    job = await jobs_repo.create_job(
        str(uuid.uuid4()),
        IMAGE_GENERATION,
        _image_payload(
            prompt,
            body.style,
            body.references,
            body.options,
            body.correlation_id,
            extract_api_key(request),
        ),
        priority=body.priority,
        max_retries=GENERATION_RETRY_LIMIT,
    )
    await manager.emit_log("info", f"image job queued {job['job_id']}")
    return JobResponse(job_id=job["job_id"], status=job["status"])


@router.post("/generate-batch-queue", response_model=BatchJobResponse)
async def enqueue_image_batch(
    body: BatchJobCreate, request: Request, _: None = Depends(verify_token)
) -> BatchJobResponse:
    if not body.items:
        raise HTTPException(status_code=400, detail="items must not be empty")
    api_key = extract_api_key(request)
    job_ids = []
    skipped = []
    for item in body.items:
        prompt = item.resolved_prompt()
        if not prompt:
            skipped.append(item.id)
            continue
        job = await jobs_repo.create_job(
            str(uuid.uuid4()),
            IMAGE_GENERATION,
            _image_payload(
                prompt,
                body.style,
                body.references,
                {**body.options, **item.options},
                item.id,
                api_key,
            ),
            priority=body.priority,
            max_retries=GENERATION_RETRY_LIMIT,
        )
        job_ids.append(job["job_id"])
    await manager.emit_log(
        "info", f"image batch queued: {len(job_ids)} jobs, {len(skipped)} skipped"
    )
    return BatchJobResponse(job_ids=job_ids, total=len(job_ids), skipped=skipped)


@router.get("/job/{job_id}", response_model=JobRecord)
async def get_job(job_id: str, _: None = Depends(verify_token)) -> JobRecord:
    job = await jobs_repo.fetch_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="job not found")
    return JobRecord.from_job(job)


@router.get("/jobs/active", response_model=JobList)
async def list_active_jobs(_: None = Depends(verify_token)) -> JobList:
    jobs = await jobs_repo.fetch_active_jobs(ACTIVE_JOBS_LIMIT)
    return JobList(jobs=[JobRecord.from_job(job) for job in jobs])


@router.get("/worker")
async def worker_status(_: None = Depends(verify_token)) -> Dict[str, Any]:
    return scheduler.snapshot()
