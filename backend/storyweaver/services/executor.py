import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional, TypedDict

from storyweaver.core.config import (
    DEFAULT_STYLE,
    GENERATION_DISPATCH_ATTEMPTS,
    RETRY_BASE_DELAY_SEC,
)
from storyweaver.core.logging import logger
from storyweaver.db import jobs_repo
from storyweaver.services.provider import ImageProvider, get_provider
from storyweaver.services.retry import Sleep, generate_with_retry, is_rate_limited
from storyweaver.websocket.manager import manager

IMAGE_GENERATION = "image_generation"


class ExecutionResult(TypedDict, total=False):
    success: bool
    result: Dict[str, Any]
    error: str


JobHandler = Callable[["JobExecutor", Dict[str, Any]], Awaitable[ExecutionResult]]
ProviderFactory = Callable[[Optional[str]], ImageProvider]

JOB_HANDLERS: Dict[str, JobHandler] = {}


def register_handler(job_type: str) -> Callable[[JobHandler], JobHandler]:
    def decorator(handler: JobHandler) -> JobHandler:
        JOB_HANDLERS[job_type] = handler
        return handler

    return decorator


def _error_message(exc: BaseException) -> str:
    return str(exc) or exc.__class__.__name__


async def _fail(job_id: str, error: str, retry_count: Optional[int] = None) -> ExecutionResult:
    await jobs_repo.update_job(
        job_id, status="failed", error=error, retry_count=retry_count
    )
    await manager.broadcast_job_status(job_id, "failed", error=error)
    return {"success": False, "error": error}


class JobExecutor:
    """Runs one durable job through its registered handler."""

    def __init__(
        self,
        provider_factory: ProviderFactory = get_provider,
        retry_base_delay: float = RETRY_BASE_DELAY_SEC,
        dispatch_attempts: Optional[int] = GENERATION_DISPATCH_ATTEMPTS,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.provider_factory = provider_factory
        self.retry_base_delay = retry_base_delay
        self.dispatch_attempts = dispatch_attempts
        self.sleep = sleep

    async def execute(self, job: Dict[str, Any]) -> ExecutionResult:
        job_id = job["job_id"]
        handler = JOB_HANDLERS.get(job["type"])
        if handler is None:
            logger.warning("job %s has unknown type %s", job_id, job["type"])
            return await _fail(job_id, f"unknown job type: {job['type']}")
        try:
            outcome = await handler(self, job)
        except Exception as exc:
            logger.exception("job %s crashed", job_id)
            return await _fail(job_id, _error_message(exc))
        if outcome.get("success"):
            logger.info("job %s completed", job_id)
        else:
            logger.warning("job %s did not complete: %s", job_id, outcome.get("error"))
        return outcome


@register_handler(IMAGE_GENERATION)
async def run_image_generation_job(
    executor: JobExecutor, job: Dict[str, Any]
) -> ExecutionResult:
    job_id = job["job_id"]
    payload = job.get("payload") or {}
    prompt = str(payload.get("prompt") or "").strip()
    if not prompt:
        return await _fail(job_id, "missing prompt")

    max_retries = job["max_retries"]
    retry_count = job["retry_count"]
    remaining = max_retries - retry_count
    if remaining <= 0:
        return await _fail(job_id, job.get("error") or "retry budget exhausted")

    if not await jobs_repo.claim_job(job_id):
        return {"success": False, "error": "job is no longer pending"}
    await manager.broadcast_job_status(job_id, "processing")

    attempts = remaining
    if executor.dispatch_attempts is not None:
        attempts = max(1, min(attempts, executor.dispatch_attempts))

    async def record_retry(exc: BaseException, attempt: int, delay: float) -> None:
        nonlocal retry_count
        retry_count += 1
        await jobs_repo.update_job(
            job_id,
            retry_count=retry_count,
            error=f"retrying ({retry_count}/{max_retries}): {_error_message(exc)}",
        )

    try:
        provider = executor.provider_factory(payload.get("api_key"))
        generated = await generate_with_retry(
            lambda: provider.generate(
                prompt,
                payload.get("style") or DEFAULT_STYLE,
                payload.get("references") or {},
                payload.get("options") or {},
            ),
            retries=attempts,
            base_delay=executor.retry_base_delay,
            on_retry=record_retry,
            sleep=executor.sleep,
        )
    except Exception as exc:
        message = _error_message(exc)
        retry_count += 1
        if retry_count < max_retries and is_rate_limited(exc):
            error = f"retrying ({retry_count}/{max_retries}): {message}"
            await jobs_repo.update_job(
                job_id, status="pending", error=error, retry_count=retry_count
            )
            await manager.broadcast_job_status(job_id, "pending", error=error)
            return {"success": False, "error": error}
        return await _fail(job_id, message, retry_count)

    result = generated.to_dict()
    await jobs_repo.update_job(job_id, status="completed", result=result)
    await manager.broadcast_job_status(job_id, "completed")
    return {"success": True, "result": result}
