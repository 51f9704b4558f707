import json
from typing import Any, AsyncIterator, Dict

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import StreamingResponse

from storyweaver.api.deps import get_batch_coordinator, get_image_provider, verify_token
from storyweaver.core.config import DEFAULT_STYLE, GENERATION_RETRY_LIMIT, RETRY_BASE_DELAY_SEC
from storyweaver.core.logging import logger
from storyweaver.schemas.jobs import BatchJobCreate, GenerateRequest
from storyweaver.services.provider import ImageProvider
from storyweaver.services.retry import generate_with_retry
from storyweaver.services.streaming import BatchStreamCoordinator

router = APIRouter(prefix="/image", tags=["image"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _validate_batch(body: BatchJobCreate) -> None:
    if not body.items:
        raise HTTPException(status_code=400, detail="items must not be empty")
    missing = [item.id for item in body.items if not item.resolved_prompt()]
    if missing:
        raise HTTPException(
            status_code=400,
            detail=f"items without prompt: {', '.join(missing)}",
        )


def format_sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


@router.post("/generate")
async def generate_image(
    body: GenerateRequest,
    provider: ImageProvider = Depends(get_image_provider),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    prompt = body.prompt.strip()
    if not prompt:
        raise HTTPException(status_code=400, detail="prompt is required")
    try:
        result = await generate_with_retry(
            lambda: provider.generate(
                prompt, body.style or DEFAULT_STYLE, body.references, body.options
            ),
            retries=GENERATION_RETRY_LIMIT,
            base_delay=RETRY_BASE_DELAY_SEC,
        )
    except Exception as exc:
        logger.error("image generation failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc) or "generation failed") from exc
    return {"success": True, "data": result.to_dict()}


@router.post("/generate-batch")
async def generate_image_batch(
    body: BatchJobCreate,
    coordinator: BatchStreamCoordinator = Depends(get_batch_coordinator),
    _: None = Depends(verify_token),
) -> Dict[str, Any]:
    _validate_batch(body)
    summary = await coordinator.run(
        body.items, body.style, body.references, body.options
    )
    return {"success": summary["success_count"] > 0, "data": summary}


@router.post("/generate-batch-stream")
async def generate_image_batch_stream(
    body: BatchJobCreate,
    coordinator: BatchStreamCoordinator = Depends(get_batch_coordinator),
    _: None = Depends(verify_token),
) -> StreamingResponse:
    _validate_batch(body)

    async def events() -> AsyncIterator[str]:
        async for event in coordinator.stream(
            body.items, body.style, body.references, body.options
        ):
            yield format_sse(event)

    return StreamingResponse(
        events(), media_type="text/event-stream", headers=SSE_HEADERS
    )
