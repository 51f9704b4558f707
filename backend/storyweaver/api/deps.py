from typing import Optional

from fastapi import Depends, HTTPException, Request, WebSocket

from storyweaver.core.config import (
    BACKEND_TOKEN,
    GENERATION_RETRY_LIMIT,
    IMAGE_CONCURRENCY,
    RETRY_BASE_DELAY_SEC,
    WAVE_COOLDOWN_SEC,
)
from storyweaver.services.provider import ImageProvider, ProviderError, get_provider
from storyweaver.services.streaming import BatchStreamCoordinator


async def verify_token(request: Request) -> None:
    if BACKEND_TOKEN and request.headers.get("X-Backend-Token") != BACKEND_TOKEN:
        raise HTTPException(status_code=401, detail="unauthorized")


async def verify_ws_token(websocket: WebSocket) -> bool:
    if BACKEND_TOKEN and websocket.headers.get("x-backend-token") != BACKEND_TOKEN:
        await websocket.close(code=1008)
        return False
    return True


def extract_api_key(request: Request) -> Optional[str]:
    header_key = request.headers.get("x-api-key", "").strip()
    if header_key:
        return header_key
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        token = auth[7:].strip()
        if token:
            return token
    query_key = request.query_params.get("api_key", "").strip()
    return query_key or None


def get_image_provider(request: Request) -> ImageProvider:
    try:
        return get_provider(extract_api_key(request))
    except ProviderError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def get_batch_coordinator(
    provider: ImageProvider = Depends(get_image_provider),
) -> BatchStreamCoordinator:
    return BatchStreamCoordinator(
        provider,
        wave_size=IMAGE_CONCURRENCY,
        cooldown=WAVE_COOLDOWN_SEC,
        retry_limit=GENERATION_RETRY_LIMIT,
        retry_base_delay=RETRY_BASE_DELAY_SEC,
    )
