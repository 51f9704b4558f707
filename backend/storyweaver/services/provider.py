import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

import httpx

from storyweaver.core.config import (
    DEFAULT_STYLE,
    GEMINI_API_KEY,
    GEMINI_BASE_URL,
    GEMINI_IMAGE_MODEL,
    PROVIDER_TIMEOUT_SEC,
)
from storyweaver.core.logging import logger

DEFAULT_TIMEOUT = httpx.Timeout(PROVIDER_TIMEOUT_SEC, connect=10.0)

STYLE_PROMPTS = {
    "cel-shading": "anime coloring, cel shaded, flat color, thick lines, high contrast, vivid colors,",
    "noir": "graphic novel style, black and white, ink lines, chiaroscuro lighting,",
    "ghibli": "watercolor texture, soft lighting, detailed background, painterly,",
    "realism": "cinematic shot, 35mm film, bokeh, realistic texture, ray tracing,",
}

CAMERA_PROMPTS = {
    "close-up": "close-up shot, focus on face, detailed eyes, emotional expression, blurred background,",
    "wide shot": "wide angle shot, environmental view, full body, establishing shot,",
    "mid shot": "medium shot, waist-up framing, balanced composition,",
    "low angle": "low angle view, looking up, imposing perspective,",
    "action": "dynamic action shot, motion blur, dramatic angle,",
}
DEFAULT_CAMERA = (
    "cinematic composition, professional camera work, film-grade lighting, "
    "dynamic depth of field,"
)
NEGATIVE_PROMPT = (
    "BAD ANATOMY, LOW QUALITY, TEXT, WATERMARK, BLURRY, DISTORTED FACE, "
    "MUTILATED FINGERS"
)


class ProviderError(RuntimeError):
    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Any = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.code = code


@dataclass
class GenerationResult:
    output: str
    output_is_reference: bool = False
    mime_type: str = "image/png"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output": self.output,
            "output_is_reference": self.output_is_reference,
            "mime_type": self.mime_type,
        }


class ImageProvider(Protocol):
    async def generate(
        self,
        prompt: str,
        style: str,
        references: Dict[str, str],
        options: Dict[str, Any],
    ) -> GenerationResult: ...


def build_image_prompt(
    prompt: str,
    style: str,
    references: Dict[str, str],
    panel_context: Optional[Dict[str, Any]] = None,
) -> str:
    style_text = STYLE_PROMPTS.get(style, STYLE_PROMPTS["cel-shading"])
    shot_type = str((panel_context or {}).get("type", "")).strip().lower()
    camera = CAMERA_PROMPTS.get(shot_type, DEFAULT_CAMERA)

    scene = prompt
    unmentioned = []
    for name, description in references.items():
        pattern = re.compile(rf"\b{re.escape(name)}\b", re.IGNORECASE)
        if pattern.search(scene):
            scene = pattern.sub(lambda m: f"{m.group(0)} ({description})", scene)
        else:
            unmentioned.append(f"{name} ({description})")
    # Only the first unmentioned character is prefixed to keep the prompt short.
    if unmentioned and scene == prompt:
        scene = f"{unmentioned[0]}, {scene}"

    return (
        f"[Art Style]: {style_text}\n"
        f"[Camera]: {camera}\n"
        f"[Scene Description]: {scene}\n"
        "[Quality Tags]: masterpiece, best quality, 8k, highly detailed.\n"
        f"[Negative Constraints]: {NEGATIVE_PROMPT}. "
        "Generate the image directly, do not return text descriptions or prompts."
    )


def extract_image(data: Dict[str, Any]) -> GenerationResult:
    candidates = data.get("candidates") or []
    first = candidates[0] if candidates else {}
    parts = (first.get("content") or {}).get("parts") or []

    for part in parts:
        inline = part.get("inlineData") or part.get("inline_data")
        if inline and inline.get("data"):
            mime_type = inline.get("mimeType") or inline.get("mime_type") or "image/png"
            raw = inline["data"]
            if raw.startswith("data:"):
                raw = raw.split(",", 1)[1]
            return GenerationResult(
                output=f"data:{mime_type};base64,{raw}",
                output_is_reference=False,
                mime_type=mime_type,
            )

    image_urls = data.get("image_urls")
    if isinstance(image_urls, list) and image_urls:
        return GenerationResult(output=image_urls[0], output_is_reference=True)
    if first.get("imageUrl"):
        return GenerationResult(output=first["imageUrl"], output_is_reference=True)

    for part in parts:
        text = part.get("text")
        if not text:
            continue
        lowered = text.lower()
        if "safety" in lowered or "blocked" in lowered or "policy" in lowered:
            raise ProviderError("image generation blocked by safety policy")
        raise ProviderError(f"provider returned text instead of an image: {text[:200]}")

    raise ProviderError(
        f"no image data in provider response (keys: {', '.join(sorted(data))})"
    )


class GeminiImageProvider:
    def __init__(
        self,
        api_key: str,
        model: str = GEMINI_IMAGE_MODEL,
        base_url: str = GEMINI_BASE_URL,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def generate(
        self,
        prompt: str,
        style: str,
        references: Dict[str, str],
        options: Dict[str, Any],
    ) -> GenerationResult:
        enhanced = build_image_prompt(
            prompt, style or DEFAULT_STYLE, references, options.get("panel_context")
        )
        body = {
            "contents": [{"parts": [{"text": enhanced}]}],
            "generationConfig": {
                "imageConfig": {
                    "aspectRatio": options.get("aspect_ratio") or "16:9",
                    "imageSize": options.get("image_size") or "4K",
                }
            },
        }
        url = f"{self.base_url}/models/{self.model}:generateContent"
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self.transport
        ) as client:
            try:
                response = await client.post(
                    url, params={"key": self.api_key}, json=body
                )
            except httpx.HTTPError as exc:
                raise ProviderError(f"provider request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError(
                f"malformed provider response: {response.text[:200]}",
                status=response.status_code,
            ) from exc

        if response.status_code >= 400:
            error = data.get("error") if isinstance(data, dict) else None
            error = error if isinstance(error, dict) else {}
            message = (
                error.get("message")
                or f"HTTP {response.status_code}: {response.reason_phrase}"
            )
            logger.warning(
                "image provider error %s: %s", response.status_code, message
            )
            raise ProviderError(
                message,
                status=response.status_code,
                code=error.get("status") or error.get("code") or response.status_code,
            )
        if not isinstance(data, dict):
            raise ProviderError("malformed provider response", status=response.status_code)
        return extract_image(data)


def get_provider(api_key: Optional[str] = None) -> ImageProvider:
    key = (api_key or "").strip() or GEMINI_API_KEY
    if not key:
        raise ProviderError("GEMINI_API_KEY is not configured and no api key was provided")
    return GeminiImageProvider(key)
