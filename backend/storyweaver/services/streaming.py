"""Wave-based batch generation streamed to the caller as typed events.

Nothing here touches the job store: if the consumer goes away mid-stream,
the remaining items are dropped and no record of them is kept.
"""

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Sequence

from storyweaver.core.config import (
    DEFAULT_STYLE,
    GENERATION_RETRY_LIMIT,
    IMAGE_CONCURRENCY,
    RETRY_BASE_DELAY_SEC,
    WAVE_COOLDOWN_SEC,
)
from storyweaver.core.logging import logger
from storyweaver.schemas.jobs import BatchItem
from storyweaver.services.provider import ImageProvider
from storyweaver.services.retry import Sleep, generate_with_retry

Event = Dict[str, Any]
Emit = Callable[[Event], Awaitable[None]]

EVENT_TYPES = (
    "start",
    "batch-start",
    "generating",
    "success",
    "error",
    "batch-complete",
    "complete",
)


async def _discard(event: Event) -> None:
    return None


def split_waves(items: Sequence[BatchItem], wave_size: int) -> List[List[BatchItem]]:
    size = max(1, wave_size)
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class BatchStreamCoordinator:
    def __init__(
        self,
        provider: ImageProvider,
        wave_size: int = IMAGE_CONCURRENCY,
        cooldown: float = WAVE_COOLDOWN_SEC,
        retry_limit: int = GENERATION_RETRY_LIMIT,
        retry_base_delay: float = RETRY_BASE_DELAY_SEC,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.wave_size = max(1, wave_size)
        self.cooldown = max(0.0, cooldown)
        self.retry_limit = retry_limit
        self.retry_base_delay = retry_base_delay
        self.sleep = sleep

    async def run(
        self,
        items: Sequence[BatchItem],
        style: Optional[str] = None,
        references: Optional[Dict[str, str]] = None,
        options: Optional[Dict[str, Any]] = None,
        emit: Emit = _discard,
    ) -> Event:
        """Process ``items`` wave by wave and return the ``complete`` event."""
        waves = split_waves(items, self.wave_size)
        total = len(items)
        successes: List[Dict[str, Any]] = []
        errors: List[Dict[str, Any]] = []

        await emit({"type": "start", "total": total, "wave_count": len(waves)})
        logger.info("batch stream: %d items in %d waves", total, len(waves))

        for index, wave in enumerate(waves):
            await emit(
                {
                    "type": "batch-start",
                    "wave_index": index + 1,
                    "wave_total": len(waves),
                    "item_ids": [item.id for item in wave],
                }
            )
            await asyncio.gather(
                *(
                    self._process_item(
                        item, style, references or {}, options or {},
                        emit, successes, errors,
                    )
                    for item in wave
                )
            )
            await emit(
                {
                    "type": "batch-complete",
                    "wave_index": index + 1,
                    "wave_total": len(waves),
                    "completed": len(successes) + len(errors),
                    "total": total,
                }
            )
            if index < len(waves) - 1 and self.cooldown > 0:
                await self.sleep(self.cooldown)

        summary: Event = {
            "type": "complete",
            "successes": successes,
            "errors": errors,
            "total": total,
            "success_count": len(successes),
            "error_count": len(errors),
        }
        await emit(summary)
        logger.info(
            "batch stream finished: %d succeeded, %d failed",
            len(successes),
            len(errors),
        )
        return summary

    async def _process_item(
        self,
        item: BatchItem,
        style: Optional[str],
        references: Dict[str, str],
        options: Dict[str, Any],
        emit: Emit,
        successes: List[Dict[str, Any]],
        errors: List[Dict[str, Any]],
    ) -> None:
        await emit({"type": "generating", "item_id": item.id})
        try:
            prompt = item.resolved_prompt()
            if not prompt:
                raise ValueError("item has no prompt")
            item_options = {**options, **item.options}
            result = await generate_with_retry(
                lambda: self.provider.generate(
                    prompt, style or DEFAULT_STYLE, references, item_options
                ),
                retries=self.retry_limit,
                base_delay=self.retry_base_delay,
                sleep=self.sleep,
            )
        except Exception as exc:
            logger.warning("batch item %s failed: %s", item.id, exc)
            failure = {"item_id": item.id, "error": str(exc) or exc.__class__.__name__}
            errors.append(failure)
            await emit({"type": "error", **failure})
            return

        success = {
            "item_id": item.id,
            "output": result.output,
            "output_is_reference": result.output_is_reference,
        }
        successes.append(success)
        await emit({"type": "success", **success})

    async def stream(
        self,
        items: Sequence[BatchItem],
        style: Optional[str] = None,
        references: Optional[Dict[str, str]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[Event]:
        queue: asyncio.Queue[Optional[Event]] = asyncio.Queue()

        async def push(event: Event) -> None:
            queue.put_nowait(event)

        async def produce() -> None:
            try:
                await self.run(items, style, references, options, emit=push)
            finally:
                queue.put_nowait(None)

        producer = asyncio.create_task(produce())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event
            await producer
        finally:
            if not producer.done():
                logger.warning("batch stream consumer went away, dropping remaining items")
                producer.cancel()
