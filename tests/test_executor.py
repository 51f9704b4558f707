"""Tests for the durable job executor."""

import pytest

from storyweaver.db import jobs_repo
from storyweaver.services.executor import JOB_HANDLERS, IMAGE_GENERATION, JobExecutor
from storyweaver.services.provider import ProviderError

from conftest import StubProvider, no_sleep, rate_limit_error


def make_executor(provider: StubProvider, **kwargs) -> JobExecutor:
    return JobExecutor(
        provider_factory=lambda api_key: provider,
        retry_base_delay=0,
        sleep=no_sleep,
        **kwargs,
    )


async def enqueue(job_id: str, prompt: str = "a lighthouse at dusk", max_retries: int = 3, **payload):
    return await jobs_repo.create_job(
        job_id,
        IMAGE_GENERATION,
        {"prompt": prompt, "style": "noir", **payload},
        max_retries=max_retries,
    )


class TestRegistry:
    """Tests for type dispatch."""

    def test_image_generation_registered(self) -> None:
        assert IMAGE_GENERATION in JOB_HANDLERS

    @pytest.mark.asyncio
    async def test_unknown_type_fails_without_retry(self, store) -> None:
        """Jobs with an unregistered type fail closed."""
        provider = StubProvider()
        await jobs_repo.create_job("odd", "character_image", {"prompt": "x"})
        job = await jobs_repo.fetch_job("odd")

        outcome = await make_executor(provider).execute(job)

        stored = await jobs_repo.fetch_job("odd")
        assert outcome["success"] is False
        assert stored["status"] == "failed"
        assert stored["error"] == "unknown job type: character_image"
        assert stored["retry_count"] == 0
        assert provider.calls == []


class TestImageGeneration:
    """Tests for the image generation handler."""

    @pytest.mark.asyncio
    async def test_success(self, store) -> None:
        """A successful call completes the job with the provider output."""
        provider = StubProvider()
        job = await enqueue("ok", references={"Mira": "red coat"}, options={"aspect_ratio": "1:1"})

        outcome = await make_executor(provider).execute(job)

        stored = await jobs_repo.fetch_job("ok")
        assert outcome["success"] is True
        assert stored["status"] == "completed"
        assert stored["result"]["output_is_reference"] is True
        assert stored["result"]["output"].endswith("a-lighthouse-at-dusk.png")
        assert stored["started_at"] is not None
        assert stored["completed_at"] is not None
        assert provider.calls[0]["style"] == "noir"
        assert provider.calls[0]["references"] == {"Mira": "red coat"}
        assert provider.calls[0]["options"] == {"aspect_ratio": "1:1"}

    @pytest.mark.asyncio
    async def test_missing_prompt_fails_immediately(self, store) -> None:
        """A job without a prompt never enters processing and is not retried."""
        provider = StubProvider()
        job = await enqueue("empty", prompt="  ")

        await make_executor(provider).execute(job)

        stored = await jobs_repo.fetch_job("empty")
        assert stored["status"] == "failed"
        assert stored["retry_count"] == 0
        assert stored["started_at"] is None
        assert "prompt" in stored["error"]
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_retry_exhaustion(self, store) -> None:
        """A job that is always rate limited ends failed with retry_count == max_retries."""
        provider = StubProvider(always_fail=rate_limit_error("429 quota exceeded"))
        job = await enqueue("limited", max_retries=3)

        await make_executor(provider).execute(job)

        stored = await jobs_repo.fetch_job("limited")
        assert stored["status"] == "failed"
        assert stored["retry_count"] == 3
        assert "429 quota exceeded" in stored["error"]
        assert len(provider.calls) == 3

    @pytest.mark.asyncio
    async def test_absorbed_rate_limit_counts_retry(self, store) -> None:
        """One rate-limited failure followed by success leaves retry_count at 1."""
        prompt = "storm over the harbor"
        provider = StubProvider(failures={prompt: [rate_limit_error()]})
        job = await enqueue("once", prompt=prompt)

        await make_executor(provider).execute(job)

        stored = await jobs_repo.fetch_job("once")
        assert stored["status"] == "completed"
        assert stored["retry_count"] == 1
        assert provider.calls_for(prompt) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_fails(self, store) -> None:
        """Errors that are not rate limits fail the job on the first attempt."""
        provider = StubProvider(always_fail=ProviderError("image blocked by safety policy", status=400))
        job = await enqueue("blocked")

        await make_executor(provider).execute(job)

        stored = await jobs_repo.fetch_job("blocked")
        assert stored["status"] == "failed"
        assert stored["error"] == "image blocked by safety policy"
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_retryable_failure_returns_to_pending(self, store) -> None:
        """With one attempt per dispatch a rate-limited job goes back to pending."""
        prompt = "quiet forest"
        provider = StubProvider(failures={prompt: [rate_limit_error()]})
        executor = make_executor(provider, dispatch_attempts=1)
        job = await enqueue("requeue", prompt=prompt)

        outcome = await executor.execute(job)

        stored = await jobs_repo.fetch_job("requeue")
        assert outcome["success"] is False
        assert stored["status"] == "pending"
        assert stored["retry_count"] == 1
        assert stored["error"].startswith("retrying (1/3)")
        assert stored["payload"]["prompt"] == prompt
        assert [j["job_id"] for j in await jobs_repo.get_pending_jobs()] == ["requeue"]

        await executor.execute(stored)

        final = await jobs_repo.fetch_job("requeue")
        assert final["status"] == "completed"
        assert final["retry_count"] == 1

    @pytest.mark.asyncio
    async def test_single_attempt_dispatches_exhaust_budget(self, store) -> None:
        """Repeated single-attempt dispatches stop at max_retries."""
        provider = StubProvider(always_fail=rate_limit_error())
        executor = make_executor(provider, dispatch_attempts=1)
        await enqueue("loop", max_retries=2)

        for _ in range(5):
            job = await jobs_repo.fetch_job("loop")
            if job["status"] != "pending":
                break
            await executor.execute(job)

        stored = await jobs_repo.fetch_job("loop")
        assert stored["status"] == "failed"
        assert stored["retry_count"] == 2
        assert len(provider.calls) == 2

    @pytest.mark.asyncio
    async def test_already_claimed_job_is_skipped(self, store) -> None:
        """A job that is no longer pending is left untouched."""
        provider = StubProvider()
        job = await enqueue("taken")
        await jobs_repo.claim_job("taken")

        outcome = await make_executor(provider).execute(job)

        assert outcome["success"] is False
        assert (await jobs_repo.fetch_job("taken"))["status"] == "processing"
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_provider_factory_error_fails_job(self, store) -> None:
        """A missing provider credential is a permanent failure."""

        def factory(api_key):
            raise ProviderError("GEMINI_API_KEY is not configured")

        executor = JobExecutor(provider_factory=factory, retry_base_delay=0, sleep=no_sleep)
        job = await enqueue("nokey")

        await executor.execute(job)

        stored = await jobs_repo.fetch_job("nokey")
        assert stored["status"] == "failed"
        assert "GEMINI_API_KEY" in stored["error"]

    @pytest.mark.asyncio
    async def test_api_key_from_payload(self, store) -> None:
        """The credential stored with the job is handed to the provider factory."""
        seen = []
        provider = StubProvider()

        def factory(api_key):
            seen.append(api_key)
            return provider

        executor = JobExecutor(provider_factory=factory, retry_base_delay=0, sleep=no_sleep)
        job = await enqueue("keyed", api_key="secret-key")

        await executor.execute(job)

        assert seen == ["secret-key"]
