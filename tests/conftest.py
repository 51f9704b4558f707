"""
Shared pytest fixtures for the storyweaver backend tests.

- **store**: a fresh SQLite job store in a temporary directory
- **StubProvider**: scripted image provider (per-prompt failures, call log)
- **no_sleep / SleepRecorder**: replacements for asyncio.sleep in backoff paths
"""

import asyncio
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest

from storyweaver.db import connection
from storyweaver.services.provider import GenerationResult, ProviderError


def rate_limit_error(message: str = "429 Too Many Requests") -> ProviderError:
    return ProviderError(message, status=429, code="RESOURCE_EXHAUSTED")


class StubProvider:
    """Image provider that fails selected prompts a scripted number of times."""

    def __init__(
        self,
        failures: Optional[Dict[str, List[Exception]]] = None,
        always_fail: Optional[Exception] = None,
        gate: Optional[asyncio.Event] = None,
    ) -> None:
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.always_fail = always_fail
        self.gate = gate
        self.calls: List[Dict[str, Any]] = []
        self.active = 0
        self.max_active = 0

    async def generate(
        self,
        prompt: str,
        style: str,
        references: Dict[str, str],
        options: Dict[str, Any],
    ) -> GenerationResult:
        self.calls.append(
            {"prompt": prompt, "style": style, "references": references, "options": options}
        )
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)
            if self.always_fail is not None:
                raise self.always_fail
            pending = self.failures.get(prompt)
            if pending:
                raise pending.pop(0)
            return GenerationResult(output=f"https://img.test/{prompt.replace(' ', '-')}.png", output_is_reference=True)
        finally:
            self.active -= 1

    def calls_for(self, prompt: str) -> int:
        return sum(1 for call in self.calls if call["prompt"] == prompt)


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def store(tmp_path: Path) -> Generator[Path, None, None]:
    """Open an empty job store for the duration of one test."""
    db_path = tmp_path / "jobs.db"
    connection.open_db(str(db_path))
    yield db_path
    if connection.db_conn is not None:
        connection.db_conn.close()
        connection.db_conn = None


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()
