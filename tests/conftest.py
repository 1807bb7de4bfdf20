"""Shared fixtures: in-memory backends, scripted provider adapters, a controllable clock."""

import asyncio
from typing import Any, Callable, List, Optional

import pytest

from videogen import metrics
from videogen.credits import InMemoryCreditLedger
from videogen.fallback_limiter import InMemoryWindowStore
from videogen.rate_limiter import SlidingWindowRateLimiter
from videogen.pipeline.models import GenerationJob
from videogen.pipeline.orchestrator import JobOrchestrator
from videogen.pipeline.store import InMemoryJobStore

USER = "user-1"
FIRST_URL = "https://cdn.test/first_frame.png"
LAST_URL = "https://cdn.test/last_frame.png"
VIDEO_URL = "https://cdn.test/video.mp4"


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class ScriptedAdapter:
    """
    Provider adapter fake.

    `results` are consumed one per call: a URL is returned, an exception is
    raised. When the script runs out, `default` is used (a URL, or a callable
    taking the params). `gate`, if set, blocks every call until it is set.
    """

    def __init__(
        self,
        name: str,
        results: Optional[List[Any]] = None,
        default: Any = None,
        progress: Optional[List[int]] = None,
        gate: Optional[asyncio.Event] = None,
        delay: float = 0.0,
    ):
        self.name = name
        self.results = list(results or [])
        self.default = default
        self.progress = list(progress or [])
        self.gate = gate
        self.delay = delay
        self.calls: List[Any] = []
        self.started = asyncio.Event()
        self.closed = False

    async def invoke(self, params, on_progress=None) -> str:
        self.calls.append(params)
        self.started.set()
        for p in self.progress:
            if on_progress is not None:
                await on_progress(p)
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)

        result = self.results.pop(0) if self.results else self.default
        if isinstance(result, BaseException):
            raise result
        if callable(result):
            return result(params)
        return result

    async def aclose(self):
        self.closed = True


class RecordingStore(InMemoryJobStore):
    """Remembers (state, progress) of every successful write per job."""

    def __init__(self):
        super().__init__()
        self.history: dict = {}

    async def create(self, job: GenerationJob) -> GenerationJob:
        stored = await super().create(job)
        self.history.setdefault(job.id, []).append((stored.state, stored.progress))
        return stored

    async def compare_and_set(self, job: GenerationJob, expected_version: int) -> GenerationJob:
        stored = await super().compare_and_set(job, expected_version)
        self.history.setdefault(job.id, []).append((stored.state, stored.progress))
        return stored


def frame_url(params) -> str:
    return FIRST_URL if params.frame == "first" else LAST_URL


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def limiter(clock):
    return SlidingWindowRateLimiter(InMemoryWindowStore(), clock=clock)


@pytest.fixture
def ledger():
    return InMemoryCreditLedger(balances={USER: 1000})


@pytest.fixture
def store():
    return RecordingStore()


@pytest.fixture
def image_adapter():
    return ScriptedAdapter("image", default=frame_url)


@pytest.fixture
def video_adapter():
    return ScriptedAdapter("video", default=VIDEO_URL)


@pytest.fixture
def make_orchestrator(limiter, ledger, store, image_adapter, video_adapter) -> Callable[..., JobOrchestrator]:
    def _make(**overrides) -> JobOrchestrator:
        kwargs = dict(
            limiter=limiter,
            ledger=ledger,
            store=store,
            image_adapter=image_adapter,
            video_adapter=video_adapter,
            frame_timeout=5,
            video_timeout=5,
            phase_max_attempts=3,
            settlement_max_attempts=3,
            retry_base_delay=0,
        )
        kwargs.update(overrides)
        return JobOrchestrator(**kwargs)

    return _make


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()
