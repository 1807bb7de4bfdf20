"""
JobOrchestrator: admission, the keyframe pipeline, settlement and recovery.

  Pending → GeneratingFirstFrame → GeneratingLastFrame → GeneratingVideo → Finalizing → Completed
                   └──────────────────────┴──────────────────────┴────────────────┴──────→ Failed

Admission (synchronous, in order): validate → tier from the owner's credit
account → rate limit → reserve credits → create the Pending record → start
a supervised task. Nothing is persisted when admission fails.

Settlement: the reservation id is the job id. A job that reaches Completed
has committed; a job that reaches Failed is released. The `settlement` flag
on the record marks which one happened, so recovery can finish a settlement
that a crash interrupted without running it twice. A commit whose outcome is
unknown is resolved by releasing: the ledger either refunds or reports that
the commit landed, and the job ends Failed or Completed to match.

Every write is a compare-and-set on `version`. On conflict the record is
re-read: if another writer finished it or asked for cancellation, this task
stops.
"""

import os
import time
import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, Optional, Set, Union
from uuid import uuid4

from pydantic import ValidationError

from .. import metrics
from ..credits import CreditLedger
from ..errors import (
    CreditsUnavailableError,
    FatalProviderError,
    InsufficientCreditsError,
    InvalidRequestError,
    JobAlreadyFinishedError,
    JobNotFoundError,
    JobOwnershipError,
    LedgerError,
    ProviderTimeoutError,
    RateLimitedError,
    RetryableProviderError,
    SettlementConflictError,
    SettlementError,
    StaleJobError,
    JobStoreError,
)
from ..rate_limiter import TIER_LIMITS, WINDOW_SECONDS, SlidingWindowRateLimiter, rate_limit_key, tier_for_balance
from .adapter import ProviderAdapter
from .animate import interpolation_params
from .frames import frame_params
from .models import (
    ArtifactName,
    ErrorKind,
    GenerationJob,
    GenerationRequest,
    JobState,
    JobStatusResponse,
    Settlement,
    is_valid_transition,
)
from .pricing import calculate_credits, estimate_time_seconds, get_resolution
from .store import JobStore

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

FRAME_PHASE_TIMEOUT = float(os.getenv("FRAME_PHASE_TIMEOUT", "120"))    # seconds per image call
VIDEO_PHASE_TIMEOUT = float(os.getenv("VIDEO_PHASE_TIMEOUT", "900"))    # seconds per video call
PHASE_MAX_ATTEMPTS = int(os.getenv("PHASE_MAX_ATTEMPTS", "3"))
SETTLEMENT_MAX_ATTEMPTS = int(os.getenv("SETTLEMENT_MAX_ATTEMPTS", "5"))
RETRY_BASE_DELAY = float(os.getenv("RETRY_BASE_DELAY", "2"))           # doubles each retry
STALE_JOB_TIMEOUT = float(os.getenv("STALE_JOB_TIMEOUT", "3600"))

# Video provider progress (0–100) maps into this slice of job progress
VIDEO_PROGRESS_START = 60
VIDEO_PROGRESS_SPAN = 35

PHASE_LABELS = {
    "first_frame": "First frame generation",
    "last_frame": "Last frame generation",
    "video": "Video generation",
}

CANCELLED_MESSAGE = "Generation cancelled"
SETTLEMENT_FAILED_MESSAGE = "Could not settle credits for this generation"

SETTLED_BY = {"commit": Settlement.COMMITTED, "release": Settlement.RELEASED}


class JobCancelled(Exception):
    """Cancellation was observed on the persisted record."""


class JobClosed(Exception):
    """Another writer finished or took over the job; this task stops."""


class PhaseFailed(Exception):
    def __init__(self, kind: ErrorKind, message: str, settlement: Optional[Settlement] = None):
        self.kind = kind
        self.message = message
        self.settlement = settlement
        super().__init__(message)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobOrchestrator:
    """
    Usage:
        orchestrator = JobOrchestrator(limiter, ledger, store, ImageAdapter(), VideoAdapter())
        job_id = await orchestrator.submit(user_id, request)
        status = await orchestrator.get_status(job_id)
    """

    def __init__(
        self,
        limiter: SlidingWindowRateLimiter,
        ledger: CreditLedger,
        store: JobStore,
        image_adapter: ProviderAdapter,
        video_adapter: ProviderAdapter,
        tier_limits: Optional[Dict[str, int]] = None,
        window_seconds: float = WINDOW_SECONDS,
        frame_timeout: float = FRAME_PHASE_TIMEOUT,
        video_timeout: float = VIDEO_PHASE_TIMEOUT,
        phase_max_attempts: int = PHASE_MAX_ATTEMPTS,
        settlement_max_attempts: int = SETTLEMENT_MAX_ATTEMPTS,
        retry_base_delay: float = RETRY_BASE_DELAY,
    ):
        self.limiter = limiter
        self.ledger = ledger
        self.store = store
        self.image_adapter = image_adapter
        self.video_adapter = video_adapter
        self.tier_limits = dict(tier_limits or TIER_LIMITS)
        self.window_seconds = window_seconds
        self.frame_timeout = frame_timeout
        self.video_timeout = video_timeout
        self.phase_max_attempts = max(1, phase_max_attempts)
        self.settlement_max_attempts = max(1, settlement_max_attempts)
        self.retry_base_delay = retry_base_delay

        self._tasks: Dict[str, asyncio.Task] = {}
        self._cancelling: Set[str] = set()
        self._shutting_down = False

    # ── Public operations ────────────────────────────────────────────────

    async def submit(
        self,
        owner: str,
        request: Union[GenerationRequest, dict],
    ) -> str:
        """
        Admit a generation request and start it in the background. The
        rate-limit tier comes from the owner's credit account, never from
        the caller.

        Raises:
            InvalidRequestError, RateLimitedError, InsufficientCreditsError,
            CreditsUnavailableError: no job record exists in any of these cases.
        """
        if not owner:
            raise InvalidRequestError("owner is required")
        if not isinstance(request, GenerationRequest):
            try:
                request = GenerationRequest.model_validate(request)
            except ValidationError as e:
                raise InvalidRequestError(f"Invalid generation request: {e}") from e

        credits = calculate_credits(request)

        try:
            account = await self.ledger.account(owner)
        except LedgerError as e:
            metrics.inc_counter("admission.ledger_unavailable")
            logger.error(f"Credit account lookup failed for {owner}: {e}")
            raise CreditsUnavailableError("Credit service unavailable, please try again") from e
        tier = tier_for_balance(account.balance, account.is_recharged)
        # Tiers missing from a custom table get the strictest limit
        limit = self.tier_limits.get(tier, min(self.tier_limits.values()))

        decision = self.limiter.check(rate_limit_key(owner, tier), self.window_seconds, limit)
        if not decision.allowed:
            metrics.inc_counter("admission.rate_limited")
            raise RateLimitedError(decision.retry_after, decision.reset_at, limit)

        job_id = str(uuid4())
        try:
            reserved = await self.ledger.reserve(owner, credits, job_id)
        except LedgerError as e:
            metrics.inc_counter("admission.ledger_unavailable")
            logger.error(f"Credit reservation failed for {owner}: {e}")
            raise CreditsUnavailableError("Credit service unavailable, please try again") from e
        if not reserved:
            metrics.inc_counter("admission.insufficient_credits")
            raise InsufficientCreditsError(credits)

        job = GenerationJob(
            id=job_id,
            owner=owner,
            request=request,
            tier=tier,
            credits_reserved=credits,
            metadata={
                "estimated_time_seconds": estimate_time_seconds(request),
                "resolution": get_resolution(request.quality, request.aspect_ratio),
            },
        )
        try:
            await self.store.create(job)
        except Exception:
            logger.error(f"[{job_id}] Could not persist job, releasing reservation", exc_info=True)
            try:
                await self._settle_with_retry("release", job)
            except SettlementError as e:
                metrics.inc_counter("settlement.pending")
                logger.error(f"[{job_id}] Release after failed create did not go through: {e}")
            raise

        metrics.inc_counter("jobs.submitted")
        logger.info(f"[{job_id}] Admitted for {owner} ({tier}, {credits} credits reserved)")
        self._start(job_id)
        return job_id

    async def get_status(self, job_id: str) -> JobStatusResponse:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return JobStatusResponse.from_job(job)

    async def cancel(self, job_id: str, owner: str) -> None:
        """
        Request cancellation. The job ends Failed/cancelled and its
        reservation is released. A job already in Finalizing has started
        its commit and can no longer be cancelled.
        """
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.owner != owner:
            raise JobOwnershipError(f"Job {job_id} does not belong to {owner}")

        while not job.cancel_requested:
            if job.is_terminal or job.state == JobState.FINALIZING:
                raise JobAlreadyFinishedError(f"Job {job_id} is already {job.state.value}")
            try:
                job = await self.store.compare_and_set(
                    job.model_copy(update={"cancel_requested": True}), job.version
                )
            except StaleJobError:
                job = await self._reload(job_id)

        if job.is_terminal:
            raise JobAlreadyFinishedError(f"Job {job_id} is already {job.state.value}")

        logger.info(f"[{job_id}] Cancellation requested by {owner}")
        metrics.inc_counter("jobs.cancel_requested")

        task = self._tasks.get(job_id)
        if task is not None and not task.done():
            self._cancelling.add(job_id)
            task.cancel()
            await asyncio.wait({task})

        # No-op when the task already failed and released. Covers no local
        # task, a task cancelled before it ran, or one interrupted mid-release.
        await self._fail(job_id, ErrorKind.CANCELLED, CANCELLED_MESSAGE)

    async def join(self, job_id: str) -> None:
        """Wait for the local task of `job_id`, if any, to finish."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})

    async def recover(self, stale_after: float = STALE_JOB_TIMEOUT) -> Dict[str, int]:
        """
        Finish what a crash or restart interrupted.

          Failed, unsettled      → release once
          Completed, unsettled   → commit once
          cancel_requested       → fail as cancelled, release
          Finalizing             → replay the idempotent commit now
          idle > stale_after     → resume from the persisted state
        """
        counts = {"resumed": 0, "settled": 0, "cancelled": 0}
        now = _now()

        for job in await self.store.list_unsettled():
            if job.id in self._tasks:
                continue

            if job.state == JobState.FAILED:
                logger.info(f"[{job.id}] Recovery: releasing unsettled failed job")
                await self._release(job)
                counts["settled"] += 1
            elif job.state == JobState.COMPLETED:
                logger.info(f"[{job.id}] Recovery: committing unsettled completed job")
                try:
                    await self._settle_with_retry("commit", job)
                except SettlementConflictError as e:
                    logger.error(f"[{job.id}] Recovery commit refused: {e}")
                    await self._mark_settled(job, SETTLED_BY.get(e.previous, Settlement.RELEASED))
                    counts["settled"] += 1
                    continue
                except SettlementError as e:
                    logger.error(f"[{job.id}] Recovery commit failed, will retry: {e}")
                    continue
                await self._mark_settled(job, Settlement.COMMITTED)
                counts["settled"] += 1
            elif job.cancel_requested:
                logger.info(f"[{job.id}] Recovery: failing cancelled job")
                await self._fail(job.id, ErrorKind.CANCELLED, CANCELLED_MESSAGE)
                counts["cancelled"] += 1
            elif job.state == JobState.FINALIZING or (now - job.updated_at).total_seconds() >= stale_after:
                logger.info(f"[{job.id}] Recovery: resuming from {job.state.value}")
                self._start(job.id)
                counts["resumed"] += 1

        if any(counts.values()):
            logger.info(f"Recovery pass: {counts}")
        return counts

    async def shutdown(self) -> None:
        """Stop local tasks without failing them; recovery resumes them."""
        self._shutting_down = True
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Orchestrator stopped ({len(tasks)} job(s) interrupted)")

    # ── Supervision ──────────────────────────────────────────────────────

    def _start(self, job_id: str) -> None:
        task = asyncio.create_task(self._supervise(job_id), name=f"generation-{job_id}")
        self._tasks[job_id] = task
        metrics.set_gauge("jobs.active", len(self._tasks))

        def _done(t: asyncio.Task):
            if self._tasks.get(job_id) is t:
                del self._tasks[job_id]
            self._cancelling.discard(job_id)
            metrics.set_gauge("jobs.active", len(self._tasks))

        task.add_done_callback(_done)

    async def _supervise(self, job_id: str) -> None:
        try:
            await self._run(job_id)
        except asyncio.CancelledError:
            if job_id not in self._cancelling or self._shutting_down:
                logger.info(f"[{job_id}] Task interrupted, left for recovery")
                raise
            asyncio.current_task().uncancel()
            logger.info(f"[{job_id}] Cancelled mid-phase")
            await self._fail(job_id, ErrorKind.CANCELLED, CANCELLED_MESSAGE)
        except JobCancelled:
            logger.info(f"[{job_id}] Cancelled at phase boundary")
            await self._fail(job_id, ErrorKind.CANCELLED, CANCELLED_MESSAGE)
        except JobClosed as e:
            logger.info(f"[{job_id}] Stopping: {e}")
        except PhaseFailed as e:
            await self._fail(job_id, e.kind, e.message, settlement=e.settlement)
        except Exception as e:
            logger.error(f"[{job_id}] Pipeline crashed: {e}", exc_info=True)
            metrics.record_error("pipeline", ErrorKind.INTERNAL_ERROR.value, str(e), job_id)
            await self._fail(job_id, ErrorKind.INTERNAL_ERROR, "Generation failed unexpectedly")

    async def _run(self, job_id: str) -> None:
        job = await self._reload(job_id)
        if job.is_terminal:
            raise JobClosed(f"already {job.state.value}")
        first = ArtifactName.FIRST_FRAME.value
        last = ArtifactName.LAST_FRAME.value
        video = ArtifactName.VIDEO.value

        if job.state == JobState.PENDING:
            job = await self._advance(job, JobState.GENERATING_FIRST_FRAME, progress=10)

        # ── First frame ──────────────────────────────────────────────
        if job.state == JobState.GENERATING_FIRST_FRAME:
            url = job.artifacts.get(first) or await self._invoke_phase(
                job, "first_frame", self.image_adapter, frame_params(job.request, "first"), self.frame_timeout
            )
            job = await self._advance(job, JobState.GENERATING_LAST_FRAME, progress=30, artifacts={first: url})

        # ── Last frame ───────────────────────────────────────────────
        if job.state == JobState.GENERATING_LAST_FRAME:
            if last not in job.artifacts:
                url = await self._invoke_phase(
                    job, "last_frame", self.image_adapter, frame_params(job.request, "last"), self.frame_timeout
                )
                job = await self._advance(job, progress=50, artifacts={last: url})
            job = await self._advance(job, JobState.GENERATING_VIDEO, progress=VIDEO_PROGRESS_START)

        # ── Video ────────────────────────────────────────────────────
        if job.state == JobState.GENERATING_VIDEO:
            if video not in job.artifacts:
                async def on_progress(p: int):
                    await self._report_progress(job_id, VIDEO_PROGRESS_START + p * VIDEO_PROGRESS_SPAN // 100)

                url = await self._invoke_phase(
                    job, "video", self.video_adapter, interpolation_params(job), self.video_timeout,
                    on_progress=on_progress,
                )
                job = await self._advance(job, progress=95, artifacts={video: url})

            request = job.request
            job = await self._advance(
                job,
                JobState.FINALIZING,
                artifacts={ArtifactName.THUMBNAIL.value: job.artifacts[first]},
                metadata={
                    **job.metadata,
                    "duration_seconds": request.duration,
                    "resolution": get_resolution(request.quality, request.aspect_ratio),
                    "fps": request.fps,
                },
            )

        # ── Finalize ─────────────────────────────────────────────────
        if job.state == JobState.FINALIZING:
            try:
                await self._settle_with_retry("commit", job)
            except SettlementConflictError as e:
                logger.error(f"[{job_id}] Commit refused: {e}")
                raise PhaseFailed(
                    ErrorKind.SETTLEMENT_ERROR, SETTLEMENT_FAILED_MESSAGE, settlement=SETTLED_BY.get(e.previous)
                ) from e
            except SettlementError as e:
                logger.error(f"[{job_id}] {e}")
                await self._refund_uncommitted(job, e)

            job = await self._advance(
                job, JobState.COMPLETED, progress=100, settlement=Settlement.COMMITTED, allow_cancelled=True
            )
            metrics.inc_counter("jobs.completed")
            logger.info(f"[{job_id}] Completed → {job.artifacts.get(video)}")

    # ── Phases ───────────────────────────────────────────────────────────

    def _backoff(self, attempt: int) -> float:
        return self.retry_base_delay * (2 ** (attempt - 1))

    async def _invoke_phase(
        self,
        job: GenerationJob,
        phase: str,
        adapter: ProviderAdapter,
        params,
        timeout: float,
        on_progress=None,
    ) -> str:
        """Call one provider with a deadline, retrying transient errors."""
        label = PHASE_LABELS[phase]
        last_error: Optional[RetryableProviderError] = None

        for attempt in range(1, self.phase_max_attempts + 1):
            if attempt > 1:
                current = await self._reload(job.id)
                if current.is_terminal:
                    raise JobClosed(f"already {current.state.value}")
                if current.cancel_requested:
                    raise JobCancelled()

            started = time.monotonic()
            try:
                url = await asyncio.wait_for(adapter.invoke(params, on_progress=on_progress), timeout)
            except asyncio.TimeoutError:
                last_error = ProviderTimeoutError(f"{adapter.name} exceeded {timeout:.0f}s", adapter.name)
            except RetryableProviderError as e:
                last_error = e
            except FatalProviderError as e:
                logger.error(f"[{job.id}] {label} rejected by {adapter.name}: {e}")
                metrics.record_error(phase, ErrorKind.PROVIDER_ERROR.value, str(e), job.id)
                raise PhaseFailed(ErrorKind.PROVIDER_ERROR, f"{label} failed") from e
            else:
                metrics.record_latency(phase, (time.monotonic() - started) * 1000)
                logger.info(f"[{job.id}] {label} done in {time.monotonic() - started:.1f}s")
                return url

            logger.warning(
                f"[{job.id}] {label} attempt {attempt}/{self.phase_max_attempts} failed: {last_error}"
            )
            if attempt < self.phase_max_attempts:
                await asyncio.sleep(self._backoff(attempt))

        timed_out = isinstance(last_error, ProviderTimeoutError)
        kind = ErrorKind.PROVIDER_TIMEOUT if timed_out else ErrorKind.PROVIDER_ERROR
        metrics.record_error(phase, kind.value, str(last_error), job.id)
        raise PhaseFailed(kind, f"{label} timed out" if timed_out else f"{label} failed") from last_error

    async def _report_progress(self, job_id: str, progress: int) -> None:
        """Best-effort progress write; a lost race is superseded by the next write."""
        try:
            job = await self.store.get(job_id)
            if job is None or job.is_terminal or job.cancel_requested or progress <= job.progress:
                return
            await self.store.compare_and_set(job.model_copy(update={"progress": progress}), job.version)
        except StaleJobError:
            return
        except JobStoreError as e:
            logger.warning(f"[{job_id}] Progress update failed: {e}")

    # ── Record writes ────────────────────────────────────────────────────

    async def _reload(self, job_id: str) -> GenerationJob:
        job = await self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def _advance(
        self,
        job: GenerationJob,
        state: Optional[JobState] = None,
        progress: Optional[int] = None,
        artifacts: Optional[Dict[str, str]] = None,
        allow_cancelled: bool = False,
        **fields,
    ) -> GenerationJob:
        """
        Compare-and-set a forward step. Progress never decreases and
        artifacts already on the record are never replaced.
        """
        expected_state = job.state

        while True:
            if job.is_terminal:
                raise JobClosed(f"already {job.state.value}")
            if job.state != expected_state:
                raise JobClosed(f"moved to {job.state.value} by another worker")
            if job.cancel_requested and not allow_cancelled:
                raise JobCancelled()

            target = state or job.state
            if not is_valid_transition(job.state, target):
                raise RuntimeError(f"Illegal transition {job.state.value} → {target.value}")

            updates = dict(fields)
            updates["state"] = target
            if progress is not None:
                updates["progress"] = max(job.progress, progress)
            if artifacts:
                merged = dict(job.artifacts)
                for name, url in artifacts.items():
                    merged.setdefault(name, url)
                updates["artifacts"] = merged

            try:
                stored = await self.store.compare_and_set(job.model_copy(update=updates), job.version)
            except StaleJobError:
                logger.info(f"[{job.id}] Write conflict at version {job.version}, re-reading")
                job = await self._reload(job.id)
                continue

            if target != expected_state:
                logger.info(f"[{job.id}] {expected_state.value} → {target.value} ({stored.progress}%)")
            return stored

    async def _fail(
        self, job_id: str, kind: ErrorKind, message: str, settlement: Optional[Settlement] = None
    ) -> None:
        """Write Failed. Release the reservation unless `settlement` says it is already settled."""
        job = await self.store.get(job_id)
        failed_here = False

        while job is not None and not job.is_terminal:
            candidate = job.model_copy(update={
                "state": JobState.FAILED,
                "error": message,
                "error_kind": kind,
                "settlement": job.settlement or settlement,
            })
            try:
                job = await self.store.compare_and_set(candidate, job.version)
                failed_here = True
            except StaleJobError:
                job = await self.store.get(job_id)

        if job is None:
            logger.error(f"[{job_id}] Cannot fail a job that does not exist")
            return

        if failed_here:
            metrics.inc_counter("jobs.failed")
            metrics.inc_counter(f"jobs.failed.{kind.value}")
            logger.warning(f"[{job_id}] Failed ({kind.value}): {message}")

        if job.state == JobState.FAILED and job.settlement is None:
            await self._release(job)

    # ── Settlement ───────────────────────────────────────────────────────

    async def _settle_with_retry(self, operation: str, job: GenerationJob) -> None:
        settle = self.ledger.commit if operation == "commit" else self.ledger.release
        last_error: Optional[LedgerError] = None

        for attempt in range(1, self.settlement_max_attempts + 1):
            try:
                await settle(job.owner, job.credits_reserved, job.id)
            except SettlementConflictError:
                raise
            except LedgerError as e:
                last_error = e
                logger.warning(
                    f"[{job.id}] {operation} attempt {attempt}/{self.settlement_max_attempts} failed: {e}"
                )
                if attempt < self.settlement_max_attempts:
                    await asyncio.sleep(self._backoff(attempt))
                continue
            metrics.inc_counter(f"settlement.{operation}")
            return

        raise SettlementError(
            f"{operation} of {job.credits_reserved} credits for {job.id} failed after "
            f"{self.settlement_max_attempts} attempts: {last_error}"
        ) from last_error

    async def _refund_uncommitted(self, job: GenerationJob, cause: SettlementError) -> None:
        """
        Commit attempts ran out without a definite answer. Release instead:
        if the ledger says the commit landed after all, return and let the
        job complete. Otherwise the job fails already released. If the
        ledger is unreachable for both, the job stays in Finalizing and
        recovery replays the commit.
        """
        try:
            await self._settle_with_retry("release", job)
        except SettlementConflictError as e:
            if e.previous != "commit":
                raise
            logger.warning(f"[{job.id}] Commit went through despite errors, completing")
            return
        except SettlementError as e:
            metrics.inc_counter("settlement.pending")
            metrics.record_error("settlement", ErrorKind.SETTLEMENT_ERROR.value, str(e), job.id)
            raise JobClosed("credits unsettled, left in Finalizing for recovery") from e

        raise PhaseFailed(
            ErrorKind.SETTLEMENT_ERROR, SETTLEMENT_FAILED_MESSAGE, settlement=Settlement.RELEASED
        ) from cause

    async def _release(self, job: GenerationJob) -> None:
        try:
            await self._settle_with_retry("release", job)
        except SettlementConflictError as e:
            # Charged although the job failed; record what the ledger did
            logger.error(f"[{job.id}] Release refused: {e}")
            metrics.record_error("settlement", ErrorKind.SETTLEMENT_ERROR.value, str(e), job.id)
            await self._mark_settled(job, SETTLED_BY.get(e.previous, Settlement.COMMITTED))
            return
        except SettlementError as e:
            metrics.inc_counter("settlement.pending")
            metrics.record_error("settlement", ErrorKind.SETTLEMENT_ERROR.value, str(e), job.id)
            logger.error(f"[{job.id}] Release failed, left unsettled for recovery: {e}")
            return
        await self._mark_settled(job, Settlement.RELEASED)

    async def _mark_settled(self, job: GenerationJob, settlement: Settlement) -> GenerationJob:
        while job.settlement is None:
            try:
                job = await self.store.compare_and_set(job.model_copy(update={"settlement": settlement}), job.version)
            except StaleJobError:
                job = await self._reload(job.id)
        return job
