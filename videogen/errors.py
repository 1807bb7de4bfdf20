"""
Error taxonomy for the generation worker.

  Admission   — returned synchronously from submit, never stored on a job
  Provider    — raised by adapters; retryable vs fatal drives phase retries
  Ledger      — credit ledger transport / settlement problems
  Store       — job record persistence and optimistic-concurrency conflicts
"""

from typing import Optional


class GenerationError(Exception):
    """Base class for every error raised by this package."""


# ── Admission ─────────────────────────────────────────────────────────────────

class AdmissionError(GenerationError):
    status_code = 400


class InvalidRequestError(AdmissionError):
    status_code = 400


class RateLimitedError(AdmissionError):
    status_code = 429

    def __init__(self, retry_after: int, reset_at: float, limit: int):
        self.retry_after = retry_after
        self.reset_at = reset_at
        self.limit = limit
        super().__init__(f"Rate limit exceeded ({limit}/window). Try again in {retry_after}s.")


class InsufficientCreditsError(AdmissionError):
    status_code = 402

    def __init__(self, required: int):
        self.required = required
        super().__init__(f"Insufficient credits. This generation requires {required} credits.")


class CreditsUnavailableError(AdmissionError):
    status_code = 503


# ── Providers ─────────────────────────────────────────────────────────────────

class ProviderError(GenerationError):
    def __init__(self, message: str, provider: str = "", status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class RetryableProviderError(ProviderError):
    """Transient failure (429, 5xx, connection reset); the phase may be retried."""


class ProviderTimeoutError(RetryableProviderError):
    """The provider did not answer within the phase deadline."""


class FatalProviderError(ProviderError):
    """The provider rejected the request or failed the task. Not retried."""


# ── Credit ledger ─────────────────────────────────────────────────────────────

class LedgerError(GenerationError):
    pass


class LedgerUnavailableError(LedgerError):
    pass


class SettlementError(LedgerError):
    """Commit/release could not be completed after all retries."""


class SettlementConflictError(LedgerError):
    """The reservation was already settled the other way. Never retried."""

    def __init__(self, reservation_id: str, previous: str):
        self.reservation_id = reservation_id
        self.previous = previous
        super().__init__(f"Reservation {reservation_id} already settled by {previous}")


# ── Job store ─────────────────────────────────────────────────────────────────

class JobStoreError(GenerationError):
    pass


class StaleJobError(JobStoreError):
    """Compare-and-set lost: the record's version moved on."""


class DuplicateJobError(JobStoreError):
    pass


class RateLimitStoreError(GenerationError):
    pass


# ── Lookup / ownership ────────────────────────────────────────────────────────

class JobNotFoundError(GenerationError, LookupError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class JobOwnershipError(GenerationError, PermissionError):
    pass


class JobAlreadyFinishedError(GenerationError):
    pass
