"""
Job record persistence.

Every write after create is a compare-and-set on `version`: the caller passes
the version it read, the store bumps it by one. A writer that lost the race
gets StaleJobError and must re-read.

InMemoryJobStore   — single process, tests
SupabaseJobStore   — `generation_jobs` table, shared by every worker
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Set

from supabase import Client

from ..errors import DuplicateJobError, JobNotFoundError, JobStoreError, StaleJobError
from .models import GenerationJob

logger = logging.getLogger(__name__)

JOBS_TABLE = "generation_jobs"


class JobStore(Protocol):
    async def create(self, job: GenerationJob) -> GenerationJob: ...

    async def get(self, job_id: str) -> Optional[GenerationJob]: ...

    async def compare_and_set(self, job: GenerationJob, expected_version: int) -> GenerationJob: ...

    async def list_unsettled(self) -> List[GenerationJob]: ...


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# In-memory store
# ═════════════════════════════════════════════════════════════════════════════

class InMemoryJobStore:
    def __init__(self):
        self._jobs: Dict[str, GenerationJob] = {}
        self._used_ids: Set[str] = set()
        self._lock = asyncio.Lock()

    async def create(self, job: GenerationJob) -> GenerationJob:
        async with self._lock:
            if job.id in self._used_ids:
                raise DuplicateJobError(f"Job id {job.id} already used")
            stored = job.model_copy(deep=True, update={"version": 0})
            self._jobs[job.id] = stored
            self._used_ids.add(job.id)
            return stored.model_copy(deep=True)

    async def get(self, job_id: str) -> Optional[GenerationJob]:
        async with self._lock:
            job = self._jobs.get(job_id)
            return job.model_copy(deep=True) if job else None

    async def compare_and_set(self, job: GenerationJob, expected_version: int) -> GenerationJob:
        async with self._lock:
            current = self._jobs.get(job.id)
            if current is None:
                raise JobNotFoundError(job.id)
            if current.version != expected_version:
                raise StaleJobError(
                    f"Job {job.id} is at version {current.version}, expected {expected_version}"
                )
            stored = job.model_copy(deep=True, update={"version": expected_version + 1, "updated_at": _now()})
            self._jobs[job.id] = stored
            return stored.model_copy(deep=True)

    async def list_unsettled(self) -> List[GenerationJob]:
        async with self._lock:
            return [job.model_copy(deep=True) for job in self._jobs.values() if job.settlement is None]


# ═════════════════════════════════════════════════════════════════════════════
# Supabase store
# ═════════════════════════════════════════════════════════════════════════════

class SupabaseJobStore:
    """
    Table `generation_jobs`:
      id text primary key, owner text, state text, settlement text null,
      version int, payload jsonb, created_at timestamptz, updated_at timestamptz

    `payload` holds the full record; the other columns exist for filtering
    and for the version guard on update.
    """

    def __init__(self, client: Client, table: str = JOBS_TABLE):
        self.sb = client
        self.table = table

    def _row(self, job: GenerationJob) -> dict:
        return {
            "id": job.id,
            "owner": job.owner,
            "state": job.state.value,
            "settlement": job.settlement.value if job.settlement else None,
            "version": job.version,
            "payload": job.model_dump(mode="json"),
            "created_at": job.created_at.isoformat(),
            "updated_at": job.updated_at.isoformat(),
        }

    @staticmethod
    def _from_row(row: dict) -> GenerationJob:
        job = GenerationJob.model_validate(row["payload"])
        return job.model_copy(update={"version": row.get("version", job.version)})

    async def create(self, job: GenerationJob) -> GenerationJob:
        stored = job.model_copy(update={"version": 0})
        try:
            self.sb.table(self.table).insert(self._row(stored)).execute()
        except Exception as e:
            if getattr(e, "code", None) == "23505":
                raise DuplicateJobError(f"Job id {job.id} already used") from e
            raise JobStoreError(f"Failed to create job {job.id}: {e}") from e
        return stored

    async def get(self, job_id: str) -> Optional[GenerationJob]:
        try:
            result = self.sb.table(self.table).select("*").eq("id", job_id).limit(1).execute()
        except Exception as e:
            raise JobStoreError(f"Failed to read job {job_id}: {e}") from e
        if not result.data:
            return None
        return self._from_row(result.data[0])

    async def compare_and_set(self, job: GenerationJob, expected_version: int) -> GenerationJob:
        stored = job.model_copy(update={"version": expected_version + 1, "updated_at": _now()})
        try:
            result = (
                self.sb.table(self.table)
                .update(self._row(stored))
                .eq("id", job.id)
                .eq("version", expected_version)
                .execute()
            )
        except Exception as e:
            raise JobStoreError(f"Failed to update job {job.id}: {e}") from e

        if not result.data:
            if await self.get(job.id) is None:
                raise JobNotFoundError(job.id)
            raise StaleJobError(f"Job {job.id} moved past version {expected_version}")
        return stored

    async def list_unsettled(self) -> List[GenerationJob]:
        try:
            result = self.sb.table(self.table).select("*").is_("settlement", "null").execute()
        except Exception as e:
            raise JobStoreError(f"Failed to list unsettled jobs: {e}") from e
        return [self._from_row(row) for row in result.data or []]
