"""Job stores: compare-and-set, id uniqueness, unsettled listing."""

from unittest.mock import MagicMock

import pytest

from videogen.errors import DuplicateJobError, JobNotFoundError, StaleJobError
from videogen.pipeline.models import GenerationJob, GenerationRequest, JobState, Settlement
from videogen.pipeline.store import InMemoryJobStore, SupabaseJobStore


def _job(job_id="job-1", **fields) -> GenerationJob:
    return GenerationJob(id=job_id, owner="u", request=GenerationRequest(prompt="p"), credits_reserved=80, **fields)


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_create_and_get_return_copies():
    store = InMemoryJobStore()
    created = await store.create(_job())

    created.artifacts["video"] = "https://tampered"
    fetched = await store.get("job-1")

    assert fetched.version == 0
    assert fetched.artifacts == {}


@pytest.mark.asyncio
async def test_ids_are_never_reused():
    store = InMemoryJobStore()
    await store.create(_job())

    with pytest.raises(DuplicateJobError):
        await store.create(_job())


@pytest.mark.asyncio
async def test_compare_and_set_bumps_version():
    store = InMemoryJobStore()
    job = await store.create(_job())

    updated = await store.compare_and_set(job.model_copy(update={"progress": 10}), job.version)

    assert updated.version == 1
    assert updated.updated_at >= job.updated_at
    assert (await store.get("job-1")).progress == 10


@pytest.mark.asyncio
async def test_compare_and_set_with_old_version_is_stale():
    store = InMemoryJobStore()
    job = await store.create(_job())
    await store.compare_and_set(job.model_copy(update={"progress": 10}), 0)

    with pytest.raises(StaleJobError):
        await store.compare_and_set(job.model_copy(update={"progress": 20}), 0)
    assert (await store.get("job-1")).progress == 10


@pytest.mark.asyncio
async def test_compare_and_set_unknown_job():
    with pytest.raises(JobNotFoundError):
        await InMemoryJobStore().compare_and_set(_job("ghost"), 0)


@pytest.mark.asyncio
async def test_list_unsettled_skips_settled_jobs():
    store = InMemoryJobStore()
    await store.create(_job("open"))
    done = await store.create(_job("done"))
    await store.compare_and_set(
        done.model_copy(update={"state": JobState.FAILED, "settlement": Settlement.RELEASED}), done.version
    )

    assert [j.id for j in await store.list_unsettled()] == ["open"]


@pytest.mark.asyncio
async def test_get_missing_returns_none():
    assert await InMemoryJobStore().get("nope") is None


# ---------------------------------------------------------------------------
# Supabase store
# ---------------------------------------------------------------------------


def _row(job: GenerationJob) -> dict:
    return {"id": job.id, "version": job.version, "payload": job.model_dump(mode="json")}


@pytest.mark.asyncio
async def test_supabase_create_inserts_payload():
    sb = MagicMock()
    store = SupabaseJobStore(sb)

    await store.create(_job())

    sb.table.assert_called_with("generation_jobs")
    row = sb.table.return_value.insert.call_args.args[0]
    assert row["id"] == "job-1"
    assert row["state"] == "Pending"
    assert row["settlement"] is None
    assert row["payload"]["request"]["prompt"] == "p"


@pytest.mark.asyncio
async def test_supabase_duplicate_key_raises():
    class UniqueViolation(Exception):
        code = "23505"

    sb = MagicMock()
    sb.table.return_value.insert.return_value.execute.side_effect = UniqueViolation("duplicate key")

    with pytest.raises(DuplicateJobError):
        await SupabaseJobStore(sb).create(_job())


@pytest.mark.asyncio
async def test_supabase_get_rebuilds_job():
    sb = MagicMock()
    stored = _job(version=4, state=JobState.GENERATING_VIDEO)
    select = sb.table.return_value.select.return_value.eq.return_value.limit.return_value
    select.execute.return_value.data = [_row(stored)]

    job = await SupabaseJobStore(sb).get("job-1")

    assert job.state == JobState.GENERATING_VIDEO
    assert job.version == 4


@pytest.mark.asyncio
async def test_supabase_compare_and_set_guards_on_version():
    sb = MagicMock()
    update = sb.table.return_value.update.return_value.eq.return_value.eq.return_value
    update.execute.return_value.data = [{"id": "job-1"}]

    stored = await SupabaseJobStore(sb).compare_and_set(_job(progress=30), expected_version=2)

    assert stored.version == 3
    sb.table.return_value.update.return_value.eq.return_value.eq.assert_called_once_with("version", 2)


@pytest.mark.asyncio
async def test_supabase_compare_and_set_conflict_is_stale():
    sb = MagicMock()
    sb.table.return_value.update.return_value.eq.return_value.eq.return_value.execute.return_value.data = []
    select = sb.table.return_value.select.return_value.eq.return_value.limit.return_value
    select.execute.return_value.data = [_row(_job(version=5))]

    with pytest.raises(StaleJobError):
        await SupabaseJobStore(sb).compare_and_set(_job(), expected_version=2)
