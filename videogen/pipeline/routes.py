"""
FastAPI routes for keyframe video generation.

  POST /generations                 — Submit (202, or 400/402/429/503)
  GET  /generations/{id}            — Current status from the job store
  POST /generations/{id}/cancel     — Cancel (owner only)

Callers are trusted to pass the real user id; WorkerAuthMiddleware keeps
everyone else off these paths.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from ..errors import (
    AdmissionError,
    JobAlreadyFinishedError,
    JobNotFoundError,
    JobOwnershipError,
    JobStoreError,
    RateLimitedError,
)
from .models import CancelRequest, JobStatusResponse, SubmitRequest, SubmitResponse
from .orchestrator import JobOrchestrator

logger = logging.getLogger(__name__)

generation_router = APIRouter(prefix="/generations", tags=["generations"])


def get_orchestrator(request: Request) -> JobOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        raise HTTPException(status_code=503, detail="Generation service is not ready")
    return orchestrator


async def _read_status(orchestrator: JobOrchestrator, job_id: str) -> JobStatusResponse:
    try:
        return await orchestrator.get_status(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    except JobStoreError as e:
        logger.error(f"Status read failed for {job_id}: {e}")
        raise HTTPException(status_code=503, detail="Job store unavailable")


@generation_router.post("", status_code=202, response_model=SubmitResponse)
async def submit_generation(body: SubmitRequest, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    try:
        job_id = await orchestrator.submit(body.user_id, body.request)
    except RateLimitedError as e:
        raise HTTPException(
            status_code=429,
            detail=str(e),
            headers={"Retry-After": str(e.retry_after)},
        )
    except AdmissionError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except JobStoreError as e:
        logger.error(f"Submit failed for {body.user_id}: {e}")
        raise HTTPException(status_code=503, detail="Could not create generation job")

    status = await _read_status(orchestrator, job_id)
    return SubmitResponse(
        job_id=job_id,
        state=status.state,
        credits_reserved=status.credits_reserved,
        estimated_time_seconds=status.metadata["estimated_time_seconds"],
        resolution=status.metadata["resolution"],
    )


@generation_router.get("/{job_id}", response_model=JobStatusResponse)
async def get_generation(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    return await _read_status(orchestrator, job_id)


@generation_router.post("/{job_id}/cancel", response_model=JobStatusResponse)
async def cancel_generation(
    job_id: str,
    body: CancelRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    try:
        await orchestrator.cancel(job_id, body.user_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail=f"Job {job_id} not found")
    except JobOwnershipError:
        raise HTTPException(status_code=403, detail="Not your job")
    except JobAlreadyFinishedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except JobStoreError as e:
        logger.error(f"Cancel failed for {job_id}: {e}")
        raise HTTPException(status_code=503, detail="Job store unavailable")

    return await _read_status(orchestrator, job_id)
