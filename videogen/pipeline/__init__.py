"""
Keyframe Video Generation Pipeline

  Admission — rate limit → credit reservation → Pending job
  Pipeline  — first frame → last frame → interpolated video → finalize
  Settlement — exactly one commit (Completed) or release (Failed) per job
"""

from .orchestrator import JobOrchestrator
from .routes import generation_router
from .models import GenerationJob, GenerationRequest, JobState, ErrorKind
from .store import InMemoryJobStore, SupabaseJobStore
from .frames import ImageAdapter
from .animate import VideoAdapter

__all__ = [
    "JobOrchestrator",
    "generation_router",
    "GenerationJob",
    "GenerationRequest",
    "JobState",
    "ErrorKind",
    "InMemoryJobStore",
    "SupabaseJobStore",
    "ImageAdapter",
    "VideoAdapter",
]
