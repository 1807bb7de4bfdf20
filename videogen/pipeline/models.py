"""
Pydantic models and enums for the keyframe video generation pipeline.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


# ── Job State ────────────────────────────────────────────────────────────────

class JobState(str, Enum):
    PENDING = "Pending"
    GENERATING_FIRST_FRAME = "GeneratingFirstFrame"
    GENERATING_LAST_FRAME = "GeneratingLastFrame"
    GENERATING_VIDEO = "GeneratingVideo"
    FINALIZING = "Finalizing"
    COMPLETED = "Completed"
    FAILED = "Failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


# Forward order of the non-terminal states. Failed is reachable from any of them.
STATE_ORDER = [
    JobState.PENDING,
    JobState.GENERATING_FIRST_FRAME,
    JobState.GENERATING_LAST_FRAME,
    JobState.GENERATING_VIDEO,
    JobState.FINALIZING,
    JobState.COMPLETED,
]


def is_valid_transition(current: JobState, target: JobState) -> bool:
    if current.is_terminal:
        return current == target
    if target == JobState.FAILED or target == current:
        return True
    return STATE_ORDER.index(target) == STATE_ORDER.index(current) + 1


class ErrorKind(str, Enum):
    CANCELLED = "cancelled"
    PROVIDER_ERROR = "provider_error"
    PROVIDER_TIMEOUT = "provider_timeout"
    SETTLEMENT_ERROR = "settlement_error"
    INTERNAL_ERROR = "internal_error"


class Settlement(str, Enum):
    COMMITTED = "committed"
    RELEASED = "released"


class ArtifactName(str, Enum):
    FIRST_FRAME = "first_frame"
    LAST_FRAME = "last_frame"
    VIDEO = "video"
    THUMBNAIL = "thumbnail"


# ── Request options ──────────────────────────────────────────────────────────

class VideoStyle(str, Enum):
    ANIME = "anime"
    REALISTIC = "realistic"
    CARTOON = "cartoon"
    CINEMATIC = "cinematic"
    FANTASY = "fantasy"
    SCIFI = "scifi"
    WATERCOLOR = "watercolor"
    OIL_PAINTING = "oil_painting"
    PIXEL_ART = "pixel_art"
    GHIBLI = "ghibli"


class TransitionType(str, Enum):
    SMOOTH = "smooth"
    FADE = "fade"
    MORPH = "morph"
    ZOOM = "zoom"
    ROTATE = "rotate"
    SLIDE = "slide"


class CameraMovement(str, Enum):
    NONE = "none"
    PAN_LEFT = "pan_left"
    PAN_RIGHT = "pan_right"
    ZOOM_IN = "zoom_in"
    ZOOM_OUT = "zoom_out"
    ORBIT = "orbit"
    DOLLY = "dolly"


class MotionIntensity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class VideoQuality(str, Enum):
    STANDARD = "standard"
    HD = "hd"
    PROFESSIONAL = "professional"


class AspectRatio(str, Enum):
    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"
    SQUARE = "1:1"
    CLASSIC = "4:3"


MAX_PROMPT_LENGTH = 1000


class GenerationRequest(BaseModel):
    """Frozen snapshot of what the user asked for. Validated at admission."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    prompt: str = Field(..., min_length=1, max_length=MAX_PROMPT_LENGTH, description="Character / scene description")
    style: VideoStyle = VideoStyle.CINEMATIC
    duration: Literal[3, 5, 10] = 5
    aspect_ratio: AspectRatio = AspectRatio.LANDSCAPE
    quality: VideoQuality = VideoQuality.STANDARD
    first_frame_prompt: Optional[str] = Field(None, max_length=MAX_PROMPT_LENGTH)
    last_frame_prompt: Optional[str] = Field(None, max_length=MAX_PROMPT_LENGTH)
    transition: TransitionType = TransitionType.SMOOTH
    motion_intensity: MotionIntensity = MotionIntensity.MEDIUM
    camera_movement: CameraMovement = CameraMovement.NONE
    fps: Literal[24, 30, 60] = 30

    @field_validator("prompt")
    @classmethod
    def _prompt_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("prompt must not be blank")
        return v

    @field_validator("first_frame_prompt", "last_frame_prompt")
    @classmethod
    def _blank_override_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        return v.strip() or None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Job record ───────────────────────────────────────────────────────────────

class GenerationJob(BaseModel):
    id: str
    owner: str
    request: GenerationRequest
    tier: str = "free"
    state: JobState = JobState.PENDING
    progress: int = Field(0, ge=0, le=100)
    artifacts: dict[str, str] = Field(default_factory=dict)
    credits_reserved: int = Field(..., ge=0)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    settlement: Optional[Settlement] = None
    cancel_requested: bool = False
    metadata: dict = Field(default_factory=dict)
    version: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal


# ── API Models ───────────────────────────────────────────────────────────────

class SubmitRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    request: GenerationRequest


class SubmitResponse(BaseModel):
    job_id: str
    state: JobState
    credits_reserved: int
    estimated_time_seconds: int
    resolution: str


class CancelRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class JobStatusResponse(BaseModel):
    job_id: str
    owner: str
    state: JobState
    progress: int = 0
    artifacts: dict[str, str] = Field(default_factory=dict)
    credits_reserved: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    metadata: dict = Field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: GenerationJob) -> "JobStatusResponse":
        return cls(
            job_id=job.id,
            owner=job.owner,
            state=job.state,
            progress=job.progress,
            artifacts=dict(job.artifacts),
            credits_reserved=job.credits_reserved,
            error=job.error,
            error_kind=job.error_kind,
            metadata=dict(job.metadata),
            created_at=job.created_at,
            updated_at=job.updated_at,
        )
