"""
The Motion: interpolate first frame → last frame via the video provider.

Kling image-to-video over the Kie.ai task API:
  - image_url:      FIRST_FRAME
  - tail_image_url: LAST_FRAME
  - prompt:         user prompt + motion + transition description

The provider reports progress while rendering; it is forwarded so the
orchestrator can map it into the job's progress range.
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

from ..errors import FatalProviderError
from ..kie import KieClient
from .adapter import ProgressCallback
from .models import (
    AspectRatio,
    ArtifactName,
    CameraMovement,
    GenerationJob,
    MotionIntensity,
    TransitionType,
    VideoQuality,
)

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

VIDEO_PROVIDER_API_KEY = os.getenv("VIDEO_PROVIDER_API_KEY") or os.getenv("KIE_API_KEY", "")
VIDEO_PROVIDER_BASE = os.getenv("VIDEO_PROVIDER_BASE") or os.getenv("KIE_API_BASE", "https://api.kie.ai/api/v1")
VIDEO_MODEL = os.getenv("VIDEO_MODEL", "kling/v2-1-pro")

MOTION_DESCRIPTIONS = {
    MotionIntensity.LOW: "subtle movement, gentle animation",
    MotionIntensity.MEDIUM: "moderate motion, smooth transitions",
    MotionIntensity.HIGH: "dynamic movement, energetic animation",
}

TRANSITION_DESCRIPTIONS = {
    TransitionType.SMOOTH: "smooth interpolation between frames",
    TransitionType.FADE: "fade transition effect",
    TransitionType.MORPH: "morphing transformation",
    TransitionType.ZOOM: "zooming transition",
    TransitionType.ROTATE: "rotating transition",
    TransitionType.SLIDE: "sliding transition",
}

CAMERA_MOVEMENTS = {
    CameraMovement.PAN_LEFT: "pan_left",
    CameraMovement.PAN_RIGHT: "pan_right",
    CameraMovement.ZOOM_IN: "zoom_in",
    CameraMovement.ZOOM_OUT: "zoom_out",
    CameraMovement.ORBIT: "orbit",
    CameraMovement.DOLLY: "dolly_forward",
}

NEGATIVE_PROMPT = "blur, distort, low quality, flicker"


@dataclass(frozen=True)
class InterpolationParams:
    first_frame_url: str
    last_frame_url: str
    prompt: str
    duration: int
    aspect_ratio: AspectRatio
    quality: VideoQuality = VideoQuality.STANDARD
    camera_movement: CameraMovement = CameraMovement.NONE


def map_camera_movement(movement: Optional[CameraMovement]) -> str:
    if movement is None:
        return "static"
    return CAMERA_MOVEMENTS.get(movement, "static")


def build_video_prompt(prompt: str, motion: MotionIntensity, transition: TransitionType) -> str:
    return ", ".join([
        prompt,
        MOTION_DESCRIPTIONS.get(motion, MOTION_DESCRIPTIONS[MotionIntensity.MEDIUM]),
        TRANSITION_DESCRIPTIONS.get(transition, TRANSITION_DESCRIPTIONS[TransitionType.SMOOTH]),
        "transitioning from first frame to last frame",
        "maintaining consistent style and quality throughout",
    ])


def interpolation_params(job: GenerationJob) -> InterpolationParams:
    request = job.request
    return InterpolationParams(
        first_frame_url=job.artifacts[ArtifactName.FIRST_FRAME.value],
        last_frame_url=job.artifacts[ArtifactName.LAST_FRAME.value],
        prompt=build_video_prompt(request.prompt, request.motion_intensity, request.transition),
        duration=request.duration,
        aspect_ratio=request.aspect_ratio,
        quality=request.quality,
        camera_movement=request.camera_movement,
    )


class VideoAdapter:
    """First/last-frame interpolation via the Kie.ai task API."""

    name = "video"

    def __init__(self, client: Optional[KieClient] = None, model: str = VIDEO_MODEL):
        self.client = client or KieClient(
            api_key=VIDEO_PROVIDER_API_KEY, base_url=VIDEO_PROVIDER_BASE, provider=self.name
        )
        self.model = model

    async def invoke(self, params: InterpolationParams, on_progress: Optional[ProgressCallback] = None) -> str:
        input_params = {
            "prompt": params.prompt,
            "image_url": params.first_frame_url,
            "tail_image_url": params.last_frame_url,
            "duration": str(params.duration),
            "aspect_ratio": AspectRatio(params.aspect_ratio).value,
            "negative_prompt": NEGATIVE_PROMPT,
            "cfg_scale": 0.8 if params.quality == VideoQuality.PROFESSIONAL else 0.5,
            "camera_movement": map_camera_movement(params.camera_movement),
        }
        logger.info(
            f"Interpolating {params.duration}s video ({self.model}, camera={input_params['camera_movement']})"
        )

        urls = await self.client.run_task(self.model, input_params, on_progress=on_progress)
        if not urls:
            raise FatalProviderError(f"{self.name} returned no video", self.name)
        return urls[0]

    async def aclose(self):
        await self.client.aclose()
