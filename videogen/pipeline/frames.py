"""
Keyframes: first and last frame of the clip via the image provider.

The same adapter is called twice per job: once with the opening prompt and
once with the closing prompt. Both prompts share the style enhancement so the
two frames stay visually consistent for interpolation.
"""

import os
import logging
from dataclasses import dataclass
from typing import Literal, Optional

from ..errors import FatalProviderError
from ..kie import KieClient
from .adapter import ProgressCallback
from .models import AspectRatio, GenerationRequest, VideoStyle

logger = logging.getLogger(__name__)

# ── Config ───────────────────────────────────────────────────────────────────

IMAGE_PROVIDER_API_KEY = os.getenv("IMAGE_PROVIDER_API_KEY") or os.getenv("KIE_API_KEY", "")
IMAGE_PROVIDER_BASE = os.getenv("IMAGE_PROVIDER_BASE") or os.getenv("KIE_API_BASE", "https://api.kie.ai/api/v1")
IMAGE_MODEL = os.getenv("IMAGE_MODEL", "google/nano-banana")

STYLE_ENHANCEMENTS = {
    VideoStyle.ANIME: "high quality anime art, vibrant colors, studio quality",
    VideoStyle.REALISTIC: "photorealistic, high detail, professional photography",
    VideoStyle.CARTOON: "cartoon style, bright colors, clean lines",
    VideoStyle.CINEMATIC: "cinematic shot, dramatic lighting, film quality",
    VideoStyle.FANTASY: "fantasy art, magical atmosphere, detailed",
    VideoStyle.SCIFI: "science fiction, futuristic, high tech",
    VideoStyle.WATERCOLOR: "watercolor painting, soft edges, artistic",
    VideoStyle.OIL_PAINTING: "oil painting, textured, classical art",
    VideoStyle.PIXEL_ART: "pixel art, retro game style, 16-bit",
    VideoStyle.GHIBLI: "Studio Ghibli style, anime, watercolor backgrounds",
}

FRAME_HINTS = {
    "first": "establishing shot, clear composition, strong opening",
    "last": "conclusive scene, resolution, memorable ending",
}

# Image provider vocabulary differs for a few styles
PROVIDER_STYLES = {
    VideoStyle.REALISTIC: "photorealistic",
    VideoStyle.FANTASY: "fantasy_art",
    VideoStyle.SCIFI: "sci_fi",
}

FrameKind = Literal["first", "last"]


@dataclass(frozen=True)
class FrameParams:
    prompt: str
    style: VideoStyle
    aspect_ratio: AspectRatio
    frame: FrameKind = "first"


def map_image_style(style) -> str:
    try:
        style = VideoStyle(style)
    except ValueError:
        return "general"
    return PROVIDER_STYLES.get(style, style.value)


def build_frame_prompt(request: GenerationRequest, frame: FrameKind) -> str:
    """
    `{base}, {style enhancement}, {frame hint}, masterpiece, best quality`

    The base is the per-frame override when the request has one.
    """
    override = request.first_frame_prompt if frame == "first" else request.last_frame_prompt
    base = override or request.prompt
    enhancement = STYLE_ENHANCEMENTS.get(request.style, "")
    return f"{base}, {enhancement}, {FRAME_HINTS[frame]}, masterpiece, best quality"


def frame_params(request: GenerationRequest, frame: FrameKind) -> FrameParams:
    return FrameParams(
        prompt=build_frame_prompt(request, frame),
        style=request.style,
        aspect_ratio=request.aspect_ratio,
        frame=frame,
    )


class ImageAdapter:
    """Text-to-image via the Kie.ai task API."""

    name = "image"

    def __init__(self, client: Optional[KieClient] = None, model: str = IMAGE_MODEL):
        self.client = client or KieClient(
            api_key=IMAGE_PROVIDER_API_KEY, base_url=IMAGE_PROVIDER_BASE, provider=self.name
        )
        self.model = model

    async def invoke(self, params: FrameParams, on_progress: Optional[ProgressCallback] = None) -> str:
        input_params = {
            "prompt": params.prompt,
            "image_size": AspectRatio(params.aspect_ratio).value,
            "output_format": "png",
            "style": map_image_style(params.style),
        }
        logger.info(f"Generating {params.frame} frame ({self.model}, style={input_params['style']})")

        urls = await self.client.run_task(self.model, input_params, on_progress=on_progress)
        if not urls:
            raise FatalProviderError(f"{self.name} returned no image for the {params.frame} frame", self.name)
        return urls[0]

    async def aclose(self):
        await self.client.aclose()
