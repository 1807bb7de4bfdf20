"""
Credit cost, output resolution and time estimate for a generation request.
"""

import math

from .models import AspectRatio, GenerationRequest, VideoQuality

BASE_CREDITS = {3: 50, 5: 80, 10: 150}

# Multipliers in percent so rounding up is exact
QUALITY_MULTIPLIER = {
    VideoQuality.STANDARD: 100,
    VideoQuality.HD: 150,
    VideoQuality.PROFESSIONAL: 200,
}

RESOLUTIONS = {
    VideoQuality.STANDARD: {
        AspectRatio.LANDSCAPE: "1280x720",
        AspectRatio.PORTRAIT: "720x1280",
        AspectRatio.SQUARE: "720x720",
        AspectRatio.CLASSIC: "960x720",
    },
    VideoQuality.HD: {
        AspectRatio.LANDSCAPE: "1920x1080",
        AspectRatio.PORTRAIT: "1080x1920",
        AspectRatio.SQUARE: "1080x1080",
        AspectRatio.CLASSIC: "1440x1080",
    },
    VideoQuality.PROFESSIONAL: {
        AspectRatio.LANDSCAPE: "3840x2160",
        AspectRatio.PORTRAIT: "2160x3840",
        AspectRatio.SQUARE: "2160x2160",
        AspectRatio.CLASSIC: "2880x2160",
    },
}
DEFAULT_RESOLUTION = "1920x1080"

BASE_TIME_SECONDS = {3: 60, 5: 90, 10: 150}
QUALITY_TIME_FACTOR = {
    VideoQuality.STANDARD: 100,
    VideoQuality.HD: 130,
    VideoQuality.PROFESSIONAL: 160,
}


def calculate_credits(request: GenerationRequest) -> int:
    """80 credits for a standard 5s clip; hd ×1.5, professional ×2, rounded up."""
    base = BASE_CREDITS.get(request.duration, BASE_CREDITS[5])
    return math.ceil(base * QUALITY_MULTIPLIER.get(request.quality, 100) / 100)


def get_resolution(quality: VideoQuality, aspect_ratio: AspectRatio) -> str:
    return RESOLUTIONS.get(quality, {}).get(aspect_ratio, DEFAULT_RESOLUTION)


def estimate_time_seconds(request: GenerationRequest) -> int:
    base = BASE_TIME_SECONDS.get(request.duration, BASE_TIME_SECONDS[5])
    return math.ceil(base * QUALITY_TIME_FACTOR.get(request.quality, 100) / 100)
