from __future__ import annotations

import re
from dataclasses import dataclass

FALLBACK_AUDIO_FORMAT_ID = "140"
DEFAULT_FPS = "24"

_MP4_VIDEO_LINE_RE = re.compile(r"^[0-9]+\s+mp4")
_RESOLUTION_RE = re.compile(r"(\d+)x(\d+)")
_FILESIZE_RE = re.compile(r"(\d+(?:\.\d+)?[KMG]iB)")
_FPS_RE = re.compile(r"(\d+)fps")


@dataclass(frozen=True)
class VideoQuality:
    format_id: str
    ext: str
    resolution: str
    filesize: str
    quality: str
    fps: str
    has_audio: bool

    @property
    def height(self) -> int:
        match = _RESOLUTION_RE.search(self.resolution)
        return int(match.group(2)) if match else 0


def best_audio_format_id(listing: str) -> str:
    candidates = [
        line.split()[0]
        for line in listing.splitlines()
        if "audio only" in line and "mp4a" in line and line.split()
    ]
    return candidates[-1] if candidates else FALLBACK_AUDIO_FORMAT_ID


def parse_video_qualities(listing: str) -> list[VideoQuality]:
    """Turn `yt-dlp -F` output into one mp4 quality per height, tallest first.

    Video-only formats are paired with the best m4a audio track.
    """
    audio_id = best_audio_format_id(listing)
    qualities: list[VideoQuality] = []
    for line in listing.splitlines():
        if _MP4_VIDEO_LINE_RE.match(line) is None:
            continue
        resolution_match = _RESOLUTION_RE.search(line)
        if resolution_match is None:
            continue

        parts = line.split()
        has_audio = "video only" not in line
        filesize_match = _FILESIZE_RE.search(line)
        fps_match = _FPS_RE.search(line)
        qualities.append(
            VideoQuality(
                format_id=parts[0] if has_audio else f"{parts[0]}+{audio_id}",
                ext=parts[1],
                resolution=resolution_match.group(0),
                filesize=filesize_match.group(1) if filesize_match else "Unknown size",
                quality=f"{resolution_match.group(2)}p MP4",
                fps=fps_match.group(1) if fps_match else DEFAULT_FPS,
                has_audio=has_audio,
            )
        )

    qualities.sort(key=lambda quality: quality.height, reverse=True)
    unique: list[VideoQuality] = []
    seen_heights: set[int] = set()
    for quality in qualities:
        if quality.height in seen_heights:
            continue
        seen_heights.add(quality.height)
        unique.append(quality)
    return unique
