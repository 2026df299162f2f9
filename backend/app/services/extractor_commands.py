"""Argument construction for the external extractor (yt-dlp)."""

from __future__ import annotations

import re
from collections.abc import Sequence
from pathlib import Path
from uuid import UUID

MAX_FILE_NAME_LENGTH = 200
DEFAULT_VIDEO_FORMAT = "bestvideo[ext=mp4]+bestaudio[ext=m4a]/best[ext=mp4]/best"
STREAM_AUDIO_FORMAT = "bestaudio[ext=m4a]/bestaudio"

_UNSAFE_FILE_NAME_CHARS_RE = re.compile(r"[^\w\s\-.,()\[\]'&]")
_WHITESPACE_RE = re.compile(r"\s+")


def watch_url(video_id: str) -> str:
    return f"https://youtube.com/watch?v={video_id}"


def safe_file_name(title: str, job_id: UUID, extension: str) -> str:
    """Build a filesystem-safe name ending in `_<job_id>.<extension>`.

    The title part is truncated so the whole name fits in MAX_FILE_NAME_LENGTH
    and the identifier suffix always survives.
    """
    cleaned = _UNSAFE_FILE_NAME_CHARS_RE.sub("", title)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip().lstrip(".")
    suffix = f"_{job_id}.{extension}"
    stem = cleaned[: MAX_FILE_NAME_LENGTH - len(suffix)].rstrip() or "download"
    return f"{stem}{suffix}"


def audio_download_args(
    video_id: str,
    *,
    output_path: Path,
    credential_path: Path | None,
) -> list[str]:
    return [
        "--extract-audio",
        "--audio-format",
        "mp3",
        "--format",
        "bestaudio/best",
        *_cookie_args(credential_path),
        "--postprocessor-args",
        "-acodec libmp3lame -ac 2 -b:a 320k",
        "--concurrent-fragments",
        "8",
        "--no-embed-thumbnail",
        "--no-add-metadata",
        "--no-playlist",
        "--no-warnings",
        "--no-progress",
        "--sponsorblock-remove",
        "sponsor,selfpromo",
        "--force-keyframes-at-cuts",
        watch_url(video_id),
        "-o",
        str(output_path),
    ]


def video_download_args(
    video_id: str,
    *,
    output_path: Path,
    credential_path: Path | None,
    format_selector: str | None = None,
) -> list[str]:
    return [
        "--no-playlist",
        "--no-warnings",
        "--no-progress",
        *_cookie_args(credential_path),
        "-f",
        format_selector or DEFAULT_VIDEO_FORMAT,
        "--merge-output-format",
        "mp4",
        "--add-metadata",
        "--embed-thumbnail",
        watch_url(video_id),
        "-o",
        str(output_path),
    ]


def stream_args(video_id: str, *, credential_path: Path | None) -> list[str]:
    return [
        "-f",
        STREAM_AUDIO_FORMAT,
        *_cookie_args(credential_path),
        "-o",
        "-",
        "--no-warnings",
        "--no-playlist",
        "--quiet",
        watch_url(video_id),
    ]


def probe_args(video_id: str, *, credential_path: Path | None) -> list[str]:
    return ["-F", *_cookie_args(credential_path), watch_url(video_id)]


def build_command(command_prefix: Sequence[str], args: Sequence[str]) -> list[str]:
    return [*command_prefix, *args]


def _cookie_args(credential_path: Path | None) -> list[str]:
    if credential_path is None:
        return []
    return ["--cookies", str(credential_path)]
