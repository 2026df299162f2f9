from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from enum import Enum

MAX_MERGED_RESULTS = 20
MAX_TWO_PART_MINUTES = 15


class SourceKind(str, Enum):
    AUDIO_SEARCH = "audio_search"
    VIDEO_SEARCH = "video_search"


@dataclass(frozen=True)
class ResultItem:
    id: str
    title: str
    duration_label: str
    views_label: str
    channel_name: str
    thumbnail_url: str
    is_official: bool
    source_kind: SourceKind
    is_live: bool = False


def parse_duration_parts(duration_label: str | None) -> tuple[int, ...] | None:
    if not duration_label:
        return None
    raw_parts = duration_label.strip().split(":")
    parts: list[int] = []
    for raw_part in raw_parts:
        if not raw_part.isdecimal():
            return None
        parts.append(int(raw_part))
    return tuple(parts)


def is_valid_duration(duration_label: str | None) -> bool:
    parts = parse_duration_parts(duration_label)
    if parts is None:
        return False
    if len(parts) >= 3:
        return False
    if len(parts) == 2:
        return parts[0] < MAX_TWO_PART_MINUTES
    return True


def is_playable(item: ResultItem) -> bool:
    return not item.is_live and is_valid_duration(item.duration_label)


def merge_ranked_results(
    audio_items: Sequence[ResultItem],
    video_items: Sequence[ResultItem],
    *,
    limit: int = MAX_MERGED_RESULTS,
) -> tuple[ResultItem, ...]:
    """Combine the audio-biased and video result streams into one ranked list.

    Tiers, walked in order with upstream order kept inside each tier:
      1. every playable audio-stream item
      2. playable video-stream items flagged official
      3. the remaining playable video-stream items
    The first admitted occurrence of an id wins and the result is capped at `limit`.
    """
    playable_audio = [item for item in audio_items if is_playable(item)]
    playable_video = [item for item in video_items if is_playable(item)]

    tiers: tuple[Iterable[ResultItem], ...] = (
        playable_audio,
        (item for item in playable_video if item.is_official),
        (item for item in playable_video if not item.is_official),
    )

    seen_ids: set[str] = set()
    ranked: list[ResultItem] = []
    for tier in tiers:
        for item in tier:
            if item.id in seen_ids:
                continue
            seen_ids.add(item.id)
            ranked.append(item)
            if len(ranked) >= limit:
                return tuple(ranked)
    return tuple(ranked)
