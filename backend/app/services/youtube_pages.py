from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.parse import quote_plus
from urllib.request import Request, urlopen

from backend.app.services.result_merge import ResultItem, SourceKind

SEARCH_URL = "https://www.youtube.com/results"
TRENDING_URL = "https://www.youtube.com/feed/trending"
# Search filter tokens: "videos only" and "videos only, sorted for music".
AUDIO_SEARCH_FILTER = "EgIQAQ%253D%253D"
VIDEO_SEARCH_FILTER = "EgIQAUICCAE%253D"
TRENDING_MUSIC_CHART = "4gINGgt5dG1hX2NoYXJ0cw%3D%3D"
MAX_ITEMS_PER_PAGE = 20
OFFICIAL_ARTIST_BADGE = "Official Artist Channel"

_INITIAL_DATA_RE = re.compile(r"var ytInitialData = (.+?);</script>", re.DOTALL)


class UpstreamPageError(Exception):
    pass


@dataclass(frozen=True)
class PageFetch:
    url: str
    html: str
    http_status: int | None


class YouTubePageClient:
    def __init__(self, *, user_agent: str, timeout_seconds: float) -> None:
        self._user_agent = user_agent
        self._timeout_seconds = timeout_seconds

    def search_url(self, query: str, *, audio_biased: bool) -> str:
        if audio_biased:
            encoded = quote_plus(f"{query} audio")
            return f"{SEARCH_URL}?search_query={encoded}&sp={AUDIO_SEARCH_FILTER}"
        return f"{SEARCH_URL}?search_query={quote_plus(query)}&sp={VIDEO_SEARCH_FILTER}"

    def trending_url(self, country_code: str) -> str:
        return f"{TRENDING_URL}?bp={TRENDING_MUSIC_CHART}&gl={country_code}"

    def fetch_html(self, url: str, *, accept_language: str = "en-US,en;q=0.9") -> PageFetch:
        request = Request(
            url,
            headers={
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": accept_language,
                "Referer": "https://www.youtube.com/",
                "User-Agent": self._user_agent,
            },
            method="GET",
        )
        try:
            with urlopen(request, timeout=self._timeout_seconds) as response:
                charset = response.headers.get_content_charset() or "utf-8"
                return PageFetch(
                    url=url,
                    html=response.read().decode(charset, errors="replace"),
                    http_status=getattr(response, "status", None),
                )
        except HTTPError as exc:
            raise UpstreamPageError(f"upstream returned http_{exc.code} for {url}") from exc
        except (URLError, TimeoutError, OSError) as exc:
            raise UpstreamPageError(f"upstream request failed: {type(exc).__name__}") from exc


def extract_initial_data(html: str) -> dict[str, Any] | None:
    match = _INITIAL_DATA_RE.search(html)
    if match is None:
        return None
    try:
        parsed = json.loads(match.group(1))
    except json.JSONDecodeError:
        return None
    return _as_dict(parsed) or None


def parse_search_results(html: str, *, source_kind: SourceKind) -> list[ResultItem]:
    data = extract_initial_data(html)
    if data is None:
        return []

    sections = _dig_list(
        data,
        "contents",
        "twoColumnSearchResultsRenderer",
        "primaryContents",
        "sectionListRenderer",
        "contents",
    )
    if not sections:
        return []
    contents = _dig_list(sections[0], "itemSectionRenderer", "contents")

    items: list[ResultItem] = []
    for entry in contents:
        item = _video_renderer_to_item(_as_dict(entry).get("videoRenderer"), source_kind)
        if item is None:
            continue
        items.append(item)
        if len(items) >= MAX_ITEMS_PER_PAGE:
            break
    return items


def parse_trending_items(html: str) -> list[ResultItem]:
    data = extract_initial_data(html)
    if data is None:
        raise UpstreamPageError("could not find initial data in trending page")

    items: list[ResultItem] = []
    for tab in _dig_list(data, "contents", "twoColumnBrowseResultsRenderer", "tabs"):
        for section in _dig_list(tab, "tabRenderer", "content", "sectionListRenderer", "contents"):
            section_contents = _dig_list(section, "itemSectionRenderer", "contents")
            if not section_contents:
                continue
            shelf_items = _dig_list(
                section_contents[0],
                "shelfRenderer",
                "content",
                "expandedShelfContentsRenderer",
                "items",
            )
            for entry in shelf_items:
                item = _video_renderer_to_item(
                    _as_dict(entry).get("videoRenderer"),
                    SourceKind.VIDEO_SEARCH,
                )
                if item is not None:
                    items.append(item)
    return items


def _video_renderer_to_item(raw_renderer: Any, source_kind: SourceKind) -> ResultItem | None:
    renderer = _as_dict(raw_renderer)
    video_id = renderer.get("videoId")
    title = _first_run_text(renderer.get("title"))
    if not isinstance(video_id, str) or not video_id or title is None:
        return None

    duration = _simple_text(renderer.get("lengthText")) or ""
    thumbnails = _dig_list(renderer, "thumbnail", "thumbnails")
    thumbnail_url = _as_dict(thumbnails[-1]).get("url") if thumbnails else None
    if not isinstance(thumbnail_url, str) or not thumbnail_url:
        thumbnail_url = f"https://i.ytimg.com/vi/{video_id}/hqdefault.jpg"

    return ResultItem(
        id=video_id,
        title=title,
        duration_label=duration,
        views_label=_simple_text(renderer.get("viewCountText")) or "0 views",
        channel_name=_first_run_text(renderer.get("ownerText")) or "Unknown Channel",
        thumbnail_url=thumbnail_url,
        is_official=_is_official(renderer, title),
        source_kind=source_kind,
        is_live=_is_live(renderer),
    )


def _is_official(renderer: dict[str, Any], title: str) -> bool:
    lowered = title.lower()
    if "official" in lowered or "music video" in lowered:
        return True
    return any(
        _as_dict(_as_dict(badge).get("metadataBadgeRenderer")).get("tooltip")
        == OFFICIAL_ARTIST_BADGE
        for badge in _as_list(renderer.get("ownerBadges"))
    )


def _is_live(renderer: dict[str, Any]) -> bool:
    for raw_badge in _as_list(renderer.get("badges")):
        badge = _as_dict(raw_badge)
        if badge.get("liveBroadcastBadge"):
            return True
        if _as_dict(badge.get("labelBadge")).get("label") == "LIVE":
            return True
    for raw_overlay in _as_list(renderer.get("thumbnailOverlays")):
        status = _as_dict(_as_dict(raw_overlay).get("thumbnailOverlayTimeStatusRenderer"))
        if _simple_text(status.get("text")) == "LIVE":
            return True
    return False


def _simple_text(raw_value: Any) -> str | None:
    text = _as_dict(raw_value).get("simpleText")
    return text if isinstance(text, str) else None


def _first_run_text(raw_value: Any) -> str | None:
    runs = _as_list(_as_dict(raw_value).get("runs"))
    if not runs:
        return None
    text = _as_dict(runs[0]).get("text")
    return text if isinstance(text, str) else None


def _dig_list(value: Any, *path: str) -> list[Any]:
    current: Any = value
    for key in path:
        current = _as_dict(current).get(key)
    return _as_list(current)


def _as_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {}


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, list):
        return value
    return []
