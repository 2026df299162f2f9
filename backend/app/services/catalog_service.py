from __future__ import annotations

import logging
import re
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from backend.app.services.result_cache import Page, TtlResultCache, paginate
from backend.app.services.result_merge import (
    MAX_MERGED_RESULTS,
    ResultItem,
    SourceKind,
    is_playable,
    merge_ranked_results,
)
from backend.app.services.youtube_pages import (
    UpstreamPageError,
    YouTubePageClient,
    parse_search_results,
    parse_trending_items,
)
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("mp3vault.catalog")
COUNTRY_CODE_RE = re.compile(r"^[A-Z]{2}$")
DEFAULT_TRENDING_PAGE_SIZE = 12
DEFAULT_TRENDING_MAX_ITEMS = 100

SUPPORTED_COUNTRIES: tuple[tuple[str, str], ...] = (
    ("US", "United States"),
    ("GB", "United Kingdom"),
    ("CA", "Canada"),
    ("AU", "Australia"),
    ("IN", "India"),
    ("JP", "Japan"),
    ("DE", "Germany"),
    ("FR", "France"),
    ("BR", "Brazil"),
    ("KR", "South Korea"),
)


class CatalogError(Exception):
    pass


class TrendingNotFound(CatalogError):
    pass


@dataclass(frozen=True)
class TrendingSuperset:
    country_code: str
    items: tuple[ResultItem, ...]
    fetched_at: float


class CatalogService:
    def __init__(
        self,
        *,
        page_client: YouTubePageClient,
        search_cache: TtlResultCache[tuple[ResultItem, ...]],
        trending_cache: TtlResultCache[TrendingSuperset],
        search_max_results: int = MAX_MERGED_RESULTS,
        trending_max_items: int = DEFAULT_TRENDING_MAX_ITEMS,
        trending_page_size: int = DEFAULT_TRENDING_PAGE_SIZE,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._page_client = page_client
        self._search_cache = search_cache
        self._trending_cache = trending_cache
        self._search_max_results = search_max_results
        self._trending_max_items = trending_max_items
        self._trending_page_size = trending_page_size
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()

    @property
    def trending_page_size(self) -> int:
        return self._trending_page_size

    def search(self, query: str) -> tuple[ResultItem, ...]:
        normalized_query = query.strip()
        if not normalized_query:
            raise ValueError("query must not be empty")

        cached = self._search_cache.get(normalized_query)
        if cached is not None:
            self._telemetry.emit("catalog.search.cache_hit", result_count=len(cached))
            return cached

        with self._telemetry.span("catalog.search.fetch") as span:
            try:
                audio_items, video_items = self._fetch_search_streams(normalized_query)
            except UpstreamPageError as exc:
                LOGGER.warning("search fetch failed query=%r error=%s", normalized_query, exc)
                raise CatalogError("Search failed") from exc

            results = merge_ranked_results(
                audio_items,
                video_items,
                limit=self._search_max_results,
            )
            span["result_count"] = len(results)

        self._search_cache.put(normalized_query, results)
        return results

    def trending(self, country_code: str, page: int = 1) -> Page[ResultItem]:
        normalized_country = country_code.strip().upper()
        if COUNTRY_CODE_RE.match(normalized_country) is None:
            raise ValueError(
                "Invalid country code. Use ISO 3166-1 alpha-2 format (e.g., US, GB, JP)."
            )

        superset = self._trending_cache.get(normalized_country)
        if superset is None:
            superset = self._fetch_trending_superset(normalized_country)
            self._trending_cache.put(normalized_country, superset)
        else:
            self._telemetry.emit(
                "catalog.trending.cache_hit",
                country_code=normalized_country,
                total=len(superset.items),
            )

        result_page = paginate(superset.items, page, self._trending_page_size)
        LOGGER.debug(
            "trending page country=%s page=%s returned=%s total=%s",
            normalized_country,
            page,
            len(result_page.items),
            result_page.total,
        )
        return result_page

    def _fetch_search_streams(self, query: str) -> tuple[list[ResultItem], list[ResultItem]]:
        audio_url = self._page_client.search_url(query, audio_biased=True)
        video_url = self._page_client.search_url(query, audio_biased=False)
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="mp3vault-search") as pool:
            audio_future = pool.submit(self._page_client.fetch_html, audio_url)
            video_future = pool.submit(self._page_client.fetch_html, video_url)
            audio_page = audio_future.result()
            video_page = video_future.result()

        return (
            parse_search_results(audio_page.html, source_kind=SourceKind.AUDIO_SEARCH),
            parse_search_results(video_page.html, source_kind=SourceKind.VIDEO_SEARCH),
        )

    def _fetch_trending_superset(self, country_code: str) -> TrendingSuperset:
        with self._telemetry.span("catalog.trending.fetch", country_code=country_code) as span:
            try:
                fetched = self._page_client.fetch_html(
                    self._page_client.trending_url(country_code),
                    accept_language=f"{country_code.lower()},en-US;q=0.9",
                )
                parsed = parse_trending_items(fetched.html)
            except UpstreamPageError as exc:
                LOGGER.warning(
                    "trending fetch failed country=%s error=%s",
                    country_code,
                    exc,
                )
                raise CatalogError(f"Trending lookup failed for country: {country_code}") from exc

            items = tuple(item for item in parsed if is_playable(item))[: self._trending_max_items]
            span["total"] = len(items)

        if not items:
            raise TrendingNotFound(f"No trending videos found for country: {country_code}")
        return TrendingSuperset(country_code=country_code, items=items, fetched_at=time.time())
