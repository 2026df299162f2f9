from __future__ import annotations

from functools import lru_cache

from backend.app.config import AppSettings, load_settings
from backend.app.services.catalog_service import CatalogService, TrendingSuperset
from backend.app.services.credential_service import CredentialLifecycleManager, RetryPolicy
from backend.app.services.download_sweeper import DownloadSweeper
from backend.app.services.job_supervisor import JobSupervisor, JobTimeouts
from backend.app.services.result_cache import TtlResultCache
from backend.app.services.result_merge import ResultItem
from backend.app.services.youtube_pages import YouTubePageClient
from backend.app.telemetry import TelemetryClient, build_telemetry_client


@lru_cache(maxsize=1)
def get_settings() -> AppSettings:
    return load_settings()


@lru_cache(maxsize=1)
def get_telemetry() -> TelemetryClient:
    settings = get_settings()
    return build_telemetry_client(
        enabled=settings.telemetry_enabled,
        sink=settings.telemetry_sink,
    )


@lru_cache(maxsize=1)
def get_job_supervisor() -> JobSupervisor:
    settings = get_settings()
    return JobSupervisor(
        downloads_dir=settings.downloads_dir,
        credential_path=settings.credential_path,
        command_prefix=settings.extractor_command_parts,
        timeouts=JobTimeouts(
            audio_seconds=settings.audio_job_timeout_seconds,
            video_seconds=settings.video_job_timeout_seconds,
            probe_seconds=settings.probe_timeout_seconds,
        ),
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_catalog_service() -> CatalogService:
    settings = get_settings()
    search_cache: TtlResultCache[tuple[ResultItem, ...]] = TtlResultCache(
        ttl_seconds=settings.search_cache_ttl_seconds,
        name="search",
    )
    trending_cache: TtlResultCache[TrendingSuperset] = TtlResultCache(
        ttl_seconds=settings.trending_cache_ttl_seconds,
        name="trending",
    )
    return CatalogService(
        page_client=YouTubePageClient(
            user_agent=settings.upstream_user_agent,
            timeout_seconds=settings.upstream_http_timeout_seconds,
        ),
        search_cache=search_cache,
        trending_cache=trending_cache,
        search_max_results=settings.search_max_results,
        trending_max_items=settings.trending_max_items,
        trending_page_size=settings.trending_page_size,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_credential_manager() -> CredentialLifecycleManager:
    settings = get_settings()
    return CredentialLifecycleManager(
        artifact_path=settings.credential_path,
        source_url=settings.credential_source_url,
        access_key=settings.credential_access_key,
        refresh_interval_seconds=settings.credential_refresh_interval_seconds,
        retry_policy=RetryPolicy(
            max_attempts=settings.credential_retry_attempts,
            delay_seconds=settings.credential_retry_delay_seconds,
        ),
        http_timeout_seconds=settings.credential_http_timeout_seconds,
        telemetry=get_telemetry(),
    )


@lru_cache(maxsize=1)
def get_download_sweeper() -> DownloadSweeper:
    settings = get_settings()
    return DownloadSweeper(
        downloads_dir=settings.downloads_dir,
        max_age_seconds=settings.download_max_age_seconds,
    )


def reset_cached_dependencies() -> None:
    get_download_sweeper.cache_clear()
    get_credential_manager.cache_clear()
    get_catalog_service.cache_clear()
    get_job_supervisor.cache_clear()
    get_telemetry.cache_clear()
    get_settings.cache_clear()
