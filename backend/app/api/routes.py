from __future__ import annotations

from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Response
from fastapi.responses import FileResponse, StreamingResponse
from starlette.background import BackgroundTask
from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.config import AppSettings
from backend.app.dependencies import (
    get_catalog_service,
    get_credential_manager,
    get_job_supervisor,
    get_settings,
)
from backend.app.models.media_contracts import (
    VIDEO_ID_PATTERN,
    CountryResponse,
    CredentialArtifactResponse,
    CredentialHealthResponse,
    CredentialStatusResponse,
    DownloadRequestBody,
    JobResponse,
    ResultItemResponse,
    SearchResponse,
    TrendingResponse,
    VideoDownloadRequestBody,
    VideoQualitiesResponse,
    VideoQualityResponse,
)
from backend.app.services.catalog_service import (
    SUPPORTED_COUNTRIES,
    CatalogError,
    CatalogService,
    TrendingNotFound,
)
from backend.app.services.credential_service import (
    ACCESS_KEY_HEADER,
    CredentialLifecycleManager,
    access_key_matches,
    inspect_artifact,
    read_artifact,
)
from backend.app.services.job_supervisor import (
    DownloadRequest,
    Job,
    JobFailed,
    JobKind,
    JobStatus,
    JobSupervisor,
    JobTimedOut,
)
from backend.app.services.result_merge import ResultItem

router = APIRouter(prefix="/api")

DOWNLOAD_MEDIA_TYPES: dict[JobKind, str] = {
    JobKind.AUDIO: "audio/mpeg",
    JobKind.VIDEO: "video/mp4",
}
STREAM_MEDIA_TYPE = "audio/mp4"


def _result_item_response(item: ResultItem) -> ResultItemResponse:
    return ResultItemResponse(
        id=item.id,
        title=item.title,
        duration=item.duration_label,
        views=item.views_label,
        channel_name=item.channel_name,
        thumbnail_url=item.thumbnail_url,
        is_official=item.is_official,
        source_kind=item.source_kind.value,
    )


def _job_response(job: Job) -> JobResponse:
    return JobResponse(
        job_id=job.job_id,
        kind=job.kind.value,
        status=job.status.value,
        video_id=job.video_id,
        file_name=job.file_name,
        created_at=job.created_at,
        finished_at=job.finished_at,
        exit_code=job.exit_code,
        error=job.error_text,
        download_url=(
            f"/api/download/{job.job_id}" if job.status is JobStatus.SUCCEEDED else None
        ),
    )


def _raise_for_failed_job(job: Job) -> None:
    try:
        job.raise_for_outcome()
    except JobTimedOut as exc:
        raise HTTPException(status_code=408, detail=str(exc)) from exc
    except JobFailed as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _run_download(
    body: DownloadRequestBody,
    kind: JobKind,
    supervisor: JobSupervisor,
    response: Response,
    *,
    wait: bool,
    format_selector: str | None = None,
) -> JobResponse:
    context_tokens = bind_contextvars(video_id=body.video_id, job_kind=kind.value)
    try:
        handle = supervisor.dispatch_download(
            DownloadRequest(video_id=body.video_id, title=body.title),
            kind,
            format_selector=format_selector,
        )
        if not wait:
            response.status_code = 202
            return _job_response(handle.job)

        job = handle.wait()
        _raise_for_failed_job(job)
        return _job_response(job)
    finally:
        reset_contextvars(**context_tokens)


@router.get("/search", response_model=SearchResponse, tags=["catalog"], operation_id="search")
def search(
    q: Annotated[str, Query(min_length=1, max_length=200)],
    catalog: Annotated[CatalogService, Depends(get_catalog_service)],
) -> SearchResponse:
    try:
        results = catalog.search(q)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except CatalogError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return SearchResponse(
        query=q.strip(),
        results=[_result_item_response(item) for item in results],
    )


@router.get(
    "/trending",
    response_model=TrendingResponse,
    tags=["catalog"],
    operation_id="trending",
)
def trending(
    catalog: Annotated[CatalogService, Depends(get_catalog_service)],
    country: Annotated[str, Query(min_length=2, max_length=2)] = "US",
    page: Annotated[int, Query(ge=1)] = 1,
) -> TrendingResponse:
    try:
        result_page = catalog.trending(country, page)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except TrendingNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except CatalogError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return TrendingResponse(
        country_code=country.strip().upper(),
        page=result_page.page,
        page_size=result_page.page_size,
        total=result_page.total,
        has_more=result_page.has_more,
        results=[_result_item_response(item) for item in result_page.items],
    )


@router.get(
    "/countries",
    response_model=list[CountryResponse],
    tags=["catalog"],
    operation_id="list_countries",
)
def list_countries() -> list[CountryResponse]:
    return [CountryResponse(code=code, name=name) for code, name in SUPPORTED_COUNTRIES]


@router.post(
    "/download",
    response_model=JobResponse,
    tags=["jobs"],
    operation_id="download_audio",
)
def download_audio(
    body: DownloadRequestBody,
    response: Response,
    supervisor: Annotated[JobSupervisor, Depends(get_job_supervisor)],
    wait: Annotated[bool, Query()] = True,
) -> JobResponse:
    return _run_download(body, JobKind.AUDIO, supervisor, response, wait=wait)


@router.post(
    "/download-video",
    response_model=JobResponse,
    tags=["jobs"],
    operation_id="download_video",
)
def download_video(
    body: VideoDownloadRequestBody,
    response: Response,
    supervisor: Annotated[JobSupervisor, Depends(get_job_supervisor)],
    wait: Annotated[bool, Query()] = True,
) -> JobResponse:
    return _run_download(
        body,
        JobKind.VIDEO,
        supervisor,
        response,
        wait=wait,
        format_selector=body.format_id,
    )


@router.get("/jobs/{job_id}", response_model=JobResponse, tags=["jobs"], operation_id="get_job")
def get_job(
    job_id: UUID,
    supervisor: Annotated[JobSupervisor, Depends(get_job_supervisor)],
) -> JobResponse:
    job = supervisor.get_job_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job)


@router.get(
    "/download/{job_id}",
    response_class=FileResponse,
    tags=["jobs"],
    operation_id="fetch_download",
)
def fetch_download(
    job_id: UUID,
    supervisor: Annotated[JobSupervisor, Depends(get_job_supervisor)],
) -> FileResponse:
    job = supervisor.get_job_status(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if job.status is JobStatus.RUNNING:
        raise HTTPException(status_code=409, detail="Job is still running")
    if job.status is not JobStatus.SUCCEEDED:
        raise HTTPException(
            status_code=409,
            detail=f"Job finished with status {job.status.value}",
        )
    if not job.output_path.is_file():
        raise HTTPException(status_code=404, detail="Downloaded file is no longer available")
    return FileResponse(
        job.output_path,
        media_type=DOWNLOAD_MEDIA_TYPES[job.kind],
        filename=job.file_name,
    )


@router.get(
    "/video-qualities",
    response_model=VideoQualitiesResponse,
    tags=["jobs"],
    operation_id="video_qualities",
)
def video_qualities(
    video_id: Annotated[str, Query(pattern=VIDEO_ID_PATTERN)],
    supervisor: Annotated[JobSupervisor, Depends(get_job_supervisor)],
) -> VideoQualitiesResponse:
    try:
        qualities = supervisor.probe_formats(video_id)
    except JobTimedOut as exc:
        raise HTTPException(status_code=408, detail=str(exc)) from exc
    except JobFailed as exc:
        raise HTTPException(
            status_code=500,
            detail={"error": str(exc), "details": exc.stderr},
        ) from exc
    return VideoQualitiesResponse(
        video_id=video_id,
        qualities=[
            VideoQualityResponse(
                format_id=quality.format_id,
                ext=quality.ext,
                resolution=quality.resolution,
                filesize=quality.filesize,
                quality=quality.quality,
                fps=quality.fps,
                has_audio=quality.has_audio,
            )
            for quality in qualities
        ],
    )


@router.get(
    "/stream/{video_id}",
    response_class=StreamingResponse,
    tags=["jobs"],
    operation_id="stream_audio",
)
def stream_audio(
    video_id: Annotated[str, Path(pattern=VIDEO_ID_PATTERN)],
    supervisor: Annotated[JobSupervisor, Depends(get_job_supervisor)],
) -> StreamingResponse:
    try:
        session = supervisor.dispatch_stream(video_id)
    except JobFailed as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    if not session.prefetch():
        stderr_text = session.stderr_text()
        session.close()
        raise HTTPException(
            status_code=502,
            detail=stderr_text or "Extractor produced no audio",
        )

    return StreamingResponse(
        iter(session),
        media_type=STREAM_MEDIA_TYPE,
        headers={"Cache-Control": "no-store"},
        background=BackgroundTask(session.close),
    )


@router.get(
    "/credentials/status",
    response_model=CredentialStatusResponse,
    tags=["system"],
    operation_id="credential_status",
)
def credential_status(
    manager: Annotated[CredentialLifecycleManager, Depends(get_credential_manager)],
) -> CredentialStatusResponse:
    return _credential_status_response(manager)


def require_credential_access_key(
    settings: Annotated[AppSettings, Depends(get_settings)],
    provided_key: Annotated[str | None, Header(alias=ACCESS_KEY_HEADER)] = None,
) -> None:
    if not access_key_matches(settings.credential_access_key, provided_key):
        raise HTTPException(status_code=401, detail="Unauthorized access")


@router.get(
    "/fetch-cookies",
    response_model=CredentialArtifactResponse,
    dependencies=[Depends(require_credential_access_key)],
    tags=["system"],
    operation_id="fetch_credential_artifact",
)
def fetch_credential_artifact(
    manager: Annotated[CredentialLifecycleManager, Depends(get_credential_manager)],
) -> CredentialArtifactResponse:
    try:
        content, snapshot = read_artifact(manager.artifact_path)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail="Cookie file not found") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise HTTPException(status_code=500, detail="Failed to read cookie file") from exc

    if snapshot.last_modified is None:
        raise HTTPException(status_code=404, detail="Cookie file not found")
    return CredentialArtifactResponse(
        cookies=content,
        lastModified=snapshot.last_modified,
        fileSize=snapshot.size_bytes,
    )


@router.get(
    "/cookie-health",
    response_model=CredentialHealthResponse,
    dependencies=[Depends(require_credential_access_key)],
    tags=["system"],
    operation_id="credential_artifact_health",
)
def credential_artifact_health(
    manager: Annotated[CredentialLifecycleManager, Depends(get_credential_manager)],
) -> CredentialHealthResponse:
    snapshot = inspect_artifact(manager.artifact_path)
    return CredentialHealthResponse(
        cookieExists=snapshot.exists,
        lastModified=snapshot.last_modified,
        fileSize=snapshot.size_bytes,
        managerStatus=_credential_status_response(manager),
    )


def _credential_status_response(manager: CredentialLifecycleManager) -> CredentialStatusResponse:
    status = manager.status()
    return CredentialStatusResponse(
        running=status.running,
        last_refreshed_at=status.last_refreshed_at,
        artifact_location=str(status.artifact_location),
        artifact_present=status.artifact_location.is_file(),
        refresh_interval_seconds=status.refresh_interval_seconds,
        source_url=status.source_url,
        last_error=status.last_error,
    )
