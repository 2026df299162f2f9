from __future__ import annotations

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

VIDEO_ID_PATTERN = r"^[A-Za-z0-9_-]{6,64}$"

JobKindValue = Literal["audio", "video"]
JobStatusValue = Literal["running", "succeeded", "failed", "timed_out"]


class ResultItemResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    title: str
    duration: str
    views: str
    channel_name: str
    thumbnail_url: str
    is_official: bool
    source_kind: Literal["audio_search", "video_search"]


class SearchResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str
    results: list[ResultItemResponse]


class TrendingResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    country_code: str
    page: int
    page_size: int
    total: int
    has_more: bool
    results: list[ResultItemResponse]


class CountryResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str
    name: str


class DownloadRequestBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str = Field(pattern=VIDEO_ID_PATTERN)
    title: str = Field(min_length=1, max_length=500)

    @field_validator("title", mode="before")
    @classmethod
    def _strip_title(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value


class VideoDownloadRequestBody(DownloadRequestBody):
    format_id: str | None = Field(default=None, max_length=64, pattern=r"^[A-Za-z0-9+_-]+$")


class JobResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    job_id: UUID
    kind: JobKindValue
    status: JobStatusValue
    video_id: str
    file_name: str
    created_at: datetime
    finished_at: datetime | None = None
    exit_code: int | None = None
    error: str | None = None
    download_url: str | None = None


class VideoQualityResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    format_id: str
    ext: str
    resolution: str
    filesize: str
    quality: str
    fps: str
    has_audio: bool


class VideoQualitiesResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    video_id: str
    qualities: list[VideoQualityResponse]


class CredentialStatusResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    running: bool
    last_refreshed_at: datetime | None
    artifact_location: str
    artifact_present: bool
    refresh_interval_seconds: float
    source_url: str | None
    last_error: str | None


class CredentialArtifactResponse(BaseModel):
    """Payload served to peer instances pulling the credential artifact."""

    model_config = ConfigDict(extra="forbid")

    cookies: str
    last_modified: datetime = Field(alias="lastModified")
    file_size: int = Field(alias="fileSize", ge=0)


class CredentialHealthResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")

    cookie_exists: bool = Field(alias="cookieExists")
    last_modified: datetime | None = Field(alias="lastModified")
    file_size: int = Field(alias="fileSize", ge=0)
    manager_status: CredentialStatusResponse = Field(alias="managerStatus")
