from __future__ import annotations

import hmac
import json
import logging
import os
import shutil
import stat
import tempfile
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from backend.app.services.scheduler_service import PeriodicTask
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("mp3vault.credentials")
HEALTH_PATH = "/api/cookie-health"
FETCH_PATH = "/api/fetch-cookies"
ACCESS_KEY_HEADER = "x-cookie-access-key"
BACKUP_SUFFIX = ".backup"
ARTIFACT_FILE_MODE = 0o644

JsonTransport = Callable[[str, Mapping[str, str], float], dict[str, Any]]


class ConfigurationError(Exception):
    pass


class CredentialRefreshError(Exception):
    """One refresh attempt failed."""


class RefreshExhausted(Exception):
    def __init__(self, attempts: int, last_error: Exception | None) -> None:
        super().__init__(f"Failed to refresh credentials after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    delay_seconds: float = 5.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")


@dataclass(frozen=True)
class RefreshResult:
    transferred: bool
    attempts: int
    remote_last_modified: datetime | None


@dataclass(frozen=True)
class CredentialStatus:
    running: bool
    last_refreshed_at: datetime | None
    artifact_location: Path
    refresh_interval_seconds: float
    source_url: str | None
    last_error: str | None


@dataclass(frozen=True)
class ArtifactSnapshot:
    exists: bool
    last_modified: datetime | None
    size_bytes: int


def fetch_json(url: str, headers: Mapping[str, str], timeout_seconds: float) -> dict[str, Any]:
    request = Request(
        url,
        headers={"accept": "application/json", "user-agent": "mp3vault/1.0", **headers},
        method="GET",
    )
    try:
        with urlopen(request, timeout=timeout_seconds) as response:
            raw_body = response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        raise CredentialRefreshError(f"credential source returned http_{exc.code}") from exc
    except (URLError, TimeoutError, OSError) as exc:
        raise CredentialRefreshError(f"credential source unreachable: {exc}") from exc

    try:
        payload = json.loads(raw_body)
    except json.JSONDecodeError as exc:
        raise CredentialRefreshError("credential source returned invalid JSON") from exc
    if not isinstance(payload, dict):
        raise CredentialRefreshError("credential source returned a non-object payload")
    return payload


def write_artifact_atomically(path: Path, content: str) -> None:
    """Replace `path` with `content` so readers only ever see a complete file.

    The new content is written and fsynced to a sibling temp file, the current
    file is copied to `<path>.backup`, then the temp file is renamed over `path`.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    temp_path = Path(temp_name)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(content)
            handle.flush()
            os.fsync(handle.fileno())
        os.chmod(temp_path, ARTIFACT_FILE_MODE)
        if path.is_file():
            _replace_backup(path)
        os.replace(temp_path, path)
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def backup_path_for(path: Path) -> Path:
    return path.with_name(f"{path.name}{BACKUP_SUFFIX}")


def inspect_artifact(path: Path) -> ArtifactSnapshot:
    try:
        file_stat = path.stat()
    except FileNotFoundError:
        return ArtifactSnapshot(exists=False, last_modified=None, size_bytes=0)
    if not stat.S_ISREG(file_stat.st_mode):
        return ArtifactSnapshot(exists=False, last_modified=None, size_bytes=0)
    return _snapshot_from_stat(file_stat)


def read_artifact(path: Path) -> tuple[str, ArtifactSnapshot]:
    """Read the artifact and the stat of the same open file.

    Raises `FileNotFoundError` when there is no regular file at `path`.
    """
    try:
        with path.open(encoding="utf-8") as handle:
            content = handle.read()
            file_stat = os.fstat(handle.fileno())
    except IsADirectoryError as exc:
        raise FileNotFoundError(str(path)) from exc
    return content, _snapshot_from_stat(file_stat)


def access_key_matches(expected: str | None, provided: str | None) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def _snapshot_from_stat(file_stat: os.stat_result) -> ArtifactSnapshot:
    return ArtifactSnapshot(
        exists=True,
        last_modified=datetime.fromtimestamp(file_stat.st_mtime, tz=UTC),
        size_bytes=file_stat.st_size,
    )


def _replace_backup(path: Path) -> None:
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".bak.tmp", dir=path.parent)
    os.close(fd)
    temp_path = Path(temp_name)
    try:
        shutil.copy2(path, temp_path)
        os.replace(temp_path, backup_path_for(path))
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise


def _parse_remote_timestamp(raw_value: Any) -> datetime | None:
    if raw_value is None:
        return None
    if not isinstance(raw_value, str) or not raw_value.strip():
        raise CredentialRefreshError(f"invalid lastModified value: {raw_value!r}")
    try:
        parsed = datetime.fromisoformat(raw_value.strip().replace("Z", "+00:00"))
    except ValueError as exc:
        raise CredentialRefreshError(f"invalid lastModified value: {raw_value!r}") from exc
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class CredentialLifecycleManager:
    """Keeps the extractor's credential file in sync with a remote authority."""

    def __init__(
        self,
        *,
        artifact_path: Path,
        source_url: str | None,
        access_key: str | None,
        refresh_interval_seconds: float = 300,
        retry_policy: RetryPolicy | None = None,
        http_timeout_seconds: float = 15.0,
        transport: JsonTransport = fetch_json,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        sleep: Callable[[float], None] = time.sleep,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._artifact_path = artifact_path
        self._source_url = source_url.rstrip("/") if source_url else None
        self._access_key = access_key
        self._refresh_interval_seconds = refresh_interval_seconds
        self._retry_policy = retry_policy if retry_policy is not None else RetryPolicy()
        self._http_timeout_seconds = http_timeout_seconds
        self._transport = transport
        self._clock = clock
        self._sleep = sleep
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._lifecycle_lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._task: PeriodicTask | None = None
        self._last_refreshed_at: datetime | None = None
        self._last_error: str | None = None
        self.transfer_count = 0

    @property
    def artifact_path(self) -> Path:
        return self._artifact_path

    @property
    def is_running(self) -> bool:
        return self._task is not None

    def start(self) -> None:
        with self._lifecycle_lock:
            if self._task is not None:
                return
            self._require_source()

            LOGGER.info(
                "credential manager starting source=%s artifact=%s interval_seconds=%s",
                self._source_url,
                self._artifact_path,
                self._refresh_interval_seconds,
            )
            self.refresh()

            task = PeriodicTask(
                name="credential-refresh",
                interval_seconds=self._refresh_interval_seconds,
                callback=self._scheduled_refresh,
                telemetry=self._telemetry,
            )
            task.start()
            self._task = task

    def stop(self) -> None:
        with self._lifecycle_lock:
            task, self._task = self._task, None
        if task is None:
            return
        task.stop()
        LOGGER.info("credential manager stopped")

    def status(self) -> CredentialStatus:
        return CredentialStatus(
            running=self._task is not None,
            last_refreshed_at=self._last_refreshed_at,
            artifact_location=self._artifact_path,
            refresh_interval_seconds=self._refresh_interval_seconds,
            source_url=self._source_url,
            last_error=self._last_error,
        )

    def refresh(self) -> RefreshResult:
        source_url, access_key = self._require_source()

        with self._refresh_lock, self._telemetry.span("credentials.refresh") as span:
            last_error: Exception | None = None
            max_attempts = self._retry_policy.max_attempts
            for attempt in range(1, max_attempts + 1):
                try:
                    result = self._attempt_refresh(
                        attempt, source_url=source_url, access_key=access_key
                    )
                except (CredentialRefreshError, OSError) as exc:
                    last_error = exc
                    LOGGER.warning(
                        "credential refresh attempt failed attempt=%s/%s error=%s",
                        attempt,
                        max_attempts,
                        exc,
                    )
                    if attempt < max_attempts:
                        self._sleep(self._retry_policy.delay_seconds)
                    continue

                self._last_error = None
                span["attempts"] = attempt
                span["transferred"] = result.transferred
                return result

            self._last_error = str(last_error) if last_error is not None else "unknown error"
            raise RefreshExhausted(max_attempts, last_error)

    def _require_source(self) -> tuple[str, str]:
        if not self._source_url or not self._access_key:
            raise ConfigurationError("Credential source URL and access key are required")
        return self._source_url, self._access_key

    def _attempt_refresh(self, attempt: int, *, source_url: str, access_key: str) -> RefreshResult:
        headers = {ACCESS_KEY_HEADER: access_key}

        health = self._transport(
            f"{source_url}{HEALTH_PATH}",
            headers,
            self._http_timeout_seconds,
        )
        remote_last_modified = _parse_remote_timestamp(health.get("lastModified"))
        local_last_refreshed = self._last_refreshed_at
        if (
            remote_last_modified is not None
            and local_last_refreshed is not None
            and remote_last_modified <= local_last_refreshed
        ):
            LOGGER.info(
                "local credentials are up to date last_refreshed_at=%s remote_last_modified=%s",
                local_last_refreshed.isoformat(),
                remote_last_modified.isoformat(),
            )
            return RefreshResult(
                transferred=False,
                attempts=attempt,
                remote_last_modified=remote_last_modified,
            )

        payload = self._transport(
            f"{source_url}{FETCH_PATH}",
            headers,
            self._http_timeout_seconds,
        )
        credential_blob = payload.get("cookies")
        if not isinstance(credential_blob, str) or not credential_blob.strip():
            raise CredentialRefreshError("credential payload did not include cookies")

        write_artifact_atomically(self._artifact_path, credential_blob)
        self._last_refreshed_at = self._clock()
        self.transfer_count += 1
        LOGGER.info(
            "credentials refreshed path=%s bytes=%s",
            self._artifact_path,
            len(credential_blob.encode("utf-8")),
        )
        return RefreshResult(
            transferred=True,
            attempts=attempt,
            remote_last_modified=remote_last_modified,
        )

    def _scheduled_refresh(self) -> None:
        try:
            self.refresh()
        except RefreshExhausted as exc:
            LOGGER.error("scheduled credential refresh failed error=%s", exc)
