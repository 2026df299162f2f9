from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import Future
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import IO
from uuid import UUID, uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.services.extractor_commands import (
    audio_download_args,
    build_command,
    probe_args,
    safe_file_name,
    stream_args,
    video_download_args,
)
from backend.app.services.format_probe import VideoQuality, parse_video_qualities
from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("mp3vault.jobs")
STREAM_CHUNK_SIZE = 64 * 1024
STDERR_TAIL_LINES = 200
ERROR_TEXT_MAX_CHARS = 4_000


class JobKind(str, Enum):
    AUDIO = "audio"
    VIDEO = "video"


class JobStatus(str, Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.RUNNING


FILE_EXTENSIONS: dict[JobKind, str] = {JobKind.AUDIO: "mp3", JobKind.VIDEO: "mp4"}


class JobError(Exception):
    pass


class JobFailed(JobError):
    def __init__(self, message: str, *, job: Job | None = None, stderr: str | None = None) -> None:
        super().__init__(message)
        self.job = job
        self.stderr = stderr


class JobTimedOut(JobFailed):
    pass


@dataclass(frozen=True)
class JobTimeouts:
    audio_seconds: float = 5 * 60
    video_seconds: float = 10 * 60
    probe_seconds: float = 15

    def for_kind(self, kind: JobKind) -> float:
        if kind is JobKind.AUDIO:
            return self.audio_seconds
        return self.video_seconds


@dataclass(frozen=True)
class DownloadRequest:
    video_id: str
    title: str


@dataclass(frozen=True)
class Job:
    job_id: UUID
    kind: JobKind
    status: JobStatus
    video_id: str
    output_path: Path
    file_name: str
    created_at: datetime
    finished_at: datetime | None = None
    exit_code: int | None = None
    error_text: str | None = None

    def raise_for_outcome(self) -> None:
        if self.status is JobStatus.TIMED_OUT:
            raise JobTimedOut(self.error_text or "Download timed out", job=self)
        if self.status is JobStatus.FAILED:
            raise JobFailed(self.error_text or "Download failed", job=self)


class JobRegistry:
    """In-memory `job_id -> Job` map.

    A job is inserted once at dispatch and moved to a terminal state once;
    entries are never removed here.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._jobs: dict[UUID, Job] = {}

    def insert(self, job: Job) -> None:
        with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"job already registered: {job.job_id}")
            self._jobs[job.job_id] = job

    def complete(self, job: Job) -> None:
        if not job.status.is_terminal:
            raise ValueError(f"job {job.job_id} must be completed with a terminal status")
        with self._lock:
            current = self._jobs.get(job.job_id)
            if current is None:
                raise KeyError(job.job_id)
            if current.status.is_terminal:
                raise ValueError(f"job {job.job_id} already finished as {current.status.value}")
            self._jobs[job.job_id] = job

    def get(self, job_id: UUID) -> Job | None:
        with self._lock:
            return self._jobs.get(job_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)


@dataclass(frozen=True)
class JobHandle:
    job: Job
    future: Future[Job]

    @property
    def job_id(self) -> UUID:
        return self.job.job_id

    def done(self) -> bool:
        return self.future.done()

    def wait(self, timeout: float | None = None) -> Job:
        return self.future.result(timeout=timeout)


@dataclass(frozen=True)
class ProcessOutcome:
    exit_code: int | None
    stdout: str
    stderr: str
    timed_out: bool


def kill_process_group(proc: subprocess.Popen[bytes]) -> None:
    """SIGKILL the whole session started for `proc`.

    The group id outlives the leader while any member is alive, so this is
    sent even when the leader itself has already exited.
    """
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        return
    except PermissionError:
        proc.kill()


def _tail(text: str, limit: int = ERROR_TEXT_MAX_CHARS) -> str:
    stripped = text.strip()
    if len(stripped) <= limit:
        return stripped
    return stripped[-limit:]


class _StderrCollector:
    """Drains a pipe on a daemon thread, keeping the last lines."""

    def __init__(self, stream: IO[bytes] | None, *, name: str) -> None:
        self._lines: deque[str] = deque(maxlen=STDERR_TAIL_LINES)
        self._stream = stream
        self._thread = threading.Thread(target=self._drain, name=name, daemon=True)
        self._thread.start()

    def _drain(self) -> None:
        if self._stream is None:
            return
        with self._stream:
            for raw_line in iter(self._stream.readline, b""):
                self._lines.append(raw_line.decode("utf-8", errors="replace"))

    def text(self, *, join_timeout: float = 1.0) -> str:
        self._thread.join(timeout=join_timeout)
        return "".join(self._lines)


class StreamSession:
    """One extractor process whose stdout is relayed to a client.

    Iterating yields stdout chunks as they arrive. Closing the session, which
    also happens when iteration stops early, kills the process group.
    """

    def __init__(
        self,
        *,
        stream_id: UUID,
        video_id: str,
        proc: subprocess.Popen[bytes],
        on_close: Callable[[StreamSession], None],
        chunk_size: int = STREAM_CHUNK_SIZE,
    ) -> None:
        self.stream_id = stream_id
        self.video_id = video_id
        self._proc = proc
        self._on_close = on_close
        self._chunk_size = chunk_size
        self._stderr = _StderrCollector(proc.stderr, name=f"mp3vault-stream-{stream_id.hex[:8]}")
        self._close_lock = threading.Lock()
        self._closed = False
        self._pending: bytes | None = None
        self.bytes_sent = 0
        self.started_at = time.perf_counter()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def exit_code(self) -> int | None:
        return self._proc.poll()

    def prefetch(self) -> bytes:
        """Read the first chunk so callers can fail before sending any headers."""
        if self._pending is None:
            self._pending = self._read_chunk()
        return self._pending

    def stderr_text(self) -> str:
        return _tail(self._stderr.text())

    def __iter__(self) -> Iterator[bytes]:
        try:
            if self._pending:
                pending, self._pending = self._pending, b""
                self.bytes_sent += len(pending)
                yield pending
            while not self._closed:
                chunk = self._read_chunk()
                if not chunk:
                    break
                self.bytes_sent += len(chunk)
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        with self._close_lock:
            if self._closed:
                return
            self._closed = True

        kill_process_group(self._proc)
        exit_code = self._proc.wait()
        if self._proc.stdout is not None:
            self._proc.stdout.close()
        LOGGER.info(
            "stream closed stream_id=%s video_id=%s exit_code=%s bytes_sent=%s",
            self.stream_id,
            self.video_id,
            exit_code,
            self.bytes_sent,
        )
        self._on_close(self)

    def _read_chunk(self) -> bytes:
        stdout = self._proc.stdout
        if stdout is None:
            return b""
        try:
            return stdout.read(self._chunk_size) or b""
        except (OSError, ValueError):
            # Pipe closed underneath us by close().
            return b""


class JobSupervisor:
    def __init__(
        self,
        *,
        downloads_dir: Path,
        credential_path: Path | None,
        command_prefix: Sequence[str] = ("yt-dlp",),
        timeouts: JobTimeouts | None = None,
        registry: JobRegistry | None = None,
        telemetry: TelemetryClient | None = None,
    ) -> None:
        self._downloads_dir = downloads_dir
        self._credential_path = credential_path
        self._command_prefix = tuple(command_prefix)
        self._timeouts = timeouts if timeouts is not None else JobTimeouts()
        self._registry = registry if registry is not None else JobRegistry()
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._active_lock = threading.Lock()
        self._active: dict[UUID, subprocess.Popen[bytes]] = {}

    @property
    def registry(self) -> JobRegistry:
        return self._registry

    @property
    def downloads_dir(self) -> Path:
        return self._downloads_dir

    def get_job_status(self, job_id: UUID) -> Job | None:
        return self._registry.get(job_id)

    def active_process_count(self) -> int:
        with self._active_lock:
            return len(self._active)

    def dispatch_download(
        self,
        request: DownloadRequest,
        kind: JobKind,
        *,
        format_selector: str | None = None,
    ) -> JobHandle:
        job_id = uuid4()
        file_name = safe_file_name(request.title, job_id, FILE_EXTENSIONS[kind])
        output_path = self._downloads_dir / file_name
        credential_path = self._usable_credential_path()
        if kind is JobKind.AUDIO:
            args = audio_download_args(
                request.video_id,
                output_path=output_path,
                credential_path=credential_path,
            )
        else:
            args = video_download_args(
                request.video_id,
                output_path=output_path,
                credential_path=credential_path,
                format_selector=format_selector,
            )

        job = Job(
            job_id=job_id,
            kind=kind,
            status=JobStatus.RUNNING,
            video_id=request.video_id,
            output_path=output_path,
            file_name=file_name,
            created_at=datetime.now(UTC),
        )
        future: Future[Job] = Future()
        self._registry.insert(job)
        self._telemetry.emit(
            "job.dispatch",
            job_id=job_id,
            kind=kind.value,
            video_id=request.video_id,
        )

        try:
            self._downloads_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.error("downloads directory unavailable job_id=%s error=%s", job_id, exc)
            failed_job = self._finished(
                job,
                JobStatus.FAILED,
                error_text=f"downloads directory unavailable: {exc}",
            )
            self._resolve(future, failed_job, started_at=time.perf_counter())
            return JobHandle(job=job, future=future)

        try:
            proc = self._launch(build_command(self._command_prefix, args), capture_stdout=False)
        except OSError as exc:
            LOGGER.error("extractor launch failed job_id=%s error=%s", job_id, exc)
            failed_job = self._finished(
                job,
                JobStatus.FAILED,
                error_text=f"failed to launch extractor: {exc}",
            )
            self._resolve(future, failed_job, started_at=time.perf_counter())
            return JobHandle(job=job, future=future)

        self._track(job_id, proc)
        LOGGER.info(
            "job dispatched job_id=%s kind=%s video_id=%s pid=%s",
            job_id,
            kind.value,
            request.video_id,
            proc.pid,
        )
        watcher = threading.Thread(
            target=self._watch_job,
            args=(job, proc, self._timeouts.for_kind(kind), future),
            name=f"mp3vault-job-{job_id.hex[:8]}",
            daemon=True,
        )
        watcher.start()
        return JobHandle(job=job, future=future)

    def dispatch_stream(self, video_id: str) -> StreamSession:
        stream_id = uuid4()
        command = build_command(
            self._command_prefix,
            stream_args(video_id, credential_path=self._usable_credential_path()),
        )
        try:
            proc = self._launch(command, capture_stdout=True)
        except OSError as exc:
            raise JobFailed(f"failed to launch extractor: {exc}") from exc

        self._track(stream_id, proc)
        self._telemetry.emit("job.stream.start", stream_id=stream_id, video_id=video_id)
        LOGGER.info("stream started stream_id=%s video_id=%s pid=%s", stream_id, video_id, proc.pid)
        return StreamSession(
            stream_id=stream_id,
            video_id=video_id,
            proc=proc,
            on_close=self._stream_closed,
        )

    def probe_formats(self, video_id: str) -> list[VideoQuality]:
        probe_id = uuid4()
        command = build_command(
            self._command_prefix,
            probe_args(video_id, credential_path=self._usable_credential_path()),
        )
        try:
            proc = self._launch(command, capture_stdout=True)
        except OSError as exc:
            raise JobFailed(f"failed to launch extractor: {exc}") from exc

        self._track(probe_id, proc)
        try:
            outcome = self._await_exit(proc, self._timeouts.probe_seconds)
        finally:
            self._untrack(probe_id)

        if outcome.timed_out:
            LOGGER.warning(
                "format probe timed out video_id=%s timeout_seconds=%s",
                video_id,
                self._timeouts.probe_seconds,
            )
            raise JobTimedOut(
                "Request timed out while fetching video formats",
                stderr=_tail(outcome.stderr),
            )
        if outcome.exit_code != 0:
            raise JobFailed("Failed to get video formats", stderr=_tail(outcome.stderr))
        return parse_video_qualities(outcome.stdout)

    def shutdown(self) -> None:
        with self._active_lock:
            procs = list(self._active.values())
        for proc in procs:
            kill_process_group(proc)
        if procs:
            LOGGER.info("killed in-flight extractor processes count=%s", len(procs))

    def _usable_credential_path(self) -> Path | None:
        if self._credential_path is not None and self._credential_path.is_file():
            return self._credential_path
        return None

    def _launch(self, command: list[str], *, capture_stdout: bool) -> subprocess.Popen[bytes]:
        return subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE if capture_stdout else subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            bufsize=0,
            start_new_session=True,
        )

    def _await_exit(self, proc: subprocess.Popen[bytes], timeout_seconds: float) -> ProcessOutcome:
        timed_out = False
        try:
            raw_stdout, raw_stderr = proc.communicate(timeout=timeout_seconds)
        except subprocess.TimeoutExpired:
            timed_out = True
            kill_process_group(proc)
            raw_stdout, raw_stderr = proc.communicate()
        return ProcessOutcome(
            exit_code=proc.returncode,
            stdout=(raw_stdout or b"").decode("utf-8", errors="replace"),
            stderr=(raw_stderr or b"").decode("utf-8", errors="replace"),
            timed_out=timed_out,
        )

    def _watch_job(
        self,
        job: Job,
        proc: subprocess.Popen[bytes],
        timeout_seconds: float,
        future: Future[Job],
    ) -> None:
        context_tokens = bind_contextvars(job_id=str(job.job_id), job_kind=job.kind.value)
        started_at = time.perf_counter()
        try:
            try:
                outcome = self._await_exit(proc, timeout_seconds)
            finally:
                self._untrack(job.job_id)
            final_job = self._classify(job, outcome, timeout_seconds)
        except Exception as exc:
            LOGGER.exception("job watcher failed job_id=%s", job.job_id)
            kill_process_group(proc)
            final_job = self._finished(job, JobStatus.FAILED, error_text=f"supervisor error: {exc}")
        try:
            self._resolve(future, final_job, started_at=started_at)
        finally:
            reset_contextvars(**context_tokens)

    def _classify(self, job: Job, outcome: ProcessOutcome, timeout_seconds: float) -> Job:
        stderr_tail = _tail(outcome.stderr)
        if outcome.timed_out:
            LOGGER.warning(
                "job timed out job_id=%s timeout_seconds=%s",
                job.job_id,
                timeout_seconds,
            )
            return self._finished(
                job,
                JobStatus.TIMED_OUT,
                exit_code=outcome.exit_code,
                error_text=f"Download timed out after {timeout_seconds:g}s. {stderr_tail}".strip(),
            )

        if outcome.exit_code == 0 and _has_content(job.output_path):
            return self._finished(job, JobStatus.SUCCEEDED, exit_code=0)

        if outcome.exit_code == 0:
            reason = "extractor exited cleanly but the output file is missing or empty"
        else:
            reason = f"Download failed (code {outcome.exit_code})"
        LOGGER.warning(
            "job failed job_id=%s exit_code=%s stderr=%s",
            job.job_id,
            outcome.exit_code,
            stderr_tail,
        )
        return self._finished(
            job,
            JobStatus.FAILED,
            exit_code=outcome.exit_code,
            error_text=f"{reason}: {stderr_tail}" if stderr_tail else reason,
        )

    def _finished(
        self,
        job: Job,
        status: JobStatus,
        *,
        exit_code: int | None = None,
        error_text: str | None = None,
    ) -> Job:
        return replace(
            job,
            status=status,
            finished_at=datetime.now(UTC),
            exit_code=exit_code,
            error_text=error_text,
        )

    def _resolve(self, future: Future[Job], final_job: Job, *, started_at: float) -> None:
        self._registry.complete(final_job)
        self._telemetry.emit(
            "job.finish",
            job_id=final_job.job_id,
            kind=final_job.kind.value,
            status=final_job.status.value,
            exit_code=final_job.exit_code,
            duration_ms=int((time.perf_counter() - started_at) * 1000),
        )
        if final_job.status is JobStatus.SUCCEEDED:
            LOGGER.info("job succeeded job_id=%s path=%s", final_job.job_id, final_job.output_path)
        future.set_result(final_job)

    def _stream_closed(self, session: StreamSession) -> None:
        self._untrack(session.stream_id)
        self._telemetry.emit(
            "job.stream.finish",
            stream_id=session.stream_id,
            video_id=session.video_id,
            bytes_sent=session.bytes_sent,
            duration_ms=int((time.perf_counter() - session.started_at) * 1000),
        )

    def _track(self, key: UUID, proc: subprocess.Popen[bytes]) -> None:
        with self._active_lock:
            self._active[key] = proc

    def _untrack(self, key: UUID) -> None:
        with self._active_lock:
            self._active.pop(key, None)


def _has_content(path: Path) -> bool:
    try:
        return path.stat().st_size > 0
    except OSError:
        return False
