from __future__ import annotations

import os
import time
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING
from uuid import uuid4

import pytest

from backend.app.services.extractor_commands import (
    MAX_FILE_NAME_LENGTH,
    audio_download_args,
    safe_file_name,
)
from backend.app.services.job_supervisor import (
    DownloadRequest,
    Job,
    JobFailed,
    JobKind,
    JobRegistry,
    JobStatus,
    JobSupervisor,
    JobTimedOut,
    JobTimeouts,
)

if TYPE_CHECKING:
    from tests.conftest import FakeExtractor

FORMAT_LISTING = """\
[info] Available formats for abc123def45:
ID  EXT   RESOLUTION FPS |   FILESIZE   TBR PROTO | VCODEC        ACODEC
139 m4a   audio only     |    1.20MiB   48k https | audio only    mp4a.40.5
140 m4a   audio only     |    3.10MiB  129k https | audio only    mp4a.40.2
18  mp4   640x360     25 |    9.80MiB  400k https | avc1.42001E   mp4a.40.2
137 mp4   1920x1080   25 |   40.10MiB 2500k https | avc1.640028   video only
"""


def _supervisor(
    tmp_path: Path,
    fake_extractor: FakeExtractor,
    *,
    timeouts: JobTimeouts | None = None,
    credential_path: Path | None = None,
) -> JobSupervisor:
    return JobSupervisor(
        downloads_dir=tmp_path / "downloads",
        credential_path=credential_path,
        command_prefix=fake_extractor.command,
        timeouts=timeouts or JobTimeouts(audio_seconds=20, video_seconds=20, probe_seconds=20),
    )


def _process_exists(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _process_running(pid: int) -> bool:
    # An orphaned grandchild may linger as a zombie until init reaps it.
    try:
        stat = Path(f"/proc/{pid}/stat").read_text(encoding="utf-8")
    except FileNotFoundError:
        return False
    except OSError:
        return _process_exists(pid)
    state = stat.rsplit(")", 1)[1].split()[0]
    return state not in ("Z", "X")


def _wait_until_gone(pid: int, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not _process_running(pid):
            return True
        time.sleep(0.05)
    return not _process_running(pid)


def test_audio_download_succeeds_when_file_has_content(
    tmp_path: Path, fake_extractor: FakeExtractor
) -> None:
    fake_extractor.configure(write_bytes="ID3-audio-bytes")
    supervisor = _supervisor(tmp_path, fake_extractor)

    handle = supervisor.dispatch_download(
        DownloadRequest(video_id="abc123def45", title="Artist - Song"),
        JobKind.AUDIO,
    )
    assert handle.job.status is JobStatus.RUNNING

    job = handle.wait(timeout=15)
    assert job.status is JobStatus.SUCCEEDED
    assert job.exit_code == 0
    assert job.output_path.read_bytes() == b"ID3-audio-bytes"
    assert job.file_name.endswith(f"_{job.job_id}.mp3")
    assert supervisor.get_job_status(job.job_id) == job
    assert supervisor.active_process_count() == 0

    [args] = fake_extractor.calls()
    assert "--extract-audio" in args
    assert "--cookies" not in args
    assert args[args.index("-o") + 1] == str(job.output_path)


def test_clean_exit_without_output_file_is_failed(
    tmp_path: Path, fake_extractor: FakeExtractor
) -> None:
    fake_extractor.configure(stderr="nothing written\n")
    supervisor = _supervisor(tmp_path, fake_extractor)

    job = supervisor.dispatch_download(
        DownloadRequest(video_id="abc123def45", title="Song"),
        JobKind.AUDIO,
    ).wait(timeout=15)

    assert job.status is JobStatus.FAILED
    assert job.exit_code == 0
    assert job.error_text is not None
    assert "missing or empty" in job.error_text
    with pytest.raises(JobFailed):
        job.raise_for_outcome()


def test_nonzero_exit_is_failed_with_stderr(tmp_path: Path, fake_extractor: FakeExtractor) -> None:
    fake_extractor.configure(exit_code=1, stderr="ERROR: Video unavailable\n")
    supervisor = _supervisor(tmp_path, fake_extractor)

    job = supervisor.dispatch_download(
        DownloadRequest(video_id="abc123def45", title="Song"),
        JobKind.VIDEO,
    ).wait(timeout=15)

    assert job.status is JobStatus.FAILED
    assert job.exit_code == 1
    assert job.error_text is not None
    assert "Video unavailable" in job.error_text
    assert job.file_name.endswith(".mp4")


def test_timeout_kills_process_and_marks_timed_out(
    tmp_path: Path, fake_extractor: FakeExtractor
) -> None:
    fake_extractor.configure(sleep=30, write_bytes="late")
    supervisor = _supervisor(
        tmp_path,
        fake_extractor,
        timeouts=JobTimeouts(audio_seconds=1.0, video_seconds=1.0, probe_seconds=1.0),
    )

    started_at = time.monotonic()
    job = supervisor.dispatch_download(
        DownloadRequest(video_id="abc123def45", title="Slow"),
        JobKind.AUDIO,
    ).wait(timeout=15)

    assert time.monotonic() - started_at < 10
    assert job.status is JobStatus.TIMED_OUT
    assert not _process_exists(fake_extractor.last_pid())
    assert not job.output_path.exists()
    with pytest.raises(JobTimedOut):
        job.raise_for_outcome()


@pytest.mark.parametrize("leader_sleep", [30, 0])
def test_timeout_kills_every_process_in_the_group(
    tmp_path: Path, fake_extractor: FakeExtractor, leader_sleep: int
) -> None:
    # With leader_sleep=0 the leader exits at once while its child keeps stderr open.
    fake_extractor.configure(spawn_child=True, sleep=leader_sleep)
    supervisor = _supervisor(
        tmp_path,
        fake_extractor,
        timeouts=JobTimeouts(audio_seconds=1.0, video_seconds=1.0, probe_seconds=1.0),
    )

    handle = supervisor.dispatch_download(
        DownloadRequest(video_id="abc123def45", title="Slow"),
        JobKind.AUDIO,
    )
    job = handle.wait(timeout=10)

    assert job.status is JobStatus.TIMED_OUT
    assert supervisor.get_job_status(job.job_id) == job
    assert _wait_until_gone(fake_extractor.child_pid())
    assert supervisor.active_process_count() == 0


def test_unusable_downloads_dir_resolves_failed(
    tmp_path: Path, fake_extractor: FakeExtractor
) -> None:
    blocker = tmp_path / "downloads"
    blocker.write_text("not a directory", encoding="utf-8")
    supervisor = _supervisor(tmp_path, fake_extractor)

    handle = supervisor.dispatch_download(
        DownloadRequest(video_id="abc123def45", title="Song"),
        JobKind.AUDIO,
    )

    assert handle.done()
    job = handle.wait(timeout=1)
    assert job.status is JobStatus.FAILED
    assert job.error_text is not None
    assert job.error_text.startswith("downloads directory unavailable")
    assert supervisor.get_job_status(job.job_id) == job
    assert fake_extractor.calls() == []


def test_missing_binary_resolves_failed(tmp_path: Path) -> None:
    supervisor = JobSupervisor(
        downloads_dir=tmp_path / "downloads",
        credential_path=None,
        command_prefix=(str(tmp_path / "does-not-exist"),),
    )

    handle = supervisor.dispatch_download(
        DownloadRequest(video_id="abc123def45", title="Song"),
        JobKind.AUDIO,
    )

    assert handle.done()
    job = handle.wait(timeout=1)
    assert job.status is JobStatus.FAILED
    assert job.error_text is not None
    assert job.error_text.startswith("failed to launch extractor")
    assert supervisor.get_job_status(job.job_id) == job


def test_credential_file_is_passed_only_when_present(
    tmp_path: Path, fake_extractor: FakeExtractor
) -> None:
    credential_path = tmp_path / "cookies.txt"
    fake_extractor.configure(write_bytes="data")
    supervisor = _supervisor(tmp_path, fake_extractor, credential_path=credential_path)

    supervisor.dispatch_download(
        DownloadRequest(video_id="abc123def45", title="One"), JobKind.AUDIO
    ).wait(timeout=15)
    credential_path.write_text("# Netscape HTTP Cookie File\n", encoding="utf-8")
    supervisor.dispatch_download(
        DownloadRequest(video_id="abc123def45", title="Two"), JobKind.AUDIO
    ).wait(timeout=15)

    first_args, second_args = fake_extractor.calls()
    assert "--cookies" not in first_args
    assert second_args[second_args.index("--cookies") + 1] == str(credential_path)


def test_video_download_uses_requested_format(
    tmp_path: Path, fake_extractor: FakeExtractor
) -> None:
    fake_extractor.configure(write_bytes="mp4")
    supervisor = _supervisor(tmp_path, fake_extractor)

    job = supervisor.dispatch_download(
        DownloadRequest(video_id="abc123def45", title="Clip"),
        JobKind.VIDEO,
        format_selector="137+140",
    ).wait(timeout=15)

    assert job.status is JobStatus.SUCCEEDED
    [args] = fake_extractor.calls()
    assert args[args.index("-f") + 1] == "137+140"


def test_stream_relays_stdout(tmp_path: Path, fake_extractor: FakeExtractor) -> None:
    fake_extractor.configure(stream_bytes="chunk-one-chunk-two")
    supervisor = _supervisor(tmp_path, fake_extractor)

    session = supervisor.dispatch_stream("abc123def45")
    payload = b"".join(session)

    assert payload == b"chunk-one-chunk-two"
    assert session.closed
    assert session.bytes_sent == len(payload)
    assert supervisor.active_process_count() == 0
    assert len(supervisor.registry) == 0


def test_closing_stream_early_kills_process(tmp_path: Path, fake_extractor: FakeExtractor) -> None:
    fake_extractor.configure(stream_bytes="header", stream_forever=True)
    supervisor = _supervisor(tmp_path, fake_extractor)

    session = supervisor.dispatch_stream("abc123def45")
    chunks = iter(session)
    assert next(chunks)
    pid = fake_extractor.last_pid()
    assert supervisor.active_process_count() == 1

    session.close()
    session.close()

    assert session.exit_code is not None
    assert not _process_exists(pid)
    assert supervisor.active_process_count() == 0


def test_closing_stream_kills_extractor_children(
    tmp_path: Path, fake_extractor: FakeExtractor
) -> None:
    fake_extractor.configure(spawn_child=True, stream_bytes="header", stream_forever=True)
    supervisor = _supervisor(tmp_path, fake_extractor)

    session = supervisor.dispatch_stream("abc123def45")
    assert next(iter(session))
    child_pid = fake_extractor.child_pid()
    assert _process_running(child_pid)

    session.close()

    assert _wait_until_gone(child_pid)
    assert supervisor.active_process_count() == 0


def test_shutdown_kills_in_flight_jobs(tmp_path: Path, fake_extractor: FakeExtractor) -> None:
    fake_extractor.configure(sleep=30)
    supervisor = _supervisor(tmp_path, fake_extractor)
    handle = supervisor.dispatch_download(
        DownloadRequest(video_id="abc123def45", title="Slow"),
        JobKind.AUDIO,
    )
    deadline = time.monotonic() + 10
    while not fake_extractor.pid_file.exists() and time.monotonic() < deadline:
        time.sleep(0.05)

    supervisor.shutdown()

    job = handle.wait(timeout=10)
    assert job.status is JobStatus.FAILED
    assert not _process_exists(fake_extractor.last_pid())


def test_probe_formats_parses_listing(tmp_path: Path, fake_extractor: FakeExtractor) -> None:
    fake_extractor.configure(listing=FORMAT_LISTING)
    supervisor = _supervisor(tmp_path, fake_extractor)

    qualities = supervisor.probe_formats("abc123def45")

    assert [quality.format_id for quality in qualities] == ["137+140", "18"]
    assert qualities[0].quality == "1080p MP4"
    assert qualities[0].has_audio is False
    assert qualities[1].has_audio is True


def test_probe_formats_failure_and_timeout(tmp_path: Path, fake_extractor: FakeExtractor) -> None:
    fake_extractor.configure(exit_code=1, stderr="ERROR: private video\n")
    supervisor = _supervisor(
        tmp_path,
        fake_extractor,
        timeouts=JobTimeouts(audio_seconds=5, video_seconds=5, probe_seconds=1.0),
    )

    with pytest.raises(JobFailed) as failed:
        supervisor.probe_formats("abc123def45")
    assert not isinstance(failed.value, JobTimedOut)
    assert failed.value.stderr is not None
    assert "private video" in failed.value.stderr

    fake_extractor.configure(sleep=30)
    with pytest.raises(JobTimedOut):
        supervisor.probe_formats("abc123def45")
    assert supervisor.active_process_count() == 0


def test_registry_allows_single_terminal_transition(tmp_path: Path) -> None:
    registry = JobRegistry()
    job = Job(
        job_id=uuid4(),
        kind=JobKind.AUDIO,
        status=JobStatus.RUNNING,
        video_id="abc123def45",
        output_path=tmp_path / "song.mp3",
        file_name="song.mp3",
        created_at=datetime.now(UTC),
    )
    registry.insert(job)
    with pytest.raises(ValueError):
        registry.insert(job)
    with pytest.raises(ValueError):
        registry.complete(job)

    finished = replace(job, status=JobStatus.SUCCEEDED)
    registry.complete(finished)
    assert registry.get(job.job_id) == finished
    assert len(registry) == 1

    with pytest.raises(ValueError):
        registry.complete(replace(job, status=JobStatus.FAILED))
    with pytest.raises(KeyError):
        registry.complete(replace(finished, job_id=uuid4()))


def test_safe_file_name_keeps_identifier_suffix() -> None:
    job_id = uuid4()

    assert safe_file_name('AC/DC: "Back in Black" (Live)', job_id, "mp3") == (
        f"ACDC Back in Black (Live)_{job_id}.mp3"
    )
    assert safe_file_name("  ...  ", job_id, "mp3") == f"download_{job_id}.mp3"

    long_name = safe_file_name("word " * 200, job_id, "mp4")
    assert len(long_name) <= MAX_FILE_NAME_LENGTH
    assert long_name.endswith(f"_{job_id}.mp4")


def test_audio_download_args_include_cookies_when_given(tmp_path: Path) -> None:
    args = audio_download_args(
        "abc123def45",
        output_path=tmp_path / "out.mp3",
        credential_path=tmp_path / "cookies.txt",
    )

    assert args[args.index("--cookies") + 1] == str(tmp_path / "cookies.txt")
    assert "https://youtube.com/watch?v=abc123def45" in args
