from __future__ import annotations

import os
import threading
import time
from pathlib import Path

import pytest

from backend.app.config import load_settings
from backend.app.services.download_sweeper import DownloadSweeper
from backend.app.services.format_probe import best_audio_format_id, parse_video_qualities
from backend.app.services.scheduler_service import PeriodicTask


def test_periodic_task_runs_callback_until_stopped() -> None:
    calls: list[float] = []
    task = PeriodicTask(name="test", interval_seconds=0.1, callback=lambda: calls.append(1.0))

    assert task.start() is True
    assert task.start() is False
    time.sleep(0.45)
    task.stop()
    task.stop()

    observed = len(calls)
    assert 2 <= observed <= 5
    time.sleep(0.25)
    assert len(calls) == observed
    assert task.is_running is False


def test_periodic_task_survives_failing_ticks() -> None:
    attempts = 0

    def _flaky() -> None:
        nonlocal attempts
        attempts += 1
        raise RuntimeError("boom")

    task = PeriodicTask(name="flaky", interval_seconds=0.05, callback=_flaky, run_on_start=True)
    task.start()
    time.sleep(0.3)
    task.stop()

    assert attempts >= 3
    assert task.tick_count == attempts


def test_periodic_task_ticks_never_overlap() -> None:
    active = 0
    max_active = 0
    lock = threading.Lock()

    def _slow() -> None:
        nonlocal active, max_active
        with lock:
            active += 1
            max_active = max(max_active, active)
        time.sleep(0.1)
        with lock:
            active -= 1

    task = PeriodicTask(name="slow", interval_seconds=0.01, callback=_slow)
    task.start()
    time.sleep(0.4)
    task.stop()

    assert max_active == 1


def test_periodic_task_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError):
        PeriodicTask(name="bad", interval_seconds=0, callback=lambda: None)


def test_download_sweeper_removes_only_old_files(tmp_path: Path) -> None:
    downloads_dir = tmp_path / "downloads"
    downloads_dir.mkdir()
    now = 1_700_000_000.0
    old_file = downloads_dir / "old.mp3"
    fresh_file = downloads_dir / "fresh.mp3"
    hidden_file = downloads_dir / ".partial.tmp"
    for path in (old_file, fresh_file, hidden_file):
        path.write_bytes(b"data")
    os.utime(old_file, (now - 2 * 86400, now - 2 * 86400))
    os.utime(hidden_file, (now - 2 * 86400, now - 2 * 86400))
    os.utime(fresh_file, (now - 60, now - 60))
    (downloads_dir / "nested").mkdir()

    sweeper = DownloadSweeper(downloads_dir=downloads_dir, max_age_seconds=86400, clock=lambda: now)

    assert sweeper.sweep() == 1
    assert not old_file.exists()
    assert fresh_file.exists()
    assert hidden_file.exists()
    assert sweeper.sweep() == 0


def test_download_sweeper_handles_missing_directory(tmp_path: Path) -> None:
    sweeper = DownloadSweeper(downloads_dir=tmp_path / "missing", max_age_seconds=10)
    assert sweeper.sweep() == 0


def test_load_settings_parses_bool_and_paths(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    data_dir = tmp_path / "data"
    monkeypatch.setenv("MP3VAULT_DATA_DIR", str(data_dir))
    monkeypatch.setenv("MP3VAULT_CREDENTIAL_REFRESH_ENABLED", "off")
    monkeypatch.setenv("MP3VAULT_DOWNLOAD_SWEEPER_ENABLED", "invalid")
    monkeypatch.setenv("MP3VAULT_CREDENTIAL_SOURCE_URL", " https://cookies.example.test/ ")
    monkeypatch.setenv("MP3VAULT_CREDENTIAL_ACCESS_KEY", "   ")
    monkeypatch.setenv("MP3VAULT_EXTRACTOR_COMMAND", " python3 -m yt_dlp ")
    monkeypatch.setenv("MP3VAULT_TELEMETRY_SINK", " LOG ")

    settings = load_settings()

    assert settings.credential_refresh_enabled is False
    assert settings.download_sweeper_enabled is True
    assert settings.credential_source_url == "https://cookies.example.test"
    assert settings.credential_access_key is None
    assert settings.extractor_command_parts == ("python3", "-m", "yt_dlp")
    assert settings.telemetry_sink == "log"
    assert settings.data_dir == data_dir.resolve()
    assert settings.downloads_dir == (data_dir / "downloads").resolve()
    assert settings.credential_path == (data_dir / "cookies.txt").resolve()
    assert settings.log_dir == (data_dir / "logs").resolve()
    assert settings.audio_job_timeout_seconds == 300
    assert settings.video_job_timeout_seconds == 600
    assert settings.probe_timeout_seconds == 15
    assert settings.credential_refresh_interval_seconds == 300
    assert settings.search_cache_ttl_seconds == 1800
    assert settings.trending_cache_ttl_seconds == 900


def test_load_settings_keeps_explicit_paths(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MP3VAULT_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.setenv("MP3VAULT_CREDENTIAL_PATH", str(tmp_path / "secrets" / "cookies.txt"))
    monkeypatch.setenv("MP3VAULT_EXTRACTOR_COMMAND", "'/opt/yt dlp/yt-dlp' --ignore-config")

    settings = load_settings()

    assert settings.credential_path == (tmp_path / "secrets" / "cookies.txt").resolve()
    assert settings.downloads_dir == (tmp_path / "data" / "downloads").resolve()
    assert settings.extractor_command_parts == ("/opt/yt dlp/yt-dlp", "--ignore-config")


def test_load_settings_rejects_unknown_telemetry_sink(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MP3VAULT_TELEMETRY_SINK", "otlp")
    with pytest.raises(ValueError):
        load_settings()


def test_parse_video_qualities_handles_sparse_listing() -> None:
    listing = "\n".join(
        [
            "251 webm  audio only      |  4.01MiB  opus",
            "22  mp4   1280x720    30fps | ~25.00MiB avc1 mp4a.40.2",
            "136 mp4   1280x720    30fps |  18.20MiB avc1 video only",
            "160 mp4   256x144           |  video only",
            "sb0 mhtml 48x27       storyboard",
        ]
    )

    qualities = parse_video_qualities(listing)

    assert best_audio_format_id(listing) == "140"
    assert [quality.format_id for quality in qualities] == ["22", "160+140"]
    assert qualities[0].fps == "30"
    assert qualities[0].filesize == "25.00MiB"
    assert qualities[1].filesize == "Unknown size"
    assert parse_video_qualities("") == []
