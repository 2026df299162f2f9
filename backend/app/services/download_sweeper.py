from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

LOGGER = logging.getLogger("mp3vault.sweeper")


class DownloadSweeper:
    """Deletes finished download files older than `max_age_seconds`."""

    def __init__(
        self,
        *,
        downloads_dir: Path,
        max_age_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_age_seconds <= 0:
            raise ValueError("max_age_seconds must be positive")
        self._downloads_dir = downloads_dir
        self._max_age_seconds = max_age_seconds
        self._clock = clock

    def sweep(self) -> int:
        if not self._downloads_dir.is_dir():
            return 0

        cutoff = self._clock() - self._max_age_seconds
        removed = 0
        for path in self._downloads_dir.iterdir():
            if not path.is_file() or path.name.startswith("."):
                continue
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
                path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                LOGGER.warning("could not remove old download path=%s error=%s", path, exc)
                continue
            removed += 1

        if removed:
            LOGGER.info("removed old downloads count=%s dir=%s", removed, self._downloads_dir)
        return removed
