from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from uuid import uuid4

from structlog.contextvars import bind_contextvars, reset_contextvars

from backend.app.telemetry import TelemetryClient

LOGGER = logging.getLogger("mp3vault.scheduler")


class PeriodicTask:
    """Runs `callback` every `interval_seconds` on one daemon thread.

    Ticks never overlap: the next wait starts after the previous tick returns.
    A tick that raises is logged and the loop keeps going.
    """

    def __init__(
        self,
        *,
        name: str,
        interval_seconds: float,
        callback: Callable[[], object],
        telemetry: TelemetryClient | None = None,
        run_on_start: bool = False,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._name = name
        self._interval_seconds = interval_seconds
        self._callback = callback
        self._telemetry = telemetry if telemetry is not None else TelemetryClient.disabled()
        self._run_on_start = run_on_start
        self._stop_event = threading.Event()
        self._lifecycle_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self.tick_count = 0

    @property
    def name(self) -> str:
        return self._name

    @property
    def interval_seconds(self) -> float:
        return self._interval_seconds

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> bool:
        """Start the loop; returns False when it was already running."""
        with self._lifecycle_lock:
            if self.is_running:
                return False
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_loop,
                name=f"mp3vault-{self._name}",
                daemon=True,
            )
            self._thread.start()
            LOGGER.info(
                "periodic task started name=%s interval_seconds=%s",
                self._name,
                self._interval_seconds,
            )
            return True

    def stop(self, *, join_timeout: float = 3.0) -> None:
        with self._lifecycle_lock:
            self._stop_event.set()
            thread = self._thread
            self._thread = None
        if thread is None:
            return
        if thread is not threading.current_thread():
            thread.join(timeout=join_timeout)
        LOGGER.info("periodic task stopped name=%s", self._name)

    def _run_loop(self) -> None:
        if self._run_on_start:
            self._run_tick()
        while not self._stop_event.wait(self._interval_seconds):
            self._run_tick()

    def _run_tick(self) -> None:
        tick_id = uuid4().hex
        tick_tokens = bind_contextvars(scheduler_tick_id=tick_id, scheduler_task=self._name)
        started_at = time.perf_counter()
        self._telemetry.emit("scheduler.tick.start", tick_id=tick_id, task=self._name)
        try:
            self._callback()
        except Exception as exc:
            self._telemetry.emit(
                "scheduler.tick.error",
                tick_id=tick_id,
                task=self._name,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                error_type=type(exc).__name__,
            )
            LOGGER.warning("periodic task tick failed name=%s", self._name, exc_info=True)
        else:
            self._telemetry.emit(
                "scheduler.tick.finish",
                tick_id=tick_id,
                task=self._name,
                duration_ms=int((time.perf_counter() - started_at) * 1000),
                outcome="ok",
            )
        finally:
            self.tick_count += 1
            reset_contextvars(**tick_tokens)
