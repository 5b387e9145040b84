from __future__ import annotations

import logging
import threading
from typing import Callable

from onboardflow_api.store import InMemoryStore


logger = logging.getLogger(__name__)


class EngineClock:
    """Background tick and refresh loops for one store.

    Both loops share a stop event so they are torn down together; a store
    whose session ended never receives another tick.
    """

    def __init__(
        self,
        store: InMemoryStore,
        *,
        tick_seconds: float = 1.0,
        refresh_seconds: float = 30.0,
    ) -> None:
        if tick_seconds <= 0:
            raise ValueError("tick_seconds must be positive")
        self._store = store
        self._tick_seconds = tick_seconds
        self._refresh_seconds = refresh_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [self._spawn("onboardflow-tick", self._tick_seconds, self._store.tick)]
        if self._refresh_seconds > 0:
            self._threads.append(self._spawn("onboardflow-refresh", self._refresh_seconds, self._store.refresh))
        logger.info(
            "engine clock started: tick=%ss refresh=%s",
            self._tick_seconds,
            f"{self._refresh_seconds}s" if self._refresh_seconds > 0 else "off",
        )

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logger.info("engine clock stopped")

    def _spawn(self, name: str, interval: float, job: Callable[[], object]) -> threading.Thread:
        thread = threading.Thread(target=self._loop, args=(interval, job), name=name, daemon=True)
        thread.start()
        return thread

    def _loop(self, interval: float, job: Callable[[], object]) -> None:
        while not self._stop.wait(interval):
            try:
                job()
            except Exception:  # noqa: BLE001
                logger.exception("clock job %s failed", getattr(job, "__name__", job))
