from __future__ import annotations

import logging
import os
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

import httpx

from onboardflow_api.schemas import SyncAction, SyncResult
from onboardflow_api.security import redact_sensitive_text


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


def _sync_url() -> str | None:
    value = os.getenv("ONBOARDFLOW_SYNC_URL")
    if value is None or not value.strip():
        return None
    return value.strip()


def _sync_timeout() -> float:
    raw = os.getenv("ONBOARDFLOW_SYNC_TIMEOUT")
    if raw is None or not raw.strip():
        return DEFAULT_TIMEOUT_SECONDS
    try:
        return float(raw)
    except ValueError:
        logger.warning("ignoring invalid ONBOARDFLOW_SYNC_TIMEOUT=%r", raw)
        return DEFAULT_TIMEOUT_SECONDS


class SyncClient:
    """Best-effort client for the remote record store.

    ``notify`` hands the call to a worker pool and returns immediately; local
    state never waits on the remote side. With ``background=False`` the call
    runs inline, which keeps tests deterministic.
    """

    def __init__(
        self,
        url: str | None = None,
        *,
        background: bool = True,
        max_workers: int = 4,
        history_size: int = 200,
    ) -> None:
        self._url = url
        self._background = background
        self._max_workers = max_workers
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()
        self._closed = False
        self._results_lock = threading.Lock()
        self.recent_results: deque[SyncResult] = deque(maxlen=history_size)

    @property
    def sync_url(self) -> str | None:
        return self._url or _sync_url()

    def notify(self, action: SyncAction, payload: Any = None) -> Future[SyncResult] | None:
        if not self._background and not self._closed:
            self.post(action, payload)
            return None
        executor = None if self._closed else self._get_executor()
        if executor is None:
            logger.debug("dropping sync %s after shutdown", action.value, extra={"action": action.value})
            return None
        return executor.submit(self.post, action, payload)

    def post(self, action: SyncAction, payload: Any = None) -> SyncResult:
        base_url = self.sync_url
        if not base_url:
            return self._record(
                SyncResult(
                    action=action,
                    submitted=False,
                    sync_url=None,
                    message="sync url not configured",
                )
            )

        try:
            response = httpx.post(
                base_url,
                json={"action": action.value, "payload": payload if payload is not None else {}},
                timeout=_sync_timeout(),
                follow_redirects=True,
            )
            response.raise_for_status()
            data = response.json()
            if isinstance(data, dict) and data.get("status") not in (None, "success"):
                raise ValueError(f"remote store rejected {action.value}: {data.get('message') or data.get('status')}")
            return self._record(
                SyncResult(
                    action=action,
                    submitted=True,
                    sync_url=base_url,
                    message="synced",
                    data=data.get("data") if isinstance(data, dict) else data,
                )
            )
        except Exception as exc:  # noqa: BLE001
            sanitized_error = redact_sensitive_text(str(exc))
            logger.warning(
                "sync %s failed: %s",
                action.value,
                sanitized_error,
                extra={"action": action.value},
            )
            return self._record(
                SyncResult(
                    action=action,
                    submitted=False,
                    sync_url=redact_sensitive_text(base_url),
                    message=f"sync failed: {sanitized_error}",
                )
            )

    def fetch_all(self) -> dict[str, list[dict[str, Any]]] | None:
        result = self.post(SyncAction.GET_ALL)
        if not result.submitted or not isinstance(result.data, dict):
            return None
        return {
            "clients": list(result.data.get("clients") or []),
            "projects": list(result.data.get("projects") or []),
            "tasks": list(result.data.get("tasks") or []),
            "team": list(result.data.get("team") or []),
        }

    def shutdown(self, *, wait: bool = False) -> None:
        with self._executor_lock:
            self._closed = True
            executor = self._executor
            self._executor = None
        if executor is not None:
            executor.shutdown(wait=wait)

    def _get_executor(self) -> ThreadPoolExecutor | None:
        with self._executor_lock:
            if self._closed:
                return None
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._max_workers,
                    thread_name_prefix="onboardflow-sync",
                )
            return self._executor

    def _record(self, result: SyncResult) -> SyncResult:
        with self._results_lock:
            self.recent_results.append(result)
        if result.submitted:
            logger.debug("sync %s ok", result.action.value)
        return result
