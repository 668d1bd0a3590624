from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Protocol

import requests

from .errors import ReportError
from .state import StateSnapshot

logger = logging.getLogger("thermnode.reporting")


class SnapshotReporter(Protocol):
    def submit(self, snapshot: StateSnapshot) -> Future[None] | None: ...


class RemoteReporter:
    """Pushes identity + latest reading to the remote collector.

    ``submit`` is fire-and-forget: the report runs on a worker thread and a
    failure is only logged. At most one report is in flight; a reading
    submitted while the previous report is still running is dropped, so a
    stalled collector never builds a backlog. The next successful sensor
    cycle submits a fresh report.
    """

    def __init__(
        self,
        url: str,
        *,
        session: requests.Session | None = None,
        timeout_s: float = 10.0,
        executor: ThreadPoolExecutor | None = None,
    ) -> None:
        self.url = url.strip()
        self.timeout_s = timeout_s
        self._session = session or requests.Session()
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="report")
        self._lock = threading.Lock()
        self._in_flight: Future[None] | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def report(self, snapshot: StateSnapshot) -> None:
        if not snapshot.has_identity:
            raise ReportError("cannot report before identity is resolved")

        try:
            resp = self._session.post(
                self.url,
                params={"device": snapshot.identity, "reading": int(snapshot.last_reading)},
                timeout=self.timeout_s,
            )
        except requests.RequestException as exc:
            raise ReportError(f"report request failed: {exc}") from exc

        if not 200 <= resp.status_code < 300:
            raise ReportError(f"report rejected: {resp.status_code} {resp.text[:200]}")

    def submit(self, snapshot: StateSnapshot) -> Future[None] | None:
        if not self.enabled:
            logger.debug("reporting disabled; dropping reading %s", snapshot.last_reading)
            return None

        with self._lock:
            if self._in_flight is not None and not self._in_flight.done():
                logger.warning("previous report still in flight; dropping reading %s", snapshot.last_reading)
                return None
            try:
                future = self._executor.submit(self.report, snapshot)
            except RuntimeError:
                # Executor already shut down during process exit.
                logger.debug("reporter closed; dropping reading %s", snapshot.last_reading)
                return None
            self._in_flight = future

        future.add_done_callback(_log_report_outcome)
        return future

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
        self._session.close()


def _log_report_outcome(future: Future[None]) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is None:
        logger.debug("reading reported")
        return
    logger.warning("report dropped: %s", exc)
