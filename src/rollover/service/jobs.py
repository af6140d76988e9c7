"""Job table: one completion signal per job id."""

from __future__ import annotations

import asyncio
import time
from typing import Dict, List, Optional, Set

import structlog
from prometheus_client import Counter

from rollover.core.exceptions import JobError
from rollover.service.models import JobSignal, SignalKind

logger = structlog.get_logger()

JOBS_TOTAL = Counter(
    "rollover_jobs_total",
    "Jobs completed by the rollover service",
    ["method", "signal"],
)


class JobTable:
    """Futures keyed by job id, resolved exactly once.

    A signal can be awaited before or after it is emitted; it is handed out
    until a waiter has received it. Signals nobody collects are dropped
    ``retention`` seconds after emission. Started job ids are remembered for
    good, so a reused id is always rejected.
    """

    def __init__(self, retention: float = 3600.0):
        self.retention = retention
        self._signals: Dict[int, asyncio.Future] = {}
        self._emitted_at: Dict[int, float] = {}
        self._methods: Dict[int, str] = {}
        self._delivered: Set[int] = set()

    def _future(self, job_id: int) -> asyncio.Future:
        fut = self._signals.get(job_id)
        if fut is None:
            fut = asyncio.get_running_loop().create_future()
            self._signals[job_id] = fut
        return fut

    def _evict(self) -> None:
        cutoff = time.monotonic() - self.retention
        for job_id in [j for j, at in self._emitted_at.items() if at < cutoff]:
            self._signals.pop(job_id, None)
            del self._emitted_at[job_id]
            self._delivered.add(job_id)
            logger.warning("Dropping uncollected signal", job_id=job_id, method=self._methods.get(job_id))

    def start(self, job_id: int, method: str) -> None:
        if job_id in self._methods:
            raise JobError(f"Job {job_id} was already started", code="duplicate_job")
        self._evict()
        self._methods[job_id] = method
        self._future(job_id)

    def emit(self, job_id: int, signal: SignalKind, lines: Optional[List[str]] = None) -> None:
        if job_id in self._delivered:
            raise JobError(f"Job {job_id} already signalled", code="duplicate_signal")
        fut = self._future(job_id)
        if fut.done():
            raise JobError(f"Job {job_id} already signalled", code="duplicate_signal")
        fut.set_result(JobSignal(jobId=job_id, signal=signal, lines=lines or []))
        self._emitted_at[job_id] = time.monotonic()
        method = self._methods.get(job_id, "unknown")
        JOBS_TOTAL.labels(method=method, signal=signal.value).inc()
        logger.info("Job signalled", job_id=job_id, method=method, signal=signal.value)

    def is_known(self, job_id: int) -> bool:
        """Whether a signal for the job is pending or waiting to be collected."""
        return job_id in self._signals

    async def wait(self, job_id: int, timeout: float) -> Optional[JobSignal]:
        """The job's signal, or None if it did not arrive within ``timeout``.

        Once a waiter has received the signal, later waits time out.
        """
        if job_id in self._delivered:
            await asyncio.sleep(timeout)
            return None
        fut = self._future(job_id)
        try:
            signal = await asyncio.wait_for(asyncio.shield(fut), timeout)
        except asyncio.TimeoutError:
            return None
        if job_id not in self._delivered:
            self._signals.pop(job_id, None)
            self._emitted_at.pop(job_id, None)
            self._delivered.add(job_id)
        return signal
