"""Per-target lock acquisition and guaranteed release."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Iterable, List

import structlog

from rollover.client.jobs import RemoteJobClient
from rollover.core.exceptions import LockAcquisitionError, ManifestError, TransportError
from rollover.core.models import Target

logger = structlog.get_logger()


@dataclass
class LockHandle:
    """Locks held by one transition attempt."""

    targets: List[Target] = field(default_factory=list)
    released: bool = False
    release_failures: List[str] = field(default_factory=list)

    @property
    def held(self) -> List[str]:
        return [] if self.released else [t.name for t in self.targets]


class LockCoordinator:
    """Locks every target of a transition before it starts.

    Targets are locked one at a time in ascending name order so that two
    transitions contending for overlapping target sets cannot deadlock. A
    failed lock request releases what this attempt already holds.
    """

    def __init__(self, client: RemoteJobClient):
        self.client = client

    async def _request(self, target: Target, operation: str) -> str | None:
        """Run one lock/unlock job; return a failure reason or None."""
        future = self.client.lock(target) if operation == "lock" else self.client.unlock(target)
        try:
            outcome = await future
        except (TransportError, ManifestError) as exc:
            return str(exc)
        if not outcome.success:
            return f"{operation} job reported failure"
        return None

    async def acquire(self, targets: Iterable[Target]) -> LockHandle:
        ordered = sorted({t.name: t for t in targets}.values(), key=lambda t: t.name)
        handle = LockHandle()
        try:
            for target in ordered:
                logger.info("Requesting lock", target=target.name)
                reason = await self._request(target, "lock")
                if reason is not None:
                    logger.error("Lock request failed", target=target.name, reason=reason)
                    raise LockAcquisitionError(target.name, reason)
                handle.targets.append(target)
        except BaseException:
            # Also reached on cancellation, before hold() has a handle to release.
            await self.release(handle)
            raise
        logger.info("All locks acquired", targets=[t.name for t in ordered])
        return handle

    async def release(self, handle: LockHandle) -> bool:
        """Unlock every target of the handle; later calls are no-ops."""
        if handle.released:
            return not handle.release_failures
        handle.released = True
        if not handle.targets:
            return True

        reasons = await asyncio.gather(*(self._request(t, "unlock") for t in handle.targets))
        for target, reason in zip(handle.targets, reasons):
            if reason is None:
                logger.info("Lock released", target=target.name)
            else:
                logger.warning("Unlock request failed", target=target.name, reason=reason)
                handle.release_failures.append(target.name)
        return not handle.release_failures

    @asynccontextmanager
    async def hold(self, targets: Iterable[Target]) -> AsyncIterator[LockHandle]:
        """Hold the locks for the duration of the block, whatever its exit."""
        handle = await self.acquire(targets)
        try:
            yield handle
        finally:
            await self.release(handle)
