"""Remote job client: one RPC-backed operation against one target."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

import structlog

from rollover.client.transport import JobTransport
from rollover.core.exceptions import ManifestError
from rollover.core.models import ActivationMapping, Target

logger = structlog.get_logger()


@dataclass(frozen=True)
class JobOutcome:
    """Resolved result of one remote job."""

    success: bool
    lines: List[str] = field(default_factory=list)
    job_id: Optional[int] = None


class RemoteJobClient:
    """Issues activate/deactivate/lock/unlock jobs and returns futures.

    Every call returns immediately with an ``asyncio`` future that resolves
    once the target signals completion. Transport problems surface as
    ``TransportError`` from the future. The client never retries.
    """

    def __init__(self, transport: JobTransport, targets: Mapping[str, Target], target_property: str = "hostname"):
        self.transport = transport
        self.targets = dict(targets)
        self.target_property = target_property

    def _target(self, name: str) -> Target:
        try:
            return self.targets[name]
        except KeyError:
            raise ManifestError(f"Unknown target: {name}", code="unknown_target") from None

    async def _submit(self, target: Target, method: str, params: Dict[str, Any]) -> JobOutcome:
        address = target.address(self.target_property)
        job_id = await self.transport.get_job_id(address)
        await self.transport.call(address, method, job_id, params)
        signal = await self.transport.wait_for_signal(address, job_id)
        logger.debug(
            "Job resolved",
            target=target.name,
            method=method,
            job_id=job_id,
            signal=signal.signal.value,
        )
        return JobOutcome(success=signal.ok, lines=list(signal.lines), job_id=job_id)

    def _spawn(self, target: Target, method: str, params: Dict[str, Any]) -> "asyncio.Future[JobOutcome]":
        return asyncio.ensure_future(self._submit(target, method, params))

    @staticmethod
    def _activation_params(mapping: ActivationMapping) -> Dict[str, Any]:
        return {
            "derivation": mapping.service,
            "type": mapping.type,
            "arguments": list(mapping.arguments),
        }

    def activate(self, mapping: ActivationMapping) -> "asyncio.Future[JobOutcome]":
        return self._spawn(self._target(mapping.target), "activate", self._activation_params(mapping))

    def deactivate(self, mapping: ActivationMapping) -> "asyncio.Future[JobOutcome]":
        return self._spawn(self._target(mapping.target), "deactivate", self._activation_params(mapping))

    def lock(self, target: Target) -> "asyncio.Future[JobOutcome]":
        return self._spawn(target, "lock", {})

    def unlock(self, target: Target) -> "asyncio.Future[JobOutcome]":
        return self._spawn(target, "unlock", {})

    def set_profile(self, target: Target, profile: str, derivation: str) -> "asyncio.Future[JobOutcome]":
        return self._spawn(target, "set", {"profile": profile, "derivation": derivation})
