"""
Pytest configuration and fixtures for rollover tests.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest

from rollover.client.jobs import RemoteJobClient
from rollover.core.exceptions import TransportError
from rollover.core.models import ActivationMapping, Manifest, MappingRef, Target
from rollover.service.models import JobSignal, SignalKind


@dataclass
class Call:
    address: str
    method: str
    job_id: int
    params: Dict[str, Any] = field(default_factory=dict)

    @property
    def subject(self) -> str:
        """Build reference for activation jobs, target address otherwise."""
        return self.params.get("derivation", self.address)


class FakeTransport:
    """In-memory JobTransport recording every RPC.

    Failures, transport errors and delays are keyed by ``(method, subject)``
    where the subject is the build reference of activation jobs and the
    target address of every other job.
    """

    def __init__(self):
        self.calls: List[Call] = []
        self.events: List[Tuple[str, str, str]] = []
        self.failures: Set[Tuple[str, str]] = set()
        self.transport_errors: Set[Tuple[str, str]] = set()
        self.delays: Dict[Tuple[str, str], float] = {}
        self.active = 0
        self.max_active = 0
        self.closed = False
        self._next_job_id = 0
        self._jobs: Dict[int, Call] = {}

    def fail(self, method: str, subject: str) -> None:
        self.failures.add((method, subject))

    def unreachable(self, method: str, subject: str) -> None:
        self.transport_errors.add((method, subject))

    def delay(self, method: str, subject: str, seconds: float) -> None:
        self.delays[(method, subject)] = seconds

    def subjects(self, method: str) -> List[str]:
        return [c.subject for c in self.calls if c.method == method]

    def index(self, kind: str, method: str, subject: str) -> int:
        return self.events.index((kind, method, subject))

    async def get_job_id(self, address: str) -> int:
        job_id = self._next_job_id
        self._next_job_id += 1
        return job_id

    async def call(self, address: str, method: str, job_id: int, params: Dict[str, Any]) -> None:
        call = Call(address, method, job_id, dict(params))
        if (method, call.subject) in self.transport_errors:
            raise TransportError(address, "connection refused")
        self.calls.append(call)
        self._jobs[job_id] = call
        self.events.append(("start", method, call.subject))
        self.active += 1
        self.max_active = max(self.max_active, self.active)

    async def wait_for_signal(self, address: str, job_id: int) -> JobSignal:
        call = self._jobs[job_id]
        key = (call.method, call.subject)
        try:
            await asyncio.sleep(self.delays.get(key, 0))
        finally:
            self.active -= 1
        self.events.append(("end", call.method, call.subject))
        signal = SignalKind.FAILURE if key in self.failures else SignalKind.FINISH
        return JobSignal(jobId=job_id, signal=signal)

    async def close(self) -> None:
        self.closed = True


def make_target(name: str) -> Target:
    return Target(name=name, properties={"hostname": name})


def make_mapping(
    service: str,
    target: str = "test1",
    depends_on: Optional[List[Tuple[str, str]]] = None,
    type: str = "process",
    arguments: Optional[List[str]] = None,
) -> ActivationMapping:
    return ActivationMapping(
        service=service,
        type=type,
        target=target,
        arguments=arguments or [],
        depends_on=[MappingRef(service=s, target=t) for s, t in (depends_on or [])],
    )


def make_manifest(*mappings: ActivationMapping, targets: Optional[List[str]] = None) -> Manifest:
    names = set(targets or []) | {m.target for m in mappings}
    return Manifest(activation=list(mappings), targets={n: make_target(n) for n in sorted(names)})


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def targets() -> Dict[str, Target]:
    return {name: make_target(name) for name in ("test1", "test2", "test3")}


@pytest.fixture
def client(transport, targets) -> RemoteJobClient:
    return RemoteJobClient(transport, targets)
