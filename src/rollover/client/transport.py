"""RPC transports between the coordinator and rollover services."""

from __future__ import annotations

from typing import Any, Callable, Dict, Optional, Protocol, runtime_checkable

import httpx
import structlog
from pydantic import ValidationError

from rollover.core.exceptions import ConfigurationError, TransportError
from rollover.service.models import JobSignal

logger = structlog.get_logger()


@runtime_checkable
class JobTransport(Protocol):
    """Fire-and-forget job calls plus awaiting the job's signal."""

    async def get_job_id(self, address: str) -> int:
        ...

    async def call(self, address: str, method: str, job_id: int, params: Dict[str, Any]) -> None:
        ...

    async def wait_for_signal(self, address: str, job_id: int) -> JobSignal:
        ...

    async def close(self) -> None:
        ...


class HttpTransport:
    """Talks to the FastAPI service of each target over HTTP.

    The signal endpoint long-polls: it answers 202 while the job is still
    running, so waiting re-polls until the single signal arrives. Replies
    that cannot be decoded are transport failures like unreachable hosts.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
        signal_wait: float = 30.0,
    ):
        self.signal_wait = signal_wait
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, read=signal_wait + timeout))

    @staticmethod
    def base_url(address: str) -> str:
        if address.startswith(("http://", "https://")):
            return address.rstrip("/")
        return f"http://{address}"

    async def _request(self, address: str, method: str, path: str, **kwargs) -> httpx.Response:
        url = f"{self.base_url(address)}{path}"
        try:
            resp = await self.client.request(method, url, **kwargs)
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as exc:
            raise TransportError(address, f"{method} {path} returned {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            raise TransportError(address, f"{method} {path} failed: {exc}") from exc

    @staticmethod
    def _json_object(address: str, path: str, resp: httpx.Response) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as exc:
            raise TransportError(address, f"{path} answered a non-JSON body") from exc
        if not isinstance(data, dict):
            raise TransportError(address, f"{path} answered {type(data).__name__}, expected an object")
        return data

    async def get_job_id(self, address: str) -> int:
        resp = await self._request(address, "POST", "/jobs")
        data = self._json_object(address, "/jobs", resp)
        try:
            return int(data["jobId"])
        except (KeyError, TypeError, ValueError) as exc:
            raise TransportError(address, f"/jobs answered no usable jobId: {data!r}") from exc

    async def call(self, address: str, method: str, job_id: int, params: Dict[str, Any]) -> None:
        body = {"jobId": job_id, **params}
        await self._request(address, "POST", f"/methods/{method}", json=body)
        logger.debug("Job submitted", address=address, method=method, job_id=job_id)

    async def wait_for_signal(self, address: str, job_id: int) -> JobSignal:
        path = f"/jobs/{job_id}/signal"
        while True:
            resp = await self._request(address, "GET", path, params={"wait": self.signal_wait})
            if resp.status_code == 200:
                data = self._json_object(address, path, resp)
                try:
                    return JobSignal(**data)
                except ValidationError as exc:
                    raise TransportError(address, f"{path} answered a malformed signal: {data!r}") from exc
            logger.debug("Job still running", address=address, job_id=job_id)

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()


TransportFactory = Callable[..., JobTransport]

_TRANSPORTS: Dict[str, TransportFactory] = {
    "http": HttpTransport,
}


def register_transport(name: str, factory: TransportFactory) -> None:
    """Make a transport available under a client interface name."""
    _TRANSPORTS[name] = factory


def get_transport(interface: str, **kwargs) -> JobTransport:
    """Build the transport registered for a client interface name."""
    try:
        factory = _TRANSPORTS[interface]
    except KeyError:
        raise ConfigurationError(
            f"Unknown client interface: {interface} (available: {', '.join(sorted(_TRANSPORTS))})",
            code="unknown_interface",
        ) from None
    return factory(**kwargs)
