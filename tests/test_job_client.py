"""Tests for the remote job client and its transports."""

import asyncio
import json

import httpx
import pytest

from conftest import make_manifest, make_mapping, make_target
from rollover.activate.transition import FailureKind, OutcomeStatus, TransitionEngine, TransitionState
from rollover.client.jobs import RemoteJobClient
from rollover.client.transport import HttpTransport, JobTransport, get_transport, register_transport
from rollover.core.exceptions import ConfigurationError, ManifestError, TransportError
from rollover.core.models import Manifest
from rollover.service.models import SignalKind


class TestRemoteJobClient:
    @pytest.mark.asyncio
    async def test_activate_returns_future(self, client, transport):
        mapping = make_mapping("/nix/store/aaa-db", "test2", type="mysql-database", arguments=["a=1"])

        future = client.activate(mapping)
        assert isinstance(future, asyncio.Future)
        outcome = await future

        assert outcome.success
        assert outcome.job_id == 0
        call = transport.calls[0]
        assert call.address == "test2"
        assert call.method == "activate"
        assert call.params == {"derivation": "/nix/store/aaa-db", "type": "mysql-database", "arguments": ["a=1"]}

    @pytest.mark.asyncio
    async def test_failure_signal(self, client, transport):
        transport.fail("deactivate", "svc")
        outcome = await client.deactivate(make_mapping("svc"))
        assert not outcome.success

    @pytest.mark.asyncio
    async def test_transport_error_surfaces_from_future(self, client, transport):
        transport.unreachable("activate", "svc")
        with pytest.raises(TransportError):
            await client.activate(make_mapping("svc"))

    @pytest.mark.asyncio
    async def test_unknown_target(self, client):
        with pytest.raises(ManifestError):
            await client.activate(make_mapping("svc", "nowhere"))

    @pytest.mark.asyncio
    async def test_lock_unlock_and_set(self, client, transport):
        target = make_target("test1")
        assert (await client.lock(target)).success
        assert (await client.unlock(target)).success
        assert (await client.set_profile(target, "default", "/nix/store/p")).success

        assert [c.method for c in transport.calls] == ["lock", "unlock", "set"]
        assert transport.calls[2].params == {"profile": "default", "derivation": "/nix/store/p"}

    @pytest.mark.asyncio
    async def test_calls_run_concurrently(self, client, transport):
        for name in ("a", "b", "c"):
            transport.delay("activate", name, 0.05)

        await asyncio.gather(*(client.activate(make_mapping(n)) for n in ("a", "b", "c")))
        assert transport.max_active == 3


def mock_service(pending_polls=1, signal="finish", method_status=202):
    """httpx handler imitating the rollover service HTTP surface."""
    state = {"polls": 0, "requests": []}

    def handler(request: httpx.Request) -> httpx.Response:
        state["requests"].append((request.method, request.url.path, request.content))
        if request.url.path == "/jobs":
            return httpx.Response(200, json={"jobId": 7})
        if request.url.path.startswith("/methods/"):
            return httpx.Response(method_status, json={"accepted": True})
        if request.url.path == "/jobs/7/signal":
            state["polls"] += 1
            if state["polls"] <= pending_polls:
                return httpx.Response(202, json={"pending": True})
            return httpx.Response(200, json={"jobId": 7, "signal": signal, "lines": ["out"]})
        return httpx.Response(404)

    return handler, state


class TestHttpTransport:
    def test_base_url(self):
        assert HttpTransport.base_url("test1.example.org:8800") == "http://test1.example.org:8800"
        assert HttpTransport.base_url("https://t/") == "https://t"

    @pytest.mark.asyncio
    async def test_job_round_trip(self):
        handler, state = mock_service(pending_polls=2)
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transport = HttpTransport(client=http, signal_wait=0.1)

        job_id = await transport.get_job_id("target:8800")
        await transport.call("target:8800", "activate", job_id, {"derivation": "/nix/store/x"})
        signal = await transport.wait_for_signal("target:8800", job_id)

        assert job_id == 7
        assert signal.signal == SignalKind.FINISH
        assert signal.lines == ["out"]
        assert state["polls"] == 3
        method, path, body = state["requests"][1]
        assert (method, path) == ("POST", "/methods/activate")
        assert json.loads(body) == {"jobId": 7, "derivation": "/nix/store/x"}
        await http.aclose()

    @pytest.mark.asyncio
    async def test_failure_signal(self):
        handler, _ = mock_service(pending_polls=0, signal="failure")
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        signal = await HttpTransport(client=http).wait_for_signal("target", 7)
        assert not signal.ok
        await http.aclose()

    @pytest.mark.asyncio
    async def test_error_status_is_transport_error(self):
        handler, _ = mock_service(method_status=500)
        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        with pytest.raises(TransportError) as exc_info:
            await HttpTransport(client=http).call("target", "lock", 7, {})
        assert exc_info.value.address == "target"
        await http.aclose()

    @pytest.mark.asyncio
    async def test_connection_error_is_transport_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
        with pytest.raises(TransportError):
            await HttpTransport(client=http).get_job_id("target")
        await http.aclose()

    @pytest.mark.asyncio
    async def test_close_leaves_borrowed_client_open(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        await HttpTransport(client=http).close()
        assert not http.is_closed
        await http.aclose()

    @pytest.mark.asyncio
    async def test_malformed_signal_is_transport_error(self):
        def handler(request):
            return httpx.Response(200, json={"garbage": 1})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        with pytest.raises(TransportError) as exc_info:
            await HttpTransport(client=http).wait_for_signal("target", 7)
        assert "malformed signal" in str(exc_info.value)
        await http.aclose()

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply",
        [
            httpx.Response(200, text="<html>proxy error</html>"),
            httpx.Response(200, json={"id": 3}),
            httpx.Response(200, json=[3]),
        ],
    )
    async def test_unusable_job_id_reply_is_transport_error(self, reply):
        http = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: reply))
        with pytest.raises(TransportError):
            await HttpTransport(client=http).get_job_id("target")
        await http.aclose()

    @pytest.mark.asyncio
    async def test_malformed_reply_recorded_per_mapping(self, targets):
        jobs = {}

        def handler(request):
            path = request.url.path
            if path == "/jobs":
                jobs[len(jobs)] = None
                return httpx.Response(200, json={"jobId": len(jobs) - 1})
            if path.startswith("/methods/"):
                body = json.loads(request.content)
                jobs[body["jobId"]] = (request.url.host, path.rsplit("/", 1)[1])
                return httpx.Response(202, json={"accepted": True})
            job_id = int(path.split("/")[2])
            if jobs[job_id] == ("test2", "activate"):
                return httpx.Response(200, json={"garbage": 1})
            return httpx.Response(200, json={"jobId": job_id, "signal": "finish"})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = RemoteJobClient(HttpTransport(client=http), targets)
        new = make_manifest(make_mapping("good", "test1"), make_mapping("bad", "test2"))

        result = await TransitionEngine(client, new, Manifest()).run()

        assert result.state == TransitionState.DONE
        outcomes = {str(k): o for k, o in result.activations.items()}
        assert outcomes["good@test1"].status == OutcomeStatus.SUCCEEDED
        assert outcomes["bad@test2"].failure == FailureKind.TRANSPORT
        assert not result.succeeded
        await http.aclose()


class TestTransportRegistry:
    def test_http_transport(self):
        transport = get_transport("http", timeout=5.0, signal_wait=1.0)
        assert isinstance(transport, HttpTransport)
        assert isinstance(transport, JobTransport)

    def test_unknown_interface(self):
        with pytest.raises(ConfigurationError) as exc_info:
            get_transport("soap")
        assert exc_info.value.code == "unknown_interface"

    def test_register_transport(self, transport):
        register_transport("fake", lambda **kwargs: transport)
        assert get_transport("fake") is transport
