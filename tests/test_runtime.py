"""Tests for the Docker Engine API client."""

import json

import httpx
import pytest

from bbaas.sandbox.demux import encode_frame
from bbaas.sandbox.errors import RuntimeAPIError, RuntimeUnavailableError
from bbaas.sandbox.runtime import DockerRuntime


def make_runtime(handler) -> DockerRuntime:
    return DockerRuntime("unix:///var/run/docker.sock", transport=httpx.MockTransport(handler))


class TestHostResolution:
    def test_tcp_host(self):
        runtime = DockerRuntime("tcp://10.0.0.2:2375")
        assert runtime.http_client.base_url.host == "10.0.0.2"
        assert runtime.http_client.base_url.port == 2375

    def test_unsupported_scheme(self):
        with pytest.raises(ValueError, match="Unsupported DOCKER_HOST"):
            DockerRuntime("ssh://docker-host")


class TestDockerRuntime:
    """Test request shapes and error mapping."""

    @pytest.mark.asyncio
    async def test_create_container_request(self):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201, json={"Id": "abc123", "Warnings": []})

        runtime = make_runtime(handler)
        container_id = await runtime.create_container(
            image="bbaas-worker:latest",
            env=["JOB_PAYLOAD={}"],
            labels={"bbaas.sandbox": "1"},
            auto_remove=True,
            tty=False,
        )
        await runtime.aclose()

        assert container_id == "abc123"
        assert seen[0].method == "POST"
        assert seen[0].url.path == "/containers/create"
        body = json.loads(seen[0].content)
        assert body["Image"] == "bbaas-worker:latest"
        assert body["Env"] == ["JOB_PAYLOAD={}"]
        assert body["Tty"] is False
        assert body["HostConfig"] == {"AutoRemove": True}

    @pytest.mark.asyncio
    async def test_error_status_uses_engine_message(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"message": "No such image: bbaas-worker:latest"})

        runtime = make_runtime(handler)
        with pytest.raises(RuntimeAPIError) as exc_info:
            await runtime.create_container(image="bbaas-worker:latest", env=[])

        assert exc_info.value.status_code == 404
        assert "No such image" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_unreachable_engine(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        runtime = make_runtime(handler)
        with pytest.raises(RuntimeUnavailableError, match="unreachable"):
            await runtime.ping()

    @pytest.mark.asyncio
    async def test_remove_already_gone(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "DELETE"
            assert request.url.params["force"] == "1"
            return httpx.Response(404, json={"message": "No such container: abc123"})

        runtime = make_runtime(handler)
        assert await runtime.remove_container("abc123") is False

    @pytest.mark.asyncio
    async def test_remove_success(self):
        runtime = make_runtime(lambda request: httpx.Response(204))
        assert await runtime.remove_container("abc123") is True

    @pytest.mark.asyncio
    async def test_remove_server_error_propagates(self):
        runtime = make_runtime(lambda request: httpx.Response(500, json={"message": "driver"}))
        with pytest.raises(RuntimeAPIError):
            await runtime.remove_container("abc123")

    @pytest.mark.asyncio
    async def test_list_containers_filters_by_label(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.url.params["filters"]) == {"label": ["bbaas.sandbox"]}
            return httpx.Response(200, json=[{"Id": "abc123"}])

        runtime = make_runtime(handler)
        assert await runtime.list_containers(label="bbaas.sandbox") == [{"Id": "abc123"}]

    @pytest.mark.asyncio
    async def test_open_logs_streams_raw_frames(self):
        raw = encode_frame(b"hello\n") + encode_frame(b"world\n", channel=2)

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/containers/abc123/logs"
            assert request.url.params["follow"] == "1"
            return httpx.Response(200, content=raw)

        runtime = make_runtime(handler)
        logs = await runtime.open_logs("abc123")
        received = b"".join([chunk async for chunk in logs.chunks()])
        await logs.aclose()

        assert received == raw

    @pytest.mark.asyncio
    async def test_open_logs_error(self):
        runtime = make_runtime(lambda request: httpx.Response(404, json={"message": "gone"}))
        with pytest.raises(RuntimeAPIError, match="gone"):
            await runtime.open_logs("abc123")
