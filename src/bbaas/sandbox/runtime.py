"""
Docker Engine API client.

Talks to the engine over its Unix socket (or a ``tcp://`` host) with httpx.
The log endpoint is consumed raw so the multiplexed frames reach the
demultiplexer untouched.
"""

import json
from collections.abc import AsyncIterator
from typing import Any
from urllib.parse import urlparse

import httpx

from ..log_config import get_logger
from .errors import RuntimeAPIError, RuntimeUnavailableError

log = get_logger("runtime", service="orchestrator")


class LogStream:
    """An open, follow-mode log response of one container."""

    def __init__(self, response: httpx.Response):
        self._response = response

    async def chunks(self) -> AsyncIterator[bytes]:
        async for chunk in self._response.aiter_raw():
            yield chunk

    async def aclose(self) -> None:
        await self._response.aclose()


class DockerRuntime:
    """Minimal async client for the container operations a sandbox needs."""

    HTTP_CONNECT_TIMEOUT = 5.0
    HTTP_DEFAULT_TIMEOUT = 30.0

    def __init__(
        self,
        docker_host: str = "unix:///var/run/docker.sock",
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.docker_host = docker_host
        base_url, default_transport = self._resolve_host(docker_host)
        self.http_client = httpx.AsyncClient(
            base_url=base_url,
            transport=transport or default_transport,
            timeout=httpx.Timeout(self.HTTP_DEFAULT_TIMEOUT, connect=self.HTTP_CONNECT_TIMEOUT),
        )

    @staticmethod
    def _resolve_host(docker_host: str) -> tuple[str, httpx.AsyncBaseTransport | None]:
        parsed = urlparse(docker_host)
        if parsed.scheme == "unix":
            return "http://docker", httpx.AsyncHTTPTransport(uds=parsed.path)
        if parsed.scheme in ("tcp", "http"):
            return f"http://{parsed.netloc}", None
        if parsed.scheme == "https":
            return f"https://{parsed.netloc}", None
        raise ValueError(f"Unsupported DOCKER_HOST: {docker_host}")

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self.http_client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise RuntimeUnavailableError(
                f"container runtime unreachable at {self.docker_host}: {e}"
            ) from e

        if resp.status_code >= 400:
            raise RuntimeAPIError(resp.status_code, self._error_message(resp))
        return resp

    @staticmethod
    def _error_message(resp: httpx.Response) -> str:
        try:
            body = resp.json()
        except ValueError:
            return resp.text
        if isinstance(body, dict) and isinstance(body.get("message"), str):
            return body["message"]
        return resp.text

    async def ping(self) -> None:
        """Raise RuntimeUnavailableError unless the engine answers."""
        try:
            await self._request("GET", "/_ping", timeout=self.HTTP_CONNECT_TIMEOUT)
        except RuntimeAPIError as e:
            raise RuntimeUnavailableError(f"container runtime unhealthy: {e}") from e

    async def create_container(
        self,
        image: str,
        env: list[str],
        labels: dict[str, str] | None = None,
        auto_remove: bool = True,
        tty: bool = False,
    ) -> str:
        body = {
            "Image": image,
            "Env": env,
            "Labels": labels or {},
            "Tty": tty,
            "AttachStdout": True,
            "AttachStderr": True,
            "HostConfig": {"AutoRemove": auto_remove},
        }
        resp = await self._request("POST", "/containers/create", json=body)
        container_id = resp.json().get("Id", "")
        if not container_id:
            raise RuntimeAPIError(resp.status_code, "create response carried no container Id")
        return container_id

    async def start_container(self, container_id: str) -> None:
        await self._request("POST", f"/containers/{container_id}/start")

    async def open_logs(self, container_id: str) -> LogStream:
        """Attach to the combined output in follow mode; ends when the container exits."""
        request = self.http_client.build_request(
            "GET",
            f"/containers/{container_id}/logs",
            params={"follow": "1", "stdout": "1", "stderr": "1"},
            timeout=httpx.Timeout(None, connect=self.HTTP_CONNECT_TIMEOUT),
        )
        try:
            resp = await self.http_client.send(request, stream=True)
        except httpx.TransportError as e:
            raise RuntimeUnavailableError(f"could not attach to logs: {e}") from e

        if resp.status_code != 200:
            await resp.aread()
            message = self._error_message(resp)
            await resp.aclose()
            raise RuntimeAPIError(resp.status_code, message)
        return LogStream(resp)

    async def remove_container(self, container_id: str, force: bool = True) -> bool:
        """Remove a container. Returns False if it was already gone."""
        try:
            await self._request(
                "DELETE",
                f"/containers/{container_id}",
                params={"force": "1" if force else "0"},
            )
        except RuntimeAPIError as e:
            # 404: already removed; 409: auto-removal already in progress
            if e.status_code in (404, 409):
                log.debug("runtime.remove_skipped", container_id=container_id, status=e.status_code)
                return False
            raise
        return True

    async def list_containers(self, label: str | None = None) -> list[dict[str, Any]]:
        params: dict[str, str] = {"all": "1"}
        if label:
            params["filters"] = json.dumps({"label": [label]})
        resp = await self._request("GET", "/containers/json", params=params)
        containers = resp.json()
        return containers if isinstance(containers, list) else []

    async def aclose(self) -> None:
        await self.http_client.aclose()
