"""Shared test doubles: a fake container runtime, a fake browser page and a scripted model."""

import asyncio
from collections.abc import AsyncIterator
from typing import Any

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from bbaas.sandbox.demux import encode_frame
from bbaas.sandbox.errors import RuntimeAPIError, RuntimeUnavailableError
from bbaas.worker.perception import CLEAN_TEXT_SCRIPT, INDEX_PAGE_SCRIPT, selector_for

FAKE_JPEG = b"\xff\xd8\xff\xe0fake-jpeg"


async def aiter_chunks(chunks: list[bytes]) -> AsyncIterator[bytes]:
    """Yield chunks one by one, letting other tasks run in between."""
    for chunk in chunks:
        yield chunk
        await asyncio.sleep(0)


def frames(*lines: str, channel: int = 1) -> list[bytes]:
    """One multiplexed frame per line, newline included."""
    return [encode_frame(f"{line}\n".encode(), channel=channel) for line in lines]


class FakeLogStream:
    """Log stream that replays chunks, then either ends or blocks until closed."""

    def __init__(self, chunks: list[bytes], hang: bool = False, on_end=None):
        self._chunks = chunks
        self._hang = hang
        self._on_end = on_end
        self._closed = asyncio.Event()
        self.closed = False

    async def chunks(self) -> AsyncIterator[bytes]:
        for chunk in self._chunks:
            yield chunk
            await asyncio.sleep(0)
        if self._hang:
            await self._closed.wait()
            return
        if self._on_end is not None:
            self._on_end()

    async def aclose(self) -> None:
        self.closed = True
        self._closed.set()


class FakeRuntime:
    """In-memory stand-in for DockerRuntime that tracks live containers."""

    def __init__(
        self,
        chunks: list[bytes] | None = None,
        hang: bool = False,
        unavailable: bool = False,
        fail_create: bool = False,
        fail_start: bool = False,
        fail_attach: bool = False,
        block: str | None = None,
    ):
        self.chunks = chunks or []
        self.hang = hang
        self.unavailable = unavailable
        self.fail_create = fail_create
        self.fail_start = fail_start
        self.fail_attach = fail_attach
        # "start" or "attach": that call parks until cancelled; `blocked` is set once it does.
        self.block = block
        self.blocked = asyncio.Event()

        self.containers: dict[str, dict[str, Any]] = {}
        self.create_calls: list[dict[str, Any]] = []
        self.removals: list[str] = []
        self.streams: list[FakeLogStream] = []
        self.closed = False

    async def ping(self) -> None:
        if self.unavailable:
            raise RuntimeUnavailableError("container runtime unreachable at unix:///fake.sock")

    async def create_container(self, image, env, labels=None, auto_remove=True, tty=False) -> str:
        if self.fail_create:
            raise RuntimeAPIError(404, f"No such image: {image}")
        container_id = f"c{len(self.create_calls) + 1}"
        call = {
            "image": image,
            "env": env,
            "labels": labels or {},
            "auto_remove": auto_remove,
            "tty": tty,
        }
        self.create_calls.append(call)
        self.containers[container_id] = {"Id": container_id, "State": "created", **call}
        return container_id

    async def start_container(self, container_id: str) -> None:
        await self._park("start")
        if self.fail_start:
            raise RuntimeAPIError(500, "cannot start container")
        self.containers[container_id]["State"] = "running"

    async def open_logs(self, container_id: str) -> FakeLogStream:
        await self._park("attach")
        if self.fail_attach:
            raise RuntimeAPIError(500, "cannot attach")

        def exited() -> None:
            # AutoRemove: the engine reclaims the container when it exits.
            if self.containers.get(container_id, {}).get("auto_remove"):
                self.containers.pop(container_id, None)

        stream = FakeLogStream(self.chunks, hang=self.hang, on_end=exited)
        self.streams.append(stream)
        return stream

    async def _park(self, stage: str) -> None:
        if self.block == stage:
            self.blocked.set()
            await asyncio.Event().wait()

    async def remove_container(self, container_id: str, force: bool = True) -> bool:
        self.removals.append(container_id)
        return self.containers.pop(container_id, None) is not None

    async def list_containers(self, label: str | None = None) -> list[dict[str, Any]]:
        return [
            c for c in self.containers.values() if label is None or label in c.get("labels", {})
        ]

    async def aclose(self) -> None:
        self.closed = True


def element(element_id: int, tag: str = "button", label: str = "", value: str = "") -> dict:
    """An element record as returned by the page indexing script."""
    return {
        "id": element_id,
        "tag": tag,
        "identifier": f"{tag}#el{element_id}",
        "label": label,
        "value": value,
    }


class FakeKeyboard:
    def __init__(self, page: "FakePage"):
        self._page = page

    async def press(self, key: str) -> None:
        self._page.actions.append(("press", key))


class FakePage:
    """
    Scripted browser page.

    ``snapshots`` are the successive results of the indexing script; the last
    one repeats once the list is used up. Only selectors of the most recent
    snapshot are considered attached to the DOM.
    """

    def __init__(
        self,
        snapshots: list[dict] | None = None,
        text: str = "Example Domain",
        content: str = "<html><body>Example Domain</body></html>",
        goto_error: str | None = None,
        content_error: str | None = None,
        evaluate_error: str | None = None,
        screenshot_error: str | None = None,
    ):
        self.snapshots = list(snapshots or [{"elements": [element(1)], "text": text}])
        self.text = text
        self._content = content
        self.goto_error = goto_error
        self.content_error = content_error
        self.evaluate_error = evaluate_error
        self.screenshot_error = screenshot_error

        self.url = "about:blank"
        self.keyboard = FakeKeyboard(self)
        self.actions: list[tuple] = []
        self.visits: list[str] = []
        self.screenshots = 0
        self.hidden: set[str] = set()
        self._attached: set[str] = set()

    async def goto(self, url: str, timeout: float | None = None, wait_until: str | None = None):
        if self.goto_error:
            raise PlaywrightError(self.goto_error)
        self.url = url
        self.visits.append(url)

    async def content(self) -> str:
        if self.content_error:
            raise PlaywrightError(self.content_error)
        return self._content

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        if self.evaluate_error:
            raise PlaywrightError(self.evaluate_error)
        if script == CLEAN_TEXT_SCRIPT:
            return self.text
        if script == INDEX_PAGE_SCRIPT:
            snapshot = self.snapshots.pop(0) if len(self.snapshots) > 1 else self.snapshots[0]
            self._attached = {
                selector_for(item["id"]) for item in snapshot.get("elements", [])
            }
            return snapshot
        raise AssertionError("unexpected script")

    async def screenshot(self, type: str = "png") -> bytes:
        if self.screenshot_error:
            raise PlaywrightError(self.screenshot_error)
        self.screenshots += 1
        return FAKE_JPEG

    async def wait_for_selector(self, selector: str, state: str = "visible", timeout=None):
        if selector not in self._attached or selector in self.hidden:
            raise PlaywrightTimeoutError(f"Timeout {timeout}ms exceeded waiting for {selector}")

    async def fill(self, selector: str, value: str, timeout=None) -> None:
        self.actions.append(("fill", selector, value))

    async def click(self, selector: str, timeout=None) -> None:
        self.actions.append(("click", selector))

    async def wait_for_timeout(self, timeout: float) -> None:
        await asyncio.sleep(0)


class FakeInference:
    """Scripted model: returns (or raises) the queued responses in order, repeating the last."""

    def __init__(self, responses: list[str | Exception]):
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []
        self.closed = False

    async def generate(self, prompt: str, images=None, options=None) -> str:
        self.calls.append({"prompt": prompt, "images": images or [], "options": options})
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    async def aclose(self) -> None:
        self.closed = True
