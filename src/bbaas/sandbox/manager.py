"""
Sandbox lifecycle manager.

Creates one container per job, attaches to its output, and guarantees the
container is torn down exactly once:

- normal path: the container exits on its own and the runtime auto-removes it
  (observed as the end of the log stream);
- cancellation path: a watcher task, detached from the caller's task, force
  removes the container as soon as the handle's cancel event is set.

Typical use from a request handler:

    handle = await manager.launch(descriptor.to_payload())
    try:
        async for event in handle.events():
            ...
    finally:
        handle.close()  # safe from a cancelled task; removal runs in the watcher
"""

import asyncio
import time
from collections.abc import AsyncIterator

from ..config import OrchestratorConfig
from ..log_config import get_logger
from .demux import demux
from .errors import RuntimeAPIError, SandboxLaunchError
from .events import JobEvent, ResultEvent, StreamError, iter_lines, parse_events
from .runtime import DockerRuntime, LogStream
from .types import SANDBOX_LABEL, SandboxStatus

log = get_logger("manager", service="orchestrator")

# Watcher tasks live here so they are not tied to, or collected with, the caller.
_watcher_tasks: set[asyncio.Task[None]] = set()


class SandboxHandle:
    """A launched sandbox: its output stream plus the teardown machinery."""

    def __init__(
        self,
        container_id: str,
        runtime: DockerRuntime,
        logs: LogStream,
        framed: bool = True,
        cancel_event: asyncio.Event | None = None,
        remove_grace_seconds: float = 10.0,
        max_line_bytes: int = 16 * 1024 * 1024,
    ):
        self.container_id = container_id
        self.runtime = runtime
        self.framed = framed
        self.status = SandboxStatus.RUNNING
        self.created_at = time.time()
        self.remove_grace_seconds = remove_grace_seconds
        self.max_line_bytes = max_line_bytes

        self._logs = logs
        self._cancel = cancel_event or asyncio.Event()
        self._exited = False
        self._torn_down = False
        self._teardown_lock = asyncio.Lock()
        self._watcher: asyncio.Task[None] | None = None
        self.log = log.bind(container_id=container_id)

    @property
    def torn_down(self) -> bool:
        return self._torn_down

    def start_watcher(self) -> None:
        """Spawn the cancellation watcher on the running loop."""
        if self._watcher is not None:
            return
        task = asyncio.get_running_loop().create_task(self._watch_cancellation())
        _watcher_tasks.add(task)
        task.add_done_callback(_watcher_tasks.discard)
        self._watcher = task

    async def _watch_cancellation(self) -> None:
        await self._cancel.wait()
        if self._exited:
            return
        self.log.info("sandbox.cancel_requested")
        await self._teardown(reason="cancelled")

    async def _teardown(self, reason: str) -> None:
        async with self._teardown_lock:
            if self._torn_down:
                return
            self._torn_down = True

            start_time = time.time()
            outcome = "success"
            try:
                async with asyncio.timeout(self.remove_grace_seconds):
                    await self._logs.aclose()
                    removed = await self.runtime.remove_container(self.container_id, force=True)
                if not removed:
                    outcome = "already_removed"
                self.status = SandboxStatus.REMOVED
            except TimeoutError:
                outcome = "timeout"
                self.status = SandboxStatus.FAILED
                self.log.error("sandbox.remove_timeout", grace_s=self.remove_grace_seconds)
            except Exception as e:
                outcome = "error"
                self.status = SandboxStatus.FAILED
                self.log.error("sandbox.remove_error", exc=e)
            finally:
                self.log.info(
                    "sandbox.teardown",
                    reason=reason,
                    outcome=outcome,
                    duration_ms=int((time.time() - start_time) * 1000),
                )

    def _mark_exited(self) -> None:
        """The log stream ended: the container exited and auto-removal reclaims it."""
        if self._torn_down:
            return
        self._exited = True
        self._torn_down = True
        self.status = SandboxStatus.EXITED
        self.log.info(
            "sandbox.exited",
            duration_ms=int((time.time() - self.created_at) * 1000),
        )
        # Release the watcher; it sees the exit and does nothing.
        self._cancel.set()

    def close(self) -> None:
        """Request teardown. Synchronous so it can run in a cancelled task's cleanup."""
        self._cancel.set()

    async def wait_closed(self) -> None:
        """Wait until the watcher has finished any teardown it started."""
        if self._watcher is not None:
            await asyncio.shield(self._watcher)

    async def chunks(self) -> AsyncIterator[bytes]:
        """Raw bytes from the runtime. Marks the sandbox exited when the stream ends."""
        async for chunk in self._logs.chunks():
            yield chunk
        if not self._cancel.is_set():
            self._mark_exited()

    async def events(self) -> AsyncIterator[JobEvent]:
        """
        The typed event feed of this sandbox.

        Ends after the first result event, after a stream error, or when the
        container's output ends.
        """
        clean = demux(self.chunks(), framed=self.framed)
        async for event in parse_events(iter_lines(clean, self.max_line_bytes)):
            yield event
            if isinstance(event, (ResultEvent, StreamError)):
                if isinstance(event, StreamError):
                    self.log.warn("sandbox.stream_error", message=event.message)
                return


class SandboxManager:
    """Launches single-use sandboxes for jobs."""

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        runtime: DockerRuntime | None = None,
    ):
        self.config = config or OrchestratorConfig()
        self.runtime = runtime or DockerRuntime(self.config.docker_host)

    async def launch(self, payload: str, cancel: asyncio.Event | None = None) -> SandboxHandle:
        """
        Create, start and attach to a sandbox running one job.

        Args:
            payload: Serialized JobDescriptor, injected as JOB_PAYLOAD.
            cancel: Optional caller-owned cancellation signal. Setting it force
                removes the sandbox wherever it is in its execution.

        Raises:
            SandboxLaunchError: The runtime is unreachable or refused to create,
                start or attach. Launches are never retried.
        """
        start_time = time.time()
        image = self.config.worker_image

        try:
            await self.runtime.ping()
        except SandboxLaunchError as e:
            log.error("sandbox.launch_error", stage="ping", exc=e)
            raise

        try:
            container_id = await self.runtime.create_container(
                image=image,
                env=self.config.sandbox_env(payload),
                labels={SANDBOX_LABEL: "1"},
                auto_remove=True,
                tty=self.config.tty,
            )
        except RuntimeAPIError as e:
            log.error("sandbox.launch_error", stage="create", image=image, exc=e)
            raise SandboxLaunchError(f"could not create sandbox: {e}") from e

        try:
            await self.runtime.start_container(container_id)
        except (RuntimeAPIError, SandboxLaunchError) as e:
            log.error("sandbox.launch_error", stage="start", container_id=container_id, exc=e)
            raise SandboxLaunchError(f"could not start sandbox: {e}") from e
        except asyncio.CancelledError:
            self._remove_detached(container_id, stage="start")
            raise

        try:
            logs = await self.runtime.open_logs(container_id)
        except (RuntimeAPIError, SandboxLaunchError) as e:
            log.error("sandbox.launch_error", stage="attach", container_id=container_id, exc=e)
            # The container is already running; do not leave it behind.
            try:
                await self.runtime.remove_container(container_id, force=True)
            except Exception as remove_error:
                log.error("sandbox.remove_error", container_id=container_id, exc=remove_error)
            raise SandboxLaunchError(f"could not attach to sandbox output: {e}") from e
        except asyncio.CancelledError:
            self._remove_detached(container_id, stage="attach")
            raise

        handle = SandboxHandle(
            container_id=container_id,
            runtime=self.runtime,
            logs=logs,
            framed=not self.config.tty,
            cancel_event=cancel,
            remove_grace_seconds=self.config.remove_grace_seconds,
            max_line_bytes=self.config.max_line_bytes,
        )
        handle.start_watcher()

        log.info(
            "sandbox.launch",
            container_id=container_id,
            image=image,
            tty=self.config.tty,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return handle

    def _remove_detached(self, container_id: str, stage: str) -> None:
        """Force-remove a half-launched container outside the cancelled caller task."""

        async def remove() -> None:
            try:
                async with asyncio.timeout(self.config.remove_grace_seconds):
                    removed = await self.runtime.remove_container(container_id, force=True)
            except Exception as e:
                log.error("sandbox.remove_error", container_id=container_id, stage=stage, exc=e)
                return
            log.info(
                "sandbox.teardown",
                container_id=container_id,
                reason="launch_cancelled",
                stage=stage,
                outcome="success" if removed else "already_removed",
            )

        log.warn("sandbox.launch_cancelled", container_id=container_id, stage=stage)
        task = asyncio.get_running_loop().create_task(remove())
        _watcher_tasks.add(task)
        task.add_done_callback(_watcher_tasks.discard)

    async def list_sandboxes(self) -> list[str]:
        """IDs of the sandbox containers the runtime currently knows about."""
        containers = await self.runtime.list_containers(label=SANDBOX_LABEL)
        return [c.get("Id", "") for c in containers if c.get("Id")]

    async def aclose(self) -> None:
        await self.runtime.aclose()
