#!/usr/bin/env python3
"""
Sandbox worker entrypoint.

Runs as the container's main process. Responsibilities:
1. Install browser binaries (image build mode, or when missing at runtime)
2. Decode the job descriptor from JOB_PAYLOAD
3. Launch headless Chromium and run the requested action handler
4. Print exactly one JOB_RESULT line, whatever happened
"""

import asyncio
import os
import sys
import time
from pathlib import Path

from playwright.async_api import async_playwright

from ..config import WorkerConfig
from ..log_config import configure_logging, get_logger
from ..sandbox.types import PAYLOAD_ENV, DescriptorError, JobDescriptor, JobResult
from .handlers import HANDLERS
from .inference import InferenceClient
from .protocol import emit_result

DEFAULT_BROWSERS_PATH = "/ms-playwright"


class JobRunner:
    """Runs a single job inside the sandbox."""

    def __init__(self, config: WorkerConfig | None = None):
        self.config = config or WorkerConfig.from_env()
        self.browsers_path = Path(os.environ.get("PLAYWRIGHT_BROWSERS_PATH", DEFAULT_BROWSERS_PATH))
        self.log = get_logger("worker", service="sandbox")

    async def install_browsers(self) -> bool:
        """Install Chromium and its system dependencies via the Playwright CLI."""
        self.log.info("playwright.install_start")
        process = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "playwright",
            "install",
            "--with-deps",
            "chromium",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        stdout, _ = await process.communicate()

        if process.returncode != 0:
            output_tail = "\n".join(
                (stdout.decode(errors="replace") if stdout else "").splitlines()[-20:]
            )
            self.log.error(
                "playwright.install_error",
                exit_code=process.returncode,
                output_tail=output_tail,
            )
            return False

        self.log.info("playwright.install_complete")
        return True

    async def run_job(self, descriptor: JobDescriptor) -> JobResult:
        handler = HANDLERS[descriptor.action]
        inference = InferenceClient(self.config.inference)

        try:
            async with async_playwright() as pw:
                browser = await pw.chromium.launch(headless=True)
                try:
                    page = await browser.new_page(
                        viewport={
                            "width": self.config.viewport_width,
                            "height": self.config.viewport_height,
                        }
                    )
                    return await handler(page, descriptor, self.config, inference)
                finally:
                    await browser.close()
        finally:
            await inference.aclose()

    async def run(self, payload: str | None) -> JobResult:
        """Decode the payload and run the job, converting any failure into a result."""
        start_time = time.time()

        try:
            descriptor = JobDescriptor.from_payload(payload)
        except DescriptorError as e:
            self.log.error("worker.payload_error", exc=e)
            return JobResult.failure(str(e))

        self.log.info("worker.job_start", action=descriptor.action.value, url=descriptor.url)

        try:
            result = await self.run_job(descriptor)
        except Exception as e:
            self.log.error("worker.job_error", exc=e, action=descriptor.action.value)
            result = JobResult.failure(f"job failed: {e}")

        self.log.info(
            "worker.job_complete",
            action=descriptor.action.value,
            outcome="success" if result.success else "error",
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return result


async def main() -> int:
    """Entry point for the sandbox worker."""
    configure_logging(stream=sys.stdout)
    runner = JobRunner()

    if os.environ.get("INSTALL_ONLY") == "true":
        return 0 if await runner.install_browsers() else 1

    if not runner.browsers_path.exists():
        await runner.install_browsers()

    result = await runner.run(os.environ.get(PAYLOAD_ENV))
    emit_result(result)
    return 0 if result.success else 1


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
