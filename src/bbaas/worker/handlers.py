"""Action handlers. Each takes a loaded browser page and returns exactly one JobResult."""

from collections.abc import Awaitable, Callable

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page

from ..config import WorkerConfig
from ..log_config import get_logger
from ..sandbox.types import JobAction, JobDescriptor, JobResult
from .agent import AgentLoop
from .inference import InferenceClient, InferenceError
from .perception import PageAnalysisError, condensed_text, take_screenshot
from .prompts import DEFAULT_AGENT_GOAL, build_describe_prompt
from .protocol import emit_update

log = get_logger("handlers", service="sandbox")

Handler = Callable[[Page, JobDescriptor, WorkerConfig, InferenceClient], Awaitable[JobResult]]


class NavigationError(Exception):
    """Raised when the target page cannot be loaded. Fatal for the job."""

    pass


async def navigate(page: Page, url: str, timeout_ms: float) -> None:
    try:
        await page.goto(url, timeout=timeout_ms, wait_until="load")
    except PlaywrightError as e:
        raise NavigationError(f"could not goto: {e}") from e
    log.info("page.loaded", url=page.url)


async def handle_scrape(
    page: Page,
    descriptor: JobDescriptor,
    config: WorkerConfig,
    inference: InferenceClient,
) -> JobResult:
    try:
        await navigate(page, descriptor.url, config.navigation_timeout_ms)
    except NavigationError as e:
        return JobResult.failure(str(e))

    try:
        content = await page.content()
    except PlaywrightError as e:
        return JobResult.failure(f"could not get content: {e}")
    return JobResult.ok(data=content)


async def handle_describe(
    page: Page,
    descriptor: JobDescriptor,
    config: WorkerConfig,
    inference: InferenceClient,
) -> JobResult:
    """Single pass: one screenshot, the page text, one model call."""
    try:
        await navigate(page, descriptor.url, config.navigation_timeout_ms)
        screenshot = await take_screenshot(page)
        emit_update(screenshot)
        text = await condensed_text(page, config.describe_text_limit)
    except (NavigationError, PageAnalysisError) as e:
        return JobResult.failure(str(e))

    prompt = build_describe_prompt(text, descriptor.target)
    try:
        narrative = await inference.generate(prompt, [screenshot])
    except InferenceError as e:
        return JobResult.failure(str(e))
    return JobResult.ok(data=narrative, image=screenshot)


async def handle_agent_act(
    page: Page,
    descriptor: JobDescriptor,
    config: WorkerConfig,
    inference: InferenceClient,
) -> JobResult:
    try:
        await navigate(page, descriptor.url, config.navigation_timeout_ms)
    except NavigationError as e:
        return JobResult.failure(str(e))

    loop = AgentLoop(
        page=page,
        inference=inference,
        goal=descriptor.target or DEFAULT_AGENT_GOAL,
        config=config,
        on_screenshot=emit_update,
    )
    outcome = await loop.run()
    log.info(
        "agent.outcome",
        state=outcome.state.value,
        iterations=outcome.iterations,
        history_entries=len(outcome.history),
    )
    return outcome.to_job_result(config.max_iterations)


HANDLERS: dict[JobAction, Handler] = {
    JobAction.SCRAPE: handle_scrape,
    JobAction.DESCRIBE: handle_describe,
    JobAction.AGENT_ACT: handle_agent_act,
}
