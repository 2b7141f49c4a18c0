"""
Agent loop: a bounded observe/think/act cycle driving one page.

    observing -> thinking -> acting -> observing ...

Terminal states:
- finished: a ``finish`` command was executed
- exhausted: the iteration budget ran out without ``finish`` (still a success)
- failed: the page could not be analyzed, or the model endpoint was never reachable

Model failures, malformed responses and per-command failures never abort the
loop. They are written to the history, which is fed back into the next prompt.
"""

import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..config import WorkerConfig
from ..log_config import get_logger
from ..sandbox.types import JobResult
from .commands import AgentCommand, CommandAction, CommandParseError, parse_commands
from .inference import InferenceClient, InferenceError
from .perception import (
    PageAnalysisError,
    PageObservation,
    SelectorIndex,
    StaleSelectorError,
    observe,
    take_screenshot,
)
from .prompts import build_agent_prompt

MODEL_OPTIONS = {"temperature": 0}


class AgentState(str, Enum):
    OBSERVING = "observing"
    THINKING = "thinking"
    ACTING = "acting"
    FINISHED = "finished"
    EXHAUSTED = "exhausted"
    FAILED = "failed"


class AgentHistory:
    """Append-only record of command outcomes, in execution order."""

    def __init__(self) -> None:
        self._entries: list[str] = []

    def append(self, entry: str) -> None:
        self._entries.append(entry)

    @property
    def entries(self) -> list[str]:
        return list(self._entries)


@dataclass
class AgentOutcome:
    state: AgentState
    iterations: int
    history: list[str] = field(default_factory=list)
    result_text: str = ""
    screenshot: str = ""
    error: str = ""

    def to_job_result(self, max_iterations: int) -> JobResult:
        log_text = "\n".join(self.history) or "(no actions)"
        if self.state is AgentState.FAILED:
            return JobResult.failure(self.error)
        if self.state is AgentState.FINISHED:
            summary = self.result_text or "Goal reported as complete."
            data = f"{summary}\n\nCompleted in {self.iterations} iteration(s).\n\nLog:\n{log_text}"
        else:
            data = (
                f"Iteration budget of {max_iterations} exhausted before the goal was "
                f"reported complete.\n\nLog:\n{log_text}"
            )
        return JobResult.ok(data=data, image=self.screenshot or None)


class AgentLoop:
    """Runs the observe/think/act cycle to a terminal state."""

    def __init__(
        self,
        page: Page,
        inference: InferenceClient,
        goal: str,
        config: WorkerConfig,
        on_screenshot: Callable[[str], None] | None = None,
    ):
        self.page = page
        self.inference = inference
        self.goal = goal
        self.config = config
        self.on_screenshot = on_screenshot
        self.state = AgentState.OBSERVING
        self.history = AgentHistory()
        self.iteration = 0
        self.log = get_logger("agent", service="sandbox")

    async def run(self) -> AgentOutcome:
        max_iterations = self.config.max_iterations
        unreachable_calls = 0
        start_time = time.time()

        self.log.info("agent.start", max_iterations=max_iterations)

        for iteration in range(1, max_iterations + 1):
            self.iteration = iteration

            self.state = AgentState.OBSERVING
            try:
                observation = await observe(self.page, iteration, self.config.agent_text_limit)
            except PageAnalysisError as e:
                self.log.error("agent.observe_error", iteration=iteration, exc=e)
                return self._outcome(AgentState.FAILED, error=str(e))
            self._publish(observation.screenshot)
            self.log.info(
                "agent.observe",
                iteration=iteration,
                elements=len(observation.elements),
                url=self.page.url,
            )

            self.state = AgentState.THINKING
            prompt = build_agent_prompt(
                self.goal,
                self.history.entries,
                [element.describe() for element in observation.elements],
                observation.text,
            )
            try:
                response = await self.inference.generate(
                    prompt, [observation.screenshot], MODEL_OPTIONS
                )
            except InferenceError as e:
                if e.unreachable:
                    unreachable_calls += 1
                self.log.warn("agent.model_error", iteration=iteration, exc=e)
                self.history.append(f"error: iteration {iteration} model request failed ({e})")
                continue

            try:
                commands = parse_commands(response)
            except CommandParseError as e:
                self.log.warn(
                    "agent.parse_error",
                    iteration=iteration,
                    detail=str(e),
                    response_chars=len(response),
                )
                self.history.append(
                    f"failure: iteration {iteration} response was invalid JSON, retry ({e})"
                )
                continue

            self.state = AgentState.ACTING
            finish = await self._act(commands, observation)
            if finish is not None:
                screenshot = await self._final_screenshot(observation.screenshot)
                self.log.info(
                    "agent.finish",
                    iteration=iteration,
                    duration_ms=int((time.time() - start_time) * 1000),
                )
                return self._outcome(
                    AgentState.FINISHED, result_text=finish.result, screenshot=screenshot
                )

        if unreachable_calls == max_iterations:
            return self._outcome(
                AgentState.FAILED,
                error=f"inference endpoint unreachable: {self.config.inference.endpoint}",
            )

        screenshot = await self._final_screenshot("")
        self.log.info(
            "agent.exhausted",
            iterations=max_iterations,
            duration_ms=int((time.time() - start_time) * 1000),
        )
        return self._outcome(AgentState.EXHAUSTED, screenshot=screenshot)

    async def _act(
        self, commands: list[AgentCommand], observation: PageObservation
    ) -> AgentCommand | None:
        """Execute a batch in order. Returns the finish command if one was reached."""
        for command in commands:
            if command.action is CommandAction.FINISH:
                self.history.append(f"success: finish ({command.result or 'no result given'})")
                return command

            entry = await self.execute(command, observation.index)
            self.log.info("agent.command", iteration=self.iteration, outcome=entry)
            self.history.append(entry)
        return None

    async def execute(self, command: AgentCommand, index: SelectorIndex) -> str:
        """Run one non-finish command and describe its outcome for the history."""
        wait_timeout = self.config.element_wait_timeout_ms
        description = command.describe()

        try:
            if command.action is CommandAction.PRESS:
                await self.page.keyboard.press(command.key or command.value or "Enter")
            else:
                selector = index.resolve(command.id)
                await self.page.wait_for_selector(selector, state="visible", timeout=wait_timeout)
                if command.action is CommandAction.FILL:
                    await self.page.fill(selector, command.value, timeout=wait_timeout)
                else:
                    await self.page.click(selector, timeout=wait_timeout)
        except StaleSelectorError as e:
            return f"failure: {description} - {e}"
        except PlaywrightTimeoutError:
            return f"failure: {description} - element not ready after {wait_timeout:.0f}ms"
        except PlaywrightError as e:
            return f"error: {description} - {_first_line(str(e))}"

        await self.page.wait_for_timeout(self.config.settle_delay_ms)
        return f"success: {description}"

    async def _final_screenshot(self, fallback: str) -> str:
        try:
            return await take_screenshot(self.page)
        except PageAnalysisError as e:
            self.log.warn("agent.screenshot_error", exc=e)
            return fallback

    def _publish(self, screenshot: str) -> None:
        if self.on_screenshot is not None:
            self.on_screenshot(screenshot)

    def _outcome(
        self,
        state: AgentState,
        result_text: str = "",
        screenshot: str = "",
        error: str = "",
    ) -> AgentOutcome:
        self.state = state
        return AgentOutcome(
            state=state,
            iterations=self.iteration,
            history=self.history.entries,
            result_text=result_text,
            screenshot=screenshot,
            error=error,
        )


def _first_line(message: str) -> str:
    return message.strip().splitlines()[0] if message.strip() else message
