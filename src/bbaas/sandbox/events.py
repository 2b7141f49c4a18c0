"""
Sentinel event parser.

Turns the clean text stream of a sandbox into typed events. A line carrying
``JOB_UPDATE:<json>`` is a progress image, a line carrying ``JOB_RESULT:<json>``
is the terminal job result, and anything else is a log line. Markers are
searched anywhere in the line since output may carry leading noise bytes.
"""

from collections.abc import AsyncIterator
from typing import Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from ..log_config import get_logger
from .errors import LineTooLongError, SandboxError
from .types import RESULT_MARKER, UPDATE_MARKER, JobResult, ProgressUpdate

log = get_logger("events", service="orchestrator")

DEFAULT_MAX_LINE_BYTES = 16 * 1024 * 1024


class LogLine(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["log"] = "log"
    text: str


class ProgressImage(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["image"] = "image"
    image: str


class ResultEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["result"] = "result"
    result: JobResult


class StreamError(BaseModel):
    """Terminal event: the output stream broke before a result arrived."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["stream_error"] = "stream_error"
    message: str


JobEvent = LogLine | ProgressImage | ResultEvent | StreamError


async def iter_lines(
    chunks: AsyncIterator[bytes],
    max_line_bytes: int = DEFAULT_MAX_LINE_BYTES,
) -> AsyncIterator[str]:
    """
    Split a byte stream into text lines, independent of chunk boundaries.

    A trailing line without a newline is yielded at end of stream.

    Raises:
        LineTooLongError: A single line grew beyond ``max_line_bytes``.
    """
    buffer = bytearray()
    async for chunk in chunks:
        start = len(buffer)
        buffer.extend(chunk)

        search_from = start
        while True:
            newline = buffer.find(b"\n", search_from)
            if newline == -1:
                break
            line = bytes(buffer[:newline])
            del buffer[: newline + 1]
            search_from = 0
            yield _decode(line)

        if len(buffer) > max_line_bytes:
            raise LineTooLongError(
                f"line exceeds {max_line_bytes} bytes without a newline"
            )

    if buffer:
        yield _decode(bytes(buffer))


def _decode(line: bytes) -> str:
    return line.decode("utf-8", errors="replace").rstrip("\r")


def classify_line(line: str) -> LogLine | ProgressImage | ResultEvent:
    """Classify one line; a marker followed by undecodable JSON stays a log line."""
    idx = line.find(UPDATE_MARKER)
    if idx != -1:
        try:
            update = ProgressUpdate.model_validate_json(line[idx + len(UPDATE_MARKER) :])
            return ProgressImage(image=update.image)
        except ValidationError:
            pass

    idx = line.find(RESULT_MARKER)
    if idx != -1:
        try:
            result = JobResult.model_validate_json(line[idx + len(RESULT_MARKER) :])
            return ResultEvent(result=result)
        except ValidationError:
            log.debug("events.result_decode_failed", line_length=len(line))

    return LogLine(text=line)


async def parse_events(lines: AsyncIterator[str]) -> AsyncIterator[JobEvent]:
    """
    Yield one event per line, in order, as soon as each line is complete.

    A failure of the upstream stream ends the feed with a ``StreamError``.
    """
    try:
        async for line in lines:
            yield classify_line(line)
    except SandboxError as e:
        log.warn("events.stream_error", exc=e)
        yield StreamError(message=str(e))
    except Exception as e:
        log.error("events.stream_error", exc=e)
        yield StreamError(message=f"error reading logs: {e}")
