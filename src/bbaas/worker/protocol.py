"""Output protocol of the worker: marker-prefixed JSON lines on stdout."""

import sys
from typing import TextIO

from ..sandbox.types import RESULT_MARKER, UPDATE_MARKER, JobResult, ProgressUpdate


def emit_update(image: str, stream: TextIO | None = None) -> None:
    """Publish a progress screenshot. Skipped when there is nothing to show."""
    if not image:
        return
    out = stream or sys.stdout
    out.write(f"{UPDATE_MARKER}{ProgressUpdate(image=image).model_dump_json()}\n")
    out.flush()


def emit_result(result: JobResult, stream: TextIO | None = None) -> None:
    """Publish the terminal result. The leading newline keeps it on its own line."""
    out = stream or sys.stdout
    out.write(f"\n{RESULT_MARKER}{result.to_json()}\n")
    out.flush()
