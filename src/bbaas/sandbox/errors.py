"""Host-side error hierarchy."""


class SandboxError(Exception):
    """Base class for orchestrator errors."""

    pass


class SandboxLaunchError(SandboxError):
    """Raised when a sandbox cannot be created, started or attached. Never retried."""

    pass


class RuntimeUnavailableError(SandboxLaunchError):
    """Raised when the container runtime cannot be reached."""

    pass


class RuntimeAPIError(SandboxError):
    """Raised when the container runtime answers with an error status."""

    def __init__(self, status_code: int, message: str):
        super().__init__(f"runtime returned {status_code}: {message}")
        self.status_code = status_code
        self.message = message


class DemuxError(SandboxError):
    """Raised when the multiplexed log stream cannot be decoded."""

    pass


class FrameCorruptionError(DemuxError):
    """Raised when a frame header is not a valid stdout/stderr header."""

    pass


class StreamReadError(DemuxError):
    """Raised when reading the underlying log stream fails."""

    pass


class LineTooLongError(SandboxError):
    """Raised when a single output line exceeds the configured line limit."""

    pass
