"""
Demultiplexer for the combined stdout/stderr stream of a container.

A non-TTY container log stream is a sequence of frames:

    [channel: 1 byte][padding: 3 bytes][length: 4 bytes, big-endian][payload]

Channel 0 is stdin, 1 stdout, 2 stderr. Both output channels are treated as one
text stream, so the demultiplexer only strips headers and forwards payload
bytes in order. Frame boundaries do not line up with line boundaries.
"""

from collections.abc import AsyncIterator

from .errors import FrameCorruptionError, StreamReadError

HEADER_SIZE = 8
VALID_CHANNELS = (0, 1, 2)


class _ChunkReader:
    """Exact-size reads over an async iterator of arbitrarily sized chunks."""

    def __init__(self, chunks: AsyncIterator[bytes]):
        self._chunks = chunks.__aiter__()
        self._buffer = bytearray()
        self._eof = False

    async def _fill(self) -> bool:
        if self._eof:
            return False
        try:
            chunk = await self._chunks.__anext__()
        except StopAsyncIteration:
            self._eof = True
            return False
        except Exception as e:
            raise StreamReadError(f"error reading log stream: {e}") from e
        self._buffer.extend(chunk)
        return True

    async def read_exactly(self, size: int) -> bytes:
        """Return ``size`` bytes, or fewer only when the stream ended first."""
        while len(self._buffer) < size:
            if not await self._fill():
                break
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data

    async def read_up_to(self, size: int) -> bytes:
        """Return between 1 and ``size`` bytes, or b"" at end of stream."""
        if not self._buffer and not await self._fill():
            return b""
        data = bytes(self._buffer[:size])
        del self._buffer[:size]
        return data


def parse_header(header: bytes) -> tuple[int, int]:
    """Decode a frame header into ``(channel, payload_length)``."""
    channel = header[0]
    if channel not in VALID_CHANNELS or header[1:4] != b"\x00\x00\x00":
        raise FrameCorruptionError(f"invalid frame header: {header.hex()}")
    return channel, int.from_bytes(header[4:8], "big")


async def demux(chunks: AsyncIterator[bytes], framed: bool = True) -> AsyncIterator[bytes]:
    """
    Strip frame headers from a multiplexed log stream.

    Args:
        chunks: Raw bytes as delivered by the runtime, split anywhere.
        framed: False for TTY attachments, which carry no headers; the stream
            is then forwarded unchanged.

    Yields:
        Payload bytes in stream order. A payload is yielded as it arrives, so
        a large frame does not hold back output.

    Raises:
        FrameCorruptionError: A header is not a valid stream header.
        StreamReadError: The underlying stream failed.
    """
    if not framed:
        try:
            async for chunk in chunks:
                if chunk:
                    yield chunk
        except Exception as e:
            raise StreamReadError(f"error reading log stream: {e}") from e
        return

    reader = _ChunkReader(chunks)
    while True:
        header = await reader.read_exactly(HEADER_SIZE)
        if len(header) < HEADER_SIZE:
            # End of stream, possibly mid-header: the container is gone.
            return

        _channel, remaining = parse_header(header)
        while remaining > 0:
            data = await reader.read_up_to(remaining)
            if not data:
                # Payload cut short by end of stream.
                return
            remaining -= len(data)
            yield data


def encode_frame(payload: bytes, channel: int = 1) -> bytes:
    """Build one frame; the inverse of the demultiplexer for a single payload."""
    return bytes([channel, 0, 0, 0]) + len(payload).to_bytes(4, "big") + payload
