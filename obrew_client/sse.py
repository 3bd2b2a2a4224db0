"""
Server-Sent-Event stream decoding.

Turns a chunked byte stream into Decoded Frames:

    :<text>          -> CommentFrame
    event:<name>     -> EventFrame
    data: <payload>  -> DataFrame   (legacy spaced form, tried first)
    data:<payload>   -> DataFrame
    anything else    -> ignored

A DataFrame whose payload is exactly "[DONE]" ends the stream logically
even if the connection stays open.

Chunk boundaries fall anywhere, including inside a line or inside a
multi-byte character. FrameParser keeps the unfinished tail of the last
chunk and prepends it to the next one before splitting, so a frame is
never split in two.

State machine of a StreamDecoder:

    READING -> READING | DONE | ABORTED -> RELEASED

RELEASED is entered exactly once, on every exit path.
"""

import codecs
import logging
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import AsyncGenerator, AsyncIterator, Callable, Optional, Protocol, Union

from obrew_client.cancellation import CancellationToken
from obrew_client.errors import RequestCancelled
from obrew_client.normalize import extract_text_from_raw

logger = logging.getLogger(__name__)

DONE_SENTINEL = "[DONE]"

COMMENT_PREFIX = ":"
EVENT_PREFIX = "event:"
DATA_PREFIX = "data:"
LEGACY_DATA_PREFIX = "data: "


# ─────────────────────────────────────────────────────────────────────
# FRAMES
# ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CommentFrame:
    text: str


@dataclass(frozen=True)
class EventFrame:
    name: str


@dataclass(frozen=True)
class DataFrame:
    payload: str

    @property
    def is_done(self) -> bool:
        return self.payload == DONE_SENTINEL


Frame = Union[CommentFrame, EventFrame, DataFrame]


def _strip_one_space(value: str) -> str:
    return value[1:] if value.startswith(" ") else value


def parse_line(line: str) -> Optional[Frame]:
    """Classify one line. Returns None for blank or unrecognised lines."""
    if line.endswith("\r"):
        line = line[:-1]
    if not line:
        return None
    if line.startswith(COMMENT_PREFIX):
        return CommentFrame(_strip_one_space(line[len(COMMENT_PREFIX):]))
    if line.startswith(EVENT_PREFIX):
        return EventFrame(_strip_one_space(line[len(EVENT_PREFIX):]))
    if line.startswith(LEGACY_DATA_PREFIX):
        return DataFrame(line[len(LEGACY_DATA_PREFIX):])
    if line.startswith(DATA_PREFIX):
        return DataFrame(line[len(DATA_PREFIX):])
    logger.debug(f"Ignoring unrecognised stream line: {line[:80]!r}")
    return None


class FrameParser:
    """
    Incremental line reassembly and classification.

    feed() accepts bytes or str and returns the frames completed by that
    chunk; flush() returns whatever the final, unterminated line holds.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    @property
    def pending(self) -> str:
        """Unterminated tail carried over to the next chunk."""
        return self._buffer

    def feed(self, chunk: Union[bytes, str]) -> list[Frame]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        if not chunk:
            return []
        lines = (self._buffer + chunk).split("\n")
        self._buffer = lines.pop()
        frames = []
        for line in lines:
            frame = parse_line(line)
            if frame is not None:
                frames.append(frame)
        return frames

    def flush(self) -> list[Frame]:
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        frame = parse_line(tail)
        return [frame] if frame is not None else []


# ─────────────────────────────────────────────────────────────────────
# DECODER
# ─────────────────────────────────────────────────────────────────────

class StreamSource(Protocol):
    """What the decoder needs from an open response body."""

    def aiter_bytes(self) -> AsyncIterator[bytes]:
        ...

    async def aclose(self) -> None:
        ...


class DecoderState(str, Enum):
    READING = "reading"
    DONE = "done"
    ABORTED = "aborted"
    RELEASED = "released"


@dataclass
class DecodeResult:
    """Terminal outcome of StreamDecoder.decode()."""
    state: DecoderState
    text: str = ""
    frames: int = 0
    skipped_chunks: int = 0

    @property
    def aborted(self) -> bool:
        return self.state is DecoderState.ABORTED


async def _next_chunk(iterator: AsyncIterator[bytes]) -> Optional[bytes]:
    """Next chunk, or None once the source is exhausted."""
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


def _split_at_done(frames: list[Frame]) -> tuple[list[Frame], bool]:
    """Frames before the [DONE] sentinel, and whether it was seen."""
    for i, frame in enumerate(frames):
        if isinstance(frame, DataFrame) and frame.is_done:
            return frames[:i], True
    return frames, False


class StreamDecoder:
    """
    Consumes one response body into frames.

    Two surfaces share the same read loop:
    - frames(): async generator of Frames, finite and not restartable
    - decode(): callback dispatch, optional text accumulation

    Usage:
        decoder = StreamDecoder(stream, token)
        result = await decoder.decode(on_data=print, accumulate_text=True)
    """

    def __init__(self, source: StreamSource, token: Optional[CancellationToken] = None):
        self._source = source
        self._token = token or CancellationToken()
        self._parser = FrameParser()
        self._started = False
        self._iterator: Optional[AsyncIterator[bytes]] = None
        self._outcome: Optional[DecoderState] = None
        self.state = DecoderState.READING

    @property
    def outcome(self) -> Optional[DecoderState]:
        """DONE or ABORTED once reading stopped; None while reading or after an error."""
        return self._outcome

    async def _release(self) -> None:
        if self.state is DecoderState.RELEASED:
            return
        self.state = DecoderState.RELEASED
        closer = getattr(self._iterator, "aclose", None)
        if closer is not None:
            try:
                await closer()
            except Exception as e:
                logger.debug(f"Error closing stream reader: {e}")
        try:
            await self._source.aclose()
        except Exception as e:
            logger.debug(f"Error releasing stream: {e}")

    def _stop(self, outcome: DecoderState) -> None:
        self._outcome = outcome
        self.state = outcome

    def _aborted(self) -> bool:
        """Checked before each frame; frames left in a chunk are dropped once the token fires."""
        if self._token.cancelled:
            self._stop(DecoderState.ABORTED)
            return True
        return False

    async def _chunks(self) -> AsyncGenerator[list[Frame], None]:
        """
        Yield the frames completed by each chunk.

        Stops at source exhaustion, [DONE], or cancellation; releases the
        source on every exit path.
        """
        if self._started:
            raise RuntimeError("StreamDecoder can only be consumed once")
        self._started = True

        iterator = self._iterator = self._source.aiter_bytes().__aiter__()
        try:
            while True:
                if self._aborted():
                    return
                try:
                    chunk = await self._token.run(_next_chunk(iterator))
                except RequestCancelled:
                    self._stop(DecoderState.ABORTED)
                    return

                exhausted = chunk is None
                frames = self._parser.flush() if exhausted else self._parser.feed(chunk)
                frames, done = _split_at_done(frames)
                if frames:
                    yield frames
                if done or exhausted:
                    self._stop(DecoderState.DONE)
                    return
        finally:
            await self._release()

    async def frames(self) -> AsyncGenerator[Frame, None]:
        """Lazy sequence of frames. The [DONE] sentinel is not yielded."""
        async with aclosing(self._chunks()) as chunks:
            async for batch in chunks:
                for frame in batch:
                    if self._aborted():
                        return
                    yield frame

    async def decode(
        self,
        on_comment: Optional[Callable[[str], None]] = None,
        on_event: Optional[Callable[[str], None]] = None,
        on_data: Optional[Callable[[str], None]] = None,
        on_finish: Optional[Callable[[str], None]] = None,
        accumulate_text: bool = False,
    ) -> DecodeResult:
        """
        Dispatch every frame to its callback.

        on_data sees each payload before any accumulation. With
        accumulate_text, payloads are parsed as JSON and normalized to
        text; unparseable payloads count as text verbatim. A failure while
        handling a chunk is logged and the rest of that chunk is skipped.
        on_finish(text) runs only on clean termination, never on abort.
        """
        parts: list[str] = []
        result = DecodeResult(state=DecoderState.READING)

        async with aclosing(self._chunks()) as chunks:
            async for batch in chunks:
                try:
                    for frame in batch:
                        if self._aborted():
                            break
                        result.frames += 1
                        if isinstance(frame, CommentFrame):
                            if on_comment:
                                on_comment(frame.text)
                        elif isinstance(frame, EventFrame):
                            if on_event:
                                on_event(frame.name)
                        else:
                            if on_data:
                                on_data(frame.payload)
                            if accumulate_text:
                                parts.append(extract_text_from_raw(frame.payload))
                except Exception as e:
                    result.skipped_chunks += 1
                    logger.warning(f"Skipping stream chunk after error: {e}")
                if self._aborted():
                    break

        result.state = self._outcome or DecoderState.DONE
        result.text = "".join(parts)
        if not result.aborted and on_finish:
            on_finish(result.text)
        return result
