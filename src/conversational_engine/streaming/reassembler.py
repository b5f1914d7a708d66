"""
Reassembly of a streamed chat response into reasoning and answer fragments.

The backend answers a streaming chat call with newline-delimited JSON records.
Transport chunks do not respect record boundaries: one chunk may carry several
records, and one record may be split across chunks at any byte (including in
the middle of a multi-byte UTF-8 sequence). 'StreamReassembler' keeps the
incomplete tail of the last chunk in a byte buffer and only parses complete
lines. A complete line that is not a valid record is skipped.

Each record may carry a reasoning increment ('message.thinking') and an answer
increment ('message.content'). The reassembler tracks whether it is inside a
reasoning segment and wraps that segment in 'REASONING_OPEN' /
'REASONING_CLOSE' markers, so the transcript it produces is a single string
from which a renderer can recover both channels:

    records   thinking="a", thinking="b", content="c", done
    fragments "<think>\\n", "a", "b", "\\n</think>\\n", "c"
    transcript "<think>\\nab\\n</think>\\nc"

The reassembler is pull-based: 'feed' returns the fragments produced by a
chunk. 'reassemble' wraps it around an async byte stream.
"""

from collections.abc import AsyncGenerator
from contextlib import aclosing
from enum import StrEnum

from loguru import logger
from pydantic import BaseModel, ValidationError

from conversational_engine.errors import BackendError
from conversational_engine.llms.base import GenerationMetrics, LLMMessage

REASONING_OPEN = "<think>\n"
REASONING_CLOSE = "\n</think>\n"


class FragmentKind(StrEnum):
    REASONING_OPEN = "reasoning_open"
    REASONING = "reasoning"
    REASONING_CLOSE = "reasoning_close"
    ANSWER = "answer"


class Fragment(BaseModel):
    """One incremental unit of reassembled text, in delivery order."""

    kind: FragmentKind
    text: str


class StreamState(StrEnum):
    ANSWERING = "answering"
    REASONING = "reasoning"


class ChatRecord(BaseModel):
    """
    One line of a streaming chat response.

    The counters are present on the final record only. 'error' is set, usually
    without any other field, when the backend aborts the generation after the
    response has started.
    """

    done: bool = False
    model: str = ""
    created_at: str = ""
    message: LLMMessage | None = None
    error: str | None = None
    total_duration: int | None = None
    load_duration: int | None = None
    prompt_eval_count: int | None = None
    eval_count: int | None = None
    eval_duration: int | None = None

    def metrics(self) -> GenerationMetrics | None:
        counters = (
            self.total_duration,
            self.load_duration,
            self.prompt_eval_count,
            self.eval_count,
            self.eval_duration,
        )
        if any(value is None for value in counters):
            return None
        return GenerationMetrics.from_counters(*counters)  # type: ignore[arg-type]


class StreamReassembler:
    """
    Line-buffered parser and reasoning/answer state machine for one stream.

    Attributes:
        state: Whether the stream is currently inside a reasoning segment.
        done: Set once the final record has been consumed; later input is ignored.
        metrics: Counters of the final record, when the backend reported them.
        skipped_records: Number of complete lines that could not be parsed.
    """

    def __init__(self) -> None:
        self.state = StreamState.ANSWERING
        self.done = False
        self.metrics: GenerationMetrics | None = None
        self.skipped_records = 0
        self._buffer = bytearray()
        self._transcript: list[str] = []
        self._reasoning: list[str] = []

    @property
    def transcript(self) -> str:
        """Concatenation of every fragment emitted so far, markers included."""
        return "".join(self._transcript)

    @property
    def reasoning(self) -> str | None:
        """Reasoning text without markers, or None if the model did not reason."""
        return "".join(self._reasoning) if self._reasoning else None

    def feed(self, chunk: bytes) -> list[Fragment]:
        """Consume one transport chunk and return the fragments it completes."""
        if self.done:
            return []
        self._buffer.extend(chunk)
        fragments: list[Fragment] = []
        while not self.done:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            line = bytes(self._buffer[:newline])
            del self._buffer[: newline + 1]
            fragments += self._consume_line(line)
        if self.done:
            self._buffer.clear()
        return fragments

    def finish(self) -> list[Fragment]:
        """Flush the stream at end of input.

        Parses a final line that was not newline-terminated. If the input ended
        without a final record, an open reasoning segment is closed so the
        transcript stays well-formed.
        """
        fragments: list[Fragment] = []
        if not self.done and self._buffer:
            line = bytes(self._buffer)
            self._buffer.clear()
            fragments += self._consume_line(line)
        if not self.done:
            logger.warning("Stream ended without a final record")
            if self.state is StreamState.REASONING:
                fragments.append(self._close_reasoning())
            self.done = True
        return fragments

    def _consume_line(self, line: bytes) -> list[Fragment]:
        if not line.strip():
            return []
        try:
            record = ChatRecord.model_validate_json(line)
        except ValidationError:
            self.skipped_records += 1
            logger.debug(f"Skipping malformed stream record: {line[:120]!r}")
            return []
        if record.error:
            raise BackendError(f"Backend reported an error: {record.error}", self.transcript)
        return self._apply(record)

    def _apply(self, record: ChatRecord) -> list[Fragment]:
        fragments: list[Fragment] = []
        message = record.message
        if message is not None:
            if message.thinking:
                if self.state is StreamState.ANSWERING:
                    self.state = StreamState.REASONING
                    fragments.append(self._emit(FragmentKind.REASONING_OPEN, REASONING_OPEN))
                self._reasoning.append(message.thinking)
                fragments.append(self._emit(FragmentKind.REASONING, message.thinking))
            if message.content:
                if self.state is StreamState.REASONING:
                    fragments.append(self._close_reasoning())
                fragments.append(self._emit(FragmentKind.ANSWER, message.content))

        if record.done:
            if self.state is StreamState.REASONING:
                fragments.append(self._close_reasoning())
            self.done = True
            self.metrics = record.metrics()
        return fragments

    def _close_reasoning(self) -> Fragment:
        self.state = StreamState.ANSWERING
        return self._emit(FragmentKind.REASONING_CLOSE, REASONING_CLOSE)

    def _emit(self, kind: FragmentKind, text: str) -> Fragment:
        self._transcript.append(text)
        return Fragment(kind=kind, text=text)


async def reassemble(
    chunks: AsyncGenerator[bytes, None],
    reassembler: StreamReassembler | None = None,
) -> AsyncGenerator[Fragment, None]:
    """Yield the fragments of a byte stream in order, stopping after the final record.

    The byte stream is closed as soon as the final record has been seen. A
    'BackendError' raised by the stream is re-raised with the transcript
    assembled so far attached as 'partial_transcript'.
    """
    reassembler = reassembler or StreamReassembler()
    async with aclosing(chunks):
        try:
            async for chunk in chunks:
                for fragment in reassembler.feed(chunk):
                    yield fragment
                if reassembler.done:
                    break
        except BackendError as exc:
            if not exc.partial_transcript:
                exc.partial_transcript = reassembler.transcript
            raise
    for fragment in reassembler.finish():
        yield fragment
