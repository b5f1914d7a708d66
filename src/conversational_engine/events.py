"""
Generation events and their delivery channel.

A generation produces, in order, one 'fragment' event per reassembled fragment
and then either a 'done' event carrying the id of the persisted assistant
message or, once delivered through a 'FragmentChannel', an 'error' event.

'FragmentChannel' decouples the generation from whoever displays it: a pump
task drains the generation into a queue with 'put_nowait', so a slow or absent
consumer never stalls stream parsing. The queue is unbounded by default; with a
bound, overflowing fragments are dropped and logged, but the terminal event
always gets through.
"""

import asyncio
import json
from collections.abc import AsyncGenerator, AsyncIterator
from enum import StrEnum

from loguru import logger
from pydantic import BaseModel

from conversational_engine.errors import ConversationEngineError
from conversational_engine.streaming.reassembler import Fragment, FragmentKind


class GenerationEventType(StrEnum):
    FRAGMENT = "fragment"
    DONE = "done"
    ERROR = "error"


class GenerationEvent(BaseModel):
    type: GenerationEventType
    thread_id: int
    text: str | None = None
    kind: FragmentKind | None = None
    message_id: int | None = None
    error: str | None = None
    detail: str | None = None

    @classmethod
    def fragment(cls, thread_id: int, fragment: Fragment) -> "GenerationEvent":
        return cls(type=GenerationEventType.FRAGMENT, thread_id=thread_id, text=fragment.text, kind=fragment.kind)

    @classmethod
    def done(cls, thread_id: int, message_id: int) -> "GenerationEvent":
        return cls(type=GenerationEventType.DONE, thread_id=thread_id, message_id=message_id)

    @classmethod
    def failure(cls, thread_id: int, exc: BaseException) -> "GenerationEvent":
        return cls(type=GenerationEventType.ERROR, thread_id=thread_id, error=type(exc).__name__, detail=str(exc))

    def encode(self, charset: str = "utf-8") -> bytes:
        """Encode as one NDJSON line."""
        return (json.dumps(self.model_dump(mode="json", exclude_none=True)) + "\n").encode(charset)


class FragmentChannel:
    """
    Single-consumer queue of generation events.

    With a bound, a fragment that finds the queue full is dropped. The terminal
    'done' or 'error' event is always delivered: if the queue is full, the
    oldest queued fragment makes room for it. The end-of-stream marker does not
    count against the bound.

    Attributes:
        maxsize: Maximum number of queued events, 0 for unbounded.
        dropped: Number of events discarded because the queue was full.
    """

    def __init__(self, maxsize: int = 0) -> None:
        self._queue: asyncio.Queue[GenerationEvent | None] = asyncio.Queue()
        self._closed = False
        self.maxsize = maxsize
        self.dropped = 0

    def _full(self) -> bool:
        return self.maxsize > 0 and self._queue.qsize() >= self.maxsize

    def publish(self, event: GenerationEvent) -> None:
        """Enqueue 'event' without waiting."""
        if self._closed:
            return
        if self._full():
            if event.type is GenerationEventType.FRAGMENT:
                self.dropped += 1
                logger.warning(f"Fragment channel full, dropped fragment for thread {event.thread_id}")
                return
            # the terminal event is published last, so everything queued is a fragment
            self._queue.get_nowait()
            self.dropped += 1
            logger.warning(f"Fragment channel full, evicted oldest fragment to deliver {event.type}")
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Signal the end of the stream; the consumer stops after draining the queue."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    async def pump(self, thread_id: int, events: AsyncGenerator[GenerationEvent, None]) -> None:
        """Drain a generation into the channel and close it.

        Engine errors end the stream with an 'error' event; anything else is
        logged with its traceback and reported the same way.
        """
        try:
            async for event in events:
                self.publish(event)
        except ConversationEngineError as exc:
            logger.error(f"Generation in thread {thread_id} failed: {exc}")
            self.publish(GenerationEvent.failure(thread_id, exc))
        except Exception as exc:
            logger.exception(f"Unexpected error during generation in thread {thread_id}")
            self.publish(GenerationEvent.failure(thread_id, exc))
        finally:
            self.close()

    async def __aiter__(self) -> AsyncIterator[GenerationEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
