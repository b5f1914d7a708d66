"""
Conversation engine controller (Facade).

'ConversationController' is the single entry point for conversation logic. It
coordinates the thread and message repositories, the inference backend and
the stream reassembler to run a generation:

    1. read the system prompt and ordered history (short store operations),
    2. stream the backend response through 'StreamReassembler' (no store lock
       held), forwarding each fragment as soon as it is reassembled,
    3. persist the assistant message with its transcript, reasoning and metrics.

A failure or cancellation at any point before step 3 persists nothing.

Every operation that ends in a generation exists in two forms:

    'generate_stream', 'send_stream', 'edit_stream', 'regenerate_stream',
    'regenerate_from_stream' - async generators yielding 'GenerationEvent's
                               (fragments, then 'done' with the message id).
    'generate', 'send', 'edit', 'regenerate', 'regenerate_from'
                             - consume the stream, optionally forwarding each
                               fragment to 'on_fragment', and return the id of
                               the new assistant message.

Mutations of a thread's messages hold a per-thread guard for their whole
duration, so two generations on the same thread never interleave, while
generations on different threads stream concurrently.

Invalidation rules (after each, the thread is a prefix of what it was, then
exactly one new assistant message):

    edit            - replace the message's content, drop everything after it.
    regenerate      - drop the trailing assistant message, if there is one.
    regenerate_from - drop the message and everything after it.
"""

import asyncio
from collections import Counter
from collections.abc import AsyncGenerator, Callable
from contextlib import aclosing, asynccontextmanager

from loguru import logger

from conversational_engine.conversation_database.data_models.message import Message, MessageDatabase
from conversational_engine.conversation_database.data_models.thread import Thread, ThreadDatabase
from conversational_engine.documents.attachments import Attachment, TextExtractor, inline_document, split_attachments
from conversational_engine.documents.pdf import extract_pdf_text
from conversational_engine.errors import (
    BackendError,
    ForeignKeyError,
    GenerationCancelled,
    MessageNotFoundError,
    StorageError,
)
from conversational_engine.events import GenerationEvent, GenerationEventType
from conversational_engine.llms.base import ChatBackend, LLMMessage, Roles
from conversational_engine.streaming.reassembler import StreamReassembler, reassemble

FragmentCallback = Callable[[str], None]

DEFAULT_THREAD_TITLE = "New Conversation"


class ConversationController:
    def __init__(
        self,
        thread_db: ThreadDatabase,
        message_db: MessageDatabase,
        backend: ChatBackend,
        extract_text: TextExtractor = extract_pdf_text,
    ) -> None:
        self.thread_db = thread_db
        self.message_db = message_db
        self.backend = backend
        self.extract_text = extract_text
        self._thread_guards: dict[int, asyncio.Lock] = {}
        self._guard_users: Counter[int] = Counter()
        self._cancel_flags: dict[int, asyncio.Event] = {}

    async def create_thread(self, title: str = DEFAULT_THREAD_TITLE, system_prompt: str | None = None) -> Thread:
        thread_id = await self.thread_db.create_thread(title, system_prompt)
        thread = await self.thread_db.get_thread(thread_id)
        if thread is None:
            raise StorageError(f"Thread {thread_id} vanished right after creation")
        return thread

    async def list_threads(self) -> list[Thread]:
        return await self.thread_db.list_threads()

    async def rename_thread(self, thread_id: int, new_title: str) -> None:
        await self.thread_db.rename_thread(thread_id, new_title)

    async def archive_thread(self, thread_id: int) -> None:
        await self.thread_db.archive_thread(thread_id)

    async def delete_thread(self, thread_id: int) -> None:
        """Abort any generation running in the thread, then delete it with its messages."""
        self.cancel_generation(thread_id)
        await self.thread_db.delete_thread(thread_id)

    async def list_messages(self, thread_id: int) -> list[Message]:
        return await self.message_db.list_messages(thread_id)

    async def delete_message(self, thread_id: int, message_id: int) -> None:
        """Delete the message and everything after it."""
        async with self._exclusive(thread_id):
            await self.message_db.delete_messages_from(thread_id, message_id)

    async def list_models(self) -> list[str]:
        return await self.backend.list_models()

    def cancel_generation(self, thread_id: int) -> bool:
        """Ask the generation running in the thread to stop; returns whether one was running.

        The stream stops without waiting for the backend and nothing is persisted.
        """
        flag = self._cancel_flags.get(thread_id)
        if flag is None:
            return False
        logger.warning(f"Cancelling generation in thread {thread_id}")
        flag.set()
        return True

    @staticmethod
    def build_context(system_prompt: str | None, messages: list[Message]) -> list[LLMMessage]:
        """Map the stored conversation to the backend's message shape."""
        context: list[LLMMessage] = []
        if system_prompt:
            context.append(LLMMessage(role=Roles.SYSTEM, content=system_prompt))
        context += [LLMMessage(role=m.role, content=m.content, images=m.images) for m in messages]
        return context

    @asynccontextmanager
    async def _exclusive(self, thread_id: int) -> AsyncGenerator[None, None]:
        guard = self._thread_guards.setdefault(thread_id, asyncio.Lock())
        self._guard_users[thread_id] += 1
        try:
            async with guard:
                yield
        finally:
            # the last holder or waiter drops the guard
            self._guard_users[thread_id] -= 1
            if not self._guard_users[thread_id]:
                del self._guard_users[thread_id]
                del self._thread_guards[thread_id]

    @staticmethod
    async def _until_cancelled(
        chunks: AsyncGenerator[bytes, None], cancel: asyncio.Event
    ) -> AsyncGenerator[bytes, None]:
        """Relay 'chunks' until the stream ends or 'cancel' is set, whichever comes first.

        The wait for the next chunk is abandoned as soon as 'cancel' is set, so a
        backend that stalls (e.g. while loading a model) does not delay the abort.
        """
        async with aclosing(chunks):
            while not cancel.is_set():
                next_chunk = asyncio.ensure_future(anext(chunks))
                stop = asyncio.ensure_future(cancel.wait())
                try:
                    await asyncio.wait((next_chunk, stop), return_when=asyncio.FIRST_COMPLETED)
                finally:
                    stop.cancel()
                    if not next_chunk.done():
                        next_chunk.cancel()
                        await asyncio.gather(next_chunk, return_exceptions=True)
                if next_chunk.cancelled():
                    break
                try:
                    chunk = next_chunk.result()
                except StopAsyncIteration:
                    return
                yield chunk
        raise GenerationCancelled("Generation cancelled")

    async def _generate(self, thread_id: int, model: str) -> AsyncGenerator[GenerationEvent, None]:
        lookup = await self.thread_db.get_system_prompt(thread_id)
        if not lookup.thread_exists:
            raise ForeignKeyError(f"Thread {thread_id} does not exist")
        history = await self.message_db.list_messages(thread_id)
        context = self.build_context(lookup.system_prompt, history)

        logger.info(f"Generating in thread {thread_id} with {model!r} ({len(context)} context messages)")
        reassembler = StreamReassembler()
        cancel = asyncio.Event()
        self._cancel_flags[thread_id] = cancel
        fragment_count = 0
        try:
            chunks = self._until_cancelled(self.backend.stream_chat(model, context), cancel)
            async for fragment in reassemble(chunks, reassembler):
                fragment_count += 1
                yield GenerationEvent.fragment(thread_id, fragment)
            if cancel.is_set():
                raise GenerationCancelled("Generation cancelled", reassembler.transcript)
        except GenerationCancelled:
            logger.warning(f"Generation in thread {thread_id} cancelled after {fragment_count} fragments")
            raise
        except BackendError as exc:
            logger.error(f"Generation in thread {thread_id} failed after {fragment_count} fragments: {exc}")
            raise
        finally:
            if self._cancel_flags.get(thread_id) is cancel:
                del self._cancel_flags[thread_id]

        if reassembler.skipped_records:
            logger.debug(f"Skipped {reassembler.skipped_records} malformed records in thread {thread_id}")

        message_id = await self.message_db.add_message(
            thread_id,
            Roles.ASSISTANT,
            reassembler.transcript,
            model=model,
            thinking_process=reassembler.reasoning,
            metrics=reassembler.metrics,
        )

        speed = f", {reassembler.metrics.tokens_per_second:.1f} tokens/s" if reassembler.metrics else ""
        logger.info(f"Stored assistant message {message_id} in thread {thread_id} ({fragment_count} fragments{speed})")
        yield GenerationEvent.done(thread_id, message_id)

    async def generate_stream(self, thread_id: int, model: str) -> AsyncGenerator[GenerationEvent, None]:
        async with self._exclusive(thread_id):
            async for event in self._generate(thread_id, model):
                yield event

    async def send_stream(
        self,
        thread_id: int,
        content: str,
        model: str,
        attachments: list[Attachment] | None = None,
        reply_to_id: int | None = None,
    ) -> AsyncGenerator[GenerationEvent, None]:
        """Store a user message, inlining document attachments, then generate the reply."""
        images, documents = split_attachments(attachments or [])
        for index, document in enumerate(documents, start=1):
            content += await asyncio.to_thread(inline_document, index, document, self.extract_text)

        async with self._exclusive(thread_id):
            message_id = await self.message_db.add_message(
                thread_id, Roles.USER, content, images=images or None, reply_to_id=reply_to_id
            )
            logger.debug(f"Stored user message {message_id} in thread {thread_id}")
            async for event in self._generate(thread_id, model):
                yield event

    async def edit_stream(
        self, thread_id: int, message_id: int, new_content: str, model: str
    ) -> AsyncGenerator[GenerationEvent, None]:
        async with self._exclusive(thread_id):
            await self.get_message(thread_id, message_id)
            await self.message_db.update_message_content(message_id, new_content)
            await self.message_db.delete_messages_after(thread_id, message_id)
            async for event in self._generate(thread_id, model):
                yield event

    async def regenerate_stream(self, thread_id: int, model: str) -> AsyncGenerator[GenerationEvent, None]:
        async with self._exclusive(thread_id):
            messages = await self.message_db.list_messages(thread_id)
            if messages and messages[-1].role is Roles.ASSISTANT:
                await self.message_db.delete_last_message(thread_id)
            async for event in self._generate(thread_id, model):
                yield event

    async def regenerate_from_stream(
        self, thread_id: int, message_id: int, model: str
    ) -> AsyncGenerator[GenerationEvent, None]:
        async with self._exclusive(thread_id):
            await self.get_message(thread_id, message_id)
            await self.message_db.delete_messages_from(thread_id, message_id)
            async for event in self._generate(thread_id, model):
                yield event

    async def get_message(self, thread_id: int, message_id: int) -> Message:
        """Return the message, or raise 'MessageNotFoundError' if it is not in the thread."""
        message = await self.message_db.get_message(message_id)
        if message is None or message.thread_id != thread_id:
            raise MessageNotFoundError(thread_id, message_id)
        return message

    @staticmethod
    async def _consume(
        events: AsyncGenerator[GenerationEvent, None], on_fragment: FragmentCallback | None
    ) -> int:
        message_id: int | None = None
        async with aclosing(events):
            async for event in events:
                if event.type is GenerationEventType.FRAGMENT and on_fragment is not None:
                    on_fragment(event.text or "")
                elif event.type is GenerationEventType.DONE:
                    message_id = event.message_id
        if message_id is None:
            raise BackendError("Generation finished without storing a message")
        return message_id

    async def generate(self, thread_id: int, model: str, on_fragment: FragmentCallback | None = None) -> int:
        return await self._consume(self.generate_stream(thread_id, model), on_fragment)

    async def send(
        self,
        thread_id: int,
        content: str,
        model: str,
        attachments: list[Attachment] | None = None,
        reply_to_id: int | None = None,
        on_fragment: FragmentCallback | None = None,
    ) -> int:
        return await self._consume(self.send_stream(thread_id, content, model, attachments, reply_to_id), on_fragment)

    async def edit(
        self,
        thread_id: int,
        message_id: int,
        new_content: str,
        model: str,
        on_fragment: FragmentCallback | None = None,
    ) -> int:
        return await self._consume(self.edit_stream(thread_id, message_id, new_content, model), on_fragment)

    async def regenerate(self, thread_id: int, model: str, on_fragment: FragmentCallback | None = None) -> int:
        return await self._consume(self.regenerate_stream(thread_id, model), on_fragment)

    async def regenerate_from(
        self, thread_id: int, message_id: int, model: str, on_fragment: FragmentCallback | None = None
    ) -> int:
        return await self._consume(self.regenerate_from_stream(thread_id, message_id, model), on_fragment)
