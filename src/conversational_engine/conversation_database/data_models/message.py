"""
Message data model and storage interface.

Messages in a thread form a flat, ordered list: creation timestamp ascending,
ties broken by id (ids are assigned monotonically). Edits and regenerations
never branch the list, they truncate it. 'delete_messages_from' and
'delete_messages_after' use the id as a surrogate for "at or after this point
in the conversation".

'reply_to_id' is a weak back-reference to another message of the same thread:
it is checked when written and cleared when the referenced message is deleted,
never cascaded.

Concrete implementation: 'SQLiteMessageDatabase'.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel

from conversational_engine.llms.base import GenerationMetrics, Roles


class Message(BaseModel):
    """
    A single turn in a thread.

    'model', 'thinking_process' and 'metrics' are only ever set on assistant
    messages. 'content' of an assistant message is the full reassembled
    transcript, reasoning markers included, so a renderer can recover the
    reasoning segment; 'thinking_process' holds the same reasoning without
    markers.
    """

    id: int
    thread_id: int
    role: Roles
    content: str
    created_at: str
    images: list[str] | None = None
    model: str | None = None
    thinking_process: str | None = None
    metrics: GenerationMetrics | None = None
    reply_to_id: int | None = None


class MessageDatabase(ABC):
    """Abstract repository for 'Message' records."""

    @abstractmethod
    async def add_message(
        self,
        thread_id: int,
        role: Roles,
        content: str,
        images: list[str] | None = None,
        model: str | None = None,
        reply_to_id: int | None = None,
        thinking_process: str | None = None,
        metrics: GenerationMetrics | None = None,
    ) -> int:
        """Append a message to the thread and return its id.

        An assistant message is written with its reasoning and metrics in the
        same statement, so it is never visible without them.

        Raises 'ForeignKeyError' if the thread does not exist or 'reply_to_id'
        is not a message of the same thread.
        """
        pass

    @abstractmethod
    async def get_message(self, message_id: int) -> Message | None:
        pass

    @abstractmethod
    async def list_messages(self, thread_id: int) -> list[Message]:
        """Return the thread's messages in conversation order; unknown thread yields []."""
        pass

    @abstractmethod
    async def update_message_content(self, message_id: int, new_content: str) -> None:
        pass

    @abstractmethod
    async def update_message_generation(
        self,
        message_id: int,
        thinking_process: str | None,
        metrics: GenerationMetrics | None,
    ) -> None:
        """Backfill the reasoning transcript and metrics of an assistant message."""
        pass

    @abstractmethod
    async def delete_messages_from(self, thread_id: int, message_id: int) -> None:
        pass

    @abstractmethod
    async def delete_messages_after(self, thread_id: int, message_id: int) -> None:
        pass

    @abstractmethod
    async def delete_last_message(self, thread_id: int) -> None:
        pass
