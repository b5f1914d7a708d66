"""
Thread data model and storage interface.

A thread is one persisted conversation: a title, an optional system prompt
shared by every generation in it, and an ordered list of messages. Archiving is
a soft delete that hides the thread from 'list_threads' while keeping its
messages addressable; 'delete_thread' removes the thread and all its messages.

Concrete implementation: 'SQLiteThreadDatabase'.
"""

from abc import ABC, abstractmethod

from pydantic import BaseModel


class Thread(BaseModel):
    """A single conversation thread."""

    id: int
    title: str
    created_at: str
    system_prompt: str | None = None
    is_archived: bool = False


class SystemPromptLookup(BaseModel):
    """
    Result of a system prompt lookup.

    'thread_exists' separates "no such thread" from "thread without a prompt",
    which both leave 'system_prompt' unset.
    """

    thread_exists: bool
    system_prompt: str | None = None


class ThreadDatabase(ABC):
    """Abstract repository for 'Thread' records."""

    @abstractmethod
    async def create_thread(self, title: str, system_prompt: str | None = None) -> int:
        pass

    @abstractmethod
    async def list_threads(self) -> list[Thread]:
        """Return non-archived threads, most recently created first."""
        pass

    @abstractmethod
    async def get_thread(self, thread_id: int) -> Thread | None:
        pass

    @abstractmethod
    async def get_system_prompt(self, thread_id: int) -> SystemPromptLookup:
        pass

    @abstractmethod
    async def archive_thread(self, thread_id: int) -> None:
        pass

    @abstractmethod
    async def rename_thread(self, thread_id: int, new_title: str) -> None:
        pass

    @abstractmethod
    async def delete_thread(self, thread_id: int) -> None:
        """Delete the thread and every message it owns, atomically."""
        pass
