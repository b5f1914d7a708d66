import asyncio
import json
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest

from conversational_engine.controller import ConversationController
from conversational_engine.conversation_database.sqlite import (
    SQLiteDatabase,
    SQLiteMessageDatabase,
    SQLiteThreadDatabase,
)
from conversational_engine.llms.base import ChatBackend, LLMMessage

FINAL_COUNTERS = {
    "total_duration": 3_000_000_000,
    "load_duration": 500_000_000,
    "prompt_eval_count": 12,
    "eval_count": 40,
    "eval_duration": 2_000_000_000,
}


def record(content: str | None = None, thinking: str | None = None, done: bool = False, **extra) -> bytes:
    """One NDJSON line as the chat endpoint streams it."""
    body: dict = {"model": "test-model", "created_at": "2024-05-01T12:00:00Z", "done": done}
    if content is not None or thinking is not None:
        message: dict = {"role": "assistant", "content": content or ""}
        if thinking is not None:
            message["thinking"] = thinking
        body["message"] = message
    body.update(extra)
    return (json.dumps(body, ensure_ascii=False) + "\n").encode()


def reply(text: str, thinking: str | None = None) -> list[bytes]:
    """A complete stream: optional reasoning, the answer word by word, then the final record."""
    chunks = [record(thinking=thinking)] if thinking else []
    chunks += [record(content=word) for word in text.split(" ") if word]
    chunks.append(record(done=True, **FINAL_COUNTERS))
    return chunks


class ScriptedBackend(ChatBackend):
    """
    Backend that replays queued responses.

    Each call to 'stream_chat' consumes the next script, a list of byte chunks
    or exceptions (raised when reached). Without a queued script the reply is
    "ok". 'delay' is awaited before every chunk.
    """

    def __init__(self, models: list[str] | None = None, delay: float = 0.0) -> None:
        self.models = models or ["llama3", "qwen3"]
        self.delay = delay
        self.scripts: list[list[bytes | Exception]] = []
        self.requests: list[tuple[str, list[LLMMessage]]] = []

    def queue(self, *chunks: bytes | Exception) -> None:
        self.scripts.append(list(chunks))

    async def stream_chat(self, model: str, messages: list[LLMMessage]) -> AsyncGenerator[bytes, None]:
        self.requests.append((model, list(messages)))
        script: list[bytes | Exception] = self.scripts.pop(0) if self.scripts else list(reply("ok"))
        for item in script:
            await asyncio.sleep(self.delay)
            if isinstance(item, Exception):
                raise item
            yield item

    async def list_models(self) -> list[str]:
        return list(self.models)


@pytest.fixture
def database(tmp_path: Path):
    db = SQLiteDatabase(tmp_path / "chat.db")
    yield db
    db.close()


@pytest.fixture
def threads(database: SQLiteDatabase) -> SQLiteThreadDatabase:
    return SQLiteThreadDatabase(database)


@pytest.fixture
def messages(database: SQLiteDatabase) -> SQLiteMessageDatabase:
    return SQLiteMessageDatabase(database)


@pytest.fixture
def backend() -> ScriptedBackend:
    return ScriptedBackend()


@pytest.fixture
def controller(
    threads: SQLiteThreadDatabase, messages: SQLiteMessageDatabase, backend: ScriptedBackend
) -> ConversationController:
    return ConversationController(threads, messages, backend)
