"""
HTTP command surface.

Exposes the controller to an application shell as a FastAPI app. Commands that
end in a generation answer with an NDJSON stream of 'GenerationEvent's: one
'fragment' line per reassembled fragment, then a 'done' line with the id of
the stored assistant message, or an 'error' line if the generation failed
after the response had started.

The generation runs in a background task that feeds a 'FragmentChannel', so it
completes and is stored even if the client stops reading.

Errors raised before a response starts are returned as structured JSON:

    {"error": "<exception class>", "detail": "<message>"}

with 404 for unknown threads or messages, 422 for unreadable attachments, 502
for backend failures and 500 for storage failures.
"""

import asyncio
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, StreamingResponse
from loguru import logger
from pydantic import BaseModel

from conversational_engine.controller import DEFAULT_THREAD_TITLE, ConversationController
from conversational_engine.conversation_database.data_models.message import Message
from conversational_engine.conversation_database.data_models.thread import Thread
from conversational_engine.conversation_database.sqlite import (
    SQLiteDatabase,
    SQLiteMessageDatabase,
    SQLiteThreadDatabase,
)
from conversational_engine.documents.attachments import Attachment
from conversational_engine.errors import (
    BackendError,
    ConversationEngineError,
    ExtractionError,
    ForeignKeyError,
    MessageNotFoundError,
    StorageError,
)
from conversational_engine.events import FragmentChannel, GenerationEvent
from conversational_engine.llms.ollama import OllamaBackend
from conversational_engine.settings import Settings

NDJSON = "application/x-ndjson"


class ThreadInput(BaseModel):
    title: str = DEFAULT_THREAD_TITLE
    system_prompt: str | None = None


class RenameInput(BaseModel):
    title: str


class MessageInput(BaseModel):
    content: str
    model: str
    attachments: list[Attachment] = []
    reply_to_id: int | None = None


class EditInput(BaseModel):
    content: str
    model: str


class ModelInput(BaseModel):
    model: str


class CancelResult(BaseModel):
    cancelled: bool


_ERROR_STATUS: list[tuple[type[ConversationEngineError], int]] = [
    (ForeignKeyError, status.HTTP_404_NOT_FOUND),
    (MessageNotFoundError, status.HTTP_404_NOT_FOUND),
    (ExtractionError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (BackendError, status.HTTP_502_BAD_GATEWAY),
    (StorageError, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def _status_for(exc: ConversationEngineError) -> int:
    for error_type, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def build_controller(settings: Settings) -> ConversationController:
    db = SQLiteDatabase(settings.db_path)
    backend = OllamaBackend(host=settings.ollama_host, timeout=settings.ollama_timeout)
    return ConversationController(SQLiteThreadDatabase(db), SQLiteMessageDatabase(db), backend)


def create_app(controller: ConversationController | None = None, settings: Settings | None = None) -> FastAPI:
    settings = settings or Settings.from_env()
    owns_controller = controller is None
    engine = controller or build_controller(settings)
    background: set[asyncio.Task[None]] = set()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        if background:
            logger.info(f"Waiting for {len(background)} running generations")
            await asyncio.gather(*background, return_exceptions=True)
        if owns_controller and isinstance(engine.backend, OllamaBackend):
            await engine.backend.aclose()

    app = FastAPI(title="Conversational Engine", lifespan=lifespan)
    app.state.controller = engine

    @app.exception_handler(ConversationEngineError)
    async def engine_error_handler(request: Request, exc: ConversationEngineError) -> JSONResponse:
        code = _status_for(exc)
        if code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=code, content={"error": type(exc).__name__, "detail": str(exc)})

    async def require_thread(thread_id: int) -> Thread:
        thread = await engine.thread_db.get_thread(thread_id)
        if thread is None:
            raise ForeignKeyError(f"Thread {thread_id} does not exist")
        return thread

    def stream_events(thread_id: int, events: AsyncGenerator[GenerationEvent, None]) -> StreamingResponse:
        channel = FragmentChannel(settings.fragment_buffer_size)
        task = asyncio.create_task(channel.pump(thread_id, events))
        background.add(task)
        task.add_done_callback(background.discard)

        async def body() -> AsyncIterator[bytes]:
            async for event in channel:
                yield event.encode()

        return StreamingResponse(body(), media_type=NDJSON)

    @app.get("/threads")
    async def list_threads() -> list[Thread]:
        return await engine.list_threads()

    @app.post("/threads", status_code=status.HTTP_201_CREATED)
    async def create_thread(thread_input: ThreadInput) -> Thread:
        return await engine.create_thread(thread_input.title, thread_input.system_prompt)

    @app.patch("/threads/{thread_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def rename_thread(thread_id: int, rename_input: RenameInput) -> None:
        await engine.rename_thread(thread_id, rename_input.title)

    @app.post("/threads/{thread_id}/archive", status_code=status.HTTP_204_NO_CONTENT)
    async def archive_thread(thread_id: int) -> None:
        await engine.archive_thread(thread_id)

    @app.delete("/threads/{thread_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_thread(thread_id: int) -> None:
        await engine.delete_thread(thread_id)

    @app.post("/threads/{thread_id}/cancel")
    async def cancel_generation(thread_id: int) -> CancelResult:
        return CancelResult(cancelled=engine.cancel_generation(thread_id))

    @app.get("/threads/{thread_id}/messages")
    async def list_messages(thread_id: int) -> list[Message]:
        return await engine.list_messages(thread_id)

    @app.post("/threads/{thread_id}/messages")
    async def send_message(thread_id: int, message_input: MessageInput) -> StreamingResponse:
        await require_thread(thread_id)
        return stream_events(
            thread_id,
            engine.send_stream(
                thread_id,
                message_input.content,
                message_input.model,
                attachments=message_input.attachments,
                reply_to_id=message_input.reply_to_id,
            ),
        )

    @app.put("/threads/{thread_id}/messages/{message_id}")
    async def edit_message(thread_id: int, message_id: int, edit_input: EditInput) -> StreamingResponse:
        await engine.get_message(thread_id, message_id)
        return stream_events(
            thread_id, engine.edit_stream(thread_id, message_id, edit_input.content, edit_input.model)
        )

    @app.delete("/threads/{thread_id}/messages/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_message(thread_id: int, message_id: int) -> None:
        await engine.delete_message(thread_id, message_id)

    @app.post("/threads/{thread_id}/regenerate")
    async def regenerate(thread_id: int, model_input: ModelInput) -> StreamingResponse:
        await require_thread(thread_id)
        return stream_events(thread_id, engine.regenerate_stream(thread_id, model_input.model))

    @app.post("/threads/{thread_id}/messages/{message_id}/regenerate")
    async def regenerate_from(thread_id: int, message_id: int, model_input: ModelInput) -> StreamingResponse:
        await engine.get_message(thread_id, message_id)
        return stream_events(thread_id, engine.regenerate_from_stream(thread_id, message_id, model_input.model))

    @app.get("/models")
    async def list_models() -> list[str]:
        return await engine.list_models()

    return app
