"""
Ollama HTTP backend.

Talks to the '/api/chat' and '/api/tags' endpoints with 'httpx'. The chat call
is always made with 'stream: true' and the response body is handed to the
caller untouched, one transport chunk at a time.
"""

from collections.abc import AsyncGenerator

import httpx
from loguru import logger
from pydantic import BaseModel, ValidationError

from conversational_engine.errors import BackendError
from conversational_engine.llms.base import ChatBackend, ChatRequest, LLMMessage
from conversational_engine.settings import DEFAULT_OLLAMA_HOST


class ModelInfo(BaseModel):
    name: str


class ModelListResponse(BaseModel):
    models: list[ModelInfo] = []


class OllamaBackend(ChatBackend):
    """
    Streaming client for a local or remote Ollama server.

    Attributes:
        host: Base URL of the server, without trailing slash.
        timeout: Read timeout in seconds. Generation can pause for a long time
            while a model loads, so this is much larger than the connect timeout.
    """

    def __init__(
        self,
        host: str | None = None,
        timeout: float = 300.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.host = (host or DEFAULT_OLLAMA_HOST).rstrip("/")
        self.timeout = timeout
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout, connect=10.0))

    async def aclose(self) -> None:
        await self._client.aclose()

    async def stream_chat(self, model: str, messages: list[LLMMessage]) -> AsyncGenerator[bytes, None]:
        request = ChatRequest(model=model, messages=messages)
        url = f"{self.host}/api/chat"
        logger.debug(f"POST {url} model={model!r} messages={len(messages)}")
        try:
            async with self._client.stream("POST", url, json=request.to_payload()) as response:
                if response.is_error:
                    body = (await response.aread()).decode("utf-8", errors="replace")
                    raise BackendError(f"Backend returned HTTP {response.status_code}: {body[:200]}")
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as exc:
            raise BackendError(f"Backend request failed: {exc}") from exc

    async def list_models(self) -> list[str]:
        url = f"{self.host}/api/tags"
        try:
            response = await self._client.get(url)
            response.raise_for_status()
            listing = ModelListResponse.model_validate_json(response.content)
        except httpx.HTTPError as exc:
            raise BackendError(f"Model listing failed: {exc}") from exc
        except ValidationError as exc:
            raise BackendError(f"Unexpected model listing payload: {exc}") from exc
        return [model.name for model in listing.models]
