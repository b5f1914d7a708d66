"""
Inference backend abstractions and the chat message wire model.

'ChatBackend' is the boundary between the engine and a text-generation server.
It returns the raw response body as byte chunks instead of parsed
records: framing and the reasoning/answer state machine belong to
'StreamReassembler', so every backend implementation shares one parser and the
parser can be tested without a network.

Concrete implementation: 'OllamaBackend'.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from enum import StrEnum

from pydantic import BaseModel


class Roles(StrEnum):
    """Conversation roles understood by the chat endpoint."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class LLMMessage(BaseModel):
    """
    A single message sent to or received from the backend.

    'images' carries opaque image references (typically base64 payloads) and is
    omitted from the request body when unset. 'thinking' only ever appears on
    streamed responses from reasoning models.
    """

    role: Roles = Roles.ASSISTANT
    content: str = ""
    images: list[str] | None = None
    thinking: str | None = None


class ChatRequest(BaseModel):
    """Request body of a streaming chat call."""

    model: str
    messages: list[LLMMessage]
    stream: bool = True

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", exclude_none=True)


class GenerationMetrics(BaseModel):
    """
    Performance figures reported by the backend on its final record.

    Durations are in nanoseconds as reported by Ollama. The bundle is
    all-or-nothing: a message either carries every field or no metrics at all.
    """

    total_duration: int
    load_duration: int
    prompt_eval_count: int
    eval_count: int
    eval_duration: int
    tokens_per_second: float

    @classmethod
    def from_counters(
        cls,
        total_duration: int,
        load_duration: int,
        prompt_eval_count: int,
        eval_count: int,
        eval_duration: int,
    ) -> "GenerationMetrics":
        tokens_per_second = eval_count / eval_duration * 1e9 if eval_duration > 0 else 0.0
        return cls(
            total_duration=total_duration,
            load_duration=load_duration,
            prompt_eval_count=prompt_eval_count,
            eval_count=eval_count,
            eval_duration=eval_duration,
            tokens_per_second=tokens_per_second,
        )


class ChatBackend(ABC):
    """
    Abstract base class for streaming text-generation backends.

    Implementations must raise 'BackendError' for transport failures and
    non-success statuses, including failures that happen after the first chunk
    has been yielded.
    """

    @abstractmethod
    def stream_chat(self, model: str, messages: list[LLMMessage]) -> AsyncGenerator[bytes, None]:
        """Yield the raw response body of a streaming chat call, chunk by chunk."""
        pass

    @abstractmethod
    async def list_models(self) -> list[str]:
        """Return the names of the models available on the backend."""
        pass
