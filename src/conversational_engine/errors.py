"""
Error taxonomy for the conversation engine.

Every failure that crosses a component boundary is one of the classes below.
'StorageError' and 'BackendError' terminate the single request that raised
them; 'ExtractionError' is recovered locally by the controller, which replaces
the failed attachment with a visible marker in the user message.
"""


class ConversationEngineError(Exception):
    """Base class for all errors raised by the engine."""


class StorageError(ConversationEngineError):
    """Persistent store I/O or constraint failure.

    The underlying driver exception is kept on 'cause' (and chained as
    '__cause__' by the raising site) so callers can log the original error.
    """

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class ForeignKeyError(StorageError):
    """A write referenced a thread or message that does not exist."""


class MessageNotFoundError(ConversationEngineError):
    """The addressed message does not exist in the given thread."""

    def __init__(self, thread_id: int, message_id: int) -> None:
        super().__init__(f"Message {message_id} not found in thread {thread_id}")
        self.thread_id = thread_id
        self.message_id = message_id


class BackendError(ConversationEngineError):
    """Network failure, non-success status or aborted stream from the inference backend.

    'partial_transcript' holds whatever had been reassembled before the failure.
    The controller never persists it; it is exposed so a caller can decide.
    """

    def __init__(self, message: str, partial_transcript: str = "") -> None:
        super().__init__(message)
        self.partial_transcript = partial_transcript


class GenerationCancelled(BackendError):
    """The in-flight generation was aborted on request."""


class ExtractionError(ConversationEngineError):
    """Attachment text extraction failed."""
