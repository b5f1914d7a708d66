"""
User message attachments.

Images are kept as references on the message and forwarded to the backend as
they are. Documents are never stored: their text is extracted once, when the
message is sent, and inlined into the message body between delimiters. A
document that cannot be read is replaced by a visible error marker so the rest
of the message still goes through.
"""

import base64
import binascii
from collections.abc import Callable
from enum import StrEnum

from loguru import logger
from pydantic import BaseModel

from conversational_engine.errors import ExtractionError

TextExtractor = Callable[[bytes], str]

ATTACHMENT_BLOCK = (
    "\n\n--- Document Attachment {index} ({name}) Content ---\n{text}\n-----------------------------------\n"
)
ATTACHMENT_ERROR = "\n\n[System Error: Failed to extract text from Document Attachment {index} ({name})]"


class AttachmentKind(StrEnum):
    IMAGE = "image"
    DOCUMENT = "document"


class Attachment(BaseModel):
    """
    A file sent along with a user message.

    'data' is base64, optionally with a 'data:<mime>;base64,' prefix as
    produced by browsers and file pickers.
    """

    kind: AttachmentKind
    data: str
    name: str = "untitled"

    def payload(self) -> str:
        """Base64 payload without any data URL prefix."""
        _, comma, rest = self.data.partition(",")
        return rest if comma else self.data

    def decode(self) -> bytes:
        try:
            return base64.b64decode(self.payload(), validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ExtractionError(f"Attachment {self.name!r} is not valid base64: {exc}") from exc


def split_attachments(attachments: list[Attachment]) -> tuple[list[str], list[Attachment]]:
    """Return the image payloads and the document attachments, each in original order."""
    images = [a.payload() for a in attachments if a.kind is AttachmentKind.IMAGE]
    documents = [a for a in attachments if a.kind is AttachmentKind.DOCUMENT]
    return images, documents


def inline_document(index: int, document: Attachment, extract_text: TextExtractor) -> str:
    """Render one document attachment as a delimited block, or as an error marker."""
    try:
        text = extract_text(document.decode())
    except Exception as exc:
        logger.warning(f"Failed to extract text from attachment {index} ({document.name}): {exc}")
        return ATTACHMENT_ERROR.format(index=index, name=document.name)
    return ATTACHMENT_BLOCK.format(index=index, name=document.name, text=text)
