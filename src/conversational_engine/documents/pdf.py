"""
PDF text extraction.

Converts each page to Markdown with 'pymupdf4llm' (headings, lists and tables
survive the conversion, which models read better than raw text), then joins
the non-blank pages in page order.
"""

import pymupdf  # type: ignore[import-untyped]
import pymupdf4llm  # type: ignore[import-untyped]

from conversational_engine.errors import ExtractionError


def extract_pdf_text(data: bytes) -> str:
    """Return the text of a PDF document given as raw bytes, page by page.

    Raises 'ExtractionError' if the bytes are not a readable PDF.
    """
    try:
        with pymupdf.open(stream=data, filetype="pdf") as document:
            pages = pymupdf4llm.to_markdown(document, page_chunks=True)
    except Exception as exc:
        raise ExtractionError(f"Could not extract text from PDF: {exc}") from exc
    texts = [page.get("text", "") for page in pages]
    return "\n\n".join(text for text in texts if text.strip())
