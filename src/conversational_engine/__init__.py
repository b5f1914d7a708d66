"""
Local-first conversation engine.

Stores chat threads and their messages in SQLite, streams replies from an
Ollama-compatible backend, reassembles the NDJSON stream into answer and
reasoning fragments, and keeps each thread consistent across edits and
regenerations.

Example:
    db = SQLiteDatabase("chat.db")
    controller = ConversationController(
        SQLiteThreadDatabase(db), SQLiteMessageDatabase(db), OllamaBackend()
    )
    thread = await controller.create_thread("Trip planning")
    message_id = await controller.send(thread.id, "Hello", "llama3", on_fragment=print)
"""

from conversational_engine.controller import ConversationController
from conversational_engine.conversation_database.sqlite import (
    SQLiteDatabase,
    SQLiteMessageDatabase,
    SQLiteThreadDatabase,
)
from conversational_engine.llms.ollama import OllamaBackend

__all__ = [
    "ConversationController",
    "OllamaBackend",
    "SQLiteDatabase",
    "SQLiteMessageDatabase",
    "SQLiteThreadDatabase",
]
