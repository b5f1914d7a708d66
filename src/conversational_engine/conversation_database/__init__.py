"""
Persistent conversation store.

    from conversational_engine.conversation_database import (
        SQLiteDatabase, SQLiteThreadDatabase, SQLiteMessageDatabase,
    )

    db = SQLiteDatabase("chat.db")
    threads, messages = SQLiteThreadDatabase(db), SQLiteMessageDatabase(db)
"""

from conversational_engine.conversation_database.data_models.message import Message, MessageDatabase
from conversational_engine.conversation_database.data_models.thread import (
    SystemPromptLookup,
    Thread,
    ThreadDatabase,
)
from conversational_engine.conversation_database.sqlite import (
    SQLiteDatabase,
    SQLiteMessageDatabase,
    SQLiteThreadDatabase,
)

__all__ = [
    "Message",
    "MessageDatabase",
    "SQLiteDatabase",
    "SQLiteMessageDatabase",
    "SQLiteThreadDatabase",
    "SystemPromptLookup",
    "Thread",
    "ThreadDatabase",
]
