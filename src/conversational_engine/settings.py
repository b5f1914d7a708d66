"""
Runtime configuration.

All values come from environment variables with local-first defaults, so the
engine runs against a local Ollama server and a 'chat.db' file in the working
directory without any setup:

    OLLAMA_HOST           base URL of the inference backend (http://localhost:11434)
    OLLAMA_TIMEOUT        read timeout in seconds for backend calls (300)
    CHAT_DB_PATH          SQLite database file (chat.db)
    FRAGMENT_BUFFER_SIZE  max queued fragments per generation, 0 = unbounded (0)
    API_HOST / API_PORT   bind address of 'python -m conversational_engine'
"""

import os

from pydantic import BaseModel

DEFAULT_OLLAMA_HOST = "http://localhost:11434"


class Settings(BaseModel):
    ollama_host: str = DEFAULT_OLLAMA_HOST
    ollama_timeout: float = 300.0
    db_path: str = "chat.db"
    fragment_buffer_size: int = 0
    api_host: str = "127.0.0.1"
    api_port: int = 8000

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            ollama_host=os.getenv("OLLAMA_HOST", DEFAULT_OLLAMA_HOST),
            ollama_timeout=float(os.getenv("OLLAMA_TIMEOUT", "300")),
            db_path=os.getenv("CHAT_DB_PATH", "chat.db"),
            fragment_buffer_size=int(os.getenv("FRAGMENT_BUFFER_SIZE", "0")),
            api_host=os.getenv("API_HOST", "127.0.0.1"),
            api_port=int(os.getenv("API_PORT", "8000")),
        )
