"""Serve the engine over HTTP: 'python -m conversational_engine'."""

import uvicorn
from loguru import logger

from conversational_engine.api.app import create_app
from conversational_engine.settings import Settings


def main() -> None:
    settings = Settings.from_env()
    logger.info(f"Using database {settings.db_path} and backend {settings.ollama_host}")
    uvicorn.run(create_app(settings=settings), host=settings.api_host, port=settings.api_port)


if __name__ == "__main__":
    main()
