"""
Assistant API server.

The lifespan builds the pipeline from configuration, greets the user, starts
the connectivity monitor and recognition, and closes the backend session on
shutdown. Can be run standalone (`python -m assistant_api`) or mounted into an
existing app through create_app().
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Optional

from dotenv import load_dotenv
from fastapi import FastAPI

from command_pipeline.assistant import VoiceAssistant, build_assistant
from command_pipeline.config import get_config
from logging_setup import Component, get_logger
from observability.event_store import event_store
from .adapters import BufferedOutputSink, QueuedRecognitionEngine
from .routes import router


def load_local_env() -> None:
    """Load .env_local / .env.local (local dev convenience); exported vars win."""
    root = Path(__file__).parent.parent
    for name in (".env_local", ".env.local"):
        p = root / name
        if p.exists():
            load_dotenv(p, override=False)


load_local_env()

logger = get_logger(Component.API)

AssistantFactory = Callable[[QueuedRecognitionEngine, BufferedOutputSink], VoiceAssistant]


def _default_factory(engine: QueuedRecognitionEngine, sink: BufferedOutputSink) -> VoiceAssistant:
    return build_assistant(get_config(), engine, sink)


def create_app(assistant_factory: Optional[AssistantFactory] = None) -> FastAPI:
    factory = assistant_factory or _default_factory

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        engine = QueuedRecognitionEngine()
        sink = BufferedOutputSink()
        assistant = factory(engine, sink)
        app.state.engine = engine
        app.state.sink = sink
        app.state.assistant = assistant

        await assistant.start()
        logger.info("Assistant API started")
        try:
            yield
        finally:
            await assistant.aclose()
            logger.info("Assistant API stopped")

    app = FastAPI(title="Voice Assistant API", lifespan=lifespan)
    app.include_router(router)

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "component": "assistant_api", "events": event_store.get_stats()}

    return app


app = create_app()
