"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress
from pathlib import Path

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import PROJECT_ROOT, get_settings
from .generation import ResponsesClient
from .routers.session import router as session_router
from .routers.session_ws import router as session_ws_router
from .session.state import SessionStateStore
from .tts.synthesis import SpeechSynthesizer

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def _configure_logging() -> None:
    """Configure logging based on LOG_LEVEL environment variable."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)

    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)
    handlers: list[logging.Handler] = []

    log_file = os.getenv("LOG_FILE")
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    handlers.append(console_handler)

    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logging.getLogger("guidestream").setLevel(log_level)
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error"):
        logging.getLogger(name).setLevel(log_level)

    # httpx logs every request at INFO
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)


def create_app() -> FastAPI:
    _configure_logging()

    settings = get_settings()

    state_path = settings.session_state_path
    if not state_path.is_absolute():
        state_path = (PROJECT_ROOT / state_path).resolve()

    session_store = SessionStateStore(state_path, settings.session_state_ttl_seconds)
    generation_client = ResponsesClient(settings)
    synthesizer = SpeechSynthesizer(settings)

    purge_interval_seconds = max(60, settings.session_state_ttl_seconds // 4)
    purge_task: asyncio.Task[None] | None = None

    async def _checkpoint_purge_loop() -> None:
        while True:
            try:
                await asyncio.sleep(purge_interval_seconds)
                await session_store.purge_expired()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logging.warning("Checkpoint purge failed: %s", exc)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal purge_task
        await session_store.initialize()
        purge_task = asyncio.create_task(_checkpoint_purge_loop())
        try:
            yield
        finally:
            if purge_task is not None:
                purge_task.cancel()
                with suppress(asyncio.CancelledError):
                    await purge_task
            await generation_client.aclose()
            await synthesizer.aclose()
            await session_store.close()

    app = FastAPI(
        title="Guided Session Backend",
        version="0.1.0",
        description="Phased text generation streamed as sentence audio.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.session_store = session_store
    app.state.generation_client = generation_client
    app.state.synthesizer = synthesizer

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(session_router)
    app.include_router(session_ws_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, str | None]:
        return {
            "status": "ok",
            "model": settings.llm_model,
            "tts_provider": settings.tts_provider,
        }

    return app


__all__ = ["create_app"]
