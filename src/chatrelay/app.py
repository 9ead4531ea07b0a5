"""Application factory for the FastAPI service."""

from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager, suppress
from pathlib import Path

import httpx
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .chat import ChatOrchestrator, ConversationBusyError, SessionRegistry
from .config import PROJECT_ROOT, Settings, get_settings
from .media import (
    JobOutcome,
    JsonFileDescriptorStore,
    ResumableJobPoller,
    SiliconFlowMediaAdapter,
)
from .routers.chat import router as chat_router
from .routers.media import router as media_router
from .services.history import HistoryStore
from .services.identity import DailyUsageCounter, HeaderIdentityProvider
from .tools import build_default_registry
from .upstream import UpstreamClient

logger = logging.getLogger(__name__)


def _configure_logging() -> None:
    """Configure logging based on LOG_LEVEL environment variable."""
    # Load .env file first to ensure LOG_FILE is available
    load_dotenv()

    log_level_str = os.getenv("LOG_LEVEL", "INFO").upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

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

    logging.getLogger("chatrelay").setLevel(log_level)
    logging.getLogger("uvicorn").setLevel(log_level)
    logging.getLogger("uvicorn.access").setLevel(log_level)
    logging.getLogger("uvicorn.error").setLevel(log_level)

    # Request and connection chatter only at DEBUG
    if log_level > logging.DEBUG:
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)
    else:
        logging.getLogger("httpx").setLevel(log_level)
        logging.getLogger("httpcore").setLevel(log_level)


def _resolve_under(base: Path, p: Path) -> Path:
    # Absolute paths are used as-is (tests, external mounts).
    if p.is_absolute():
        return p.resolve()
    resolved = (base / p).resolve()
    if not resolved.is_relative_to(base):
        raise ValueError(f"Configured path {resolved} escapes project root {base}")
    return resolved


def create_app(
    settings: Settings | None = None,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the application; ``http_client`` replaces the pooled upstream client."""

    _configure_logging()

    settings = settings or get_settings()
    project_root = PROJECT_ROOT.resolve()

    upstream = UpstreamClient(settings, http_client=http_client)
    registry, web_tools = build_default_registry(settings, http_client=http_client)
    orchestrator = ChatOrchestrator(settings, upstream, registry)
    sessions = SessionRegistry(settings.send_lock_timeout)
    history = HistoryStore(_resolve_under(project_root, settings.chat_database_path))

    adapter = SiliconFlowMediaAdapter(settings, upstream)
    poller = ResumableJobPoller(
        adapter,
        JsonFileDescriptorStore(_resolve_under(project_root, settings.job_store_path)),
        poll_interval=settings.job_poll_interval,
        max_attempts=settings.job_max_attempts,
        stale_after=settings.job_stale_after,
    )

    def _on_job_outcome(outcome: JobOutcome) -> None:
        sessions.stop_polling(outcome.correlation_id)

    poller.add_listener(_on_job_outcome)

    sweep_task: asyncio.Task | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal sweep_task
        await history.initialize()
        try:
            if await poller.resume() and poller.descriptor is not None:
                with suppress(ConversationBusyError):
                    sessions.start_polling(poller.descriptor.correlation_id)
        except Exception as exc:
            logger.warning("Failed to resume media job: %s", exc)
        sweep_task = asyncio.create_task(
            sessions.run_sweeper(settings.session_sweep_interval)
        )
        try:
            yield
        finally:
            if sweep_task is not None:
                sweep_task.cancel()
                with suppress(asyncio.CancelledError):
                    await sweep_task
            # Leaves the descriptor on disk so the job resumes after restart
            await poller.aclose()
            try:
                await asyncio.wait_for(web_tools.aclose(), timeout=2.0)
            except (asyncio.TimeoutError, Exception) as exc:
                logger.warning("Error closing tool HTTP client: %s", exc)
            try:
                await asyncio.wait_for(upstream.aclose(), timeout=2.0)
            except (asyncio.TimeoutError, Exception) as exc:
                logger.warning("Error closing upstream client: %s", exc)
            try:
                await asyncio.wait_for(history.close(), timeout=2.0)
            except (asyncio.TimeoutError, Exception) as exc:
                logger.warning("Error closing history store: %s", exc)

    app = FastAPI(
        title="Chat Relay",
        version="0.1.0",
        description="Tool-augmented chat relay and resumable media job poller.",
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.upstream_client = upstream
    app.state.tool_registry = registry
    app.state.chat_orchestrator = orchestrator
    app.state.session_registry = sessions
    app.state.history_store = history
    app.state.identity_provider = HeaderIdentityProvider(
        guest_quota=settings.daily_quota_guest,
        free_quota=settings.daily_quota_free,
    )
    app.state.usage_counter = DailyUsageCounter()
    app.state.media_adapter = adapter
    app.state.media_poller = poller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(chat_router)
    app.include_router(media_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, object]:
        return {
            "status": "ok",
            "chat_model": settings.chat_model,
            "tools": len(registry),
            "media_job": poller.state.value,
        }

    return app


__all__ = ["create_app"]
