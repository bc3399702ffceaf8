"""FastAPI application and worker wiring for ReplyForce.

``create_app`` builds the webhook intake: it verifies and parses platform
payloads and queues them idempotently. ``build_coordinator`` assembles the
worker side from settings, and ``run_worker`` drains the inbound queue.
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
from dataclasses import replace

from fastapi import FastAPI

from .__version__ import __build_date__, __commit_sha__, __version__
from .agents.orchestrator import PipelineOrchestrator
from .agents.providers import OpenAIGenerativeService
from .app_logging import init_logging
from .config import PipelineSettings
from .conversations.repository import (
    BrandConfigurationProvider,
    ConversationRepository,
    InMemoryConversationRepository,
)
from .conversations.service import IngestionCoordinator
from .conversations.worker import InboundWorker
from .queues import QueueBackends, build_backends
from .routers import webhooks

logger = logging.getLogger(__name__)


def build_coordinator(
    settings: PipelineSettings,
    *,
    repository: ConversationRepository | None = None,
    backends: QueueBackends | None = None,
    brand_provider: BrandConfigurationProvider | None = None,
) -> IngestionCoordinator:
    """Assemble the worker side from settings.

    Without an explicit ``repository`` an in-memory store is used, seeded
    with the channel accounts listed in ``CHANNEL_ACCOUNTS_FILE``. Events for
    pages with no account are ignored, so a worker without any is idle.
    """

    service = OpenAIGenerativeService(settings.openai_api_key, timeout=settings.request_timeout)
    if not settings.openai_api_key:
        logger.warning("OPENAI_API_KEY not set; replies fall back to templates and rules")
    if repository is None:
        memory = InMemoryConversationRepository()
        if settings.channel_accounts_file:
            accounts = memory.load_channel_accounts(settings.channel_accounts_file)
            logger.info("Loaded %d channel account(s) from %s", len(accounts), settings.channel_accounts_file)
        else:
            logger.warning("CHANNEL_ACCOUNTS_FILE not set; inbound events will be ignored")
        repository = memory
    return IngestionCoordinator(
        repository,
        PipelineOrchestrator(service, settings),
        backends or build_backends(settings),
        settings=settings,
        brand_provider=brand_provider,
    )


def create_app(
    coordinator: IngestionCoordinator | None = None,
    settings: PipelineSettings | None = None,
) -> FastAPI:
    settings = settings or PipelineSettings.from_env()
    app = FastAPI(title="ReplyForce", version=__version__)
    init_logging(app)
    app.state.settings = settings
    app.state.coordinator = coordinator or build_coordinator(settings)
    app.include_router(webhooks.router)

    @app.get("/api/health")
    async def health():
        """Liveness/readiness probe with a minimal JSON body."""
        return {"status": "ok"}

    @app.get("/api/version")
    async def version():
        return {
            "version": __version__,
            "build_date": __build_date__,
            "commit_sha": __commit_sha__,
        }

    return app


async def run_worker(
    coordinator: IngestionCoordinator,
    stop: asyncio.Event | None = None,
    *,
    poll_timeout: float = 1.0,
) -> InboundWorker:
    """Drain the coordinator's inbound queue until ``stop`` is set."""

    worker = InboundWorker(
        coordinator,
        coordinator.backends.inbound,
        concurrency=coordinator.settings.queue_concurrency,
        poll_timeout=poll_timeout,
    )
    if stop is None:
        await worker.run()
        return worker
    runner = asyncio.create_task(worker.run())
    await stop.wait()
    worker.stop()
    await runner
    return worker


async def _serve(coordinator: IngestionCoordinator) -> InboundWorker:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    return await run_worker(coordinator, stop)


def worker_main(argv: list[str] | None = None) -> None:
    """Run the inbound worker until interrupted."""

    parser = argparse.ArgumentParser(description="Process queued inbound messages")
    parser.add_argument(
        "--accounts",
        default=os.getenv("CHANNEL_ACCOUNTS_FILE"),
        help="JSON file listing the connected channel accounts",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Maximum number of messages processed at once",
    )
    args = parser.parse_args(argv)

    settings = PipelineSettings.from_env()
    overrides: dict[str, object] = {}
    if args.accounts:
        overrides["channel_accounts_file"] = args.accounts
    if args.concurrency:
        overrides["queue_concurrency"] = args.concurrency
    if overrides:
        settings = replace(settings, **overrides)

    init_logging()
    if not settings.redis_url:
        logger.warning("REDIS_URL not set; the worker only sees jobs queued in this process")
    worker = asyncio.run(_serve(build_coordinator(settings)))
    logger.info("Worker stopped: %d processed, %d failed", worker.processed, worker.failed)


if __name__ == "__main__":
    worker_main()
