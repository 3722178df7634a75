"""Worker process entry point for the script generation orchestrator.

Builds every component explicitly (no module-level singletons), starts the
PipelineController and runs until SIGTERM/SIGINT, then shuts down
gracefully: the queue stops admitting jobs and waits for in-flight
generations before connections are closed.

Construction Order:
    engine → stores → notification bus → rate limiter → script generator
    → executor → queue → controller

Usage:
    Local Development:
        python -m orchestrator.worker

    Installed:
        orchestrator-worker
"""

import asyncio
import contextlib
import os
import signal
import sys
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncEngine

from orchestrator.config import (
    get_database_url,
    get_notification_webhook_url,
    get_script_generator_url,
)
from orchestrator.database import create_engine_from_env, create_schema
from orchestrator.exceptions import ConfigurationError
from orchestrator.notifications import InMemoryNotificationBus, WebhookNotificationBus
from orchestrator.queue import GenerationQueue, QueueSettings
from orchestrator.rate_limiter import RateLimiter, create_upstream_rate_limiter
from orchestrator.services.generation_executor import GenerationExecutor
from orchestrator.services.pipeline_controller import PipelineController, PipelineSettings
from orchestrator.services.script_generator import HTTPScriptGenerator
from orchestrator.store import JobStore, PostStore, ScriptVersionStore
from orchestrator.utils.logging import configure_logging, get_logger

log = get_logger(__name__)


@dataclass
class WorkerConfig:
    """Worker configuration loaded from environment variables."""

    database_url: str
    script_generator_url: str
    notification_webhook_url: str | None


@dataclass
class WorkerComponents:
    """Everything the worker constructed, kept for shutdown."""

    engine: AsyncEngine
    bus: InMemoryNotificationBus | WebhookNotificationBus
    rate_limiter: RateLimiter
    generator: HTTPScriptGenerator
    queue: GenerationQueue
    controller: PipelineController


def get_config() -> WorkerConfig:
    """Load and validate worker configuration.

    Raises:
        ValueError: If DATABASE_URL is not set.
        ConfigurationError: If SCRIPT_GENERATOR_URL is not set.
    """
    script_generator_url = get_script_generator_url()
    if not script_generator_url:
        raise ConfigurationError("SCRIPT_GENERATOR_URL environment variable is required")

    return WorkerConfig(
        database_url=get_database_url(),
        script_generator_url=script_generator_url,
        notification_webhook_url=get_notification_webhook_url(),
    )


async def build_components(config: WorkerConfig) -> WorkerComponents:
    engine, session_factory = create_engine_from_env()
    if config.database_url.startswith("sqlite"):
        await create_schema(engine)

    job_store = JobStore(session_factory)
    post_store = PostStore(session_factory)
    script_store = ScriptVersionStore(session_factory)

    bus: InMemoryNotificationBus | WebhookNotificationBus
    if config.notification_webhook_url:
        bus = WebhookNotificationBus(config.notification_webhook_url)
    else:
        bus = InMemoryNotificationBus()

    rate_limiter = create_upstream_rate_limiter()
    rate_limiter.start()
    generator = HTTPScriptGenerator(config.script_generator_url, rate_limiter)

    executor = GenerationExecutor(post_store, script_store, generator, bus)
    queue = GenerationQueue(job_store, executor, bus, QueueSettings.from_env())
    controller = PipelineController(
        queue,
        job_store,
        post_store,
        bus,
        PipelineSettings.from_env(),
    )

    return WorkerComponents(
        engine=engine,
        bus=bus,
        rate_limiter=rate_limiter,
        generator=generator,
        queue=queue,
        controller=controller,
    )


def request_shutdown(signum: int, stop_event: asyncio.Event) -> None:
    """Signal handler: ask the worker to stop after in-flight jobs finish."""
    log.info(
        "shutdown_signal_received",
        signal=signum,
        signal_name=signal.Signals(signum).name,
    )
    stop_event.set()


async def shutdown_worker(components: WorkerComponents) -> None:
    """Stop the controller and release connections and HTTP clients."""
    await components.controller.stop()
    await components.rate_limiter.close()
    await components.generator.aclose()
    if isinstance(components.bus, WebhookNotificationBus):
        await components.bus.close()
    await components.engine.dispose()
    log.info("worker_resources_closed")


async def run_worker(config: WorkerConfig, stop_event: asyncio.Event | None = None) -> None:
    """Run the pipeline until stop_event is set (by SIGTERM/SIGINT)."""
    stop_event = stop_event or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        # Not supported on Windows event loops
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, request_shutdown, sig, stop_event)

    components = await build_components(config)
    worker_id = components.queue.settings.worker_id
    log.info("worker_started", worker_id=worker_id)

    try:
        await components.controller.start()
        await stop_event.wait()
    finally:
        await shutdown_worker(components)
        log.info("worker_shutdown", worker_id=worker_id)


def main() -> None:
    """Worker process entry point.

    Exit Codes:
        0: Successful shutdown (SIGTERM received)
        1: Fatal error (configuration invalid, database unreachable)
    """
    configure_logging(os.getenv("LOG_LEVEL", "INFO"))

    try:
        config = get_config()
    except (ValueError, ConfigurationError) as e:
        log.error("configuration_load_failed", error=str(e))
        sys.exit(1)

    database_host = (
        config.database_url.split("@")[-1].split("/")[0] if "@" in config.database_url else "local"
    )
    log.info("worker_configuration_loaded", database_url_host=database_host)

    try:
        asyncio.run(run_worker(config))
    except KeyboardInterrupt:
        log.info("worker_interrupted_by_user")
    except Exception as e:
        log.error("worker_fatal_error", error=str(e), error_type=type(e).__name__, exc_info=True)
        sys.exit(1)

    log.info("worker_exited_successfully")


if __name__ == "__main__":
    main()
