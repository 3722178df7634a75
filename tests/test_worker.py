"""Tests for the worker process entry point.

This test module covers:
- Configuration loading and validation
- Component construction from environment variables
- Graceful shutdown through the stop event
- Exit codes of main()
"""

import asyncio
import signal
from unittest.mock import MagicMock

import pytest

from orchestrator import worker
from orchestrator.exceptions import ConfigurationError
from orchestrator.models import PostStatus
from orchestrator.notifications import InMemoryNotificationBus, WebhookNotificationBus
from tests.support.factories import create_post, insert_posts


@pytest.fixture
def worker_env(monkeypatch: pytest.MonkeyPatch, tmp_path):
    """Point the worker at a file-backed SQLite database."""
    database_url = f"sqlite+aiosqlite:///{tmp_path / 'worker.db'}"
    monkeypatch.setenv("DATABASE_URL", database_url)
    monkeypatch.setenv("SCRIPT_GENERATOR_URL", "http://scripts.test")
    monkeypatch.setenv("PIPELINE_AUTO_TRIGGER", "false")
    monkeypatch.setenv("WORKER_ID", "worker-test")
    return database_url


class TestGetConfig:
    def test_loads_configuration(self, worker_env):
        config = worker.get_config()

        assert config.database_url == worker_env
        assert config.script_generator_url == "http://scripts.test"
        assert config.notification_webhook_url is None

    def test_missing_script_generator_url(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

        with pytest.raises(ConfigurationError, match="SCRIPT_GENERATOR_URL"):
            worker.get_config()

    def test_missing_database_url(self, monkeypatch):
        monkeypatch.setenv("SCRIPT_GENERATOR_URL", "http://scripts.test")

        with pytest.raises(ValueError, match="DATABASE_URL"):
            worker.get_config()


class TestSignalHandling:
    def test_request_shutdown_sets_stop_event(self):
        """[P0] SIGTERM asks the worker to stop."""
        stop_event = asyncio.Event()

        worker.request_shutdown(signal.SIGTERM, stop_event)

        assert stop_event.is_set()

    def test_request_shutdown_logs_signal_name(self, monkeypatch):
        mock_log = MagicMock()
        monkeypatch.setattr(worker, "log", mock_log)

        worker.request_shutdown(signal.SIGINT, asyncio.Event())

        mock_log.info.assert_called_once_with(
            "shutdown_signal_received", signal=signal.SIGINT, signal_name="SIGINT"
        )


class TestBuildComponents:
    async def test_builds_components_from_environment(self, worker_env):
        """[P1] SQLite deployments get their schema created on startup."""
        components = await worker.build_components(worker.get_config())
        try:
            assert isinstance(components.bus, InMemoryNotificationBus)
            assert components.queue.settings.worker_id == "worker-test"
            assert components.controller.settings.auto_trigger is False
            assert components.controller.queue is components.queue

            # Schema exists: stores can be used right away
            assert await components.controller.post_store.find_eligible() == []
        finally:
            await worker.shutdown_worker(components)

    async def test_webhook_bus_when_url_configured(self, worker_env, monkeypatch):
        monkeypatch.setenv("NOTIFICATION_WEBHOOK_URL", "https://hooks.example.com/pipeline")

        components = await worker.build_components(worker.get_config())
        try:
            assert isinstance(components.bus, WebhookNotificationBus)
        finally:
            await worker.shutdown_worker(components)


class TestRunWorker:
    async def test_run_until_stop_event(self, worker_env):
        """[P0] run_worker starts the pipeline and shuts down when stopped."""
        stop_event = asyncio.Event()
        stop_event.set()

        await worker.run_worker(worker.get_config(), stop_event)

    async def test_run_worker_admits_posts_on_trigger(self, worker_env, monkeypatch):
        monkeypatch.setenv("PIPELINE_AUTO_TRIGGER", "true")
        monkeypatch.setenv("PIPELINE_CHECK_INTERVAL_SECONDS", "60")
        config = worker.get_config()
        captured: dict = {}
        build = worker.build_components

        async def build_and_seed(cfg):
            components = await build(cfg)
            session_factory = components.controller.post_store._session_factory
            await insert_posts(session_factory, create_post("p1"))
            captured["post_store"] = components.controller.post_store
            # Keep the worker offline: the generator must not be called
            components.queue.settings.max_concurrent = 0
            return components

        monkeypatch.setattr(worker, "build_components", build_and_seed)
        stop_event = asyncio.Event()

        task = asyncio.create_task(worker.run_worker(config, stop_event))
        try:
            for _ in range(200):
                if "post_store" in captured:
                    status = await captured["post_store"].get_status("p1")
                    if status == PostStatus.GENERATING:
                        break
                await asyncio.sleep(0.01)
            else:
                pytest.fail("post was never admitted")
        finally:
            stop_event.set()
            await asyncio.wait_for(task, timeout=5.0)


class TestMain:
    def test_exits_with_code_1_when_configuration_missing(self):
        """[P0] Missing configuration exits with code 1."""
        with pytest.raises(SystemExit) as exc_info:
            worker.main()

        assert exc_info.value.code == 1

    def test_fatal_error_exits_with_code_1(self, mocker, worker_env):
        mock_run = mocker.patch("orchestrator.worker.asyncio.run")

        def fail(coro):
            coro.close()
            raise RuntimeError("database unreachable")

        mock_run.side_effect = fail

        with pytest.raises(SystemExit) as exc_info:
            worker.main()

        assert exc_info.value.code == 1

    def test_keyboard_interrupt_exits_cleanly(self, mocker, worker_env):
        mock_run = mocker.patch("orchestrator.worker.asyncio.run")

        def interrupt(coro):
            coro.close()
            raise KeyboardInterrupt

        mock_run.side_effect = interrupt

        worker.main()

        mock_run.assert_called_once()
