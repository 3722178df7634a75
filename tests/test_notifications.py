"""Tests for the notification buses.

Covers in-process delivery, webhook delivery through httpx.MockTransport and
the guarantee that delivery failures never reach the publisher.
"""

import json
from unittest.mock import MagicMock

import httpx
import pytest
from pytest_mock import MockerFixture

from orchestrator import notifications
from orchestrator.notifications import (
    EventType,
    InMemoryNotificationBus,
    Notification,
    WebhookNotificationBus,
)


@pytest.fixture
def mock_log(mocker: MockerFixture) -> MagicMock:
    return mocker.patch.object(notifications, "log")


class TestNotification:
    def test_to_json_shape(self):
        notification = Notification(EventType.JOB_CREATED, {"job_id": "j1", "queue_position": 2})

        body = json.loads(notification.to_json())

        assert body["event"] == "job-created"
        assert body["payload"] == {"job_id": "j1", "queue_position": 2}
        assert "timestamp" in body

    def test_event_names_are_hyphenated(self):
        assert {event.value for event in EventType} == {
            "job-created",
            "job-started",
            "job-progress",
            "job-completed",
            "job-failed",
            "pipeline-stage-completed",
            "pipeline-stage-failed",
            "generation-quality-check",
            "pipeline-generation-triggered",
        }


class TestInMemoryNotificationBus:
    async def test_sync_and_async_subscribers_receive_events(self):
        bus = InMemoryNotificationBus()
        received: list[str] = []

        def on_sync(notification: Notification) -> None:
            received.append(f"sync:{notification.event.value}")

        async def on_async(notification: Notification) -> None:
            received.append(f"async:{notification.event.value}")

        bus.subscribe(on_sync)
        bus.subscribe(on_async)
        bus.publish(EventType.JOB_STARTED, {"job_id": "j1"})
        await bus.drain()

        assert received == ["sync:job-started", "async:job-started"]

    async def test_failing_subscriber_does_not_reach_publisher(self, mock_log):
        """[P0] publish() never raises because of a subscriber."""
        bus = InMemoryNotificationBus()
        received: list[Notification] = []

        def broken(notification: Notification) -> None:
            raise RuntimeError("subscriber bug")

        async def broken_async(notification: Notification) -> None:
            raise RuntimeError("async subscriber bug")

        bus.subscribe(broken)
        bus.subscribe(broken_async)
        bus.subscribe(received.append)

        bus.publish(EventType.JOB_FAILED, {"job_id": "j1"})
        await bus.drain()

        assert len(received) == 1
        logged = [c.args[0] for c in mock_log.error.call_args_list]
        assert "notification_subscriber_failed" in logged
        assert "notification_delivery_failed" in logged

    def test_history_and_events_of(self):
        bus = InMemoryNotificationBus(history_size=2)
        bus.publish(EventType.JOB_CREATED, {"job_id": "a"})
        bus.publish(EventType.JOB_STARTED, {"job_id": "a"})
        bus.publish(EventType.JOB_CREATED, {"job_id": "b"})

        assert len(bus.history) == 2
        assert [n.payload["job_id"] for n in bus.events_of(EventType.JOB_CREATED)] == ["b"]

    def test_unsubscribe(self):
        bus = InMemoryNotificationBus()
        received: list[Notification] = []
        bus.subscribe(received.append)
        bus.unsubscribe(received.append)
        bus.unsubscribe(received.append)

        bus.publish(EventType.JOB_CREATED, {})

        assert received == []

    def test_payload_is_copied(self):
        bus = InMemoryNotificationBus()
        payload = {"job_id": "a"}
        bus.publish(EventType.JOB_CREATED, payload)
        payload["job_id"] = "changed"

        assert bus.history[0].payload == {"job_id": "a"}


class TestWebhookNotificationBus:
    async def test_posts_event_as_json(self):
        """[P1] Each event is POSTed to the webhook URL."""
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        bus = WebhookNotificationBus("https://hooks.example.com/pipeline", client=client)

        bus.publish(EventType.PIPELINE_STAGE_COMPLETED, {"post_id": "p1", "stage": "script_generation"})
        await bus.close()

        assert len(requests) == 1
        assert str(requests[0].url) == "https://hooks.example.com/pipeline"
        assert requests[0].headers["content-type"] == "application/json"
        body = json.loads(requests[0].content)
        assert body["event"] == "pipeline-stage-completed"
        assert body["payload"]["post_id"] == "p1"
        await client.aclose()

    async def test_http_error_is_logged_not_raised(self, mock_log):
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(500, text="down"))
        )
        bus = WebhookNotificationBus("https://hooks.example.com/pipeline", client=client)

        bus.publish(EventType.JOB_FAILED, {"job_id": "j1"})
        await bus.drain()

        mock_log.error.assert_called_once()
        assert mock_log.error.call_args.args[0] == "notification_webhook_http_error"
        assert mock_log.error.call_args.kwargs["status_code"] == 500
        await client.aclose()

    async def test_timeout_is_logged_not_raised(self, mock_log):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        bus = WebhookNotificationBus("https://hooks.example.com/pipeline", client=client)

        bus.publish(EventType.JOB_PROGRESS, {"job_id": "j1", "progress": 40})
        await bus.drain()

        assert mock_log.error.call_args.args[0] == "notification_webhook_timeout"
        await client.aclose()

    def test_publish_without_running_loop_is_dropped(self, mock_log):
        """[P2] Publishing outside an event loop drops the event with a warning."""
        bus = WebhookNotificationBus("https://hooks.example.com/pipeline", client=MagicMock())

        bus.publish(EventType.JOB_CREATED, {"job_id": "j1"})

        mock_log.warning.assert_called_once()
        assert mock_log.warning.call_args.args[0] == "notification_dropped_no_event_loop"

    async def test_burst_within_rate_is_delivered(self):
        requests: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(204)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        bus = WebhookNotificationBus(
            "https://hooks.example.com/pipeline", client=client, max_rate=3
        )

        for i in range(3):
            bus.publish(EventType.JOB_PROGRESS, {"job_id": "j1", "progress": i * 30})
        await bus.close()

        assert len(requests) == 3
        await client.aclose()
