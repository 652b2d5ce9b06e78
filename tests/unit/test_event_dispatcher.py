"""Unit tests for EventDispatcher service."""
import json
from unittest.mock import MagicMock, Mock, patch

import pytest

from billing_lifecycle.models.events import SubscriptionEvent
from billing_lifecycle.services.event_dispatcher import ALL_EVENTS, EventDispatcher
from tests.conftest import T0

TOPIC_PATH = "projects/billing-local/topics/subscription-events"


@pytest.fixture
def pubsub_config(engine_settings):
    """Mock configuration with event publishing enabled."""
    engine_settings.publish_events = True
    config = MagicMock()
    config.engine_settings = engine_settings
    config.has_pubsub = True
    config.pubsub_project_id = "billing-local"
    config.pubsub_topic = "subscription-events"
    return config


def make_publisher(mock_publisher_class, result="message-id-1"):
    mock_publisher = Mock()
    mock_future = Mock()
    mock_future.result.return_value = result
    mock_publisher.publish.return_value = mock_future
    mock_publisher.topic_path.return_value = TOPIC_PATH
    mock_publisher_class.return_value = mock_publisher
    return mock_publisher


class TestListeners:
    """Test in-process event delivery."""

    def test_emit_records_event(self, dispatcher):
        event = dispatcher.emit("status_updated", 1042, old_status="active", new_status="on-hold")

        assert event.event_time == T0
        assert event.payload == {"old_status": "active", "new_status": "on-hold"}
        assert dispatcher.recorded_events == [event]

    def test_listener_receives_event(self, dispatcher):
        listener = Mock()
        dispatcher.subscribe("payment_complete", listener)

        event = dispatcher.emit("payment_complete", 1042, order_id=7)
        dispatcher.emit("payment_failed", 1042)

        listener.assert_called_once_with(event)

    def test_wildcard_listener(self, dispatcher):
        received = []
        dispatcher.subscribe(ALL_EVENTS, received.append)

        dispatcher.emit("date_updated", 1, date_type="end", timestamp=T0)
        dispatcher.emit("date_deleted", 1, date_type="end")

        assert [e.name for e in received] == ["date_updated", "date_deleted"]

    def test_unsubscribe(self, dispatcher):
        listener = Mock()
        dispatcher.subscribe("status_updated", listener)
        dispatcher.unsubscribe("status_updated", listener)

        dispatcher.emit("status_updated", 1)

        listener.assert_not_called()

    def test_listener_errors_propagate(self, dispatcher):
        dispatcher.subscribe("status_cancelled", Mock(side_effect=RuntimeError("mailer down")))
        with pytest.raises(RuntimeError, match="mailer down"):
            dispatcher.emit("status_cancelled", 1)

    def test_events_named_filters(self, dispatcher):
        dispatcher.emit("payment_complete", 1)
        dispatcher.emit("payment_complete", 2)
        dispatcher.emit("payment_failed", 1)

        assert len(dispatcher.events_named("payment_complete")) == 2
        assert [e.subscription_id for e in dispatcher.events_named("payment_complete", 2)] == [2]

        dispatcher.clear_recorded_events()
        assert dispatcher.recorded_events == []


class TestEventDispatcherInitialization:
    """Test EventDispatcher initialization and configuration."""

    def test_publishing_disabled_by_config(self, dispatcher):
        assert not dispatcher.is_publishing_enabled()

    @patch('billing_lifecycle.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_dispatcher_initializes_when_enabled(self, mock_publisher_class, pubsub_config, clock):
        mock_publisher = make_publisher(mock_publisher_class)

        dispatcher = EventDispatcher(config=pubsub_config, time_controller=clock)

        assert dispatcher.is_publishing_enabled()
        mock_publisher.topic_path.assert_called_once_with("billing-local", "subscription-events")
        mock_publisher.get_topic.assert_called_once_with(request={"topic": TOPIC_PATH})

    @patch('billing_lifecycle.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_missing_topic_is_created(self, mock_publisher_class, pubsub_config, clock):
        mock_publisher = make_publisher(mock_publisher_class)
        mock_publisher.get_topic.side_effect = Exception("404 Topic not found")

        EventDispatcher(config=pubsub_config, time_controller=clock)

        mock_publisher.create_topic.assert_called_once_with(request={"name": TOPIC_PATH})

    @patch('billing_lifecycle.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_client_failure_disables_publishing(self, mock_publisher_class, pubsub_config, clock):
        mock_publisher_class.side_effect = Exception("no credentials")

        dispatcher = EventDispatcher(config=pubsub_config, time_controller=clock)

        assert not dispatcher.is_publishing_enabled()
        # Listeners still work without Pub/Sub
        assert dispatcher.emit("status_updated", 1).name == "status_updated"


class TestEventPublishing:
    """Test event publishing functionality."""

    @patch('billing_lifecycle.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_emit_publishes(self, mock_publisher_class, pubsub_config, clock):
        mock_publisher = make_publisher(mock_publisher_class)
        dispatcher = EventDispatcher(config=pubsub_config, time_controller=clock)

        dispatcher.emit("renewal_order_created", 1042, order_id=1043, total="19.99")

        mock_publisher.publish.assert_called_once()
        args, attrs = mock_publisher.publish.call_args
        assert args[0] == TOPIC_PATH
        message = json.loads(args[1].decode("utf-8"))
        assert message["name"] == "renewal_order_created"
        assert message["subscription_id"] == 1042
        assert message["payload"] == {"order_id": 1043, "total": "19.99"}
        assert attrs == {"event_name": "renewal_order_created", "subscription_id": "1042"}

    @patch('billing_lifecycle.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_publish_event_when_disabled(self, mock_publisher_class, pubsub_config, clock):
        mock_publisher = make_publisher(mock_publisher_class)
        dispatcher = EventDispatcher(config=pubsub_config, time_controller=clock)
        # Force disable
        dispatcher._enabled = False

        event = SubscriptionEvent(name="payment_failed", subscription_id=1, event_time=T0)

        assert dispatcher.publish_event(event) is False
        mock_publisher.publish.assert_not_called()

    @patch('billing_lifecycle.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_publish_errors_are_not_raised(self, mock_publisher_class, pubsub_config, clock):
        mock_publisher = make_publisher(mock_publisher_class)
        mock_publisher.publish.return_value.result.side_effect = Exception("Pub/Sub error")
        dispatcher = EventDispatcher(config=pubsub_config, time_controller=clock)

        event = SubscriptionEvent(name="payment_failed", subscription_id=1, event_time=T0)

        assert dispatcher.publish_event(event) is False
        # The emit itself still succeeds
        assert dispatcher.emit("payment_failed", 1).name == "payment_failed"


class TestEventDispatcherShutdown:
    """Test dispatcher shutdown."""

    @patch('billing_lifecycle.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_shutdown_cleans_up_resources(self, mock_publisher_class, pubsub_config, clock):
        make_publisher(mock_publisher_class)
        dispatcher = EventDispatcher(config=pubsub_config, time_controller=clock)
        listener = Mock()
        dispatcher.subscribe("status_updated", listener)
        assert dispatcher._publisher is not None

        dispatcher.shutdown()

        assert dispatcher._publisher is None
        assert dispatcher._topic_path is None
        assert not dispatcher.is_publishing_enabled()
        dispatcher.emit("status_updated", 1)
        listener.assert_not_called()


class TestEventLogging:
    """Test the structured log entries written for events.

    The event name goes in ``event_name``; structlog reserves ``event``
    for the log message itself.
    """

    @staticmethod
    def logged(mock_method, message):
        for call in mock_method.call_args_list:
            if call.args and call.args[0] == message:
                return call.kwargs
        raise AssertionError(f"{message} was not logged")

    @patch('billing_lifecycle.services.event_dispatcher.logger')
    def test_emit_logs_event_name(self, mock_logger, dispatcher):
        dispatcher.emit("status_updated", 1042)

        fields = self.logged(mock_logger.debug, "subscription_event_emitted")
        assert fields["event_name"] == "status_updated"
        assert fields["subscription_id"] == 1042
        assert "event" not in fields

    @patch('billing_lifecycle.services.event_dispatcher.logger')
    @patch('billing_lifecycle.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_publish_logs_event_name(self, mock_publisher_class, mock_logger, pubsub_config, clock):
        make_publisher(mock_publisher_class)
        dispatcher = EventDispatcher(config=pubsub_config, time_controller=clock)

        dispatcher.emit("payment_complete", 7)

        fields = self.logged(mock_logger.info, "subscription_event_published")
        assert fields["event_name"] == "payment_complete"
        assert "event" not in fields

    @patch('billing_lifecycle.services.event_dispatcher.logger')
    @patch('billing_lifecycle.services.event_dispatcher.pubsub_v1.PublisherClient')
    def test_publish_failure_is_logged(self, mock_publisher_class, mock_logger, pubsub_config, clock):
        mock_publisher = make_publisher(mock_publisher_class)
        mock_publisher.publish.return_value.result.side_effect = Exception("Pub/Sub error")
        dispatcher = EventDispatcher(config=pubsub_config, time_controller=clock)

        event = dispatcher.emit("payment_failed", 7)

        assert event.name == "payment_failed"
        fields = self.logged(mock_logger.error, "subscription_event_publish_failed")
        assert fields["event_name"] == "payment_failed"
        assert fields["error"] == "Pub/Sub error"
        assert "event" not in fields
