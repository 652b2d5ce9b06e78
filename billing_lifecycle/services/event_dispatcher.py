"""Subscription event dispatching.

Responsibilities:
- Deliver subscription events to in-process listeners
- Keep a history of emitted events for inspection
- Optionally publish events to a Google Cloud Pub/Sub topic
- Manage Pub/Sub client lifecycle
"""

from collections import defaultdict
from threading import RLock
from typing import Any, Callable, Dict, List, Optional

from google.cloud import pubsub_v1

from billing_lifecycle.logging_config import get_logger
from billing_lifecycle.models.events import SubscriptionEvent

logger = get_logger(__name__)

# Listener registered for every event name
ALL_EVENTS = "*"

Listener = Callable[[SubscriptionEvent], None]


class EventDispatcher:
    """Dispatches subscription events.

    Listener exceptions propagate to the caller that emitted the event, so
    a failing side effect can abort (and revert) the change that caused it.
    Pub/Sub publishing is best effort: failures are logged and reported as
    False, never raised.

    Thread-safe singleton pattern.
    """

    def __init__(self, config=None, time_controller=None):
        """Initialize event dispatcher.

        Args:
            config: Configuration (defaults to global config)
            time_controller: Clock used to stamp events (defaults to global instance)
        """
        self._lock = RLock()
        self._listeners: Dict[str, List[Listener]] = defaultdict(list)
        self._recorded_events: List[SubscriptionEvent] = []
        self._publisher: Optional[pubsub_v1.PublisherClient] = None
        self._topic_path: Optional[str] = None
        self._enabled = False
        self._config = config
        self._time_controller = time_controller

        self._initialize()

    def _get_config(self):
        if self._config is None:
            from billing_lifecycle.config import get_config
            self._config = get_config()
        return self._config

    def _get_time_controller(self):
        """lazy load time controller to avoid circular import"""
        if self._time_controller is None:
            from billing_lifecycle.services.time_controller import get_time_controller
            self._time_controller = get_time_controller()
        return self._time_controller

    def _initialize(self) -> None:
        """Init pub/sub publisher from config"""
        config = self._get_config()

        self._enabled = config.engine_settings.publish_events and config.has_pubsub
        if not self._enabled:
            logger.info("event_publishing_disabled", message="Pub/Sub publishing is disabled in config")
            return

        try:
            self._publisher = pubsub_v1.PublisherClient()

            project_id = config.pubsub_project_id
            topic_name = config.pubsub_topic
            self._topic_path = self._publisher.topic_path(project_id, topic_name)

            self._ensure_topic_exists()

            logger.info(
                "event_dispatcher_initialized",
                project_id=project_id,
                topic=topic_name,
                topic_path=self._topic_path,
            )

        except Exception as e:
            logger.error(
                "event_dispatcher_init_failed",
                error=str(e),
                error_type=type(e).__name__,
                exc_info=True,
            )
            self._enabled = False

    def _ensure_topic_exists(self) -> None:
        """Ensure the Pub/Sub topic exists, create it if it doesn't."""
        if not self._publisher or not self._topic_path:
            return

        try:
            self._publisher.get_topic(request={"topic": self._topic_path})
            logger.info("pubsub_topic_exists", topic_path=self._topic_path)
        except Exception:
            topic = self._publisher.create_topic(request={"name": self._topic_path})
            logger.info("pubsub_topic_created", topic_path=topic.name)

    def is_publishing_enabled(self) -> bool:
        """Check if Pub/Sub publishing is enabled and the client is initialized."""
        return self._enabled and self._publisher is not None

    def subscribe(self, event_name: str, listener: Listener) -> None:
        """Register a listener for an event name ("*" for every event)."""
        with self._lock:
            self._listeners[event_name].append(listener)

    def unsubscribe(self, event_name: str, listener: Listener) -> None:
        with self._lock:
            if listener in self._listeners.get(event_name, []):
                self._listeners[event_name].remove(listener)

    def emit(self, event_name: str, subscription_id: int, **payload: Any) -> SubscriptionEvent:
        """Emit a subscription event.

        Args:
            event_name: Event name (e.g. "payment_complete")
            subscription_id: Subscription the event concerns
            **payload: JSON-serialisable event data

        Returns:
            The emitted SubscriptionEvent

        Raises:
            Exception: Whatever a listener raises
        """
        event = SubscriptionEvent(
            name=event_name,
            subscription_id=subscription_id,
            event_time=self._get_time_controller().get_current_time(),
            payload=payload,
        )

        with self._lock:
            self._recorded_events.append(event)
            listeners = list(self._listeners.get(event_name, [])) + list(
                self._listeners.get(ALL_EVENTS, [])
            )

        logger.debug("subscription_event_emitted", event_name=event_name, subscription_id=subscription_id)

        for listener in listeners:
            listener(event)

        if self.is_publishing_enabled():
            self.publish_event(event)

        return event

    def publish_event(self, event: SubscriptionEvent) -> bool:
        """Publish an event to Pub/Sub.

        Returns:
            True if published successfully, False otherwise
        """
        if not self.is_publishing_enabled():
            logger.debug("event_publishing_disabled", message="Skipping event publication")
            return False

        with self._lock:
            try:
                self._publish_message(event)
                logger.info(
                    "subscription_event_published",
                    event_name=event.name,
                    subscription_id=event.subscription_id,
                )
                return True
            except Exception as e:
                logger.error(
                    "subscription_event_publish_failed",
                    event_name=event.name,
                    subscription_id=event.subscription_id,
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
                return False

    def _publish_message(self, event: SubscriptionEvent) -> None:
        """Publish one event and wait for the message id.

        Raises:
            RuntimeError: If the publisher is not initialized
            GoogleAPIError: If publication fails
        """
        if not self._publisher or not self._topic_path:
            raise RuntimeError("Publisher is not initialized")

        message_data = event.model_dump_json().encode("utf-8")

        future = self._publisher.publish(
            self._topic_path,
            message_data,
            # Attributes for subscriber-side filtering
            event_name=event.name,
            subscription_id=str(event.subscription_id),
        )

        message_id = future.result(timeout=5.0)
        logger.debug("pubsub_message_published", message_id=message_id)

    @property
    def recorded_events(self) -> List[SubscriptionEvent]:
        """Events emitted so far, oldest first."""
        with self._lock:
            return list(self._recorded_events)

    def events_named(self, event_name: str, subscription_id: Optional[int] = None) -> List[SubscriptionEvent]:
        """Recorded events with a given name, optionally for one subscription."""
        return [
            e
            for e in self.recorded_events
            if e.name == event_name and (subscription_id is None or e.subscription_id == subscription_id)
        ]

    def clear_recorded_events(self) -> None:
        with self._lock:
            self._recorded_events.clear()

    def shutdown(self) -> None:
        """Shutdown the event dispatcher and close connections."""
        with self._lock:
            if self._publisher:
                logger.info("event_dispatcher_shutting_down")
                self._publisher = None
                self._topic_path = None
                logger.info("event_dispatcher_shutdown_complete")
            self._listeners.clear()


_event_dispatcher: Optional[EventDispatcher] = None
_dispatcher_lock = RLock()


def get_event_dispatcher() -> EventDispatcher:
    """Get or create the singleton EventDispatcher instance.

    Returns:
        EventDispatcher singleton instance
    """
    global _event_dispatcher
    if _event_dispatcher is None:
        with _dispatcher_lock:
            if _event_dispatcher is None:
                _event_dispatcher = EventDispatcher()
    return _event_dispatcher


def reset_event_dispatcher() -> None:
    """Reset the singleton EventDispatcher instance (for testing)."""
    global _event_dispatcher

    with _dispatcher_lock:
        if _event_dispatcher is not None:
            _event_dispatcher.shutdown()
            _event_dispatcher = None
