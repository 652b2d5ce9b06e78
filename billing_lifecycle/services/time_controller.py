"""Virtual clock for time manipulation and fast-forwarding.

Responsibilities:
- Maintain virtual current time (UTC seconds)
- Advance time (days, hours, minutes)
- Trigger scheduled subscription events (payments due, end of prepaid
  term, expirations, payment retries) for the new time
"""

import threading
import time
from typing import Optional

from billing_lifecycle.logging_config import get_logger, log_context

logger = get_logger(__name__)

SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 60 * SECONDS_PER_MINUTE
SECONDS_PER_DAY = 24 * SECONDS_PER_HOUR


class TimeController:
    """Virtual clock for time manipulation and fast-forwarding.

    Provides the ability to fast-forward and automatically process
    time based subscription events.

    Args:
        subscription_engine: optional subscription engine object, if missing,
            global instance is used when events need processing
        start_time: initial virtual time, defaults to the real current time
    """

    def __init__(
        self,
        subscription_engine: Optional["SubscriptionEngine"] = None,
        start_time: Optional[int] = None,
    ) -> None:
        self._lock = threading.RLock()
        self._virtual_time = int(time.time()) if start_time is None else start_time
        self._time_offset = 0
        self._subscription_engine = subscription_engine

        logger.info("time_controller_initialized", virtual_time=self._virtual_time)

    def bind_engine(self, subscription_engine: "SubscriptionEngine") -> None:
        """Use this engine to process events when time moves."""
        self._subscription_engine = subscription_engine

    def _get_engine(self):
        """lazy load engine to avoid circular import"""
        if self._subscription_engine is None:
            from billing_lifecycle.services.subscription_engine import get_subscription_engine
            self._subscription_engine = get_subscription_engine()
        return self._subscription_engine

    def get_current_time(self) -> int:
        """Get the current virtual time.

        Returns:
            Current virtual time as Unix timestamp in seconds.
        """
        with self._lock:
            return self._virtual_time

    def advance_time(self, days: int = 0, hours: int = 0, minutes: int = 0) -> dict:
        """Advance virtual time (days, hours, minutes).

        Processes all scheduled subscription events that become due during
        the time advancement.

        Args:
            days: number of days to advance
            hours: number of hours to advance
            minutes: number of minutes to advance

        Returns:
            Dictionary with:
                - old_time: time before advancement
                - new_time: time after advancement
                - time_advanced: seconds advanced
                - events_processed: subscription ids handled per event kind

        Raises:
            ValueError: if time values are negative
        """
        if days < 0 or hours < 0 or minutes < 0:
            raise ValueError("Cannot advance time backwards, negative values are not allowed.")

        seconds_to_advance = days * SECONDS_PER_DAY + hours * SECONDS_PER_HOUR + minutes * SECONDS_PER_MINUTE

        if seconds_to_advance == 0:
            current_time = self.get_current_time()
            return {
                "old_time": current_time,
                "new_time": current_time,
                "time_advanced": 0,
                "events_processed": {},
            }

        with self._lock:
            old_time = self._virtual_time
            self._virtual_time += seconds_to_advance
            self._time_offset += seconds_to_advance
            new_time = self._virtual_time

            logger.info(
                "time_advanced",
                old_time=old_time,
                new_time=new_time,
                days=days,
                hours=hours,
                minutes=minutes,
            )

        return {
            "old_time": old_time,
            "new_time": new_time,
            "time_advanced": seconds_to_advance,
            "events_processed": self._process_scheduled_events(new_time),
        }

    def set_time(self, timestamp: int) -> dict:
        """Set virtual time to a specific timestamp.

        Args:
            timestamp: Unix timestamp in seconds to set

        Returns:
            Dictionary with old_time, new_time and events_processed

        Raises:
            ValueError: If timestamp is before the current virtual time
        """
        with self._lock:
            old_time = self._virtual_time

            if timestamp < old_time:
                raise ValueError(
                    f"cannot set time backwards, current: {old_time}, requested: {timestamp}"
                )

            self._virtual_time = timestamp
            self._time_offset += timestamp - old_time

            logger.info("time_set", old_time=old_time, new_time=timestamp)

        return {
            "old_time": old_time,
            "new_time": timestamp,
            "events_processed": self._process_scheduled_events(timestamp),
        }

    def reset_time(self) -> dict:
        """Reset virtual time back to real current time (no events are processed)."""
        with self._lock:
            old_time = self._virtual_time
            real_current_time = int(time.time())
            self._virtual_time = real_current_time
            self._time_offset = 0

            logger.info("time_reset", old_time=old_time, new_time=real_current_time)

            return {"old_time": old_time, "new_time": real_current_time}

    @property
    def time_offset(self) -> int:
        """Seconds the clock has been moved forward since creation or reset."""
        with self._lock:
            return self._time_offset

    def _process_scheduled_events(self, now: int) -> dict:
        with log_context(virtual_time=now):
            processed = self._get_engine().process_scheduled_events(now)
        if any(processed.values()):
            logger.info(
                "scheduled_events_processed",
                now=now,
                **{kind: len(ids) for kind, ids in processed.items()},
            )
        return processed


_time_controller_instance: Optional[TimeController] = None
_controller_lock = threading.Lock()


def get_time_controller() -> TimeController:
    """Get global virtual clock (singleton)."""
    global _time_controller_instance
    if _time_controller_instance is None:
        with _controller_lock:
            if _time_controller_instance is None:
                _time_controller_instance = TimeController()
    return _time_controller_instance


def reset_time_controller() -> None:
    global _time_controller_instance
    with _controller_lock:
        _time_controller_instance = TimeController()
