# streamguard/events.py

import logging
import queue
import threading
from typing import Callable, List, Optional

from streamguard.config import settings

logger = logging.getLogger(__name__)

SESSION_STARTED = "session.started"
SESSION_UPDATED = "session.updated"
SESSION_STOPPED = "session.stopped"
VIOLATION_CREATED = "violation.created"

Subscriber = Callable[[str, dict], None]

_STOP = object()


class EventPublisher:
    """
    Non-blocking outbound event channel.

    publish() only enqueues; a single dispatcher thread hands events to
    subscribers. A full queue drops the event rather than blocking the caller.
    """

    def __init__(self, maxsize: int = None):
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize or settings.event_queue_size)
        self._subscribers: List[Subscriber] = []
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self.dropped = 0

    def subscribe(self, callback: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(callback)

    def publish(self, event_type: str, payload: dict) -> bool:
        try:
            self._queue.put_nowait((event_type, payload))
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Event queue full, dropped {event_type}")
            return False

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="event-dispatcher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Deliver everything queued so far, then stop the dispatcher"""
        if not self._thread:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout=timeout)
        self._thread = None

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break

            event_type, payload = item
            with self._lock:
                subscribers = list(self._subscribers)

            for callback in subscribers:
                try:
                    callback(event_type, payload)
                except Exception as e:
                    logger.error(f"Event subscriber failed on {event_type}: {e}")
