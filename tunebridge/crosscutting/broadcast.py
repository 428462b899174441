import queue
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional


logger = logging.getLogger(__name__)

Event = Dict[str, Any]


class Subscription:
    """One consumer of the channel, backed by a bounded queue.

    Iterating yields events as they arrive; iteration ends once the subscription
    is closed. Events published while the queue is full are dropped for this
    subscriber only.
    """

    def __init__(self, channel: 'BroadcastChannel', maxsize: int = 1000):
        self._channel = channel
        self._queue: 'queue.Queue[Optional[Event]]' = queue.Queue(maxsize=maxsize)
        self.closed = False
        self.dropped = 0

    def deliver(self, event: Event) -> None:
        if self.closed:
            raise RuntimeError("subscription closed")
        self._queue.put_nowait(event)

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Return the next event, or None when nothing arrives within `timeout`."""
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> List[Event]:
        events = []
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return events
            if event is not None:
                events.append(event)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._channel.unsubscribe(self)
        try:
            self._queue.put_nowait(None)
        except queue.Full:
            pass

    def __iter__(self) -> Iterator[Event]:
        while not self.closed:
            event = self._queue.get()
            if event is None:
                return
            yield event

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class BroadcastChannel:
    """Best-effort fan-out of progress/log/finish events to every current subscriber.

    Publishing never raises: a slow subscriber loses events, a broken one is removed.
    There is no replay for late subscribers.
    """

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []
        self._listeners: List[Callable[[Event], None]] = []

    def subscribe(self) -> Subscription:
        subscription = Subscription(self, maxsize=self.queue_size)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def add_listener(self, listener: Callable[[Event], None]) -> None:
        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: Callable[[Event], None]) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions) + len(self._listeners)

    def publish(self, event: Event) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions)
            listeners = list(self._listeners)

        for subscription in subscriptions:
            try:
                subscription.deliver(event)
            except queue.Full:
                subscription.dropped += 1
                logger.warning(f"Subscriber queue full, dropping {event.get('type')} event")
            except Exception as e:
                logger.warning(f"Removing broken subscriber: {e}")
                self.unsubscribe(subscription)

        for listener in listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Removing broken listener {listener!r}: {e}")
                self.remove_listener(listener)

    def progress(self, current: int, total: int, step: str, status: str = 'running',
                 track_info: Optional[Dict[str, Any]] = None, **fields) -> Event:
        event = {
            'type': 'progress',
            'data': {
                'current': current,
                'total': total,
                'currentStep': step,
                'status': status,
                'trackInfo': track_info,
                **fields,
            },
        }
        self.publish(event)
        return event

    def log(self, message: str, level: str = 'info', **fields) -> Event:
        event = {
            'type': 'log',
            'level': level,
            'message': message,
            'ts': datetime.now(timezone.utc).isoformat(),
        }
        if fields:
            event['fields'] = fields
        self.publish(event)
        return event

    def finish(self, status: str, found: int = 0, not_found: int = 0, skipped: int = 0,
               message: str = '', **fields) -> Event:
        event = {
            'type': 'finish',
            'status': status,
            'found': found,
            'notFound': not_found,
            'skipped': skipped,
            'message': message,
            **fields,
        }
        self.publish(event)
        return event
