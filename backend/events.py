import threading
from collections import deque


class Subscription:
    def __init__(self, stream, callback):
        self._stream = stream
        self.callback = callback
        self.active = True

    def unsubscribe(self):
        if self.active:
            self.active = False
            self._stream._remove(self)


class EventStream:
    """Fan-out of events to subscribers.

    Events are delivered in publish order. An event published while another
    is being delivered (from a callback or another thread) is queued and
    delivered after it, so every subscriber sees the same sequence.
    """

    def __init__(self):
        self._subscribers = []
        self._queue = deque()
        self._lock = threading.Lock()
        self._dispatching = False

    def subscribe(self, callback):
        subscription = Subscription(self, callback)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def _remove(self, subscription):
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    @property
    def subscriber_count(self):
        with self._lock:
            return len(self._subscribers)

    def publish(self, *args):
        with self._lock:
            self._queue.append(args)
            if self._dispatching:
                return
            self._dispatching = True

        while True:
            with self._lock:
                if not self._queue:
                    self._dispatching = False
                    return
                event = self._queue.popleft()
                subscribers = list(self._subscribers)
            try:
                for subscription in subscribers:
                    if subscription.active:
                        subscription.callback(*event)
            except Exception:
                with self._lock:
                    self._dispatching = False
                raise
