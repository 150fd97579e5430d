import threading

from identity import AuthEvent
from utils import setup_logger

logger = setup_logger(__name__)


class ViewRegistry:
    """Live view instances (focus, planner, leaderboard) per visitor.

    A view is created on first use and torn down on explicit unmount, when
    its visitor signs in or out, or when nobody has touched it for
    ``idle_ttl`` seconds. A view reporting ``busy`` (a running timer, a
    completion being saved) is never expired.
    """

    def __init__(self, auth_stream, scheduler=None, idle_ttl=None, sweep_interval=60):
        self._views = {}
        self._touched = {}
        self._lock = threading.Lock()
        self._subscription = auth_stream.subscribe(self._on_auth)
        self.scheduler = scheduler
        self.idle_ttl = idle_ttl
        self._sweeper = None
        if scheduler is not None and idle_ttl:
            self._sweeper = scheduler.call_every(sweep_interval, self.sweep)

    def __len__(self):
        with self._lock:
            return len(self._views)

    def _now(self):
        return self.scheduler.clock() if self.scheduler is not None else 0

    def get(self, visitor, kind):
        with self._lock:
            return self._views.get((visitor, kind))

    def get_or_mount(self, visitor, kind, identity, factory):
        key = (visitor, kind)
        with self._lock:
            view = self._views.get(key)
            if view is not None:
                self._touched[key] = self._now()
        if view is not None:
            if getattr(view.identity, 'access_token', None) != getattr(identity, 'access_token', None):
                view.rebind(identity)
            return view

        # built outside the lock, mounting talks to the backend
        view = factory()
        with self._lock:
            existing = self._views.setdefault(key, view)
            self._touched[key] = self._now()
        if existing is not view:
            view.teardown()
        return existing

    def unmount(self, visitor, kind=None):
        with self._lock:
            keys = [k for k in self._views if k[0] == visitor and (kind is None or k[1] == kind)]
            views = [self._pop(k) for k in keys]
        for view in views:
            view.teardown()
        if views:
            logger.info(f"unmounted {len(views)} view(s) of {visitor}")
        return len(views)

    def _pop(self, key):
        self._touched.pop(key, None)
        return self._views.pop(key)

    def sweep(self):
        """Tear down views idle for longer than ``idle_ttl``."""
        if not self.idle_ttl:
            return 0
        deadline = self._now() - self.idle_ttl
        with self._lock:
            keys = [k for k, view in self._views.items()
                    if self._touched.get(k, 0) <= deadline and not getattr(view, 'busy', False)]
            views = [self._pop(k) for k in keys]
        for view in views:
            view.teardown()
        if views:
            logger.info(f"expired {len(views)} idle view(s)")
        return len(views)

    def _on_auth(self, event, identity, visitor):
        if event not in (AuthEvent.SIGNED_IN, AuthEvent.SIGNED_OUT):
            return
        if visitor is not None:
            self.unmount(visitor)
        if identity.is_authenticated and identity.id != visitor:
            self.unmount(identity.id)

    def close(self):
        self._subscription.unsubscribe()
        if self._sweeper is not None:
            self._sweeper.cancel()
            self._sweeper = None
        with self._lock:
            views, self._views = list(self._views.values()), {}
            self._touched.clear()
        for view in views:
            view.teardown()
