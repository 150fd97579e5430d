import random
import threading

import xp
from gateway import GatewayError
from planner import AllScope, TaskPlanner, TaskNotFound
from timer import DEFAULT_MINUTES, FocusTimer
from utils import setup_logger

logger = setup_logger(__name__)


class SessionCompleter:
    """Remote side effects of a finished focus run.

    Three sequential writes for a signed-in visitor: log the session, award
    XP through the ``add_xp`` procedure, credit the active task. The first
    failure is reported and stops the sequence; earlier writes stay. Only
    one sequence runs at a time; a second call while one is in flight
    returns False and does nothing.
    """

    def __init__(self, gateway, identity, planner, notify, on_awarded=None,
                 award=xp.XP_PER_SESSION):
        self.gateway = gateway
        self.identity = identity
        self.planner = planner
        self.notify = notify
        self.on_awarded = on_awarded
        self.award = award
        self._lock = threading.Lock()
        self._in_flight = False
        # set once the owning view is gone; remote writes still finish
        self.closed = False

    @property
    def in_flight(self):
        return self._in_flight

    def complete(self, minutes, task_id=None):
        with self._lock:
            if self._in_flight:
                logger.warning("completion already in flight, ignoring")
                return False
            self._in_flight = True
        try:
            return self._run(minutes, task_id)
        finally:
            with self._lock:
                self._in_flight = False

    def _run(self, minutes, task_id):
        identity = self.identity
        if not identity.is_authenticated:
            return True
        token = identity.access_token

        try:
            self.gateway.insert_focus_session(token, identity.id, minutes, self.award)
        except GatewayError as exc:
            logger.error(f"保存专注记录失败 ({identity.id}): {exc}")
            self.notify('error', "Failed to save focus session")
            return False

        try:
            self.gateway.add_xp(token, self.award)
        except GatewayError as exc:
            # the session row exists but total_xp was not raised
            logger.error(f"XP drift for {identity.id}: session saved, add_xp({self.award}) failed: {exc}")
            self.notify('error', "Failed to save XP")
            return False

        if self.on_awarded is not None and not self.closed:
            self.on_awarded(self.award)

        if task_id is not None:
            try:
                self.planner.add_spent(task_id, minutes, local=not self.closed)
            except TaskNotFound:
                logger.warning(f"active task {task_id} is gone, focused minutes not credited")
            except GatewayError as exc:
                logger.error(f"更新任务时长失败 {task_id}: {exc}")
                self.notify('error', "Failed to update task time")
                return False
        return True


class FocusView:
    """Timer, XP card and task list of one visitor's focus page."""

    kind = 'focus'

    def __init__(self, gateway, identity, scheduler, minutes=DEFAULT_MINUTES,
                 choose=random.choice, feed=None):
        self.gateway = gateway
        self.identity = identity
        self.feed = feed
        self.notices = []
        self.total_xp = 0
        self.planner = TaskPlanner(gateway, identity, notify=self.notify)
        self.completer = SessionCompleter(gateway, identity, self.planner,
                                          notify=self.notify, on_awarded=self._awarded)
        self.timer = FocusTimer(scheduler, minutes, on_complete=self.completer.complete,
                                choose=choose)

    def notify(self, level, message):
        self.notices.append({'level': level, 'message': message})

    def mount(self):
        if not self.identity.is_authenticated:
            return self
        try:
            self._load_xp()
            self.planner.load(AllScope())
        except GatewayError as exc:
            logger.warning(f"focus view load failed for {self.identity.id}: {exc}")
            self.notify('error', str(exc))
        return self

    def _load_xp(self):
        profile = self.gateway.get_profile(self.identity.access_token, self.identity.id)
        self.total_xp = profile.total_xp if profile else 0

    def _awarded(self, award):
        try:
            self._load_xp()
        except GatewayError as exc:
            logger.warning(f"XP refresh failed, showing local total: {exc}")
            self.total_xp += award
        if self.feed is not None:
            self.feed.notify()

    def start(self):
        # inputs stay disabled while a completion is being saved
        if self.completer.in_flight:
            return False
        return self.timer.start()

    def select_task(self, task_id):
        if task_id is not None:
            task_id = self.planner.find(task_id).id
        self.timer.select_task(task_id)

    def rebind(self, identity):
        self.identity = identity
        self.planner.identity = identity
        self.completer.identity = identity

    @property
    def busy(self):
        return self.timer.running or self.completer.in_flight

    def teardown(self):
        self.completer.closed = True
        self.timer.teardown()

    def snapshot(self):
        notices, self.notices = self.notices, []
        return {
            'timer': self.timer.snapshot(),
            'completing': self.completer.in_flight,
            'xp': xp.summary(self.total_xp),
            'tasks': [t.to_dict() for t in self.planner.tasks],
            'signed_in': self.identity.is_authenticated,
            'notices': notices,
        }
