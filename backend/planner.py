import threading
import uuid
from collections import Counter
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional

from gateway import GatewayError
from models import Priority, Task
from utils import setup_logger, start_of_month, end_of_month, today as local_today

logger = setup_logger(__name__)

DEFAULT_DURATION = 25


class TaskNotFound(LookupError):
    pass


# --- Scopes ---

@dataclass(frozen=True)
class AllScope:
    """Every task of the user, oldest first."""

    def query(self):
        return {'order': 'created_at.asc'}

    def contains(self, task):
        return True


@dataclass(frozen=True)
class MonthScope:
    month: date

    def __post_init__(self):
        object.__setattr__(self, 'month', start_of_month(self.month))

    def query(self):
        return {'since': self.month, 'until': end_of_month(self.month),
                'order': 'due_date.asc,created_at.asc'}

    def contains(self, task):
        return task.due_date is not None and \
            self.month <= task.due_date <= end_of_month(self.month)


@dataclass(frozen=True)
class UpcomingScope:
    """Today plus everything dated later; undated tasks count as today."""
    today: date

    def query(self):
        return {'since': self.today, 'include_undated': True,
                'order': 'due_date.asc,created_at.asc'}

    def contains(self, task):
        return task.due_date is None or task.due_date >= self.today


@dataclass
class Divergence:
    operation: str
    task_id: str
    error: str


class TaskPlanner:
    """Local copy of one visitor's tasks.

    Toggle and remove change the local copy first and then tell the backend.
    When the backend call fails the local change stays, the failure is
    reported through ``notify`` and kept in ``divergences`` until
    :meth:`resync` reloads the scope.
    """

    def __init__(self, gateway, identity, notify=None):
        self.gateway = gateway
        self.identity = identity
        self.notify = notify or (lambda level, message: None)
        self.tasks: List[Task] = []
        self.scope = None
        self.divergences: List[Divergence] = []
        self._lock = threading.RLock()

    @property
    def _signed_in(self):
        return self.identity.is_authenticated

    def load(self, scope):
        """Fetch the tasks in ``scope`` and replace the local collection."""
        self.scope = scope
        if not self._signed_in:
            with self._lock:
                self.tasks = [t for t in self.tasks if scope.contains(t)]
            return self.tasks
        tasks = self.gateway.list_tasks(self.identity.access_token, self.identity.id,
                                        **scope.query())
        with self._lock:
            self.tasks = tasks
        return tasks

    def resync(self):
        with self._lock:
            self.divergences.clear()
        if self.scope is not None:
            self.load(self.scope)

    def find(self, task_id) -> Task:
        with self._lock:
            for task in self.tasks:
                if task.id == str(task_id):
                    return task
        raise TaskNotFound(task_id)

    def add(self, title, priority=Priority.MEDIUM, duration=DEFAULT_DURATION,
            due_date: Optional[date] = None) -> Optional[Task]:
        """Add a task; blank titles are ignored and return None."""
        title = title.strip() if isinstance(title, str) else ''
        if not title:
            return None
        priority = Priority.parse(priority)
        try:
            duration = int(duration or DEFAULT_DURATION)
        except TypeError:
            raise ValueError(f"invalid duration: {duration!r}")
        if duration <= 0:
            raise ValueError("duration must be positive")

        if not self._signed_in:
            # 访客模式: 仅保存在内存中
            task = Task(id=uuid.uuid4().hex, title=title, priority=priority,
                        due_date=due_date, duration_min=duration,
                        created_at=datetime.now(timezone.utc))
        else:
            task = self.gateway.insert_task(self.identity.access_token, self.identity.id, {
                'title': title,
                'priority': priority.value,
                'due_date': due_date.isoformat() if due_date else None,
                'duration_min': duration,
                'spent_min': 0,
            })
        with self._lock:
            self.tasks.append(task)
        return task

    def toggle_completed(self, task_id) -> Task:
        with self._lock:
            task = self.find(task_id)
            task.completed = not task.completed
            completed = task.completed
        if self._signed_in:
            try:
                self.gateway.update_task(self.identity.access_token, self.identity.id,
                                         task.id, {'completed': completed})
            except GatewayError as exc:
                self._diverged('toggle', task, exc)
        return task

    def remove(self, task_id) -> Task:
        with self._lock:
            task = self.find(task_id)
            self.tasks.remove(task)
        if self._signed_in:
            try:
                self.gateway.delete_task(self.identity.access_token, self.identity.id, task.id)
            except GatewayError as exc:
                self._diverged('remove', task, exc)
        return task

    def add_spent(self, task_id, minutes, local=True) -> Task:
        """Credit focused minutes to a task. Raises GatewayError on failure.

        With ``local=False`` only the backend row changes.
        """
        task = self.find(task_id)
        spent = task.spent_min + minutes
        if self._signed_in:
            self.gateway.update_task(self.identity.access_token, self.identity.id,
                                     task.id, {'spent_min': spent})
        if local:
            task.spent_min = spent
        return task

    def _diverged(self, operation, task, exc):
        logger.warning(f"{operation} of task {task.id} kept locally, backend refused: {exc}")
        with self._lock:
            self.divergences.append(Divergence(operation, task.id, str(exc)))
        self.notify('error', str(exc))

    # --- Views over the collection ---

    def today(self, on=None):
        day = on or local_today()
        return [t for t in self.tasks if t.due_date is None or t.due_date == day]

    def upcoming(self, on=None):
        day = on or local_today()
        return [t for t in self.tasks if t.due_date is not None and t.due_date > day]

    def on(self, day):
        return [t for t in self.tasks if t.due_date == day]

    def counts_by_date(self):
        return Counter(t.due_date.isoformat() for t in self.tasks if t.due_date)


def progress_percent(task):
    target = task.duration_min or DEFAULT_DURATION
    return min(100, (task.spent_min * 100) // target)


def calendar_cells(month):
    """Days of ``month`` in a Sunday-first grid, with None for leading blanks."""
    first = start_of_month(month)
    blanks = (first.weekday() + 1) % 7
    days = end_of_month(month).day
    return [None] * blanks + [first + timedelta(days=i) for i in range(days)]


class PlannerView:
    """Calendar planner for one visitor: a visible month and a selected day."""

    kind = 'planner'

    def __init__(self, gateway, identity):
        self.identity = identity
        self.notices = []
        self.planner = TaskPlanner(gateway, identity, notify=self.notify)
        self.selected = local_today()
        self.month = start_of_month(self.selected)
        self.loaded = False

    def notify(self, level, message):
        self.notices.append({'level': level, 'message': message})

    def show(self, month=None, selected=None):
        """Load the month if it changed. Raises GatewayError on failure."""
        if selected is not None:
            self.selected = selected
            if month is None:
                month = selected
        if month is not None:
            month = start_of_month(month)
        if month is not None and month != self.month:
            self.month = month
            self.loaded = False
        if not self.loaded:
            self.planner.load(MonthScope(self.month))
            self.loaded = True

    def rebind(self, identity):
        self.identity = identity
        self.planner.identity = identity

    def teardown(self):
        self.planner.tasks = []

    def snapshot(self):
        counts = self.planner.counts_by_date()
        notices, self.notices = self.notices, []
        return {
            'month': self.month.strftime('%Y-%m'),
            'selected': self.selected.isoformat(),
            'today': local_today().isoformat(),
            'calendar': [
                None if day is None else {'date': day.isoformat(), 'count': counts.get(day.isoformat(), 0)}
                for day in calendar_cells(self.month)
            ],
            'tasks': [dict(t.to_dict(), progress=progress_percent(t))
                      for t in self.planner.on(self.selected)],
            'divergences': len(self.planner.divergences),
            'notices': notices,
        }
