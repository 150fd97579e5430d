"""Focus timer: a one-tick-per-second countdown with encouragement checkpoints.

The timer never sleeps or spawns threads itself; ticks and message expiry
come from an injected scheduler (``call_every`` / ``call_later``), so the
same engine runs on a thread-backed scheduler in the app and on a manual
clock in tests.

Checkpoint messages are picked with the injected ``choose`` function
(``random.choice`` by default), so which of a checkpoint's messages is
shown is not deterministic.
"""
import random
import threading
from dataclasses import dataclass
from enum import Enum

from utils import setup_logger

logger = setup_logger(__name__)

MIN_MINUTES = 10
MAX_MINUTES = 180
DEFAULT_MINUTES = 25
# Seconds an encouragement message stays visible
MESSAGE_SECONDS = 6


@dataclass(frozen=True)
class Checkpoint:
    minute: int
    messages: tuple


CHECKPOINTS = (
    Checkpoint(5, ("Nice start. You're building momentum 💪", "Good focus. Keep going ✨")),
    Checkpoint(10, ("You're 40% in — stay sharp 🔥", "Focus streak forming 🧠")),
    Checkpoint(15, ("Halfway there. Don't break the flow 🚀", "Great discipline so far 💎")),
    Checkpoint(20, ("Almost done. Finish strong 🏁", "Stay with it — you're close ⏳")),
)


class TimerState(str, Enum):
    IDLE = 'idle'
    RUNNING = 'running'
    # Countdown hit zero; session completion is running
    EXPIRED = 'expired'


def validate_minutes(minutes):
    minutes = int(minutes)
    if not MIN_MINUTES <= minutes <= MAX_MINUTES:
        raise ValueError(f"focus duration must be between {MIN_MINUTES} and {MAX_MINUTES} minutes")
    return minutes


def clamp_minutes(value, default=DEFAULT_MINUTES):
    try:
        minutes = int(value)
    except (TypeError, ValueError):
        return default
    return max(MIN_MINUTES, min(MAX_MINUTES, minutes))


class FocusTimer:
    def __init__(self, scheduler, minutes=DEFAULT_MINUTES, on_complete=None,
                 choose=random.choice, checkpoints=CHECKPOINTS):
        self.scheduler = scheduler
        self.on_complete = on_complete
        self.choose = choose
        self.checkpoints = tuple(sorted(checkpoints, key=lambda cp: cp.minute))
        self.configured_minutes = validate_minutes(minutes)

        self._lock = threading.RLock()
        self._ticker = None
        self._message_timer = None
        self._message_generation = 0
        self._closed = False

        self.state = TimerState.IDLE
        self._restart()

    def _restart(self):
        # 回到初始状态: 使用当前配置的时长
        self.run_minutes = self.configured_minutes
        self.remaining = self.run_minutes * 60
        self.fired = set()
        self.encouragement = None
        self.active_task_id = None

    @property
    def running(self):
        return self.state == TimerState.RUNNING

    @property
    def pristine(self):
        return self.state == TimerState.IDLE and self.remaining == self.run_minutes * 60

    def start(self):
        with self._lock:
            if self._closed or self.state != TimerState.IDLE:
                return False
            self.state = TimerState.RUNNING
            self._ticker = self.scheduler.call_every(1, self.tick)
            return True

    def stop(self):
        with self._lock:
            if self.state != TimerState.RUNNING:
                return False
            self._cancel_ticker()
            self.state = TimerState.IDLE
            return True

    pause = stop

    def reset(self):
        with self._lock:
            self._cancel_ticker()
            self._clear_message()
            self.state = TimerState.IDLE
            self._restart()

    def set_duration(self, minutes):
        """Change the configured duration.

        An untouched idle timer shows the new length at once; otherwise it
        applies from the next reset or completion.
        """
        minutes = validate_minutes(minutes)
        with self._lock:
            pristine = self.pristine
            self.configured_minutes = minutes
            if pristine:
                self.run_minutes = minutes
                self.remaining = minutes * 60
        return minutes

    def select_task(self, task_id):
        with self._lock:
            self.active_task_id = task_id

    def tick(self):
        with self._lock:
            if self.state != TimerState.RUNNING or self.remaining <= 0:
                return
            self.remaining -= 1
            self._check_checkpoints()
            if self.remaining > 0:
                return
            self._cancel_ticker()
            self.state = TimerState.EXPIRED
            minutes = self.run_minutes
            task_id = self.active_task_id

        logger.info(f"focus run of {minutes} min finished")
        try:
            if self.on_complete is not None:
                self.on_complete(minutes, task_id)
        finally:
            with self._lock:
                if self.state == TimerState.EXPIRED:
                    self._clear_message()
                    self.state = TimerState.IDLE
                    self._restart()

    def _check_checkpoints(self):
        elapsed = (self.run_minutes * 60 - self.remaining) // 60
        for checkpoint in self.checkpoints:
            if checkpoint.minute >= self.run_minutes or checkpoint.minute in self.fired:
                continue
            if elapsed == checkpoint.minute:
                self.fired.add(checkpoint.minute)
                self._show(self.choose(checkpoint.messages))
                break

    def _show(self, message):
        self._clear_message()
        self.encouragement = message
        generation = self._message_generation
        self._message_timer = self.scheduler.call_later(
            MESSAGE_SECONDS, lambda: self._expire_message(generation))

    def _expire_message(self, generation):
        with self._lock:
            if generation == self._message_generation:
                self.encouragement = None
                self._message_timer = None

    def _clear_message(self):
        self._message_generation += 1
        if self._message_timer is not None:
            self._message_timer.cancel()
            self._message_timer = None
        self.encouragement = None

    def _cancel_ticker(self):
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None

    def teardown(self):
        with self._lock:
            self._closed = True
            self._cancel_ticker()
            self._clear_message()
            if self.state == TimerState.RUNNING:
                self.state = TimerState.IDLE

    def snapshot(self):
        with self._lock:
            return {
                'state': self.state.value,
                'remaining': self.remaining,
                'display': f"{self.remaining // 60}:{self.remaining % 60:02d}",
                'minutes': self.configured_minutes,
                'run_minutes': self.run_minutes,
                'encouragement': self.encouragement,
                'active_task_id': self.active_task_id,
            }
