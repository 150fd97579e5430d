import threading
import time


class RepeatingTimer:
    """Calls ``fn`` every ``interval`` seconds on a daemon thread until cancelled."""

    def __init__(self, interval, fn):
        self.interval = interval
        self.fn = fn
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, daemon=True)

    def start(self):
        self._thread.start()
        return self

    def _run(self):
        while not self._stopped.wait(self.interval):
            self.fn()

    def cancel(self):
        self._stopped.set()


class ThreadScheduler:
    def clock(self):
        return time.monotonic()

    def call_every(self, interval, fn):
        return RepeatingTimer(interval, fn).start()

    def call_later(self, delay, fn):
        timer = threading.Timer(delay, fn)
        timer.daemon = True
        timer.start()
        return timer
