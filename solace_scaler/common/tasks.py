import logging
import threading
import time

# Cancellation of a parent token is noticed by waiting children within this many seconds
_WAIT_SLICE = 0.5


class CancellationToken:
    """
    Cooperative cancellation signal passed into every scheduled task.

    A child token is cancelled when it, or any of its parents, is cancelled.
    """

    def __init__(self, parent=None):
        self._event = threading.Event()
        self._parent = parent

    def child(self):
        return CancellationToken(parent=self)

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set() or (self._parent is not None and self._parent.cancelled)

    def wait(self, timeout: float) -> bool:
        """
        Sleep for up to `timeout` seconds, returning early on cancellation.

        Returns:
            bool: True if the token was cancelled
        """
        deadline = time.monotonic() + max(timeout, 0)
        while not self.cancelled:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            self._event.wait(min(remaining, _WAIT_SLICE))
        return True


class PeriodicTask(threading.Thread):
    """
    Runs `action` every `interval` seconds until the token is cancelled.

    The token is only checked between runs, so a run in progress always completes. An
    exception escaping `action` ends this task only; `on_failure` is called with it.
    """

    def __init__(self, name, action, interval, token, initial_delay=0, on_failure=None):
        super().__init__(name=name, daemon=True)
        self._action = action
        self._interval = interval
        self._token = token
        self._initial_delay = initial_delay
        self._on_failure = on_failure
        self.failure = None

    def run(self):
        if self._token.wait(self._initial_delay):
            return

        while not self._token.cancelled:
            started = time.monotonic()
            try:
                self._action()
            except Exception as e:
                logging.error(f"Task {self.name} failed and will not be rescheduled: {e}", exc_info=True)
                self.failure = e
                if self._on_failure is not None:
                    self._on_failure(e)
                return

            # Fixed rate: the time the action took counts toward the interval
            elapsed = time.monotonic() - started
            if self._token.wait(self._interval - elapsed):
                break

        logging.debug(f"Task {self.name} stopped")
