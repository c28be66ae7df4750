from __future__ import annotations

import threading


class BinarySignal:
    """Auto-reset wake-up signal.

    `signal()` sets the signal; repeated calls before a waiter takes it do
    not queue extra wake-ups. A successful wait consumes the signal.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._flag = False

    @property
    def is_set(self) -> bool:
        return self._flag

    def signal(self) -> None:
        with self._cond:
            self._flag = True
            self._cond.notify()

    def clear(self) -> None:
        with self._cond:
            self._flag = False

    def wait(self) -> None:
        with self._cond:
            while not self._flag:
                self._cond.wait()
            self._flag = False

    def wait_timeout(self, timeout_s: float) -> bool:
        """Wait up to `timeout_s`; returns True when woken by `signal()`."""

        with self._cond:
            signalled = self._cond.wait_for(lambda: self._flag, timeout=max(0.0, timeout_s))
            self._flag = False
            return signalled
