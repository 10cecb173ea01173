"""A thread-safe map whose readers can wait for keys to be set."""

from __future__ import annotations

import threading
import time
from typing import Any


class WaitMap:
    """Map where ``get`` blocks until each requested key has been set."""

    def __init__(self) -> None:
        self._values: dict[str, Any] = {}
        self._cond = threading.Condition()

    def set(self, key: str, value: Any) -> None:
        """Store a value and wake any readers waiting for it."""
        with self._cond:
            self._values[key] = value
            self._cond.notify_all()

    def get(self, *args: str, timeout: float | None = None) -> dict[str, Any]:
        """Wait for all keys and return them; raise TimeoutError if time runs out."""
        deadline = None if timeout is None else time.monotonic() + timeout
        result: dict[str, Any] = {}
        with self._cond:
            for key in args:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                if not self._cond.wait_for(lambda key=key: key in self._values, remaining):
                    raise TimeoutError(f"timed out waiting for key {key!r}")
                result[key] = self._values[key]
        return result