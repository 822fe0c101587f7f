from __future__ import annotations

import logging
import threading
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class HandlerNotifier:
    """Deferred, de-duplicated handler notifications per host.

    Each host has an independent flush window. Queuing a name that is already
    pending in the window is a no-op, so a handler runs at most once per
    window, in the order it was first notified.
    """

    def __init__(self) -> None:
        self._queues: dict[str, list[str]] = {}
        self._lock = threading.Lock()

    def queue(self, host: str, handler_name: str) -> bool:
        with self._lock:
            pending = self._queues.setdefault(host, [])
            if handler_name in pending:
                return False
            pending.append(handler_name)
        logger.debug("notify host=%s handler=%s", host, handler_name)
        return True

    def pending(self, host: str) -> list[str]:
        with self._lock:
            return list(self._queues.get(host, []))

    def discard(self, host: str) -> list[str]:
        with self._lock:
            return self._queues.pop(host, [])

    def flush(
        self,
        host: str,
        run: Callable[[str], T],
        stop_when: Optional[Callable[[T], bool]] = None,
    ) -> list[T]:
        """Run ``run`` for each pending handler of ``host`` and clear its queue.

        ``stop_when`` ends the flush early (for example on a failed handler);
        handlers not yet run are dropped with the rest of the window.
        """
        names = self.discard(host)
        if names:
            logger.debug("flush host=%s handlers=%s", host, ",".join(names))
        results: list[T] = []
        for name in names:
            outcome = run(name)
            results.append(outcome)
            if stop_when is not None and stop_when(outcome):
                break
        return results
