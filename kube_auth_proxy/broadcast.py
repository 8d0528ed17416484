from __future__ import annotations

import logging
from collections import deque
from typing import Callable, List

from .types import ConnectionUpdate

LOGGER = logging.getLogger("KubeAuthProxy.Broadcast")

Subscriber = Callable[[ConnectionUpdate], None]


class ConnectionUpdateBroadcaster:
    """Record connection updates for one cluster and fan them out to subscribers."""

    def __init__(self, cluster_name: str, capacity: int = 500) -> None:
        self.cluster_name = cluster_name
        self._history: deque[ConnectionUpdate] = deque(maxlen=capacity)
        self._subscribers: List[Subscriber] = []

    def broadcast(self, update: ConnectionUpdate) -> None:
        level = logging.ERROR if update.level == "error" else logging.INFO
        LOGGER.log(level, "[%s] %s", self.cluster_name, update.message)
        self._history.append(update)
        for subscriber in list(self._subscribers):
            try:
                subscriber(update)
            except Exception:
                LOGGER.exception(
                    "Connection update subscriber failed for '%s'.", self.cluster_name
                )

    def subscribe(self, subscriber: Subscriber) -> Callable[[], None]:
        """Register ``subscriber`` and return a callable that removes it."""

        self._subscribers.append(subscriber)

        def _unsubscribe() -> None:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

        return _unsubscribe

    def recent(self, limit: int = 50) -> List[ConnectionUpdate]:
        if limit <= 0:
            return []
        return list(self._history)[-limit:]
