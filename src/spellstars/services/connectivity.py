"""Online/offline state of the device."""
import logging
from typing import Callable, List

logger = logging.getLogger(__name__)

Listener = Callable[[bool], None]


class ConnectivityMonitor:
    """Holds the online flag and notifies listeners when it flips."""

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: List[Listener] = []

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", "online" if online else "offline")
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception as e:
                logger.error("Connectivity listener failed: %s", str(e))
