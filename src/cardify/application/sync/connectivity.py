"""In-process connectivity signal fed by the host platform."""

import logging
from collections.abc import Callable

from cardify.domain.interfaces import ConnectivitySignal

logger = logging.getLogger(__name__)


class ConnectivityMonitor(ConnectivitySignal):
    """
    Holds the last known online state and notifies listeners on change.

    The host (network hook, server endpoint, CLI flag) calls `set_online`.
    Listener failures are logged and do not stop other listeners.
    """

    def __init__(self, online: bool = True):
        self._online = online
        self._listeners: list[Callable[[bool], None]] = []

    @property
    def online(self) -> bool:
        return self._online

    def add_listener(self, callback: Callable[[bool], None]) -> None:
        if callback not in self._listeners:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[bool], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def set_online(self, online: bool) -> None:
        if online == self._online:
            return
        self._online = online
        logger.info(f"[connectivity] {'online' if online else 'offline'}")
        for callback in list(self._listeners):
            try:
                callback(online)
            except Exception as e:
                logger.error(f"[connectivity] listener failed: {e}", exc_info=True)
