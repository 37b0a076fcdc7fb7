# src/snolab/observers/dispatcher.py
from __future__ import annotations
import logging
from typing import Dict, List, Optional
from .events import BaseEvent
from .interface import Observer

log = logging.getLogger("snolab")


class EventBus:
    """
    Fans events out to observers. A failing observer is logged and skipped;
    provisioning and cleanup never stop because an event could not be
    recorded.
    """

    def __init__(self, observers: Optional[List[Observer]] = None):
        self._observers: List[Observer] = []
        self.failures: Dict[str, int] = {}
        for ob in observers or []:
            self.subscribe(ob)

    def subscribe(self, observer: Observer) -> None:
        if not isinstance(observer, Observer):
            raise TypeError(f"{observer!r} has no notify(event)")
        self._observers.append(observer)

    def emit(self, event: BaseEvent) -> None:
        for ob in self._observers:
            try:
                ob.notify(event)
            except Exception:
                key = type(ob).__name__
                self.failures[key] = self.failures.get(key, 0) + 1
                log.debug("observer %s failed on %s", key, type(event).__name__, exc_info=True)
