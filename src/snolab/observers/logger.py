from __future__ import annotations
import logging
from .events import BaseEvent

_CONTEXT = ("ts", "run_id", "env", "context")


def _fmt(value) -> str:
    if isinstance(value, dict):
        return ",".join(f"{k}:{v}" for k, v in value.items())
    if isinstance(value, (list, tuple)):
        return ",".join(str(v) for v in value)
    return str(value)


class LoggerObserver:
    """Writes each event as one DEBUG line, so the run log carries the full lifecycle."""

    def __init__(self, logger: logging.Logger):
        self.logger = logger

    def notify(self, event: BaseEvent) -> None:
        fields = [
            f"{k}={_fmt(v)}"
            for k, v in event.dict().items()
            if k not in _CONTEXT and v not in (None, "", [], {})
        ]
        self.logger.debug("[event] %s/%s %s", event.env, type(event).__name__, " ".join(fields))
