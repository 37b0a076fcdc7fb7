# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/snolab/utils/retry.py

from __future__ import annotations

import functools
import logging
import time
from typing import Callable, Optional

log = logging.getLogger("snolab")


class RetryError(RuntimeError):
    def __init__(self, label: str, attempts: int):
        super().__init__(f"{label} failed after {attempts} attempts")
        self.label = label
        self.attempts = attempts


def retry(
    *,
    retries: int,
    delay: float,
    backoff: float = 1.0,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    sleep: Callable[[float], None] = time.sleep,
    label: Optional[str] = None,
):
    """
    Retry a read-only query against kcli or the hypervisor.

    Every failed attempt is logged at DEBUG; the last failure is chained to
    the RetryError. Remote mutations are never wrapped in this.
    """

    def decorator(fn):
        name = label or fn.__name__

        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            wait = delay
            last_exc = None
            for attempt in range(1, retries + 1):
                try:
                    return fn(*args, **kwargs)
                except retry_on as exc:
                    last_exc = exc
                    log.debug("[retry] %s attempt %d/%d failed: %s", name, attempt, retries, exc)
                    if on_retry:
                        on_retry(attempt, exc)
                    if attempt == retries:
                        break
                    sleep(wait)
                    wait *= backoff
            raise RetryError(name, retries) from last_exc
        return wrapper
    return decorator
