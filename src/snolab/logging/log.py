# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

#src/snolab/logging/log.py

from __future__ import annotations

import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Iterable
import uuid


class RedactFilter(logging.Filter):
    """Masks SSH passwords wherever a command line or error echoes them."""

    def __init__(self, secrets: Iterable[str]):
        super().__init__()
        self.secrets = [s for s in secrets if s]

    def filter(self, record: logging.LogRecord) -> bool:
        if self.secrets:
            msg = record.getMessage()
            for s in self.secrets:
                msg = msg.replace(s, "********")
            record.msg, record.args = msg, ()
        return True


def init_logging(
    *,
    base_dir: Path | None = None,
    name: str = "snolab",
    verbose: bool = False,
    secrets: Iterable[str] = (),
) -> tuple[logging.Logger, str, Path]:
    """
    Initializes:
      - full-trace log file (every remote command and its exit status)
      - console handler at INFO, DEBUG with --debug
      - password redaction on both
      - returns run_id so observers can reuse it
    """
    run_id = str(uuid.uuid4())

    if base_dir is None:
        base_dir = Path.home() / ".snolab" / "logs"
    base_dir.mkdir(parents=True, exist_ok=True)

    ts = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
    log_path = base_dir / f"{name}-{ts}-{run_id}.log"

    logger = logging.getLogger(name)
    logger.setLevel(logging.DEBUG)
    logger.handlers.clear()
    logger.filters.clear()
    logger.propagate = False
    logger.addFilter(RedactFilter(secrets))

    fh = logging.FileHandler(log_path)
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    # console stays terse; the file has timestamps
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG if verbose else logging.INFO)
    ch.setFormatter(logging.Formatter("%(levelname)-7s %(message)s"))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.debug("run_id=%s log_file=%s", run_id, log_path)
    return logger, run_id, log_path
