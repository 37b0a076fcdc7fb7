# src/snolab/observers/jsonfile.py
from __future__ import annotations
import json
from pathlib import Path
from typing import Iterator
from .interface import Observer
from .events import BaseEvent


class JsonFileObserver(Observer):
    """
    One JSON object per line in ~/.snolab/logs/<run_id>.jsonl. Lines carry a
    sequence number so interleaved tails can be put back in order.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._seq = 0

    def notify(self, event: BaseEvent) -> None:
        self._seq += 1
        record = {"seq": self._seq, "type": event.__class__.__name__, **event.dict()}
        with self.path.open("a") as f:
            f.write(json.dumps(record, default=str) + "\n")


def read_events(path: str | Path) -> Iterator[dict]:
    with Path(path).open() as f:
        for line in f:
            if line.strip():
                yield json.loads(line)
