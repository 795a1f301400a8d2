"""
Back log - Keeps every revealed page so the user can scroll back.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Deque, List

from ..core.event_bus import EventBus

logger = logging.getLogger(__name__)


@dataclass
class BackLogEntry:
    speaker: str
    text: str
    timestamp: datetime = field(default_factory=datetime.now)


class BackLog:
    """Bounded history of (speaker, page) entries."""

    def __init__(self, max_entries: int = 200):
        self.entries: Deque[BackLogEntry] = deque(maxlen=max_entries)

    def attach(self, event_bus: EventBus):
        event_bus.subscribe("backlog_page", self.add_log)

    def add_log(self, speaker: str, text: str):
        text = text.strip()
        if not text:
            return
        self.entries.append(BackLogEntry(speaker=speaker, text=text))
        logger.debug(f"Back log: {speaker}: {text[:60]}")

    def recent(self, count: int = 20) -> List[BackLogEntry]:
        return list(self.entries)[-count:]

    def clear(self):
        self.entries.clear()

    def __len__(self):
        return len(self.entries)

    def format(self, count: int = 20) -> str:
        return "\n".join(f"[{e.timestamp:%H:%M}] {e.speaker}: {e.text}" for e in self.recent(count))
