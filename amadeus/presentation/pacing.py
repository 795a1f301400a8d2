"""
Reveal pacing - Per-character delays, page breaks and a pausable timer.
"""

from typing import Optional

SENTENCE_END = "。！？!?."
SOFT_STOP = "、,…"
CLOSERS_SLOW = "」）)"

# Characters that end a page in streamed replies
PAGE_BREAK = "。！？!?\n"
# Ends a page only when followed by whitespace, so "3.14" stays on one page
SOFT_PAGE_BREAK = "."
# A break is skipped when the next character closes a quote or bracket
CLOSERS = "」）)』”"

WAITING_DOT_INTERVAL = 0.4
PAGE_INDICATOR = "▼"


def base_delay(char_delay: float, text_speed: float) -> float:
    return char_delay / max(text_speed, 0.1)


def char_delay(c: str, base: float) -> float:
    """Delay after revealing ``c``."""
    if c in SENTENCE_END:
        return base * 4.0
    if c in SOFT_STOP:
        return base * 2.5
    if c in CLOSERS_SLOW:
        return base * 1.5
    return base


def is_page_break(c: str, next_char: Optional[str]) -> Optional[bool]:
    """Whether revealing ``c`` ends a page.

    Returns None while the answer depends on a next character that has not
    arrived yet.
    """
    if c not in PAGE_BREAK and c not in SOFT_PAGE_BREAK:
        return False
    if next_char is None:
        return None
    if next_char in CLOSERS:
        return False
    if c in SOFT_PAGE_BREAK:
        return next_char.isspace()
    return True


class PausableTimer:
    """Countdown driven by explicit ticks. While paused, ticks do not count."""

    def __init__(self):
        self.remaining = 0.0
        self.running = False
        self.paused = False

    def start(self, duration: float):
        self.remaining = duration
        self.running = True

    def stop(self):
        self.running = False
        self.remaining = 0.0

    def add(self, duration: float):
        """Extend the countdown, keeping any overshoot from the last tick."""
        self.remaining += duration
        self.running = True

    def pause(self):
        self.paused = True

    def resume(self):
        self.paused = False

    def advance(self, dt: float) -> bool:
        """Count down by ``dt``. Returns True when the timer has run out."""
        if not self.running or self.paused:
            return False
        self.remaining -= dt
        return self.remaining <= 0

    @property
    def expired(self) -> bool:
        return self.running and self.remaining <= 0
