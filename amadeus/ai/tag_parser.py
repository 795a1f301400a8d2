"""
Reply tag parsing - Emotion tags and reasoning spans in model output.

Models are prompted to open every reply with an emotion tag such as
``[SMILE]``. Some models also emit ``<think>...</think>`` reasoning that must
never reach the screen. StreamTagParser handles both on text that arrives in
arbitrary pieces; parse_reply is the one-shot form for batch replies.
"""

import logging
from typing import FrozenSet, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

EMOTION_TAGS: FrozenSet[str] = frozenset({
    "NORMAL", "SMILE", "ANGRY", "SAD", "SURPRISED", "BLUSH",
    "WINK", "DISGUST", "SMUG", "THINKING", "PANIC",
})
NEUTRAL_EMOTION = "NORMAL"

REASONING_OPEN = "<think>"
REASONING_CLOSE = "</think>"

DEFAULT_TAG_LOOKAHEAD = 16


class StreamTagParser:
    """Incremental filter that turns raw reply text into displayable text.

    ``feed`` returns whatever can be shown safely so far and keeps back
    anything that might still turn out to be part of a tag or a reasoning
    marker. ``finish`` flushes the remainder once the reply is complete.
    """

    def __init__(self, allowed: Optional[Iterable[str]] = None,
                 lookahead: int = DEFAULT_TAG_LOOKAHEAD):
        self.allowed = frozenset(t.upper() for t in (allowed or EMOTION_TAGS))
        self.lookahead = max(1, lookahead)

        self.emotion: Optional[str] = None
        self.resolved = False

        self._pending = ""        # raw text not yet cleared of reasoning
        self._in_reasoning = False
        self._hold = ""           # visible text waiting on tag decisions
        self._skip_leading = True

    def feed(self, text: str) -> str:
        """Add a piece of reply text and return the newly displayable part."""
        if not text:
            return ""
        self._pending += text
        return self._drain(final=False)

    def finish(self) -> str:
        """Flush at end of reply. Unclosed reasoning is dropped."""
        out = self._drain(final=True)
        if not self.resolved:
            self._resolve(NEUTRAL_EMOTION)
        return out

    @property
    def in_reasoning(self) -> bool:
        return self._in_reasoning

    def _resolve(self, emotion: str):
        self.emotion = emotion
        self.resolved = True

    def _drain(self, final: bool) -> str:
        visible = self._strip_reasoning(final)
        return self._strip_tags(visible, final)

    def _strip_reasoning(self, final: bool) -> str:
        parts: List[str] = []

        while self._pending:
            if self._in_reasoning:
                end = self._pending.find(REASONING_CLOSE)
                if end == -1:
                    if final:
                        logger.debug("Discarding unterminated reasoning span")
                        self._pending = ""
                    else:
                        # Only a partial close marker can matter later
                        keep = len(REASONING_CLOSE) - 1
                        self._pending = self._pending[-keep:]
                    break
                self._pending = self._pending[end + len(REASONING_CLOSE):]
                self._in_reasoning = False
                continue

            start = self._pending.find(REASONING_OPEN)
            if start != -1:
                parts.append(self._pending[:start])
                self._pending = self._pending[start + len(REASONING_OPEN):]
                self._in_reasoning = True
                continue

            cut = len(self._pending)
            if not final:
                cut -= _partial_suffix(self._pending, REASONING_OPEN)
            parts.append(self._pending[:cut])
            self._pending = self._pending[cut:]
            break

        return ''.join(parts)

    def _strip_tags(self, visible: str, final: bool) -> str:
        self._hold += visible

        if not self.resolved:
            head = self._hold.lstrip()
            if not head:
                self._hold = ""
                return ""

            if head[0] == '[':
                close = head.find(']')
                if close == -1:
                    if len(head) <= self.lookahead and not final:
                        self._hold = head
                        return ""
                    self._resolve(NEUTRAL_EMOTION)
                else:
                    body = head[1:close].strip().upper()
                    if body in self.allowed:
                        self._resolve(body)
                        head = head[close + 1:]
                    else:
                        self._resolve(NEUTRAL_EMOTION)
            else:
                self._resolve(NEUTRAL_EMOTION)

            logger.debug(f"Reply emotion resolved: {self.emotion}")
            self._hold = head

        out: List[str] = []
        text = self._hold
        i = 0
        while True:
            j = text.find('[', i)
            if j == -1:
                out.append(text[i:])
                self._hold = ""
                break

            k = text.find(']', j)
            if k == -1:
                if not final and len(text) - j <= self.lookahead:
                    out.append(text[i:j])
                    self._hold = text[j:]
                else:
                    out.append(text[i:])
                    self._hold = ""
                break

            # Later tags are hidden but the first one decides the emotion
            if text[j + 1:k].strip().upper() in self.allowed:
                out.append(text[i:j])
            else:
                out.append(text[i:k + 1])
            i = k + 1

        released = ''.join(out)
        if self._skip_leading:
            released = released.lstrip()
            if released:
                self._skip_leading = False
        return released


def _partial_suffix(text: str, marker: str) -> int:
    """Length of the longest suffix of text that is a proper prefix of marker."""
    for n in range(min(len(marker) - 1, len(text)), 0, -1):
        if text.endswith(marker[:n]):
            return n
    return 0


def parse_reply(text: str, allowed: Optional[Iterable[str]] = None,
                lookahead: int = DEFAULT_TAG_LOOKAHEAD) -> Tuple[str, str]:
    """Split a complete reply into (emotion, display text)."""
    parser = StreamTagParser(allowed, lookahead)
    clean = parser.feed(text) + parser.finish()
    return parser.emotion or NEUTRAL_EMOTION, clean.strip()
