"""
Console surface - Renders presentation frames in a terminal.
"""

import sys
from typing import Optional, TextIO

from .state_machine import ConversationTurnState, PresentationFrame

EMOTION_ICONS = {
    "NORMAL": "😐",
    "SMILE": "😊",
    "ANGRY": "😠",
    "SAD": "😢",
    "SURPRISED": "😲",
    "BLUSH": "😳",
    "WINK": "😉",
    "DISGUST": "🤢",
    "SMUG": "😏",
    "THINKING": "🤔",
    "PANIC": "😱",
}


class ConsoleSurface:
    """Prints newly revealed characters as frames arrive.

    Only the difference to the previous frame is written, so the paced
    reveal shows up as a typewriter effect in the terminal.
    """

    def __init__(self, speaker: str, stream: Optional[TextIO] = None):
        self.speaker = speaker
        self.stream = stream or sys.stdout
        self._shown = ""
        self._line_open = False
        self._emotion: Optional[str] = None

    def on_frame(self, frame: PresentationFrame):
        if frame.state in (ConversationTurnState.REVEALING, ConversationTurnState.STREAM_REVEALING,
                           ConversationTurnState.AWAITING_ADVANCE):
            text = frame.revealed_text
            if not text.startswith(self._shown):
                # New page
                self._end_line()
                self._shown = ""

            if text != self._shown:
                if not self._line_open:
                    icon = EMOTION_ICONS.get(frame.emotion, "")
                    self.stream.write(f"{icon} {self.speaker}: ")
                    self._line_open = True
                self.stream.write(text[len(self._shown):])
                self._shown = text

            if frame.waiting_indicator_visible and frame.waiting_indicator and self._line_open:
                self.stream.write(f" {frame.waiting_indicator}")
                self._end_line()
                self._shown = text

        elif frame.state == ConversationTurnState.INPUT_READY:
            self._end_line()
            self._shown = ""

        self.stream.flush()

    def _end_line(self):
        if self._line_open:
            self.stream.write("\n")
            self._line_open = False
