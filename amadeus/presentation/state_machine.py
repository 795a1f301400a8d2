"""
Presentation state machine - Paces reply text onto the screen and gates input.

Turn flow:
    INPUT_READY -> WAITING_RESPONSE -> REVEALING | STREAM_REVEALING
                -> AWAITING_ADVANCE -> INPUT_READY

Time only moves through ``tick(dt)``, which the application calls from its
main loop. While an overlay is open the machine is paused: ticks and
advance/skip signals are ignored and it resumes exactly where it stopped.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from ..ai.tag_parser import NEUTRAL_EMOTION
from ..core.config import PresentationConfig
from ..core.event_bus import EventBus
from .pacing import (
    PAGE_INDICATOR, WAITING_DOT_INTERVAL, PausableTimer, base_delay, char_delay, is_page_break
)

logger = logging.getLogger(__name__)


class ConversationTurnState(Enum):
    INPUT_READY = "input_ready"
    WAITING_RESPONSE = "waiting_response"
    REVEALING = "revealing"
    STREAM_REVEALING = "stream_revealing"
    AWAITING_ADVANCE = "awaiting_advance"


REVEAL_STATES = (ConversationTurnState.REVEALING, ConversationTurnState.STREAM_REVEALING)


class TurnRejectedError(Exception):
    """A turn operation was attempted in a state that does not allow it."""


@dataclass
class PresentationFrame:
    """What the presentation surface should currently show."""
    revealed_text: str
    waiting_indicator_visible: bool
    waiting_indicator: str
    emotion: str
    state: ConversationTurnState


class PresentationStateMachine:
    """Reveals text one character at a time and tracks whose move it is."""

    def __init__(self, config: PresentationConfig, event_bus: Optional[EventBus] = None,
                 speaker: str = "Kurisu"):
        self.config = config
        self.event_bus = event_bus
        self.speaker = speaker

        self.state = ConversationTurnState.INPUT_READY
        self.emotion = NEUTRAL_EMOTION
        self.auto_mode = config.auto_mode
        self.paused = False

        # Turn text
        self._text = ""
        self._index = 0
        self.page = ""
        self.transcript = ""
        self._streaming = False
        self._stream_complete = False
        self._undecided_break = False
        self._awaiting_page = False
        self._page_logged = False
        self._skip_active = False

        # Timers
        self._reveal_timer = PausableTimer()
        self._auto_timer = PausableTimer()
        self._dots_timer = PausableTimer()
        self._dots = 0

        self.waiting_indicator = ""
        self.waiting_indicator_visible = False
        self._dirty = False

    # Properties

    @property
    def revealed_text(self) -> str:
        """Text on the current page."""
        return self.page

    @property
    def awaiting_page(self) -> bool:
        return self._awaiting_page

    @property
    def pending_text(self) -> str:
        """Received text not yet revealed."""
        return self._text[self._index:]

    def frame(self) -> PresentationFrame:
        return PresentationFrame(
            revealed_text=self.page,
            waiting_indicator_visible=self.waiting_indicator_visible,
            waiting_indicator=self.waiting_indicator,
            emotion=self.emotion,
            state=self.state,
        )

    # Turn lifecycle, driven by the orchestrator

    def begin_turn(self):
        """A user turn was accepted; wait for the reply."""
        if self.state != ConversationTurnState.INPUT_READY:
            raise TurnRejectedError(f"Cannot start a turn while {self.state.value}")

        self._reset_text()
        self._set_state(ConversationTurnState.WAITING_RESPONSE)
        self._dots = 1
        self._show_indicator(".")
        self._dots_timer.start(WAITING_DOT_INTERVAL)
        self._publish_frame()

    def begin_reveal(self, text: str, emotion: str = NEUTRAL_EMOTION):
        """Reveal a complete reply (batch replies and error messages)."""
        if self.state != ConversationTurnState.WAITING_RESPONSE:
            raise TurnRejectedError(f"Cannot reveal a reply while {self.state.value}")

        self._dots_timer.stop()
        self._reset_text()
        self._text = text
        self._streaming = False
        self._set_emotion(emotion)
        self._hide_indicator()
        self._reveal_timer.start(0.0)
        self._set_state(ConversationTurnState.REVEALING)
        self._publish_frame()

    def begin_stream(self, emotion: str = NEUTRAL_EMOTION):
        """Start revealing a streamed reply; text arrives via push_stream_text."""
        if self.state != ConversationTurnState.WAITING_RESPONSE:
            raise TurnRejectedError(f"Cannot start a stream while {self.state.value}")

        self._dots_timer.stop()
        self._reset_text()
        self._streaming = True
        self._set_emotion(emotion)
        self._hide_indicator()
        self._reveal_timer.start(0.0)
        self._set_state(ConversationTurnState.STREAM_REVEALING)
        self._publish_frame()

    def push_stream_text(self, text: str):
        if self.state != ConversationTurnState.STREAM_REVEALING or self._stream_complete:
            logger.warning("Dropping stream text outside of an open stream")
            return
        self._text += text
        if self._skip_active and not self.paused:
            self._reveal_until_stop()
            self._publish_frame()

    def end_stream(self):
        """No more text will arrive for this reply."""
        if self.state != ConversationTurnState.STREAM_REVEALING:
            return
        self._stream_complete = True
        if self._undecided_break and self._index >= len(self._text):
            # The reply ends on punctuation; the final advance is enough
            self._undecided_break = False
        if not self.paused:
            self._check_complete()
            self._publish_frame()

    def fail_stream(self, message: str, emotion: str):
        """The stream broke after text was shown: finish with an error page."""
        if self.state != ConversationTurnState.STREAM_REVEALING:
            return
        if self._text.strip():
            self._text += "\n"
        self._text += message
        self._set_emotion(emotion)
        self.end_stream()

    def cancel(self):
        """Abandon the current turn and return to input."""
        if self.state == ConversationTurnState.INPUT_READY:
            return
        logger.info(f"Turn cancelled while {self.state.value}")
        self._enter_input_ready()

    # User signals

    def advance(self) -> bool:
        """Continue / skip / dismiss, depending on state."""
        if self.paused:
            return False

        if self.state in REVEAL_STATES:
            if self._awaiting_page:
                self._continue_page()
                self._publish_frame()
            else:
                self.skip()
            return True

        if self.state == ConversationTurnState.AWAITING_ADVANCE:
            self._enter_input_ready()
            return True

        return False

    def skip(self) -> bool:
        """Reveal all available text up to the next page break at once."""
        if self.paused or self.state not in REVEAL_STATES or self._awaiting_page:
            return False

        self._skip_active = True
        self._reveal_until_stop()
        self._check_complete()
        self._publish_frame()
        return True

    def set_overlay_open(self, is_open: bool):
        if is_open:
            self.pause()
        else:
            self.resume()

    def pause(self):
        if self.paused:
            return
        self.paused = True
        for timer in (self._reveal_timer, self._auto_timer, self._dots_timer):
            timer.pause()
        logger.debug("Presentation paused")

    def resume(self):
        if not self.paused:
            return
        self.paused = False
        for timer in (self._reveal_timer, self._auto_timer, self._dots_timer):
            timer.resume()
        logger.debug("Presentation resumed")

    def toggle_auto_mode(self) -> bool:
        self.set_auto_mode(not self.auto_mode)
        return self.auto_mode

    def set_auto_mode(self, enabled: bool):
        self.auto_mode = enabled
        logger.info(f"Auto mode {'on' if enabled else 'off'}")
        waiting = self._awaiting_page or self.state == ConversationTurnState.AWAITING_ADVANCE
        if enabled and waiting:
            self._auto_timer.start(self.config.auto_advance_interval)
        elif not enabled:
            self._auto_timer.stop()

    # Time

    def tick(self, dt: float):
        """Advance pacing by ``dt`` seconds."""
        if self.paused:
            return

        if self.state == ConversationTurnState.WAITING_RESPONSE:
            if self._dots_timer.advance(dt):
                self._dots = self._dots % 3 + 1
                self._show_indicator("." * self._dots)
                self._dots_timer.start(WAITING_DOT_INTERVAL)

        elif self.state in REVEAL_STATES:
            if self._awaiting_page:
                if self.auto_mode and self._auto_timer.advance(dt):
                    self._continue_page()
            else:
                self._reveal_timer.advance(dt)
                self._reveal_due()
            self._check_complete()

        elif self.state == ConversationTurnState.AWAITING_ADVANCE:
            if self.auto_mode and self._auto_timer.advance(dt):
                self._enter_input_ready()

        self._publish_frame()

    # Internals

    def _reveal_due(self):
        while self._reveal_timer.remaining <= 0 and not self._awaiting_page:
            if not self._step():
                # Nothing to show yet; the next arrival is revealed at once
                self._reveal_timer.start(0.0)
                break

    def _reveal_until_stop(self):
        """Step without delays until starved or at a page break."""
        while not self._awaiting_page:
            if not self._step(paced=False):
                break
        self._reveal_timer.start(0.0)

    def _step(self, paced: bool = True) -> bool:
        """Reveal one character. Returns False when nothing could be done."""
        if self._undecided_break:
            if self._index < len(self._text):
                self._undecided_break = False
                if is_page_break(self.page[-1], self._text[self._index]):
                    self._begin_page_wait()
                return True
            if self._stream_complete:
                self._undecided_break = False
            return False

        if self._index >= len(self._text):
            return False

        c = self._text[self._index]
        self._index += 1

        # Never start a page with whitespace
        if not self.page and c.isspace():
            return True

        self.page += c
        self.transcript += c
        self._page_logged = False
        self._dirty = True

        if paced and not self._skip_active:
            self._reveal_timer.add(char_delay(c, self._base_delay()))

        if self._streaming:
            next_char = self._text[self._index] if self._index < len(self._text) else None
            decision = is_page_break(c, next_char)
            if decision is None:
                self._undecided_break = not self._stream_complete
            elif decision:
                self._begin_page_wait()
        return True

    def _begin_page_wait(self):
        self._awaiting_page = True
        self._skip_active = False
        self._log_page()
        self._show_indicator(PAGE_INDICATOR)
        if self.auto_mode:
            self._auto_timer.start(self.config.auto_advance_interval)

    def _continue_page(self):
        self._awaiting_page = False
        self._auto_timer.stop()
        self._hide_indicator()
        if self._index < len(self._text) or not self._stream_complete:
            self.page = ""
            self._page_logged = False
        self._reveal_timer.start(0.0)
        self._dirty = True

    def _check_complete(self):
        if self.state not in REVEAL_STATES or self._awaiting_page or self._undecided_break:
            return
        if self._index < len(self._text):
            return
        if self._streaming and not self._stream_complete:
            return

        self._log_page()
        self._skip_active = False
        self._set_state(ConversationTurnState.AWAITING_ADVANCE)
        self._show_indicator(PAGE_INDICATOR)
        if self.auto_mode:
            self._auto_timer.start(self.config.auto_advance_interval)

    def _log_page(self):
        if self._page_logged or not self.page.strip():
            return
        self._page_logged = True
        if self.event_bus:
            self.event_bus.publish("backlog_page", self.speaker, self.page)

    def _enter_input_ready(self):
        self._reset_text()
        self._auto_timer.stop()
        self._dots_timer.stop()
        self._hide_indicator()
        self._set_state(ConversationTurnState.INPUT_READY)
        # Expression must not linger into the idle period
        self._set_emotion(NEUTRAL_EMOTION)
        self._publish_frame()

    def _reset_text(self):
        self._text = ""
        self._index = 0
        self.page = ""
        self.transcript = ""
        self._streaming = False
        self._stream_complete = False
        self._undecided_break = False
        self._awaiting_page = False
        self._page_logged = False
        self._skip_active = False
        self._reveal_timer.stop()
        self._dirty = True

    def _base_delay(self) -> float:
        return base_delay(self.config.char_delay, self.config.text_speed)

    def _set_state(self, new_state: ConversationTurnState):
        old_state = self.state
        if old_state == new_state:
            return
        self.state = new_state
        self._dirty = True
        logger.debug(f"Presentation state: {old_state.value} -> {new_state.value}")
        if self.event_bus:
            self.event_bus.publish("state_changed", old_state, new_state)

    def _set_emotion(self, emotion: str):
        emotion = emotion or NEUTRAL_EMOTION
        if emotion == self.emotion:
            return
        self.emotion = emotion
        self._dirty = True
        if self.event_bus:
            self.event_bus.publish("emotion_changed", emotion)

    def _show_indicator(self, text: str):
        self.waiting_indicator = text
        self.waiting_indicator_visible = True
        self._dirty = True

    def _hide_indicator(self):
        self.waiting_indicator = ""
        self.waiting_indicator_visible = False
        self._dirty = True

    def _publish_frame(self):
        if not self._dirty:
            return
        self._dirty = False
        if self.event_bus:
            self.event_bus.publish("presentation_updated", self.frame())
