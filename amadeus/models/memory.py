"""
Memory Manager - Short-term conversation window and persistent long-term memory.

Short-term memory is the sliding window over the conversation history.
Messages that fall out of the window are condensed into a summary that is
kept in long-term memory, together with what is known about the user.
"""

import json
import logging
import random
from collections import deque
from datetime import datetime
from pathlib import Path
from typing import Deque, List, Optional

from pydantic import BaseModel, Field, ValidationError

from ..ai.provider_base import Message, Role
from ..core.config import MemoryConfig

logger = logging.getLogger(__name__)

EMOTION_HISTORY_SIZE = 10
SUMMARY_ENTRY_LIMIT = 50
SUMMARY_LIMIT = 300

MOOD_HINTS = [
    "(feeling a little relaxed right now)",
    "(intellectual curiosity is running high)",
    "(a little sleepy)",
    "(lost in thought about something)",
    "(in her usual mood)",
]


class Memory(BaseModel):
    """Persistent long-term memory."""
    user_name: str = ""
    user_facts: List[str] = Field(default_factory=list)
    conversation_summaries: List[str] = Field(default_factory=list)
    last_session_date: str = ""
    total_interactions: int = 0
    recent_emotions: List[str] = Field(default_factory=list)


def time_of_day(hour: int) -> str:
    if 5 <= hour < 10:
        return "morning"
    if 10 <= hour < 12:
        return "late morning"
    if 12 <= hour < 14:
        return "midday"
    if 14 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 20:
        return "evening"
    if 20 <= hour < 24:
        return "night"
    return "late night"


class MemoryManager:
    """Keeps the conversation window bounded and remembers things across sessions."""

    def __init__(self, config: MemoryConfig, data_dir: Path = Path("data"),
                 rng: Optional[random.Random] = None):
        self.config = config
        self.save_path: Optional[Path] = None
        if config.enabled:
            self.save_path = Path(data_dir) / config.memory_file

        self.memory = Memory()
        self.emotion_history: Deque[str] = deque(maxlen=EMOTION_HISTORY_SIZE)
        self._rng = rng or random.Random()

        self.load()

    # Short-term memory

    def trim_conversation_history(self, history: List[Message]) -> Optional[str]:
        """Trim the oldest messages once the window is exceeded.

        ``history`` is modified in place; a leading system message is never
        touched. A few extra messages beyond the overflow are removed so that
        trimming does not happen on every turn. Returns the summary of the
        removed messages, or None when nothing was removed.
        """
        start = 1 if history and history[0].role == Role.SYSTEM else 0
        non_system = len(history) - start
        window = self.config.max_conversation_turns

        if non_system <= window:
            return None

        to_remove = min(non_system - window + self.config.trim_slack, non_system - 1)
        removed = history[start:start + to_remove]
        del history[start:start + to_remove]

        # Conversations must not open with an assistant reply
        while len(history) - start > 1 and history[start].role == Role.ASSISTANT:
            removed.append(history.pop(start))

        summary = self.summarize(removed)
        self.add_conversation_summary(summary)
        logger.info(f"Trimmed {len(removed)} messages from conversation history")
        return summary

    @staticmethod
    def summarize(messages: List[Message], now: Optional[datetime] = None) -> str:
        now = now or datetime.now()
        entries = []
        for message in messages:
            entry = f"{message.role.value}: {message.content}"
            if len(entry) > SUMMARY_ENTRY_LIMIT:
                entry = entry[:SUMMARY_ENTRY_LIMIT] + "..."
            entries.append(entry)

        summary = f"[{now:%m/%d %H:%M} conversation] " + " / ".join(entries)
        if len(summary) > SUMMARY_LIMIT:
            summary = summary[:SUMMARY_LIMIT] + "..."
        return summary

    # Long-term memory

    def record_interaction(self):
        self.memory.total_interactions += 1
        self.memory.last_session_date = datetime.now().strftime("%Y-%m-%d %H:%M")
        self.save()

    def record_emotion(self, emotion: str) -> bool:
        """Track an emotion. Returns True when it is the third in a row."""
        self.emotion_history.append(emotion)
        self.memory.recent_emotions.append(emotion)
        del self.memory.recent_emotions[:-EMOTION_HISTORY_SIZE]

        recent = list(self.emotion_history)[-3:]
        repeated = len(recent) == 3 and len(set(recent)) == 1
        if repeated:
            logger.debug(f"Emotion {emotion} repeated three times in a row")
        return repeated

    def add_user_fact(self, fact: str):
        if not fact or fact in self.memory.user_facts:
            return
        self.memory.user_facts.append(fact)
        del self.memory.user_facts[:-self.config.max_long_term_facts]
        self.save()

    def set_user_name(self, name: str):
        if name:
            self.memory.user_name = name
            self.save()

    def add_conversation_summary(self, summary: str):
        if not summary:
            return
        self.memory.conversation_summaries.append(summary)
        del self.memory.conversation_summaries[:-self.config.max_summaries]
        self.save()

    # Prompt context

    def get_memory_context(self) -> str:
        memory = self.memory
        lines: List[str] = []

        if memory.user_name:
            lines.append(f"[User] The user's name is {memory.user_name}.")

        if memory.user_facts:
            lines.append("[What you know about the user]")
            lines.extend(f"- {fact}" for fact in memory.user_facts)

        if memory.conversation_summaries:
            lines.append("[Memories of earlier conversations]")
            recent = memory.conversation_summaries[-self.config.summaries_in_prompt:]
            lines.extend(f"- {summary}" for summary in recent)

        if memory.last_session_date:
            lines.append(f"[Previous session] {memory.last_session_date}")

        if memory.total_interactions:
            lines.append(f"[Total exchanges] {memory.total_interactions}")

        if len(memory.recent_emotions) >= 3:
            trend = " -> ".join(memory.recent_emotions)
            lines.append(f"[Recent emotions] {trend} (avoid repeating the same emotion too often)")

        return "\n".join(lines)

    def get_dynamic_context(self, turn_count: int, now: Optional[datetime] = None) -> str:
        now = now or datetime.now()
        return "\n".join([
            f"[Current situation] Time of day: {time_of_day(now.hour)} / Conversation turn: {turn_count}",
            self._rng.choice(MOOD_HINTS),
        ])

    def clear_all(self):
        self.memory = Memory()
        self.emotion_history.clear()
        self.save()
        logger.info("All memory cleared")

    # Persistence

    def save(self):
        if self.save_path is None:
            return
        try:
            self.save_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.save_path, 'w', encoding='utf-8') as f:
                f.write(self.memory.model_dump_json(indent=2))
        except OSError as e:
            logger.warning(f"Failed to save memory: {e}")

    def load(self):
        if self.save_path is None or not self.save_path.exists():
            logger.info("No saved memory found, starting fresh")
            return
        try:
            with open(self.save_path, 'r', encoding='utf-8') as f:
                self.memory = Memory.model_validate(json.load(f))
            self.emotion_history.extend(self.memory.recent_emotions)
            logger.info(f"Memory loaded: {self.memory.total_interactions} total interactions")
        except (OSError, ValueError, ValidationError) as e:
            logger.warning(f"Failed to load memory: {e}")
            self.memory = Memory()
