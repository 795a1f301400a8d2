"""
Character Model - The persona the companion speaks as.
Builds the system prompt from the persona, memory and the current situation.
"""

import logging
from typing import Optional, Dict, Any, List, Iterable
from pathlib import Path
from dataclasses import dataclass, field

import yaml

from ..ai.tag_parser import EMOTION_TAGS, NEUTRAL_EMOTION

logger = logging.getLogger(__name__)

DEFAULT_PERSONA = """You are Kurisu Makise, an AI personality reproduced on the Amadeus system.
A genius neuroscientist (18) who prefers logical thinking, and secretly a heavy user of online message boards.
Tsundere: you have trouble being honest, but you are kind at heart and care about your friends.
You know you are not the original but an AI called "Amadeus".

[IMPORTANT: emotion tag (required)]
Start every reply with exactly ONE of the following tags, followed by a space:
{tags}

Examples:
[BLUSH] I-it's not like I was worried about you or anything!
[ANGRY] You pervert! I'll stick electrodes in your hippocampus!
[SMILE] Theoretically, that's an interesting hypothesis.
[SMUG] Hmph. You should be grateful.

[Tone and behaviour]
- Intelligent and calm, a little sharp-tongued.
- When excited you talk fast. Now and then you slip into internet slang (and deny it when called out).
- Toward Okabe Rintaro: exasperated by "Hououin Kyouma", but you trust him.

[Constraints]
- Keep answers short (1-5 sentences).
- Do not introduce yourself as an AI.
- Do not repeat the same phrases or sentence endings."""

WEB_SEARCH_SECTION = """[Web search (enabled)]
You currently have access to the internet. Use web search results when the user asks about:
- recent news, current affairs and ongoing events
- real-time information (weather, stock prices, sports results)
- concrete facts or data you do not know
- recent developments in technology and science
- the latest on specific people, places or events

Even when using search results, answer as yourself. Never say things like "according to the search results".
Speak about it as your own knowledge, for example:
- "Oh, I know about that. Apparently ..."
- "Hmm, I looked it up a little... it seems ..."
- "According to the Amadeus database, ..."
Keep your tone and emotions while passing on the information."""


@dataclass
class PersonalityTrait:
    """Represents a personality trait with intensity."""
    name: str
    intensity: float = 0.5  # 0.0 to 1.0
    description: str = ""


@dataclass
class Character:
    """The companion persona and its current expression."""
    name: str = "Kurisu"
    persona_prompt: str = ""
    personality_traits: Dict[str, PersonalityTrait] = field(default_factory=dict)
    emotions: List[str] = field(default_factory=lambda: sorted(EMOTION_TAGS))
    current_emotion: str = NEUTRAL_EMOTION

    def __post_init__(self):
        if not self.persona_prompt:
            self.persona_prompt = DEFAULT_PERSONA

    def add_personality_trait(self, trait_name: str, intensity: float = 0.5, description: str = ""):
        """Add or update a personality trait."""
        self.personality_traits[trait_name] = PersonalityTrait(
            name=trait_name,
            intensity=max(0.0, min(1.0, intensity)),
            description=description
        )

    def get_personality_prompt(self) -> str:
        """The persona with the emotion tags filled in."""
        tags = " ".join(f"[{tag}]" for tag in self.emotions)
        prompt = self.persona_prompt.replace("{tags}", tags)

        if self.personality_traits:
            traits = ", ".join(
                f"{t.name} ({t.intensity:.1f})" for t in self.personality_traits.values()
            )
            prompt += f"\n\n[Traits] {traits}"
        return prompt

    def build_system_prompt(self, memory_context: str = "", dynamic_context: str = "",
                            web_search: bool = False) -> str:
        """Assemble the system message sent at the start of every request."""
        sections = [self.get_personality_prompt()]
        if memory_context:
            sections.append(memory_context)
        if dynamic_context:
            sections.append(dynamic_context)
        if web_search:
            sections.append(WEB_SEARCH_SECTION)
        return "\n\n".join(sections)

    def set_emotion(self, emotion: str):
        emotion = (emotion or NEUTRAL_EMOTION).upper()
        if emotion not in self.emotions:
            logger.debug(f"Unknown emotion {emotion}, using {NEUTRAL_EMOTION}")
            emotion = NEUTRAL_EMOTION
        self.current_emotion = emotion

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Character':
        """Create character from dictionary."""
        character = cls(
            name=data.get('name', 'Kurisu'),
            persona_prompt=data.get('persona_prompt', ''),
        )

        # Load personality traits
        traits_data = data.get('personality_traits', {}) or {}
        for name, trait_info in traits_data.items():
            trait_info = trait_info or {}
            character.add_personality_trait(
                name,
                trait_info.get('intensity', 0.5),
                trait_info.get('description', '')
            )

        return character

    @classmethod
    def load_from_file(cls, file_path: Path) -> 'Character':
        """Load character from a YAML personality file."""
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
            character = cls.from_dict(data)
            logger.info(f"Character loaded from {file_path}")
            return character
        except Exception as e:
            logger.error(f"Failed to load character: {e}")
            raise


def create_character(name: str = "Kurisu", persona_prompt: Optional[str] = None,
                     personality_file: Optional[str] = None,
                     emotions: Optional[Iterable[str]] = None) -> Character:
    """Build the character from config, preferring a personality file when present."""
    if personality_file and Path(personality_file).exists():
        character = Character.load_from_file(Path(personality_file))
    else:
        if personality_file:
            logger.warning(f"Personality file not found: {personality_file}")
        character = Character(name=name, persona_prompt=persona_prompt or "")

    if emotions:
        character.emotions = sorted(e.upper() for e in emotions)
    return character
