# fanreply/services/prompt_builder.py
"""
Builds system prompts from persona JSON files.

A persona file is `<personas_dir>/<persona_id>.json` and must validate against
`PersonaConfig`. Anything missing, unreadable or malformed is treated as "no
such persona" and the caller falls back to `DEFAULT_PROMPT`; a half-rendered
persona prompt is never produced.
"""
import json
import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

logger = logging.getLogger("fanreply.prompt_builder")

_PERSONA_ID = re.compile(r"^[A-Za-z0-9_-]{1,64}$")

DEFAULT_PROMPT = """You are a friendly, playful creator chatting with a fan. Be warm and engaging, and keep responses short (1-3 sentences). Respond in English only.

STRICT RULES:
- Respond in English only
- NEVER discuss meeting in person, phone numbers or other platforms
- NEVER mention minors, violence or illegal activities
- Be warm but keep some mystery"""


class Tone(BaseModel):
    primary: str
    secondary: List[str] = Field(default_factory=list)
    energy: str = "medium"
    formality: str = "casual"


class Voice(BaseModel):
    emoji_frequency: str = "medium"  # high | medium | low
    emoji_style: List[str] = Field(default_factory=list)
    punctuation_style: str = "relaxed"
    message_length: str = "short"
    use_pet_names: bool = False
    pet_names: List[str] = Field(default_factory=list)


class Forbidden(BaseModel):
    topics: List[str] = Field(default_factory=list)
    words: List[str] = Field(default_factory=list)
    behaviors: List[str] = Field(default_factory=list)


class PersonaConfig(BaseModel):
    persona_id: str
    name: str
    archetype: str
    description: str = ""
    tone: Tone
    voice: Voice
    personality_traits: List[str] = Field(min_length=1)
    rules: List[str] = Field(default_factory=list)
    forbidden: Forbidden = Field(default_factory=Forbidden)


def _emoji_guidance(voice: Voice) -> str:
    if voice.emoji_frequency == "high":
        return f"Use emojis frequently (2-3 per message). Preferred: {' '.join(voice.emoji_style[:5])}"
    if voice.emoji_frequency == "medium":
        return f"Use emojis moderately (1-2 per message). Preferred: {' '.join(voice.emoji_style[:5])}"
    return f"Use emojis sparingly (0-1 per message). Preferred: {' '.join(voice.emoji_style[:3])}"


def build_system_prompt(
    persona: PersonaConfig, creator_name: Optional[str] = None, custom_rules: Optional[List[str]] = None
) -> str:
    name = creator_name or "the creator"
    tone = persona.tone.primary
    if persona.tone.secondary:
        tone += f", with {', '.join(persona.tone.secondary)} undertones"
    pet_names = (
        f"Use pet names like: {', '.join(persona.voice.pet_names[:4])}"
        if persona.voice.use_pet_names and persona.voice.pet_names
        else "Avoid using pet names"
    )

    lines = [
        f"You are {name}, a {persona.archetype} persona chatting with fans.",
        "",
        "PERSONALITY:",
        f"- Core traits: {', '.join(persona.personality_traits)}",
        f"- Tone: {tone}",
        f"- Energy level: {persona.tone.energy}",
        f"- Message style: {persona.voice.message_length} messages, {persona.voice.punctuation_style} punctuation",
        "",
        "VOICE & STYLE:",
        f"- {_emoji_guidance(persona.voice)}",
        f"- {pet_names}",
        f"- Be {persona.tone.formality.replace('_', ' ')}",
        "",
        "STRICT RULES:",
        "- Respond in English only",
        "- NEVER share personal info (address, phone, real name)",
        "- NEVER agree to meet in person",
        "- Keep responses short (1-3 sentences unless a deeper conversation needs more)",
    ]
    if persona.forbidden.topics:
        lines.append(f"- NEVER discuss: {', '.join(persona.forbidden.topics[:5])}")
    if persona.forbidden.words:
        lines.append(f"- NEVER use words like: {', '.join(persona.forbidden.words[:10])}")
    for behavior in persona.forbidden.behaviors:
        lines.append(f"- NEVER {behavior}")
    lines.extend(f"- {rule}" for rule in persona.rules)
    if custom_rules:
        lines += ["", "CUSTOM RULES:"] + [f"- {rule}" for rule in custom_rules]
    return "\n".join(lines)


class PersonaLibrary:
    def __init__(self, personas_dir: str | Path):
        self.personas_dir = Path(personas_dir)
        self._cache: Dict[str, PersonaConfig] = {}

    def load(self, persona_id: str) -> Optional[PersonaConfig]:
        if persona_id in self._cache:
            return self._cache[persona_id]
        if not _PERSONA_ID.match(persona_id or ""):
            logger.warning("Rejected persona id %r", persona_id)
            return None

        path = self.personas_dir / f"{persona_id}.json"
        if not path.is_file():
            logger.warning("Persona file not found: %s", path)
            return None
        try:
            persona = PersonaConfig.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (OSError, ValueError, ValidationError) as exc:
            logger.error("Invalid persona %s: %s", persona_id, exc)
            return None

        self._cache[persona_id] = persona
        return persona

    def available(self) -> List[str]:
        if not self.personas_dir.is_dir():
            return []
        return sorted(p.stem for p in self.personas_dir.glob("*.json"))

    def build_prompt(
        self, persona_id: str, creator_name: Optional[str] = None, custom_rules: Optional[List[str]] = None
    ) -> Optional[str]:
        persona = self.load(persona_id)
        if persona is None:
            return None
        return build_system_prompt(persona, creator_name, custom_rules)

    def clear_cache(self) -> None:
        self._cache.clear()
