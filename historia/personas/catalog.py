# historia/personas/catalog.py
"""
Persona catalog: the read-only set of characters a user can talk to.

Records come from a JSON document with two top-level keys:

- "personas": list of persona records. Column names used by the hosted
  `characters` table (prompt_style, image_url, works) are accepted too.
- "profiles": map persona id -> {greeting, prompt_override}. A persona
  without an entry gets the generic profile, so adding a character is a
  data change only.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from historia.config.settings import PERSONAS_PATH
from historia.utils.logging import get_logger

logger = get_logger(__name__)

GENERIC_GREETING = (
    "Hello! I'm {name}. I'm excited to chat with you today and analyze any "
    "images you'd like to share. What would you like to discuss?"
)


class Persona(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    category: str = ""
    description: str = ""
    behavior_prompt: str = Field(
        default="",
        validation_alias=AliasChoices("behavior_prompt", "prompt_style"),
    )
    portrait_ref: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("portrait_ref", "image_url"),
    )
    notable_works: Optional[List[str]] = Field(
        default=None,
        validation_alias=AliasChoices("notable_works", "works"),
    )


@dataclass(frozen=True)
class PersonaProfile:
    greeting: Optional[str] = None
    prompt_override: Optional[str] = None

    def greeting_for(self, persona: Persona) -> str:
        if self.greeting:
            return self.greeting
        return GENERIC_GREETING.format(name=persona.name)


GENERIC_PROFILE = PersonaProfile()


class PersonaCatalog:
    """In-memory persona lookup with category and text filters."""

    def __init__(
        self,
        personas: Iterable[Persona],
        profiles: Optional[Dict[str, PersonaProfile]] = None,
    ) -> None:
        self._personas: Dict[str, Persona] = {}
        for persona in personas:
            if persona.id in self._personas:
                logger.warning("Duplicate persona id %r in catalog; keeping the first one.", persona.id)
                continue
            self._personas[persona.id] = persona
        self._profiles: Dict[str, PersonaProfile] = dict(profiles or {})

    @classmethod
    def from_json(cls, path: str | Path = PERSONAS_PATH) -> "PersonaCatalog":
        """
        Load the catalog from disk. Invalid persona records are skipped
        and logged; a missing or unparseable file raises.
        """
        p = Path(path).expanduser()
        with open(p, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict) -> "PersonaCatalog":
        personas: List[Persona] = []
        for i, raw in enumerate(data.get("personas") or []):
            try:
                personas.append(Persona.model_validate(raw))
            except ValidationError as e:
                logger.error("Skipping invalid persona record at index %d: %s", i, e)

        profiles: Dict[str, PersonaProfile] = {}
        for persona_id, raw in (data.get("profiles") or {}).items():
            if not isinstance(raw, dict):
                continue
            profiles[persona_id] = PersonaProfile(
                greeting=raw.get("greeting") or None,
                prompt_override=raw.get("prompt_override") or None,
            )

        logger.info("Persona catalog loaded: %d personas, %d profiles.", len(personas), len(profiles))
        return cls(personas, profiles)

    def __len__(self) -> int:
        return len(self._personas)

    def __contains__(self, persona_id: object) -> bool:
        return persona_id in self._personas

    def get(self, persona_id: str) -> Optional[Persona]:
        return self._personas.get(persona_id)

    def all(self) -> List[Persona]:
        return sorted(self._personas.values(), key=lambda p: p.name)

    def profile(self, persona_id: str) -> PersonaProfile:
        return self._profiles.get(persona_id, GENERIC_PROFILE)

    def categories(self) -> List[str]:
        return sorted({p.category for p in self._personas.values() if p.category.strip()})

    def by_category(self, category: str) -> List[Persona]:
        return [p for p in self.all() if p.category == category]

    def count(self, category: Optional[str] = None) -> int:
        if not category:
            return len(self._personas)
        return len(self.by_category(category))

    def search(self, term: str, *, category: Optional[str] = None, limit: int = 20) -> List[Persona]:
        """Case-insensitive substring match over name and description."""
        needle = (term or "").strip().lower()
        if not needle:
            return []
        pool = self.by_category(category) if category else self.all()
        hits = [p for p in pool if needle in p.name.lower() or needle in p.description.lower()]
        return hits[:limit]
