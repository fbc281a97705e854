# historia/core/prompting.py

from functools import lru_cache
from pathlib import Path
from typing import Optional

from historia.config.settings import GUIDELINES_PATH
from historia.personas.catalog import GENERIC_PROFILE, Persona, PersonaProfile
from historia.utils.logging import get_logger

logger = get_logger(__name__)

FALLBACK_BEHAVIOR = (
    "You are {name}. Respond authentically in their voice and style, sharing "
    "wisdom from their expertise. Be engaging and stay in character."
)


@lru_cache(maxsize=4)
def load_guidelines(path: str = str(GUIDELINES_PATH)) -> str:
    """
    Load the fixed reply guidelines appended to every persona prompt.
    Read once per path and cached.
    """
    try:
        with open(Path(path), "r", encoding="utf-8") as f:
            text = f.read().strip()
    except OSError as e:
        logger.error(f"Failed to load persona guidelines from {path}: {e}")
        raise

    if not text:
        logger.error("Persona guidelines are empty after loading.")
        raise RuntimeError("Persona guidelines are empty.")

    return text


def compose_system_prompt(
    persona: Persona,
    profile: Optional[PersonaProfile] = None,
    guidelines: Optional[str] = None,
) -> str:
    profile = profile or GENERIC_PROFILE
    behavior = (
        profile.prompt_override
        or persona.behavior_prompt.strip()
        or FALLBACK_BEHAVIOR.format(name=persona.name)
    )
    rules = guidelines if guidelines is not None else load_guidelines()
    return f"{behavior}\n\n{rules}" if rules else behavior
