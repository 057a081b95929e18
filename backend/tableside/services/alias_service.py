"""Two-word display aliases for diners sharing a table."""

import logging
import random
import re
from typing import Collection, Optional

from tableside.core.exceptions import AliasExhausted, ValidationError

logger = logging.getLogger(__name__)

ADJECTIVES = (
    "Brave", "Swift", "Mighty", "Noble", "Wise", "Bold", "Fierce", "Gentle", "Clever", "Strong",
    "Graceful", "Daring", "Radiant", "Mysterious", "Valiant", "Serene", "Cunning", "Majestic",
    "Spirited", "Elegant", "Fearless", "Brilliant", "Charming", "Adventurous", "Loyal",
    "Enchanted", "Golden", "Silver", "Crimson", "Azure", "Emerald", "Violet", "Amber",
    "Celestial", "Ancient", "Legendary", "Mystical", "Ethereal", "Divine", "Cosmic",
)

NOUNS = (
    "Dragon", "Phoenix", "Griffin", "Unicorn", "Wolf", "Eagle", "Lion", "Tiger", "Bear", "Fox",
    "Raven", "Falcon", "Hawk", "Owl", "Panther", "Leopard", "Jaguar", "Lynx", "Stag", "Elk",
    "Knight", "Warrior", "Mage", "Archer", "Paladin", "Ranger", "Bard", "Sage", "Scholar", "Monk",
    "Star", "Moon", "Sun", "Comet", "Nova", "Galaxy", "Nebula", "Cosmos", "Void", "Flame",
    "Storm", "Thunder", "Lightning", "Wind", "Earth", "Stone", "Crystal", "Diamond", "Ruby", "Sapphire",
)

ALIAS_PATTERN = re.compile(r"^[A-Za-z0-9 ]{1,50}$")


class AliasGenerator:
    """Draws random ``Adjective Noun`` pairs until one is free in the session."""

    def __init__(self, max_attempts: int = 50, rng: Optional[random.Random] = None):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self._rng = rng or random.SystemRandom()

    def candidate(self) -> str:
        return f"{self._rng.choice(ADJECTIVES)} {self._rng.choice(NOUNS)}"

    def generate(self, taken: Collection[str]) -> str:
        """Return an alias not in ``taken`` or raise ``AliasExhausted``."""
        taken_folded = {t.casefold() for t in taken}
        for _ in range(self.max_attempts):
            alias = self.candidate()
            if alias.casefold() not in taken_folded:
                return alias
        logger.warning(f"Alias generation exhausted after {self.max_attempts} attempts ({len(taken)} taken)")
        raise AliasExhausted(self.max_attempts)


def validate_alias(alias: str, taken: Collection[str]) -> str:
    """Check a diner-chosen alias: letters, digits and spaces, unique in the session."""
    cleaned = " ".join(alias.split())
    if not cleaned or not ALIAS_PATTERN.match(cleaned):
        raise ValidationError("Alias must be 1-50 letters, digits or spaces")
    if cleaned.casefold() in {t.casefold() for t in taken}:
        raise ValidationError(f"Alias '{cleaned}' is already taken in this session")
    return cleaned
