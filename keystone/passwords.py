"""Random initial-password generation."""
from __future__ import annotations

import random
import secrets
from typing import List, Optional

UPPERCASE = "ABCDEFGHJKLMNPQRSTUVWXYZ"
LOWERCASE = "abcdefghijkmnpqrstuvwxyz"
DIGITS = "123456789"
SPECIALS = "!$&@"
CHARACTER_CLASSES = (UPPERCASE, LOWERCASE, DIGITS, SPECIALS)
MINIMUM_LENGTH = len(CHARACTER_CLASSES)


class PasswordGenerator:
    """Produces passwords holding at least one character from every class.

    Visually ambiguous characters (``I``, ``O``, ``l``, ``o``, ``0``) never appear.
    """

    def __init__(self, rng: Optional[random.Random] = None, length: int = 10):
        if length < MINIMUM_LENGTH:
            raise ValueError(f"Password length must be at least {MINIMUM_LENGTH}.")
        self.rng = rng if rng is not None else secrets.SystemRandom()
        self.length = length

    def generate(self) -> str:
        characters: List[str] = [self.rng.choice(pool) for pool in CHARACTER_CLASSES]
        alphabet = "".join(CHARACTER_CLASSES)
        characters.extend(self.rng.choice(alphabet) for _ in range(self.length - len(characters)))
        self.rng.shuffle(characters)
        return "".join(characters)


__all__ = ["CHARACTER_CLASSES", "PasswordGenerator"]
