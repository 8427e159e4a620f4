"""
Object keys in the format Zotero uses for items and collections.

Keys are 8 characters drawn from an alphabet without the glyphs that are
easy to confuse when read aloud or copied by hand (0/O, 1/I/L).
"""

import random
import re

KEY_ALPHABET = "23456789ABCDEFGHJKMNPQRSTUVWXYZ"
KEY_LENGTH = 8

_KEY_RE = re.compile(rf"^[{KEY_ALPHABET}]{{{KEY_LENGTH}}}$")

_rng = random.SystemRandom()


def generate_key(rng: random.Random | None = None) -> str:
    """Draw a random key.

    Uniqueness is probabilistic (31^8 possible keys); callers that need a
    key unused in a given table must check for collisions themselves.
    """
    r = rng or _rng
    return "".join(r.choice(KEY_ALPHABET) for _ in range(KEY_LENGTH))


def is_valid_key(key: str | None) -> bool:
    """True if key has the length and alphabet of a generated key."""
    return bool(key) and bool(_KEY_RE.match(key))
