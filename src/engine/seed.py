"""Seed derivation — turns a free-form seed token into a 32-bit unsigned seed."""

import re

MASK_32 = 0xFFFFFFFF

_NUMERAL = re.compile(r"[0-9]{1,10}")


def hashcode(data: bytes) -> int:
    """31-multiplier string hash over raw bytes, wrapped to 32 bits."""
    h = 0
    for byte in data:
        h = (h * 31 + byte) & MASK_32
    return h


def string_to_seed(token: str) -> int:
    """Derive a seed from a token. Same token = same seed, on every platform.

    Short decimal numerals that fit in 32 bits are used as-is; anything
    else (text, longer numerals, numerals >= 2**32) is hashed over its
    UTF-8 bytes. Never raises.
    """
    if _NUMERAL.fullmatch(token):
        value = int(token)
        if value <= MASK_32:
            return value
    return hashcode(token.encode("utf-8"))
