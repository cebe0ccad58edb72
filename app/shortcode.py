"""Short code generation and validation.

Codes are printed inside QR codes and sometimes typed by hand, so the alphabet
leaves out characters that are easy to confuse (0/O/o, 1/I/l/i).

Each of the six random bytes is reduced onto the alphabet with a modulo. With
256 byte values and 55 symbols the first 36 symbols come up slightly more often
(5/256 instead of 4/256). The distribution is kept as is; changing it would
change the collision characteristics of already-issued codes.
"""

import secrets

__all__ = ["ALPHABET", "CODE_LENGTH", "generate_short_code", "is_valid_short_code"]

ALPHABET = "23456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz"
CODE_LENGTH = 6

_ALPHABET_SET = frozenset(ALPHABET)


def generate_short_code() -> str:
    random_bytes = secrets.token_bytes(CODE_LENGTH)
    return "".join(ALPHABET[byte % len(ALPHABET)] for byte in random_bytes)


def is_valid_short_code(code: str | None) -> bool:
    if not code or len(code) != CODE_LENGTH:
        return False
    return all(char in _ALPHABET_SET for char in code)
