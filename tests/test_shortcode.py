"""Short code generation and format validation tests."""

from unittest.mock import patch

import pytest

from app.shortcode import ALPHABET, CODE_LENGTH, generate_short_code, is_valid_short_code


def test_alphabet_excludes_ambiguous_characters():
    for char in "01OIlio":
        assert char not in ALPHABET
    assert len(set(ALPHABET)) == len(ALPHABET)


def test_generated_codes_use_alphabet_and_length():
    for _ in range(500):
        code = generate_short_code()
        assert len(code) == CODE_LENGTH
        assert all(char in ALPHABET for char in code)
        assert is_valid_short_code(code)


def test_generation_maps_bytes_with_modulo():
    raw = bytes([0, 1, len(ALPHABET), len(ALPHABET) + 1, 255, 54])
    with patch("app.shortcode.secrets.token_bytes", return_value=raw):
        code = generate_short_code()
    assert code == ALPHABET[0] + ALPHABET[1] + ALPHABET[0] + ALPHABET[1] + ALPHABET[255 % len(ALPHABET)] + ALPHABET[54]


@pytest.mark.parametrize("code", ["X7kP2m", "222222", "zzzzzz"])
def test_valid_codes(code):
    assert is_valid_short_code(code)


@pytest.mark.parametrize(
    "code",
    [
        "",
        None,
        "X7kP2",  # too short
        "X7kP2mm",  # too long
        "X7kP0m",  # ambiguous digit
        "X7kPlm",  # ambiguous letter
        "X7k-2m",
        "../etc",
    ],
)
def test_invalid_codes(code):
    assert not is_valid_short_code(code)
