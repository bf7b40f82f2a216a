"""Tests for engine.seed — seed token to 32-bit seed."""

import pytest

from engine.seed import MASK_32, hashcode, string_to_seed

pytestmark = pytest.mark.smoke


@pytest.mark.parametrize(
    "token,expected",
    [
        ("0", 0),
        ("42", 42),
        ("007", 7),
        ("4294967295", 4294967295),
    ],
)
def test_short_numerals_used_verbatim(token, expected):
    assert string_to_seed(token) == expected


@pytest.mark.parametrize(
    "token,expected",
    [
        ("abc", 96354),
        ("seed-token", 891569053),
        # 10 digits but above 2**32 - 1
        ("4294967296", 3632702254),
        # 11 digits, even though the value is small
        ("00000000001", 1065525809),
        ("直播", 2467100449),
    ],
)
def test_other_tokens_are_hashed(token, expected):
    assert string_to_seed(token) == expected


def test_empty_token_hashes_to_zero():
    assert string_to_seed("") == 0


def test_signed_or_spaced_numerals_are_hashed():
    assert string_to_seed("-1") == hashcode(b"-1")
    assert string_to_seed(" 42") == hashcode(b" 42")
    assert string_to_seed("42 ") != 42


def test_hash_is_over_utf8_bytes():
    token = "直播"
    assert string_to_seed(token) == hashcode(token.encode("utf-8"))


def test_hash_wraps_to_32_bits():
    long_token = "x" * 1000
    seed = string_to_seed(long_token)
    assert 0 <= seed <= MASK_32


def test_same_token_same_seed():
    assert string_to_seed("stream-key") == string_to_seed("stream-key")
    assert string_to_seed("stream-key") != string_to_seed("stream-kez")
