"""Tests for nfce.access_key: normalization and check-digit validation."""

from __future__ import annotations

import pytest

from nfce.access_key import check_digit, is_valid_access_key, normalize_access_key

KEY = "29250306057223031484650140003829591141073162"


@pytest.mark.unit
class TestNormalizeAccessKey:
    @pytest.mark.parametrize("formatted", [
        "2925 0306 0572 2303 1484 6501 4000 3829 5911 4107 3162",
        "2925-0306-0572-2303-1484-6501-4000-3829-5911-4107-3162",
        "29.25.03.06057223031484650140003829591141073162",
        "  29250306057223031484650140003829591141073162\n",
    ])
    def test_strips_separators(self, formatted):
        assert normalize_access_key(formatted) == KEY

    def test_none_and_empty(self):
        assert normalize_access_key("") == ""
        assert normalize_access_key(None) == ""


@pytest.mark.unit
class TestIsValidAccessKey:
    def test_known_valid_key(self):
        assert is_valid_access_key(KEY) is True

    def test_flipped_check_digit_fails(self):
        flipped = KEY[:-1] + str((int(KEY[-1]) + 1) % 10)
        assert is_valid_access_key(flipped) is False

    @pytest.mark.parametrize("key", [KEY[:-1], KEY + "0", "", "1234"])
    def test_wrong_length(self, key):
        assert is_valid_access_key(key) is False

    @pytest.mark.parametrize("digit", "0123456789")
    def test_repeated_digit_rejected(self, digit):
        assert is_valid_access_key(digit * 44) is False

    def test_unnormalized_key_rejected(self):
        """Validation does not normalize; callers must."""
        spaced = " ".join(KEY[i:i + 4] for i in range(0, 44, 4))
        assert is_valid_access_key(spaced) is False
        assert is_valid_access_key(normalize_access_key(spaced)) is True

    def test_non_ascii_digits_rejected(self):
        arabic_indic = "".join(chr(0x0660 + int(c)) for c in KEY)
        assert is_valid_access_key(arabic_indic) is False


@pytest.mark.unit
class TestCheckDigit:
    def test_matches_known_key(self):
        assert check_digit(KEY[:-1]) == int(KEY[-1])

    def test_remainder_zero_or_one_maps_to_zero(self):
        # Weighted sum of "1" with weight 2 is 2 -> remainder 2 -> 9.
        assert check_digit("1") == 9
        # "0..0" sums to 0 -> remainder 0 -> 0.
        assert check_digit("0" * 43) == 0
        # "6" with weight 2 sums to 12 -> remainder 1 -> 0.
        assert check_digit("6") == 0
