from __future__ import annotations

import pytest

from src.analytics.household_key import (
    build_household_key,
    normalize_name_part,
    normalize_zip,
    split_full_name,
)


def test_builds_uppercase_last_first_zip_key():
    key = build_household_key(" john ", "Smith", "90210")
    assert key.key == "SMITH_JOHN_90210"
    assert key.has_zip is True
    assert key.is_malformed is False


def test_identical_normalized_inputs_give_identical_keys():
    left = build_household_key("José", "O'Brien", "02134-1234")
    right = build_household_key("JOSE", "obrien", "021341234")
    assert left.key == right.key == "OBRIEN_JOSE_02134"


def test_hyphenated_last_name_stays_one_token():
    key = build_household_key(None, None, "10001", full_name="Anna Smith-Jones")
    assert key.first_name == "ANNA"
    assert key.last_name == "SMITH-JONES"
    assert key.key == "SMITH-JONES_ANNA_10001"


def test_full_name_splits_on_first_whitespace_only():
    assert split_full_name("Mary Ann Van Buren") == ("Mary", "Ann Van Buren")
    key = build_household_key(None, None, None, full_name="Mary Ann Van Buren")
    assert key.last_name == "ANNVANBUREN"


def test_single_token_full_name_is_a_last_name():
    key = build_household_key(None, None, None, full_name="Smith")
    assert key.key == "SMITH_UNKNOWN_NOZIP"
    assert key.name_malformed is False


@pytest.mark.parametrize("raw_zip", ["9021", "ABCDE", "90210-12", "902100"])
def test_malformed_zip_uses_sentinel_and_is_flagged(raw_zip):
    key = build_household_key("John", "Smith", raw_zip)
    assert key.key == "SMITH_JOHN_NOZIP"
    assert key.zip_malformed is True
    assert key.has_zip is False


def test_missing_zip_uses_sentinel_without_flag():
    key = build_household_key("John", "Smith", None)
    assert key.key == "SMITH_JOHN_NOZIP"
    assert key.zip_malformed is False
    assert key.is_malformed is False


def test_custom_sentinel_is_respected():
    assert build_household_key("John", "Smith", "", zip_sentinel="00000").key == "SMITH_JOHN_00000"


def test_missing_last_name_is_flagged_malformed():
    key = build_household_key("John", "  ", "90210")
    assert key.key == "UNKNOWN_JOHN_90210"
    assert key.name_malformed is True


def test_name_and_zip_helpers():
    assert normalize_name_part("  de--la  Cruz ") == "DE-LACRUZ"
    assert normalize_name_part("-Lee-") == "LEE"
    assert normalize_zip("12345-6789") == "12345"
    assert normalize_zip(" 12345 ") == "12345"
    assert normalize_zip("1234") is None


def test_last_comma_first_export_format():
    assert split_full_name("SMITH, JOHN") == ("JOHN", "SMITH")
    assert split_full_name("Van Buren, Mary Ann") == ("Mary", "Van Buren")
    assert (
        build_household_key(None, None, "90210", full_name="SMITH, JOHN").key
        == build_household_key("John", "Smith", "90210").key
        == "SMITH_JOHN_90210"
    )


def test_comma_with_no_given_name():
    key = build_household_key(None, None, "90210", full_name="Smith,")
    assert key.key == "SMITH_UNKNOWN_90210"
    assert not key.name_malformed
