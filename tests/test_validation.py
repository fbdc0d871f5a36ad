import pytest

from hipop_billing.errors import InvalidInputError
from hipop_billing.validation import (
    is_valid_tier_for_category,
    sanitize_metadata,
    validate_amount,
    validate_feature_name,
    validate_tier,
    validate_user_category,
    validate_user_id,
)


def test_feature_name_is_normalized():
    assert validate_feature_name("  Global_Products ") == "global_products"
    assert validate_feature_name("x") == "x"


@pytest.mark.parametrize(
    "value, code",
    [
        ("", "FEATURE_NAME_REQUIRED"),
        (None, "FEATURE_NAME_REQUIRED"),
        ("a" * 51, "FEATURE_NAME_TOO_LONG"),
        ("global-products", "FEATURE_NAME_INVALID_FORMAT"),
        ("usage.$inc", "FEATURE_NAME_INVALID_FORMAT"),
        ("1st_feature", "FEATURE_NAME_INVALID_FORMAT"),
        ("trailing_", "FEATURE_NAME_INVALID_FORMAT"),
    ],
)
def test_feature_name_rejections(value, code):
    with pytest.raises(InvalidInputError) as exc_info:
        validate_feature_name(value)
    assert exc_info.value.error_code == code
    assert exc_info.value.field == "featureName"


def test_user_id_rules():
    assert validate_user_id(" user-1 ") == "user-1"
    for bad in ("", "   ", None, 42, "a" * 129, "bad\nid"):
        with pytest.raises(InvalidInputError):
            validate_user_id(bad)


def test_amount_rules():
    assert validate_amount(0) == 0
    assert validate_amount(3, minimum=1) == 3
    with pytest.raises(InvalidInputError) as exc_info:
        validate_amount(-1)
    assert exc_info.value.error_code == "AMOUNT_OUT_OF_RANGE"
    with pytest.raises(InvalidInputError):
        validate_amount(0, minimum=1)
    for bad in (True, 1.5, "2", None):
        with pytest.raises(InvalidInputError) as exc_info:
            validate_amount(bad)
        assert exc_info.value.error_code == "AMOUNT_INVALID_TYPE"


def test_sanitize_metadata_truncates_and_trims():
    clean = sanitize_metadata({"market_id": "  m-1 ", "note": "x" * 600, "count": 2, "ok": True})
    assert clean["market_id"] == "m-1"
    assert len(clean["note"]) == 500
    assert clean["count"] == 2
    assert clean["ok"] is True
    assert sanitize_metadata(None) is None


@pytest.mark.parametrize(
    "metadata, code",
    [
        ("not a dict", "METADATA_INVALID_TYPE"),
        ({"nested": {"a": 1}}, "METADATA_VALUE_INVALID"),
        ({"bad key!": 1}, "METADATA_KEY_INVALID_CHARS"),
        ({"": 1}, "METADATA_KEY_INVALID"),
        ({"blob": "x" * 6000}, "METADATA_TOO_LARGE"),
    ],
)
def test_sanitize_metadata_rejections(metadata, code):
    with pytest.raises(InvalidInputError) as exc_info:
        sanitize_metadata(metadata)
    assert exc_info.value.error_code == code


def test_category_and_tier_rules():
    assert validate_user_category(" Vendor ") == "vendor"
    assert validate_tier("vendorPro") == "vendorPro"
    with pytest.raises(InvalidInputError):
        validate_user_category("admin")
    with pytest.raises(InvalidInputError):
        validate_tier("gold")

    assert is_valid_tier_for_category("shopperPro", "shopper")
    assert is_valid_tier_for_category("enterprise", "vendor")
    assert not is_valid_tier_for_category("vendorPro", "shopper")
    assert not is_valid_tier_for_category("enterprise", "shopper")
