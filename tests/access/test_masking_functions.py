"""
Tests for the masking function builders.
"""

import hashlib

import pytest

from veilflow.access import masking_functions as mf
from veilflow.access.masking_functions import FULL_MASK, MaskingStrategy

PUBLIC = frozenset({"PUBLIC"})
SYSADMIN = frozenset({"SYSADMIN", "PUBLIC"})


class TestStrategies:
    """Test each strategy for non-exempt callers."""

    def test_redact(self):
        assert mf.redact()(PUBLIC, None, "secret") == FULL_MASK

    def test_redact_custom_replacement(self):
        assert mf.redact(replacement="**MASKED**")(PUBLIC, None, "secret") == "**MASKED**"

    def test_nullify(self):
        assert mf.nullify()(PUBLIC, None, "secret") is None

    def test_hash(self):
        expected = hashlib.sha256(b"secret").hexdigest()

        assert mf.hash_value()(PUBLIC, None, "secret") == expected

    def test_partial_end(self):
        assert mf.partial()(PUBLIC, None, "4111111111111111") == "************1111"

    def test_partial_start(self):
        assert mf.partial(visible_chars=2, position="start")(PUBLIC, None, "V1010") == "V1***"

    def test_partial_invalid_position(self):
        with pytest.raises(ValueError):
            mf.partial(position="middle")

    def test_mask_email(self):
        assert mf.mask_email()(PUBLIC, None, "jo@example.com") == f"{FULL_MASK}@example.com"
        assert mf.mask_email()(PUBLIC, None, "not-an-email") == FULL_MASK

    def test_mask_phone(self):
        assert mf.mask_phone()(PUBLIC, None, "5551234567") == "555-***-****"

    def test_null_stays_null(self):
        for function in (mf.redact(), mf.hash_value(), mf.partial(), mf.mask_email(), mf.mask_phone()):
            assert function(PUBLIC, None, None) is None


class TestExemptRoles:
    """Test that exempt roles see raw values."""

    def test_exempt_role_sees_raw(self):
        mask = mf.redact(exempt_roles=["sysadmin"])

        assert mask(SYSADMIN, None, "secret") == "secret"
        assert mask(PUBLIC, None, "secret") == FULL_MASK


class TestStrategyMask:
    """Test building masks from strategy names."""

    def test_by_name(self):
        assert mf.strategy_mask("MASK_PHONE")(PUBLIC, None, "5551234567") == "555-***-****"

    def test_by_enum(self):
        assert mf.strategy_mask(MaskingStrategy.NONE)(PUBLIC, None, "secret") == "secret"

    def test_redact_replacement(self):
        assert mf.strategy_mask("redact", replacement="X")(PUBLIC, None, "secret") == "X"

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            mf.strategy_mask("scramble")


class TestPiiStringMask:
    """Test the PII string policy keyed on tag value."""

    @pytest.fixture
    def mask(self):
        return mf.pii_string_mask()

    def test_phone_number(self, mask):
        assert mask(PUBLIC, "PHONE_NUMBER", "5551234567") == "555-***-****"

    def test_email(self, mask):
        assert mask(PUBLIC, "EMAIL", "jo@example.com") == "**~MASKED~**@example.com"

    def test_other_values_fully_masked(self, mask):
        assert mask(PUBLIC, "ADDRESS", "123 Main St") == "**~MASKED~**"
        assert mask(PUBLIC, None, "123 Main St") == "**~MASKED~**"

    def test_admins_exempt(self, mask):
        assert mask(SYSADMIN, "EMAIL", "jo@example.com") == "jo@example.com"
        assert mask(frozenset({"ACCOUNTADMIN"}), "ADDRESS", "123 Main St") == "123 Main St"

    def test_tag_value_mask_default(self):
        mask = mf.tag_value_mask({"EMAIL": "mask_email"}, default="nullify")

        assert mask(PUBLIC, "ADDRESS", "123 Main St") is None
