"""
Tests for the policy engine.

Tests policy registration, mask and row policy evaluation, and the
multi-policy tie-break.
"""

import pytest

from veilflow.access.policy_engine import PolicyEngine, same_value
from veilflow.core.errors import (
    DuplicatePolicy,
    GovernanceError,
    MissingColumn,
    PolicyEvaluationError,
    UnknownPolicy,
)

ADMIN = frozenset({"ADMIN", "PUBLIC"})
ANALYST = frozenset({"ANALYST", "PUBLIC"})


def address_mask(roles, tag_value, val):
    return val if "ADMIN" in roles else "**MASKED**"


@pytest.fixture
def engine():
    e = PolicyEngine()
    e.create_masking_policy("pii_string_mask", "string", "string", address_mask)
    e.create_row_access_policy(
        "region_policy",
        ["region"],
        lambda roles, values: "ADMIN" in roles or values["REGION"] == "EU",
    )
    return e


class TestPolicyRegistration:
    """Test creating, replacing and dropping policies."""

    def test_names_are_normalised(self, engine):
        assert engine.has_policy("PII_STRING_MASK")
        assert engine.get_masking_policy("Pii_String_Mask").name == "PII_STRING_MASK"
        assert engine.get_row_access_policy("region_policy").input_columns == ("REGION",)

    def test_duplicate_policy_rejected(self, engine):
        with pytest.raises(DuplicatePolicy):
            engine.create_masking_policy("pii_string_mask", "string", "string", address_mask)

    def test_replace_policy(self, engine):
        engine.create_masking_policy(
            "pii_string_mask", "string", "string",
            lambda roles, tag_value, val: "x",
            replace=True,
        )

        assert engine.evaluate_mask("pii_string_mask", ADMIN, None, "raw") == "x"

    def test_replace_cannot_change_policy_kind(self, engine):
        with pytest.raises(DuplicatePolicy):
            engine.create_row_access_policy(
                "pii_string_mask", ["region"], lambda roles, values: True, replace=True
            )

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError):
            PolicyEngine().create_masking_policy("bad", "geography", "string", address_mask)

    def test_function_must_be_callable(self):
        with pytest.raises(GovernanceError):
            PolicyEngine().create_masking_policy("bad", "string", "string", "not callable")

    def test_row_policy_needs_inputs(self):
        with pytest.raises(GovernanceError):
            PolicyEngine().create_row_access_policy("bad", [], lambda roles, values: True)

    def test_kind_lookup(self, engine):
        with pytest.raises(UnknownPolicy):
            engine.get_row_access_policy("pii_string_mask")
        with pytest.raises(UnknownPolicy):
            engine.get_masking_policy("region_policy")

    def test_drop_policy(self, engine):
        engine.drop_policy("region_policy")

        assert not engine.has_policy("region_policy")
        with pytest.raises(UnknownPolicy):
            engine.drop_policy("region_policy")

    def test_show_policies_sorted(self, engine):
        assert [p.name for p in engine.show_policies()] == ["PII_STRING_MASK", "REGION_POLICY"]


class TestMaskEvaluation:
    """Test evaluate_mask."""

    def test_masks_non_exempt_role(self, engine):
        assert engine.evaluate_mask("pii_string_mask", ANALYST, "ADDRESS", "123 Main St") == "**MASKED**"

    def test_exempt_role_sees_raw(self, engine):
        assert engine.evaluate_mask("pii_string_mask", ADMIN, "ADDRESS", "123 Main St") == "123 Main St"

    def test_deterministic(self, engine):
        first = engine.evaluate_mask("pii_string_mask", ANALYST, "ADDRESS", "123 Main St")
        second = engine.evaluate_mask("pii_string_mask", ANALYST, "ADDRESS", "123 Main St")

        assert first == second

    def test_unknown_policy(self, engine):
        with pytest.raises(UnknownPolicy):
            engine.evaluate_mask("ghost", ANALYST, None, "x")

    def test_function_errors_are_wrapped(self, engine):
        engine.create_masking_policy("boom", "string", "string", lambda roles, tag_value, val: 1 / 0)

        with pytest.raises(PolicyEvaluationError) as excinfo:
            engine.evaluate_mask("boom", ANALYST, None, "x")

        assert excinfo.value.policy == "BOOM"
        assert isinstance(excinfo.value.cause, ZeroDivisionError)


class TestRowPolicyEvaluation:
    """Test evaluate_row_policy."""

    def test_visible_row(self, engine):
        assert engine.evaluate_row_policy("region_policy", ANALYST, {"region": "EU"})

    def test_hidden_row(self, engine):
        assert not engine.evaluate_row_policy("region_policy", ANALYST, {"region": "US"})

    def test_exempt_role(self, engine):
        assert engine.evaluate_row_policy("region_policy", ADMIN, {"region": "US"})

    def test_column_lookup_is_case_insensitive(self, engine):
        assert engine.evaluate_row_policy("region_policy", ANALYST, {"Region": "EU", "id": 1})

    def test_missing_column(self, engine):
        with pytest.raises(MissingColumn) as excinfo:
            engine.evaluate_row_policy("region_policy", ANALYST, {"id": 1})

        assert excinfo.value.column == "REGION"


class TestResolveMask:
    """Test the first-changed-value-wins tie-break."""

    def test_first_change_wins(self, engine):
        engine.create_masking_policy("keep", "string", "string", lambda roles, tag_value, val: val)
        engine.create_masking_policy("stars", "string", "string", lambda roles, tag_value, val: "***")

        value, winner = engine.resolve_mask(
            [("keep", None), ("stars", None), ("pii_string_mask", "ADDRESS")],
            ANALYST,
            "raw",
        )

        assert value == "***"
        assert winner == "STARS"

    def test_all_unchanged_passes_raw(self, engine):
        value, winner = engine.resolve_mask([("pii_string_mask", "ADDRESS")], ADMIN, "raw")

        assert value == "raw"
        assert winner is None

    def test_no_candidates(self, engine):
        assert engine.resolve_mask([], ANALYST, "raw") == ("raw", None)


class TestSameValue:
    """Test strict value comparison used by the tie-break."""

    def test_same_object(self):
        assert same_value(None, None)

    def test_equal_values(self):
        assert same_value("a", "a")

    def test_different_types_differ(self):
        assert not same_value(1, 1.0)
        assert not same_value(1, True)
