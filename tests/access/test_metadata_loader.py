"""
Tests for the governance metadata loader.

Tests loading roles, tags, policies, tables and mapping tables from
the YAML registry and applying them to a Governance object.
"""

import pytest
from pathlib import Path

from veilflow.access.metadata_loader import GovernanceMetadataLoader
from veilflow.core.errors import GovernanceError
from veilflow.observability.audit import AuditTrail

OPOR = "nlt.raw.opor"
OCRD = "nlt.raw.ocrd"

ROWS = [
    {"docentry": 1, "cardcode": "V1010", "address": "1 Main St", "doctotal": 100.0},
    {"docentry": 2, "cardcode": "V2020", "address": "2 High St", "doctotal": 200.0},
    {"docentry": 3, "cardcode": "V3030", "address": "3 Low Rd", "doctotal": 300.0},
]


@pytest.fixture
def registry_path():
    """Path to the test registry root."""
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def loader(registry_path):
    """Create a metadata loader with test fixtures."""
    return GovernanceMetadataLoader(
        registry_path=str(registry_path),
        environment="dev",
        cache_enabled=True
    )


@pytest.fixture
def gov(loader):
    return loader.build()


class TestLoading:
    """Test reading the registry files."""

    def test_initialization(self, registry_path):
        loader = GovernanceMetadataLoader(
            registry_path=str(registry_path),
            environment="dev",
            cache_enabled=False
        )

        assert loader.environment == "dev"
        assert not loader.cache_enabled
        assert loader._metadata_cache is None

    def test_load_metadata(self, loader):
        metadata = loader.load_metadata()

        assert metadata["bootstrap_system_roles"] is True
        assert set(metadata["roles"]) == {"nlt_test_role", "nlt_analyst"}
        assert set(metadata["tags"]) == {"pii", "financial"}
        assert set(metadata["masking_policies"]) == {"pii_string_mask", "amount_mask"}
        assert set(metadata["row_access_policies"]) == {"customer_cardcode_row_policy", "admins_only"}
        assert set(metadata["tables"]) == {OPOR, OCRD}
        assert "governance.row_policy_map" in metadata["mapping_tables"]

    def test_cache(self, loader):
        first = loader.load_metadata()

        assert loader.load_metadata() is first

        loader.clear_cache()
        assert loader.load_metadata() is not first

    def test_missing_environment_file_is_empty(self, registry_path):
        loader = GovernanceMetadataLoader(str(registry_path), environment="prod")

        assert loader.load_metadata()["mapping_tables"] == {}

    def test_missing_registry(self, tmp_path):
        loader = GovernanceMetadataLoader(str(tmp_path), environment="dev")

        with pytest.raises(FileNotFoundError):
            loader.load_metadata()

    def test_empty_registry(self, tmp_path):
        (tmp_path / "governance").mkdir()
        gov = GovernanceMetadataLoader(str(tmp_path), environment="dev").build()

        assert gov.roles.has_role("SYSADMIN")
        assert gov.tags.show_tags() == []


class TestApplying:
    """Test building a Governance object from the registry."""

    def test_roles_and_grants(self, gov):
        assert "NLT_TEST_ROLE" in gov.roles.effective_roles("SYSADMIN")
        assert gov.roles.effective_roles("nlt_analyst") == frozenset({
            "NLT_ANALYST", "NLT_TEST_ROLE", "PUBLIC",
        })
        assert gov.roles.get_role("nlt_test_role").comment == "Test role for NLT sales data"

    def test_tags_and_assignments(self, gov):
        assert gov.tags.get_tag("pii").allows("EMAIL")
        assert gov.tags.tag_value(OPOR, "address", "pii") == "ADDRESS"
        assert gov.tags.tag_value(OCRD, "phone1", "pii") == "PHONE_NUMBER"

    def test_bindings(self, gov):
        assert gov.tags.bound_policies("pii") == ["PII_STRING_MASK"]
        assert gov.tags.bound_policies("financial") == ["AMOUNT_MASK"]

    def test_mapping_table(self, gov):
        mapping = gov.mapping_table("governance.row_policy_map")

        assert mapping.keys_for({"NLT_TEST_ROLE"}) == {"V1010"}
        assert mapping.keys_for({"NLT_ANALYST"}) == {"V2020"}

    def test_row_policy_binding(self, gov):
        binding = gov.evaluator.row_policy_binding(OPOR)

        assert binding.policy_name == "CUSTOMER_CARDCODE_ROW_POLICY"
        assert binding.columns == ("CARDCODE",)
        assert gov.evaluator.row_policy_binding(OCRD) is None

    def test_apply_is_repeatable(self, loader, gov):
        loader.apply(gov)

        assert gov.tags.bound_policies("pii") == ["PII_STRING_MASK"]
        assert gov.tags.tag_value(OPOR, "address", "pii") == "ADDRESS"


class TestEndToEnd:
    """Test evaluating rows against the loaded registry."""

    def test_mapped_role(self, gov):
        principal = gov.use_role("bob", "nlt_test_role")

        rows = list(gov.visible_rows(OPOR, principal, ROWS))

        assert rows == [
            {"docentry": 1, "cardcode": "V1010", "address": "**~MASKED~**", "doctotal": None},
        ]

    def test_inherited_mapping(self, gov):
        principal = gov.use_role("carol", "nlt_analyst")

        rows = list(gov.visible_rows(OPOR, principal, ROWS))

        assert [row["docentry"] for row in rows] == [1, 2]

    def test_sysadmin_sees_all_rows_unmasked_text(self, gov):
        principal = gov.use_role("dave", "sysadmin")

        rows = list(gov.visible_rows(OPOR, principal, ROWS))

        assert len(rows) == 3
        assert rows[0]["address"] == "1 Main St"
        # amount_mask only exempts ACCOUNTADMIN
        assert rows[0]["doctotal"] is None

    def test_accountadmin_sees_everything(self, gov):
        principal = gov.use_role("erin", "accountadmin")

        assert list(gov.visible_rows(OPOR, principal, ROWS)) == ROWS

    def test_contact_columns(self, gov):
        principal = gov.use_role("bob", "nlt_test_role")

        outcome = gov.evaluate_row(
            OCRD, principal,
            {"cardcode": "V1010", "e_mail": "jo@example.com", "phone1": "5551234567"},
        )

        assert outcome.row == {
            "cardcode": "V1010",
            "e_mail": "**~MASKED~**@example.com",
            "phone1": "555-***-****",
        }

    def test_observer_passed_through(self, loader):
        trail = AuditTrail(persist=False)
        gov = loader.build(observer=trail)
        principal = gov.use_role("bob", "public")

        list(gov.scan(OPOR, principal, ROWS))

        assert trail.summary() == {"dropped": 3}


class TestInvalidMetadata:
    """Test registry content that cannot be applied."""

    def test_unknown_strategy(self, tmp_path):
        (tmp_path / "governance").mkdir()
        (tmp_path / "governance" / "policies.yaml").write_text(
            "masking_policies:\n"
            "  bad_mask:\n"
            "    strategy: scramble\n"
        )

        with pytest.raises(GovernanceError):
            GovernanceMetadataLoader(str(tmp_path), "dev").build()

    def test_unknown_row_policy_type(self, tmp_path):
        (tmp_path / "governance").mkdir()
        (tmp_path / "governance" / "policies.yaml").write_text(
            "row_access_policies:\n"
            "  bad_policy:\n"
            "    type: geofence\n"
            "    input_column: region\n"
        )

        with pytest.raises(GovernanceError):
            GovernanceMetadataLoader(str(tmp_path), "dev").build()

    def test_incompatible_binding(self, tmp_path):
        (tmp_path / "governance").mkdir()
        (tmp_path / "governance" / "policies.yaml").write_text(
            "masking_policies:\n"
            "  to_int:\n"
            "    input_type: string\n"
            "    return_type: int\n"
            "    strategy: nullify\n"
        )
        (tmp_path / "governance" / "tags.yaml").write_text(
            "tags:\n"
            "  pii:\n"
            "    masking_policies: [to_int]\n"
        )
        (tmp_path / "governance" / "tables.yaml").write_text(
            "tables:\n"
            "  db.sch.tbl:\n"
            "    columns: {name: string}\n"
            "    tags: {name: {pii: sensitive}}\n"
        )

        with pytest.raises(GovernanceError):
            GovernanceMetadataLoader(str(tmp_path), "dev").build()
