"""
Tests for column type families and assignability.
"""

import pytest

from veilflow.access.data_types import TypeFamily, base_type, is_assignable, type_family


class TestTypeFamily:
    """Test type name resolution."""

    @pytest.mark.parametrize("name,family", [
        ("VARCHAR(254)", TypeFamily.STRING),
        ("string", TypeFamily.STRING),
        ("bigint", TypeFamily.INTEGER),
        ("NUMBER(19,6)", TypeFamily.DECIMAL),
        ("double", TypeFamily.FLOAT),
        ("timestamp_ntz", TypeFamily.TIMESTAMP),
        ("array<string>", TypeFamily.VARIANT),
        ("struct<a:int>", TypeFamily.VARIANT),
    ])
    def test_resolves_aliases(self, name, family):
        assert type_family(name) == family

    def test_base_type(self):
        assert base_type("  Decimal(10, 2) ") == "decimal"
        assert base_type("map<string,int>") == "map"

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            type_family("geography")


class TestAssignability:
    """Test implicit assignment rules."""

    def test_same_family(self):
        assert is_assignable("varchar(10)", "string")

    def test_widening(self):
        assert is_assignable("int", "number")
        assert is_assignable("int", "double")
        assert is_assignable("decimal(10,2)", "float")

    def test_no_narrowing(self):
        assert not is_assignable("number", "int")
        assert not is_assignable("double", "decimal")

    def test_anything_to_variant(self):
        assert is_assignable("date", "variant")
        assert not is_assignable("variant", "string")

    def test_no_cross_family(self):
        assert not is_assignable("int", "varchar")
        assert not is_assignable("varchar", "int")
