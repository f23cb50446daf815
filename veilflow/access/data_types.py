"""
Column data type normalisation and assignability rules.

Masking policies declare an input and a return type. A policy is only applied
to a column whose type its input accepts, and its return type must be
assignable back into that column type.
"""

from enum import Enum


class TypeFamily(Enum):
    """Coarse data type families used for policy/column compatibility."""
    STRING = "string"
    INTEGER = "integer"
    DECIMAL = "decimal"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATE = "date"
    TIMESTAMP = "timestamp"
    BINARY = "binary"
    VARIANT = "variant"


_TYPE_ALIASES = {
    TypeFamily.STRING: frozenset({
        "string", "varchar", "char", "character", "text", "nvarchar", "nchar",
    }),
    TypeFamily.INTEGER: frozenset({
        "int", "integer", "bigint", "smallint", "tinyint", "byteint", "long", "short",
    }),
    TypeFamily.DECIMAL: frozenset({"number", "numeric", "decimal"}),
    TypeFamily.FLOAT: frozenset({
        "float", "float4", "float8", "double", "double precision", "real",
    }),
    TypeFamily.BOOLEAN: frozenset({"boolean", "bool"}),
    TypeFamily.DATE: frozenset({"date"}),
    TypeFamily.TIMESTAMP: frozenset({
        "timestamp", "datetime", "timestamp_ntz", "timestamp_ltz", "timestamp_tz",
    }),
    TypeFamily.BINARY: frozenset({"binary", "varbinary"}),
    TypeFamily.VARIANT: frozenset({"variant", "object", "array", "struct", "map"}),
}

_FAMILY_BY_NAME = {
    name: family
    for family, names in _TYPE_ALIASES.items()
    for name in names
}

# Implicit widening casts (source -> targets)
_WIDENING = {
    TypeFamily.INTEGER: frozenset({TypeFamily.DECIMAL, TypeFamily.FLOAT}),
    TypeFamily.DECIMAL: frozenset({TypeFamily.FLOAT}),
}


def base_type(data_type: str) -> str:
    """Strip parameters and normalise case: ``VARCHAR(255)`` -> ``varchar``."""
    normalised = data_type.strip().lower()
    # Handle parameterised types like varchar(255) and array<string>
    return normalised.split("(")[0].split("<")[0].strip()


def type_family(data_type: str) -> TypeFamily:
    """
    Resolve a declared type name to its family.

    Raises:
        ValueError: If the type name is not recognised
    """
    family = _FAMILY_BY_NAME.get(base_type(data_type))
    if family is None:
        raise ValueError(f"Unsupported data type '{data_type}'")
    return family


def is_assignable(source_type: str, target_type: str) -> bool:
    """
    Check whether a value of ``source_type`` can be implicitly stored
    in ``target_type``.

    Same family always assigns; integers widen to decimal/float, decimals to
    float; anything assigns to VARIANT.
    """
    source = type_family(source_type)
    target = type_family(target_type)
    if source == target or target == TypeFamily.VARIANT:
        return True
    return target in _WIDENING.get(source, frozenset())
