"""
Data models for VeilFlow row and column access control.

This module defines the core data structures: roles and principals,
tags and tag assignments, masking and row access policies, and the
outcome of evaluating a row.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, Iterable, Optional, Set, Tuple

from veilflow.core.config import get_config
from veilflow.core.errors import GovernanceError
from veilflow.access.data_types import type_family


# Signature of a masking function: (effective_roles, tag_value, raw_value) -> masked value
MaskFunction = Callable[[FrozenSet[str], Optional[str], Any], Any]

# Signature of a row predicate: (effective_roles, {input_column: value}) -> bool
RowPredicate = Callable[[FrozenSet[str], Dict[str, Any]], bool]


def normalize_identifier(name: str) -> str:
    """
    Normalise an unquoted identifier (role, tag, policy, table or column).

    Identifiers are case-insensitive; when ``uppercase_identifiers`` is
    enabled they are stored upper-cased.
    """
    if not isinstance(name, str) or not name.strip():
        raise GovernanceError(f"Invalid identifier: {name!r}")
    name = name.strip()
    if get_config().governance.uppercase_identifiers:
        return name.upper()
    return name


def normalize_roles(roles: Iterable[str]) -> FrozenSet[str]:
    return frozenset(normalize_identifier(role) for role in roles)


@dataclass(frozen=True)
class ObjectRef:
    """
    Fully qualified table reference.

    Example:
        ObjectRef.parse("nlt.raw.opor") == ObjectRef("NLT", "RAW", "OPOR")
    """
    database: str
    schema: str
    table: str

    def __post_init__(self):
        object.__setattr__(self, "database", normalize_identifier(self.database))
        object.__setattr__(self, "schema", normalize_identifier(self.schema))
        object.__setattr__(self, "table", normalize_identifier(self.table))

    @classmethod
    def parse(cls, qualified_name: str) -> "ObjectRef":
        parts = qualified_name.split(".")
        if len(parts) != 3:
            raise GovernanceError(
                f"Expected database.schema.table, got '{qualified_name}'"
            )
        return cls(*parts)

    @classmethod
    def of(cls, value) -> "ObjectRef":
        """Accept either an ObjectRef or a qualified name string."""
        if isinstance(value, ObjectRef):
            return value
        return cls.parse(value)

    def __str__(self) -> str:
        return f"{self.database}.{self.schema}.{self.table}"


@dataclass
class Role:
    """
    A role in the hierarchy.

    Attributes:
        name: Role identifier
        parents: Roles granted to this role (their privileges are inherited)
        comment: Free text description
    """
    name: str
    parents: Set[str] = field(default_factory=set)
    comment: str = ""


@dataclass(frozen=True)
class Principal:
    """A session's user identity plus its single active role."""
    user: str
    active_role: str

    def __post_init__(self):
        object.__setattr__(self, "active_role", normalize_identifier(self.active_role))


@dataclass
class Tag:
    """
    A named label attachable to columns.

    Attributes:
        name: Tag identifier
        allowed_values: Permitted values (None = free text)
        comment: Free text description
    """
    name: str
    allowed_values: Optional[FrozenSet[str]] = None
    comment: str = ""

    def __post_init__(self):
        if self.allowed_values is not None and not isinstance(self.allowed_values, frozenset):
            self.allowed_values = frozenset(self.allowed_values)

    def allows(self, value: str) -> bool:
        return self.allowed_values is None or value in self.allowed_values


@dataclass
class TagAssignment:
    """
    Current value of a tag on a column.

    ``sequence`` records when the tag was first set on the column, so that
    reassigning a value keeps the column's tag order stable.
    """
    object_ref: ObjectRef
    column: str
    tag: str
    value: str
    sequence: int


@dataclass
class MaskingPolicy:
    """
    Column masking policy.

    Attributes:
        name: Policy identifier
        input_type: Declared type of the value the function receives
        return_type: Declared type of the value the function returns
        function: Pure callable (effective_roles, tag_value, raw_value) -> value
        comment: Free text description

    Example:
        MaskingPolicy(
            name="PII_STRING_MASK",
            input_type="string",
            return_type="string",
            function=lambda roles, tag_value, val: val if "ADMIN" in roles else "**MASKED**",
        )
    """
    name: str
    input_type: str
    return_type: str
    function: MaskFunction
    comment: str = ""

    def __post_init__(self):
        # Fail fast on unknown type names
        type_family(self.input_type)
        type_family(self.return_type)
        if not callable(self.function):
            raise GovernanceError(f"Masking policy '{self.name}' function is not callable")


@dataclass
class RowAccessPolicy:
    """
    Row access policy.

    Attributes:
        name: Policy identifier
        input_columns: Ordered names of the predicate's input columns
        predicate: Pure callable (effective_roles, {column: value}) -> bool
        comment: Free text description
    """
    name: str
    input_columns: Tuple[str, ...]
    predicate: RowPredicate
    comment: str = ""

    def __post_init__(self):
        self.input_columns = tuple(self.input_columns)
        if not self.input_columns:
            raise GovernanceError(f"Row access policy '{self.name}' needs at least one input column")
        if not callable(self.predicate):
            raise GovernanceError(f"Row access policy '{self.name}' predicate is not callable")


@dataclass(frozen=True)
class RowPolicyBinding:
    """
    Attachment of a row access policy to a table.

    ``columns[i]`` of the table feeds ``input_columns[i]`` of the policy.
    """
    object_ref: ObjectRef
    policy_name: str
    columns: Tuple[str, ...]


class ScanState(Enum):
    """Per-row evaluation states of a table scan."""
    START = "start"
    ROW_FILTER = "row_filter"
    COLUMN_MASK = "column_mask"
    EMIT = "emit"
    DONE = "done"


class RowStatus(Enum):
    """Outcome of evaluating a row."""
    EMITTED = "emitted"
    DROPPED = "dropped"
    FAILED = "failed"


@dataclass
class RowOutcome:
    """
    Tagged result of evaluating one row.

    ``row`` is set only for EMITTED outcomes and ``error`` only for FAILED
    ones. A DROPPED row is a normal filtering result, not an error.
    """
    status: RowStatus
    row: Optional[Dict[str, Any]] = None
    error: Optional[GovernanceError] = None
    row_policy: Optional[str] = None
    masked_columns: Dict[str, str] = field(default_factory=dict)
    failed_at: Optional[ScanState] = None

    @property
    def emitted(self) -> bool:
        return self.status == RowStatus.EMITTED

    @property
    def dropped(self) -> bool:
        return self.status == RowStatus.DROPPED

    @property
    def failed(self) -> bool:
        return self.status == RowStatus.FAILED

    @classmethod
    def emit(cls, row: Dict[str, Any], row_policy: Optional[str] = None,
             masked_columns: Optional[Dict[str, str]] = None) -> "RowOutcome":
        return cls(RowStatus.EMITTED, row=row, row_policy=row_policy,
                   masked_columns=masked_columns or {})

    @classmethod
    def drop(cls, row_policy: str) -> "RowOutcome":
        return cls(RowStatus.DROPPED, row_policy=row_policy)

    @classmethod
    def fail(cls, error: GovernanceError, state: ScanState,
             row_policy: Optional[str] = None) -> "RowOutcome":
        return cls(RowStatus.FAILED, error=error, row_policy=row_policy, failed_at=state)
