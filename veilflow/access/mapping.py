"""
Row policy mapping tables.

A mapping table is an explicit, auditable (role, permission_key) relation.
Mapping-table row policies show a row when one of the caller's roles is
exempt, or when the mapping holds (role, row value) for one of its roles.
"""

import threading
from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Set, Tuple

from veilflow.observability.logging import get_logger
from .models import RowPredicate, normalize_identifier, normalize_roles

logger = get_logger("access.mapping")


@dataclass(frozen=True)
class MappingRow:
    role: str
    permission_key: str


class MappingTable:
    """
    In-memory (role, permission_key) relation.

    Writes copy-and-swap the underlying set, so readers always see a
    consistent snapshot without locking.

    Usage:
        mapping = MappingTable("governance.row_policy_map")
        mapping.insert("nlt_test_role", "V1010")
        mapping.permits({"NLT_TEST_ROLE", "PUBLIC"}, "V1010")   # True
    """

    def __init__(self, name: str, rows: Optional[Iterable[Tuple[str, str]]] = None):
        self.name = name
        self._rows: FrozenSet[MappingRow] = frozenset()
        self._lock = threading.Lock()
        if rows:
            for role, key in rows:
                self.insert(role, key)

    def insert(self, role: str, permission_key: str):
        row = MappingRow(normalize_identifier(role), str(permission_key))
        with self._lock:
            self._rows = self._rows | {row}
        logger.info(f"Inserted ({row.role}, {row.permission_key}) into {self.name}")

    def delete(self, role: str, permission_key: Optional[str] = None) -> int:
        """
        Delete mapping rows for a role (all keys, or one key).

        Returns:
            Number of rows removed
        """
        role = normalize_identifier(role)
        with self._lock:
            doomed = {
                row for row in self._rows
                if row.role == role
                and (permission_key is None or row.permission_key == str(permission_key))
            }
            self._rows = self._rows - doomed
        if doomed:
            logger.info(f"Deleted {len(doomed)} row(s) for {role} from {self.name}")
        return len(doomed)

    def truncate(self) -> int:
        """Remove every row. Returns the number removed."""
        with self._lock:
            removed = len(self._rows)
            self._rows = frozenset()
        logger.info(f"Truncated {self.name} ({removed} row(s))")
        return removed

    def rows(self) -> List[MappingRow]:
        """All rows, sorted, for auditing."""
        return sorted(self._rows, key=lambda row: (row.role, row.permission_key))

    def keys_for(self, roles: Iterable[str]) -> Set[str]:
        """Permission keys granted to any of ``roles``."""
        roles = set(roles)
        return {row.permission_key for row in self._rows if row.role in roles}

    def permits(self, roles: Iterable[str], permission_key) -> bool:
        if permission_key is None:
            return False
        key = str(permission_key)
        roles = set(roles)
        return any(
            row.role in roles and row.permission_key == key
            for row in self._rows
        )

    def __len__(self) -> int:
        return len(self._rows)

    # Predicates closing over a mapping table are shipped to Spark executors
    def __getstate__(self):
        return {"name": self.name, "rows": self._rows}

    def __setstate__(self, state):
        self.name = state["name"]
        self._rows = state["rows"]
        self._lock = threading.Lock()


def mapping_predicate(
    mapping: MappingTable,
    column: str,
    exempt_roles: Iterable[str] = (),
) -> RowPredicate:
    """
    Build an ``exempt OR EXISTS(mapping row)`` predicate over one column.

    Args:
        mapping: Mapping table consulted at evaluation time
        column: Predicate input column holding the permission key
        exempt_roles: Roles that see every row
    """
    column = normalize_identifier(column)
    exempt = normalize_roles(exempt_roles)

    def predicate(effective_roles: FrozenSet[str], values) -> bool:
        if exempt & effective_roles:
            return True
        return mapping.permits(effective_roles, values.get(column))

    return predicate
