"""
Governance facade wiring roles, tags, policies, mapping tables and the
access evaluator into one object for host applications.
"""

from typing import Any, Dict, Iterable, Iterator, Mapping, Optional

from veilflow.core.errors import GovernanceError
from veilflow.observability.logging import get_logger
from veilflow.observability.stats import EvaluationStats
from .evaluator import AccessEvaluator, DecisionObserver
from .mapping import MappingTable, mapping_predicate
from .models import Principal, RowAccessPolicy, RowOutcome, normalize_identifier, normalize_roles
from .policy_engine import PolicyEngine
from .roles import PrincipalContext, RoleHierarchy
from .tags import TagRegistry

logger = get_logger("access.governance")


class Governance:
    """
    One governed account: role hierarchy, tag registry, policy engine,
    mapping tables and evaluator.

    Usage:
        gov = Governance()                       # system roles bootstrapped
        gov.roles.create_role("nlt_test_role")
        gov.roles.grant_role("nlt_test_role", "sysadmin")

        gov.create_mapping_table("governance.row_policy_map").insert("nlt_test_role", "V1010")
        gov.create_mapping_row_policy(
            "customer_cardcode_row_policy",
            column="cardcode",
            mapping_table="governance.row_policy_map",
            exempt_roles=["ACCOUNTADMIN", "SYSADMIN"],
        )
        gov.evaluator.bind_row_policy("nlt.raw.opor", "customer_cardcode_row_policy", ["cardcode"])

        principal = gov.use_role("alice", "nlt_test_role")
        rows = list(gov.visible_rows("nlt.raw.opor", principal, source_rows))
    """

    def __init__(self, observer: Optional[DecisionObserver] = None, bootstrap: bool = True):
        self.roles = RoleHierarchy()
        if bootstrap:
            self.roles.bootstrap_system_roles()
        self.principals = PrincipalContext(self.roles)
        self.policies = PolicyEngine()
        self.tags = TagRegistry(self.policies)
        self.mapping_tables: Dict[str, MappingTable] = {}
        self.evaluator = AccessEvaluator(
            principals=self.principals,
            tags=self.tags,
            policies=self.policies,
            observer=observer,
        )

    # ------------------------------------------------------------------
    # Mapping tables and mapping-driven row policies
    # ------------------------------------------------------------------

    def create_mapping_table(self, name: str, replace: bool = False) -> MappingTable:
        """
        Create an empty mapping table.

        ``replace`` empties an existing table in place, so row policies
        already built over it read the rows inserted afterwards.

        Raises:
            GovernanceError: If the table exists and replace is False
        """
        key = normalize_identifier(name)
        existing = self.mapping_tables.get(key)
        if existing is not None:
            if not replace:
                raise GovernanceError(f"Mapping table '{key}' already exists")
            existing.truncate()
            logger.warning(f"Replaced mapping table {key}")
            return existing
        table = MappingTable(key)
        self.mapping_tables[key] = table
        logger.info(f"Created mapping table {key}")
        return table

    def mapping_table(self, name: str) -> MappingTable:
        key = normalize_identifier(name)
        table = self.mapping_tables.get(key)
        if table is None:
            raise GovernanceError(f"Mapping table '{key}' does not exist")
        return table

    def create_mapping_row_policy(
        self,
        name: str,
        column: str,
        mapping_table: str,
        exempt_roles: Iterable[str] = (),
        comment: str = "",
        replace: bool = False,
    ) -> RowAccessPolicy:
        """
        Register a row access policy of the form
        ``role IN exempt_roles OR EXISTS(mapping row for (role, column value))``.
        """
        mapping = self.mapping_table(mapping_table)
        return self.policies.create_row_access_policy(
            name,
            input_columns=[column],
            predicate=mapping_predicate(mapping, column, exempt_roles),
            comment=comment or (
                f"Limit rows based on mapping table of ROLE and "
                f"{normalize_identifier(column)}: {mapping.name}"
            ),
            replace=replace,
        )

    def create_role_row_policy(
        self,
        name: str,
        column: str,
        allowed_roles: Iterable[str],
        comment: str = "",
        replace: bool = False,
    ) -> RowAccessPolicy:
        """Register a row access policy that shows rows only to ``allowed_roles``."""
        allowed = normalize_roles(allowed_roles)
        return self.policies.create_row_access_policy(
            name,
            input_columns=[column],
            predicate=lambda effective_roles, values: bool(allowed & effective_roles),
            comment=comment,
            replace=replace,
        )

    # ------------------------------------------------------------------
    # Sessions and evaluation
    # ------------------------------------------------------------------

    def use_role(self, user: str, role: str) -> Principal:
        return self.principals.use_role(user, role)

    def evaluate_row(self, object_ref, principal: Principal, row: Mapping[str, Any]) -> RowOutcome:
        return self.evaluator.evaluate_row(object_ref, principal, row)

    def scan(self, object_ref, principal: Principal, rows: Iterable[Mapping[str, Any]],
             stats: Optional[EvaluationStats] = None) -> Iterator[RowOutcome]:
        return self.evaluator.scan(object_ref, principal, rows, stats=stats)

    def visible_rows(self, object_ref, principal: Principal, rows: Iterable[Mapping[str, Any]],
                     stats: Optional[EvaluationStats] = None) -> Iterator[Dict[str, Any]]:
        return self.evaluator.visible_rows(object_ref, principal, rows, stats=stats)
