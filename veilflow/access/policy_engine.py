"""
Policy engine: registry and evaluation of masking and row access policies.

Policies are data: a name mapped to a pure callable. The engine never
special-cases roles; exemptions live inside the policy functions.
"""

from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from veilflow.core.errors import DuplicatePolicy, MissingColumn, PolicyEvaluationError, UnknownPolicy
from veilflow.core.locks import EntityLocks
from veilflow.observability.logging import get_logger
from .models import (
    MaskFunction,
    MaskingPolicy,
    RowAccessPolicy,
    RowPredicate,
    normalize_identifier,
)

logger = get_logger("access.policy_engine")

Policy = Union[MaskingPolicy, RowAccessPolicy]


class PolicyEngine:
    """
    Holds named masking and row access policies and evaluates them.

    Masking and row access policies share one namespace.

    Usage:
        engine = PolicyEngine()
        engine.create_masking_policy(
            "pii_string_mask", "string", "string",
            lambda roles, tag_value, val: val if "SYSADMIN" in roles else "**MASKED**",
        )

        engine.evaluate_mask("pii_string_mask", frozenset({"PUBLIC"}), "ADDRESS", "1 Main St")
        # "**MASKED**"
    """

    def __init__(self):
        self._policies: Dict[str, Policy] = {}
        self._locks = EntityLocks()

    # ------------------------------------------------------------------
    # Definitions
    # ------------------------------------------------------------------

    def _register(self, policy: Policy, replace: bool) -> Policy:
        with self._locks.hold(("policy", policy.name)):
            existing = self._policies.get(policy.name)
            if existing is not None:
                if not replace:
                    raise DuplicatePolicy(policy.name)
                if type(existing) is not type(policy):
                    raise DuplicatePolicy(policy.name)
                logger.warning(f"Replacing policy {policy.name}")
            self._policies[policy.name] = policy

        logger.info(f"Registered {type(policy).__name__} {policy.name}")
        return policy

    def create_masking_policy(
        self,
        name: str,
        input_type: str,
        return_type: str,
        function: MaskFunction,
        comment: str = "",
        replace: bool = False,
    ) -> MaskingPolicy:
        """
        Register a masking policy.

        Args:
            name: Policy identifier
            input_type: Declared type of the masked column value
            return_type: Declared type of the function result
            function: Pure callable (effective_roles, tag_value, raw_value)
            comment: Description
            replace: Overwrite an existing masking policy of the same name

        Raises:
            DuplicatePolicy: If the name is taken and replace is False
            ValueError: If a type name is not recognised
        """
        policy = MaskingPolicy(
            name=normalize_identifier(name),
            input_type=input_type,
            return_type=return_type,
            function=function,
            comment=comment,
        )
        return self._register(policy, replace)

    def create_row_access_policy(
        self,
        name: str,
        input_columns: Sequence[str],
        predicate: RowPredicate,
        comment: str = "",
        replace: bool = False,
    ) -> RowAccessPolicy:
        """
        Register a row access policy.

        Args:
            name: Policy identifier
            input_columns: Ordered predicate argument names
            predicate: Pure callable (effective_roles, {column: value}) -> bool
            comment: Description
            replace: Overwrite an existing row access policy of the same name
        """
        policy = RowAccessPolicy(
            name=normalize_identifier(name),
            input_columns=tuple(normalize_identifier(c) for c in input_columns),
            predicate=predicate,
            comment=comment,
        )
        return self._register(policy, replace)

    def drop_policy(self, name: str):
        name = normalize_identifier(name)
        with self._locks.hold(("policy", name)):
            if self._policies.pop(name, None) is None:
                raise UnknownPolicy(name)
        logger.info(f"Dropped policy {name}")

    def has_policy(self, name: str) -> bool:
        return normalize_identifier(name) in self._policies

    def get_masking_policy(self, name: str) -> MaskingPolicy:
        name = normalize_identifier(name)
        policy = self._policies.get(name)
        if not isinstance(policy, MaskingPolicy):
            raise UnknownPolicy(name)
        return policy

    def get_row_access_policy(self, name: str) -> RowAccessPolicy:
        name = normalize_identifier(name)
        policy = self._policies.get(name)
        if not isinstance(policy, RowAccessPolicy):
            raise UnknownPolicy(name)
        return policy

    def show_policies(self) -> List[Policy]:
        return [self._policies[name] for name in sorted(self._policies)]

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def evaluate_mask(
        self,
        policy_name: str,
        effective_roles: FrozenSet[str],
        tag_value: Optional[str],
        raw_value: Any,
    ) -> Any:
        """
        Apply a masking policy to one value.

        Raises:
            UnknownPolicy: If no masking policy has this name
            PolicyEvaluationError: If the policy function raises
        """
        policy = self.get_masking_policy(policy_name)
        try:
            return policy.function(frozenset(effective_roles), tag_value, raw_value)
        except Exception as e:
            raise PolicyEvaluationError(policy.name, e) from e

    def evaluate_row_policy(
        self,
        policy_name: str,
        effective_roles: FrozenSet[str],
        row: Mapping[str, Any],
    ) -> bool:
        """
        Evaluate a row access policy against a row.

        The policy's declared input columns are looked up in ``row`` by
        name (case-insensitive).

        Raises:
            UnknownPolicy: If no row access policy has this name
            MissingColumn: If a declared input column is absent from the row
        """
        policy = self.get_row_access_policy(policy_name)
        by_name = {normalize_identifier(key): key for key in row}

        values = {}
        for column in policy.input_columns:
            key = by_name.get(column)
            if key is None:
                raise MissingColumn(column, where=f"row evaluated by {policy.name}")
            values[column] = row[key]

        try:
            return bool(policy.predicate(frozenset(effective_roles), values))
        except Exception as e:
            raise PolicyEvaluationError(policy.name, e) from e

    def resolve_mask(
        self,
        candidates: Iterable[Tuple[str, Optional[str]]],
        effective_roles: FrozenSet[str],
        raw_value: Any,
    ) -> Tuple[Any, Optional[str]]:
        """
        Apply several masking policies to the same value.

        Candidates are (policy_name, tag_value) pairs in tag-assignment
        order. The first policy whose result differs from the raw value
        wins; if none changes it, the raw value passes through.

        Returns:
            Tuple of (value, name of the winning policy or None)
        """
        for policy_name, tag_value in candidates:
            masked = self.evaluate_mask(policy_name, effective_roles, tag_value, raw_value)
            if not same_value(masked, raw_value):
                return masked, normalize_identifier(policy_name)
        return raw_value, None


def same_value(left: Any, right: Any) -> bool:
    """Strict equality: ``1`` and ``True`` or ``1`` and ``1.0`` differ."""
    if left is right:
        return True
    return type(left) is type(right) and left == right
