"""
VeilFlow Row and Column Access Control Module.

This module provides:
1. A role hierarchy resolving principals to effective role sets
2. A tag registry with tag-based masking policy bindings
3. A policy engine holding masking and row access policies
4. An access evaluator filtering and masking rows per principal

Policies are pure functions of the caller's effective roles and the row or
column value. Exempt roles are part of the policy, never an evaluator bypass.

Usage:
    from veilflow.access import Governance, masking_functions

    gov = Governance()
    gov.tags.create_tag("pii", allowed_values={"ADDRESS"})
    gov.policies.create_masking_policy(
        "pii_string_mask", "string", "string",
        masking_functions.pii_string_mask(),
    )
    gov.tags.register_table("nlt.raw.opor", {"address": "string"})
    gov.tags.assign_tag("nlt.raw.opor", "address", "pii", "ADDRESS")
    gov.tags.bind_masking_policy("pii", "pii_string_mask")

    principal = gov.use_role("alice", "public")
    outcome = gov.evaluate_row("nlt.raw.opor", principal, {"address": "1 Main St"})
"""

from .models import (
    ObjectRef,
    Role,
    Principal,
    Tag,
    TagAssignment,
    MaskingPolicy,
    RowAccessPolicy,
    RowPolicyBinding,
    ScanState,
    RowStatus,
    RowOutcome,
)

from .data_types import TypeFamily, type_family, is_assignable
from .roles import RoleHierarchy, PrincipalContext
from .policy_engine import PolicyEngine
from .tags import TagRegistry, TagReference
from .mapping import MappingTable, MappingRow, mapping_predicate
from .masking_functions import MaskingStrategy
from . import masking_functions
from .evaluator import AccessEvaluator, CompiledAccess
from .governance import Governance
from .metadata_loader import GovernanceMetadataLoader

__all__ = [
    # Enums
    'ScanState',
    'RowStatus',
    'TypeFamily',
    'MaskingStrategy',

    # Data models
    'ObjectRef',
    'Role',
    'Principal',
    'Tag',
    'TagAssignment',
    'TagReference',
    'MaskingPolicy',
    'RowAccessPolicy',
    'RowPolicyBinding',
    'RowOutcome',
    'MappingRow',

    # Type rules
    'type_family',
    'is_assignable',

    # Core components
    'RoleHierarchy',
    'PrincipalContext',
    'PolicyEngine',
    'TagRegistry',
    'MappingTable',
    'mapping_predicate',
    'masking_functions',
    'AccessEvaluator',
    'CompiledAccess',

    # Facade and metadata
    'Governance',
    'GovernanceMetadataLoader',
]
