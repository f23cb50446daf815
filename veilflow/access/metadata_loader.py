"""
Governance metadata loader.

Loads roles, tags, masking and row access policies, table definitions and
mapping tables from a YAML registry and applies them to a Governance object.
Policies are declared as data (strategy names, exempt roles, mapping
tables) so they can be reviewed and versioned alongside table metadata.
"""

import yaml
from pathlib import Path
from typing import Any, Dict, Optional

from veilflow.core.errors import GovernanceError
from veilflow.observability.logging import get_logger
from .evaluator import DecisionObserver
from .governance import Governance
from .masking_functions import strategy_mask, tag_value_mask

logger = get_logger("access.metadata_loader")


class GovernanceMetadataLoader:
    """
    Load governance metadata from a registry directory.

    Registry structure:
        {registry_path}/governance/
        ├── roles.yaml              # system role bootstrap, custom roles, grants
        ├── tags.yaml               # tags, allowed values, bound masking policies
        ├── policies.yaml           # masking and row access policies
        ├── tables.yaml             # column types, tag assignments, row policies
        └── mappings.{env}.yaml     # row policy mapping tables per environment

    Every file is optional; the governance directory itself is not.

    Usage:
        loader = GovernanceMetadataLoader(
            registry_path="/Volumes/catalog/governance_registry",
            environment="dev"
        )
        gov = loader.build()
    """

    def __init__(
        self,
        registry_path: str,
        environment: str,
        cache_enabled: bool = True
    ):
        """
        Initialize metadata loader.

        Args:
            registry_path: Path to registry root
            environment: Environment (dev, test, prod)
            cache_enabled: Cache parsed metadata between calls
        """
        self.registry_path = Path(registry_path)
        self.governance_path = self.registry_path / "governance"
        self.environment = environment
        self.cache_enabled = cache_enabled

        self._metadata_cache: Optional[Dict[str, Any]] = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _read_yaml(self, filename: str) -> Dict:
        path = self.governance_path / filename
        if not path.exists():
            return {}
        with open(path) as f:
            data = yaml.safe_load(f)
        return data or {}

    def load_metadata(self) -> Dict[str, Any]:
        """
        Read and merge all registry files.

        Returns:
            Dict with keys: bootstrap_system_roles, roles, tags,
            masking_policies, row_access_policies, tables, mapping_tables

        Raises:
            FileNotFoundError: If the governance directory does not exist
            yaml.YAMLError: If a file is malformed
        """
        if self.cache_enabled and self._metadata_cache is not None:
            return self._metadata_cache

        if not self.governance_path.is_dir():
            raise FileNotFoundError(f"Governance registry not found: {self.governance_path}")

        roles_data = self._read_yaml("roles.yaml")
        tags_data = self._read_yaml("tags.yaml")
        policies_data = self._read_yaml("policies.yaml")
        tables_data = self._read_yaml("tables.yaml")
        mappings_data = self._read_yaml(f"mappings.{self.environment}.yaml")

        metadata = {
            "bootstrap_system_roles": roles_data.get("bootstrap_system_roles", True),
            "roles": roles_data.get("roles", {}) or {},
            "tags": tags_data.get("tags", {}) or {},
            "masking_policies": policies_data.get("masking_policies", {}) or {},
            "row_access_policies": policies_data.get("row_access_policies", {}) or {},
            "tables": tables_data.get("tables", {}) or {},
            "mapping_tables": mappings_data.get("mapping_tables", {}) or {},
        }

        logger.info(
            f"Loaded governance metadata for {self.environment}: "
            f"{len(metadata['roles'])} role(s), {len(metadata['tags'])} tag(s), "
            f"{len(metadata['masking_policies'])} masking policy(ies), "
            f"{len(metadata['row_access_policies'])} row access policy(ies), "
            f"{len(metadata['tables'])} table(s)"
        )

        if self.cache_enabled:
            self._metadata_cache = metadata
        return metadata

    def clear_cache(self):
        """Clear all caches."""
        self._metadata_cache = None

    # ------------------------------------------------------------------
    # Applying
    # ------------------------------------------------------------------

    def build(self, observer: Optional[DecisionObserver] = None) -> Governance:
        """Create a Governance object configured from the registry."""
        metadata = self.load_metadata()
        governance = Governance(
            observer=observer,
            bootstrap=bool(metadata["bootstrap_system_roles"]),
        )
        self.apply(governance, metadata)
        return governance

    def apply(self, governance: Governance, metadata: Optional[Dict[str, Any]] = None):
        """
        Apply metadata to an existing Governance object.

        Order matters: roles, then policies and mapping tables, then tags,
        then tables (columns, assignments, row policies), then tag/masking
        bindings last so type checks see every tagged column.
        """
        metadata = metadata or self.load_metadata()

        self._apply_roles(governance, metadata["roles"])
        self._apply_mapping_tables(governance, metadata["mapping_tables"])
        self._apply_masking_policies(governance, metadata["masking_policies"])
        self._apply_row_access_policies(governance, metadata["row_access_policies"])
        self._apply_tags(governance, metadata["tags"])
        self._apply_tables(governance, metadata["tables"])
        self._apply_tag_bindings(governance, metadata["tags"])

    def _apply_roles(self, governance: Governance, roles: Dict):
        for name, role_def in roles.items():
            role_def = role_def or {}
            if not governance.roles.has_role(name):
                governance.roles.create_role(name, comment=role_def.get("comment", ""))

        # Grants after all roles exist
        for name, role_def in roles.items():
            role_def = role_def or {}
            for parent in role_def.get("inherits", []):
                governance.roles.grant_role(parent, name)
            for child in role_def.get("granted_to", []):
                governance.roles.grant_role(name, child)

    def _apply_mapping_tables(self, governance: Governance, mapping_tables: Dict):
        for name, rows in mapping_tables.items():
            table = governance.create_mapping_table(name, replace=True)
            for row in rows or []:
                if isinstance(row, dict):
                    table.insert(row["role"], row["key"])
                else:
                    role, key = row
                    table.insert(role, key)

    def _apply_masking_policies(self, governance: Governance, policies: Dict):
        for name, policy_def in policies.items():
            governance.policies.create_masking_policy(
                name,
                input_type=policy_def.get("input_type", "string"),
                return_type=policy_def.get("return_type", policy_def.get("input_type", "string")),
                function=self._build_mask_function(name, policy_def),
                comment=policy_def.get("comment", ""),
                replace=True,
            )

    def _build_mask_function(self, name: str, policy_def: Dict):
        exempt_roles = policy_def.get("exempt_roles", [])
        by_tag_value = policy_def.get("by_tag_value")
        strategy = policy_def.get("strategy", "redact")

        try:
            if by_tag_value:
                return tag_value_mask(by_tag_value, default=strategy, exempt_roles=exempt_roles)
            return strategy_mask(
                strategy,
                exempt_roles=exempt_roles,
                replacement=policy_def.get("replacement"),
            )
        except ValueError as e:
            raise GovernanceError(f"Masking policy '{name}': {e}") from e

    def _apply_row_access_policies(self, governance: Governance, policies: Dict):
        for name, policy_def in policies.items():
            policy_type = policy_def.get("type", "mapping")
            comment = policy_def.get("comment", "")

            if policy_type == "mapping":
                governance.create_mapping_row_policy(
                    name,
                    column=policy_def["input_column"],
                    mapping_table=policy_def["mapping_table"],
                    exempt_roles=policy_def.get("exempt_roles", []),
                    comment=comment,
                    replace=True,
                )
            elif policy_type == "roles":
                governance.create_role_row_policy(
                    name,
                    column=policy_def["input_column"],
                    allowed_roles=policy_def.get("allowed_roles", []),
                    comment=comment,
                    replace=True,
                )
            else:
                raise GovernanceError(
                    f"Row access policy '{name}': unsupported type '{policy_type}'"
                )

    def _apply_tags(self, governance: Governance, tags: Dict):
        for name, tag_def in tags.items():
            tag_def = tag_def or {}
            governance.tags.create_tag(
                name,
                allowed_values=tag_def.get("allowed_values"),
                comment=tag_def.get("comment", ""),
                replace=True,
            )

    def _apply_tables(self, governance: Governance, tables: Dict):
        for qualified_name, table_def in tables.items():
            governance.tags.register_table(qualified_name, table_def.get("columns", {}))

            for column, assignments in (table_def.get("tags") or {}).items():
                for tag, value in assignments.items():
                    governance.tags.assign_tag(qualified_name, column, tag, value)

            row_policy = table_def.get("row_access_policy")
            if row_policy:
                governance.evaluator.bind_row_policy(
                    qualified_name,
                    row_policy["policy"],
                    row_policy.get("columns", []),
                    replace=True,
                )

    def _apply_tag_bindings(self, governance: Governance, tags: Dict):
        for name, tag_def in tags.items():
            for policy_name in (tag_def or {}).get("masking_policies", []):
                governance.tags.bind_masking_policy(name, policy_name)

