"""
Configuration management for VeilFlow.

Centralizes governance defaults (system roles, PUBLIC handling) and
observability settings (log level, Delta persistence of logs and audit events).
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional
import os


@dataclass
class GovernanceConfig:
    """Configuration for role bootstrap and identifier handling."""

    public_role: str = "PUBLIC"

    # Every newly created role inherits the public role when enabled
    auto_grant_public: bool = True

    # (parent, child) grants applied by RoleHierarchy.bootstrap_system_roles()
    system_roles: List[str] = field(default_factory=lambda: [
        "ORGADMIN",
        "ACCOUNTADMIN",
        "SECURITYADMIN",
        "USERADMIN",
        "SYSADMIN",
        "PUBLIC",
    ])
    system_grants: List[tuple] = field(default_factory=lambda: [
        ("USERADMIN", "SECURITYADMIN"),
        ("SECURITYADMIN", "ACCOUNTADMIN"),
        ("SYSADMIN", "ACCOUNTADMIN"),
    ])

    # Identifiers (roles, tags, policies, tables) are case-insensitive
    uppercase_identifiers: bool = True


@dataclass
class ObservabilityConfig:
    """Configuration for observability features."""

    # Logging
    log_level: str = "INFO"
    log_to_delta: bool = False
    log_table: str = "veilflow.logs"

    # Decision audit
    audit_enabled: bool = True
    audit_to_delta: bool = False
    audit_table: str = "veilflow.access_decisions"

    # Evaluation statistics
    stats_table: str = "veilflow.evaluation_stats"


@dataclass
class FrameworkConfig:
    """
    Main framework configuration.

    This is the single source of truth for all configuration.
    """

    # Environment
    env: str = field(default_factory=lambda: os.getenv("ENV", "dev"))
    catalog_prefix: str = "veilflow"

    # Sub-configurations
    governance: GovernanceConfig = field(default_factory=GovernanceConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def get_catalog_name(self) -> str:
        """Get catalog name for current environment."""
        return f"{self.catalog_prefix}_{self.env}"

    @classmethod
    def from_env(cls, env: str) -> "FrameworkConfig":
        """Create configuration for specific environment."""
        return cls(env=env)

    @classmethod
    def from_dict(cls, config_dict: Dict) -> "FrameworkConfig":
        """
        Create configuration from dictionary.

        Nested ``governance`` and ``observability`` sections may be given
        as plain dictionaries (e.g. loaded from YAML).
        """
        values = dict(config_dict)
        if isinstance(values.get("governance"), dict):
            values["governance"] = GovernanceConfig(**values["governance"])
        if isinstance(values.get("observability"), dict):
            values["observability"] = ObservabilityConfig(**values["observability"])
        return cls(**values)


# Global configuration instance
_config: Optional[FrameworkConfig] = None


def get_config() -> FrameworkConfig:
    """Get global configuration instance."""
    global _config
    if _config is None:
        _config = FrameworkConfig()
    return _config


def set_config(config: FrameworkConfig):
    """Set global configuration instance."""
    global _config
    _config = config


def reset_config():
    """Reset global configuration to None."""
    global _config
    _config = None
