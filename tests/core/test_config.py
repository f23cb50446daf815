"""
Tests for framework configuration.
"""

import veilflow
import veilflow.access
from veilflow.core.config import (
    FrameworkConfig,
    GovernanceConfig,
    ObservabilityConfig,
    get_config,
    reset_config,
    set_config,
)


class TestFrameworkConfig:
    """Test configuration construction."""

    def test_defaults(self):
        config = FrameworkConfig(env="dev")

        assert config.get_catalog_name() == "veilflow_dev"
        assert config.governance.public_role == "PUBLIC"
        assert config.governance.auto_grant_public
        assert ("SYSADMIN", "ACCOUNTADMIN") in config.governance.system_grants
        assert config.observability.log_level == "INFO"
        assert not config.observability.audit_to_delta

    def test_env_from_environment(self, monkeypatch):
        monkeypatch.setenv("ENV", "test")

        assert FrameworkConfig().env == "test"

    def test_from_env(self):
        assert FrameworkConfig.from_env("prod").get_catalog_name() == "veilflow_prod"

    def test_from_dict_with_nested_sections(self):
        config = FrameworkConfig.from_dict({
            "env": "prod",
            "catalog_prefix": "governed",
            "governance": {"auto_grant_public": False},
            "observability": {"log_level": "DEBUG", "audit_to_delta": True},
        })

        assert config.get_catalog_name() == "governed_prod"
        assert isinstance(config.governance, GovernanceConfig)
        assert not config.governance.auto_grant_public
        assert isinstance(config.observability, ObservabilityConfig)
        assert config.observability.audit_to_delta


class TestGlobalConfig:
    """Test the process-wide configuration instance."""

    def test_get_creates_default(self):
        assert isinstance(get_config(), FrameworkConfig)
        assert get_config() is get_config()

    def test_set_and_reset(self):
        custom = FrameworkConfig(env="test")
        set_config(custom)

        assert get_config() is custom

        reset_config()
        assert get_config() is not custom


class TestPackageVersion:
    """Test the package exposes one version."""

    def test_subpackage_does_not_override_version(self):
        assert getattr(veilflow.access, "__version__", veilflow.__version__) == veilflow.__version__
