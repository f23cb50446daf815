"""
Shared test fixtures.
"""

import pytest

from veilflow.core.config import reset_config


@pytest.fixture(autouse=True)
def fresh_config():
    """Every test starts from the default configuration."""
    reset_config()
    yield
    reset_config()
