"""
VeilFlow Core Module

Provides configuration management, the error hierarchy and entity locks.
"""

from veilflow.core.config import (
    FrameworkConfig,
    GovernanceConfig,
    ObservabilityConfig,
    get_config,
    set_config,
    reset_config,
)

from veilflow.core.errors import (
    GovernanceError,
    UnknownRole,
    DuplicateRole,
    CycleDetected,
    DuplicateTag,
    UnknownTag,
    ValueNotAllowed,
    IncompatibleType,
    PolicyAlreadyBound,
    DuplicatePolicy,
    UnknownPolicy,
    PolicyEvaluationError,
    UnknownObject,
    MissingColumn,
)

from veilflow.core.locks import EntityLocks

__all__ = [
    # Configuration
    "FrameworkConfig",
    "GovernanceConfig",
    "ObservabilityConfig",
    "get_config",
    "set_config",
    "reset_config",

    # Errors
    "GovernanceError",
    "UnknownRole",
    "DuplicateRole",
    "CycleDetected",
    "DuplicateTag",
    "UnknownTag",
    "ValueNotAllowed",
    "IncompatibleType",
    "PolicyAlreadyBound",
    "DuplicatePolicy",
    "UnknownPolicy",
    "PolicyEvaluationError",
    "UnknownObject",
    "MissingColumn",

    # Concurrency
    "EntityLocks",
]
