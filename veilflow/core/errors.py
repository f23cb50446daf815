"""
Exception hierarchy for VeilFlow.

All errors are local validation failures raised synchronously at the
offending operation. None of them are transient, so nothing retries them.
"""


class GovernanceError(ValueError):
    """Base class for all role, tag and policy errors."""


class UnknownRole(GovernanceError):
    """Role is not registered in the hierarchy."""

    def __init__(self, role: str):
        super().__init__(f"Role '{role}' does not exist or not authorized")
        self.role = role


class DuplicateRole(GovernanceError):
    """Role already exists and replace was not requested."""

    def __init__(self, role: str):
        super().__init__(f"Role '{role}' already exists")
        self.role = role


class CycleDetected(GovernanceError):
    """Granting the role would create a cycle in the hierarchy."""

    def __init__(self, parent: str, child: str):
        super().__init__(
            f"Granting role '{parent}' to '{child}' would create a cycle"
        )
        self.parent = parent
        self.child = child


class DuplicateTag(GovernanceError):
    """Tag already exists and replace was not requested."""

    def __init__(self, tag: str):
        super().__init__(f"Tag '{tag}' already exists")
        self.tag = tag


class UnknownTag(GovernanceError):
    """Tag is not registered."""

    def __init__(self, tag: str):
        super().__init__(f"Tag '{tag}' does not exist")
        self.tag = tag


class ValueNotAllowed(GovernanceError):
    """Tag value is outside the tag's allowed values."""

    def __init__(self, tag: str, value, allowed):
        super().__init__(
            f"Value '{value}' is not allowed for tag '{tag}'. "
            f"Allowed values: {sorted(allowed)}"
        )
        self.tag = tag
        self.value = value
        self.allowed = allowed


class IncompatibleType(GovernanceError):
    """Policy signature cannot be applied to a column type."""


class PolicyAlreadyBound(GovernanceError):
    """A policy already occupies the requested binding slot."""


class DuplicatePolicy(GovernanceError):
    """Policy already exists and replace was not requested."""

    def __init__(self, policy: str):
        super().__init__(f"Policy '{policy}' already exists")
        self.policy = policy


class UnknownPolicy(GovernanceError):
    """Policy is not registered."""

    def __init__(self, policy: str):
        super().__init__(f"Policy '{policy}' does not exist")
        self.policy = policy


class PolicyEvaluationError(GovernanceError):
    """A policy function raised while being evaluated."""

    def __init__(self, policy: str, cause: Exception):
        super().__init__(f"Policy '{policy}' failed: {cause}")
        self.policy = policy
        self.cause = cause


class UnknownObject(GovernanceError):
    """Table has not been registered."""

    def __init__(self, object_ref):
        super().__init__(f"Object '{object_ref}' does not exist")
        self.object_ref = object_ref


class MissingColumn(GovernanceError):
    """A column required by an operation is absent."""

    def __init__(self, column: str, where: str = "row"):
        super().__init__(f"Column '{column}' is missing from {where}")
        self.column = column
