"""
Role hierarchy and principal context.

Roles form a directed acyclic graph: granting role A to role B makes A a
parent of B, and B inherits everything A can do. A principal's effective
role set is its active role plus every role reachable over parent edges.
"""

import threading
from collections import deque
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from veilflow.core.config import get_config
from veilflow.core.errors import CycleDetected, DuplicateRole, UnknownRole
from veilflow.observability.logging import get_logger
from .models import Principal, Role, normalize_identifier

logger = get_logger("access.roles")


class RoleHierarchy:
    """
    Registry of roles and the grants between them.

    Stored as adjacency sets (child -> parents). Grants are serialised on a
    single lock because cycle detection reads the whole graph; lookups do
    not lock.

    Usage:
        hierarchy = RoleHierarchy()
        hierarchy.bootstrap_system_roles()
        hierarchy.create_role("nlt_test_role")
        hierarchy.grant_role("nlt_test_role", "sysadmin")

        hierarchy.effective_roles("ACCOUNTADMIN")
        # {"ACCOUNTADMIN", "SYSADMIN", "SECURITYADMIN", "USERADMIN",
        #  "NLT_TEST_ROLE", "PUBLIC"}
    """

    def __init__(self):
        self._roles: Dict[str, Role] = {}
        self._write_lock = threading.RLock()
        self._version = 0

    @property
    def version(self) -> int:
        """Monotonic counter bumped on every hierarchy change."""
        return self._version

    # ------------------------------------------------------------------
    # Role definitions
    # ------------------------------------------------------------------

    def create_role(self, name: str, comment: str = "", replace: bool = False) -> Role:
        """
        Create a role.

        When ``auto_grant_public`` is configured and the public role exists,
        the new role inherits it.

        Args:
            name: Role identifier
            comment: Description
            replace: Recreate the role if it already exists. Existing grants
                to and from the role are removed.

        Raises:
            DuplicateRole: If the role exists and replace is False
        """
        name = normalize_identifier(name)
        governance = get_config().governance
        public_role = normalize_identifier(governance.public_role)

        with self._write_lock:
            if name in self._roles:
                if not replace:
                    raise DuplicateRole(name)
                logger.warning(f"Replacing role {name}; its grants are dropped")
                self._detach(name)

            role = Role(name=name, comment=comment)
            if (
                governance.auto_grant_public
                and name != public_role
                and public_role in self._roles
            ):
                role.parents.add(public_role)

            self._roles[name] = role
            self._version += 1

        logger.info(f"Created role {name}")
        return role

    def drop_role(self, name: str):
        """Remove a role and every grant that references it."""
        name = normalize_identifier(name)
        with self._write_lock:
            if name not in self._roles:
                raise UnknownRole(name)
            self._detach(name)
            del self._roles[name]
            self._version += 1
        logger.info(f"Dropped role {name}")

    def _detach(self, name: str):
        for role in self._roles.values():
            role.parents.discard(name)

    def bootstrap_system_roles(self):
        """
        Create the system-defined roles and their standard grants.

        PUBLIC is created first so that every other system role inherits it.
        Existing roles are left untouched.
        """
        governance = get_config().governance
        public_role = normalize_identifier(governance.public_role)

        with self._write_lock:
            if public_role not in self._roles:
                self.create_role(public_role, comment="Pseudo-role granted to every role")
            for name in governance.system_roles:
                if normalize_identifier(name) not in self._roles:
                    self.create_role(name, comment="System-defined role")
            for parent, child in governance.system_grants:
                self.grant_role(parent, child)

    def get_role(self, name: str) -> Role:
        name = normalize_identifier(name)
        role = self._roles.get(name)
        if role is None:
            raise UnknownRole(name)
        return role

    def has_role(self, name: str) -> bool:
        return normalize_identifier(name) in self._roles

    def show_roles(self) -> List[Role]:
        """List roles sorted by name."""
        return [self._roles[name] for name in sorted(self._roles)]

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def grant_role(self, parent: str, child: str):
        """
        Grant ``parent`` to ``child`` (child inherits parent).

        Raises:
            UnknownRole: If either role is not registered
            CycleDetected: If ``child`` is already reachable from ``parent``
                (including parent == child)
        """
        parent = normalize_identifier(parent)
        child = normalize_identifier(child)

        with self._write_lock:
            for name in (parent, child):
                if name not in self._roles:
                    raise UnknownRole(name)

            # Adding child -> parent closes a cycle iff child is already
            # an ancestor of parent
            if child in self._ancestors(parent):
                raise CycleDetected(parent, child)

            if parent in self._roles[child].parents:
                return

            self._roles[child].parents.add(parent)
            self._version += 1

        logger.info(f"Granted role {parent} to role {child}")

    def revoke_role(self, parent: str, child: str):
        """Revoke a previously granted role. Revoking a missing grant is a no-op."""
        parent = normalize_identifier(parent)
        child = normalize_identifier(child)

        with self._write_lock:
            for name in (parent, child):
                if name not in self._roles:
                    raise UnknownRole(name)
            if parent not in self._roles[child].parents:
                return
            self._roles[child].parents.discard(parent)
            self._version += 1

        logger.info(f"Revoked role {parent} from role {child}")

    # ------------------------------------------------------------------
    # Closure
    # ------------------------------------------------------------------

    def _ancestors(self, name: str) -> Set[str]:
        """Breadth-first closure over parent edges, including ``name``."""
        seen = {name}
        queue = deque([name])
        while queue:
            current = queue.popleft()
            role = self._roles.get(current)
            if role is None:
                continue
            # Copy: a concurrent grant may add to this set
            for parent in list(role.parents):
                if parent not in seen:
                    seen.add(parent)
                    queue.append(parent)
        return seen

    def effective_roles(self, name: str) -> FrozenSet[str]:
        """
        Return the role plus all roles it transitively inherits.

        Raises:
            UnknownRole: If the role is not registered
        """
        name = normalize_identifier(name)
        if name not in self._roles:
            raise UnknownRole(name)
        return frozenset(self._ancestors(name))

    def inheritors(self, name: str) -> FrozenSet[str]:
        """Roles that inherit ``name`` (directly or transitively), including itself."""
        name = normalize_identifier(name)
        if name not in self._roles:
            raise UnknownRole(name)
        return frozenset(
            role for role in self._roles
            if name in self._ancestors(role)
        )


class PrincipalContext:
    """
    Resolves principals to effective role sets for one session layer.

    Resolutions are cached against the hierarchy version, so any grant,
    revoke or drop makes the next lookup re-resolve. A principal whose
    active role was dropped fails with ``UnknownRole``. Scans resolve once
    and keep that role set until they finish.

    Usage:
        context = PrincipalContext(hierarchy)
        principal = context.use_role("alice", "nlt_test_role")
        roles = context.effective_roles(principal)
    """

    def __init__(self, hierarchy: RoleHierarchy):
        self.hierarchy = hierarchy
        self._cache: Dict[Principal, Tuple[int, FrozenSet[str]]] = {}
        self._lock = threading.Lock()

    def use_role(self, user: str, role: str) -> Principal:
        """
        Switch a session to ``role``.

        Raises:
            UnknownRole: If the role is not registered
        """
        principal = Principal(user=user, active_role=role)
        self.effective_roles(principal)
        logger.debug(f"User {user} switched to role {principal.active_role}")
        return principal

    def effective_roles(self, principal: Principal) -> FrozenSet[str]:
        """
        Raises:
            UnknownRole: If the principal's active role is not registered
        """
        # Read before resolving: a change landing mid-resolution leaves a
        # stale stamp and forces another resolution next time
        version = self.hierarchy.version
        cached = self._cache.get(principal)
        if cached is not None and cached[0] == version:
            return cached[1]

        try:
            roles = self.hierarchy.effective_roles(principal.active_role)
        except UnknownRole:
            self.refresh(principal)
            raise

        with self._lock:
            self._cache[principal] = (version, roles)
        return roles

    def refresh(self, principal: Optional[Principal] = None):
        """Drop cached role sets (all of them, or one principal's)."""
        with self._lock:
            if principal is None:
                self._cache.clear()
            else:
                self._cache.pop(principal, None)
