"""
Hierarchy table (``hierarchy_kernel.domain.hierarchy``).

Responsibility
--------------
The fixed six-role chain used for forwarding and rollback, O(1) rank
lookups, the scope each role is resolved in, and the actor / role
assignment value objects.

Architecture position
---------------------
**Kernel domain layer** -- pure value objects.  ZERO I/O.

Invariants enforced
-------------------
* The chain is ``PMO > CEO > Advisor > YP > HOD > DivisionYP`` and never
  changes at runtime.
* When an actor holds several hierarchy roles, the highest-ranked one is
  the actor's hierarchy role.
* "Next" moves down the chain (towards DivisionYP), "previous" moves up
  (towards PMO).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class HierarchyRole(str, Enum):
    """Ranked hierarchy roles, declared highest authority first."""

    PMO = "PMO"
    CEO = "CEO"
    ADVISOR = "Advisor"
    YP = "YP"
    HOD = "HOD"
    DIVISION_YP = "DivisionYP"


HIERARCHY_CHAIN: tuple[HierarchyRole, ...] = tuple(HierarchyRole)

# 0 = highest authority
_RANK: dict[HierarchyRole, int] = {role: i for i, role in enumerate(HIERARCHY_CHAIN)}

LOWEST_ROLE = HIERARCHY_CHAIN[-1]
HIGHEST_ROLE = HIERARCHY_CHAIN[0]


class ScopeLevel(str, Enum):
    """How much of a Scope is needed to pick the holder of a role."""

    GLOBAL = "global"
    STATE = "state"
    BRANCH = "branch"


ROLE_SCOPE_LEVEL: dict[HierarchyRole, ScopeLevel] = {
    HierarchyRole.PMO: ScopeLevel.GLOBAL,
    HierarchyRole.CEO: ScopeLevel.GLOBAL,
    HierarchyRole.ADVISOR: ScopeLevel.STATE,
    HierarchyRole.YP: ScopeLevel.STATE,
    HierarchyRole.HOD: ScopeLevel.BRANCH,
    HierarchyRole.DIVISION_YP: ScopeLevel.BRANCH,
}


def rank(role: HierarchyRole) -> int:
    """Position in the chain; lower number means more authority."""
    return _RANK[role]


def next_in_chain(role: HierarchyRole) -> HierarchyRole | None:
    """The next lower-rank role, or None at DivisionYP."""
    i = _RANK[role]
    if i + 1 < len(HIERARCHY_CHAIN):
        return HIERARCHY_CHAIN[i + 1]
    return None


def previous_in_chain(role: HierarchyRole) -> HierarchyRole | None:
    """The next higher-rank role, or None at PMO."""
    i = _RANK[role]
    if i > 0:
        return HIERARCHY_CHAIN[i - 1]
    return None


def highest_role(roles) -> HierarchyRole | None:
    """Highest-ranked role among ``roles`` (highest rank wins), or None."""
    best: HierarchyRole | None = None
    for role in roles:
        if best is None or _RANK[role] < _RANK[best]:
            best = role
    return best


@dataclass(frozen=True)
class Scope:
    """Geographic / organizational scope narrowing who holds a scoped role."""

    state: str | None = None
    branch: str | None = None

    def narrowed_for(self, role: HierarchyRole) -> Scope:
        """Drop the parts of the scope that ``role`` is not resolved by."""
        level = ROLE_SCOPE_LEVEL[role]
        if level is ScopeLevel.GLOBAL:
            return Scope()
        if level is ScopeLevel.STATE:
            return Scope(state=self.state)
        return self


@dataclass(frozen=True)
class RoleAssignment:
    """A hierarchy role held by an identity, with its scope."""

    role: HierarchyRole
    state: str | None = None
    branch: str | None = None

    def matches(self, role: HierarchyRole, scope: Scope) -> bool:
        """Does this assignment make its holder the ``role`` holder for ``scope``?

        Global roles ignore scope.  State roles need the state to match.
        Branch roles need the state to match, and the branch too when the
        scope names one.
        """
        if self.role is not role:
            return False
        level = ROLE_SCOPE_LEVEL[role]
        if level is ScopeLevel.GLOBAL:
            return True
        if scope.state is None or self.state != scope.state:
            return False
        if level is ScopeLevel.BRANCH and scope.branch is not None:
            return self.branch == scope.branch
        return True


@dataclass(frozen=True)
class Actor:
    """The identity performing an operation and the roles it holds."""

    actor_id: str
    assignments: tuple[RoleAssignment, ...] = field(default_factory=tuple)

    @property
    def roles(self) -> frozenset[HierarchyRole]:
        return frozenset(a.role for a in self.assignments)

    @property
    def hierarchy_role(self) -> HierarchyRole | None:
        return highest_role(self.roles)

    def holds(self, role: HierarchyRole) -> bool:
        return any(a.role is role for a in self.assignments)

    def state_for(self, role: HierarchyRole) -> str | None:
        """State attached to the actor's assignment of ``role``, if any."""
        for a in self.assignments:
            if a.role is role:
                return a.state
        return None
