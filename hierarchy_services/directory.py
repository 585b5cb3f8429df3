"""
hierarchy_services.directory -- In-memory identity directory.

Responsibility:
    Reference implementation of the ``DirectoryLookup`` collaborator for
    tests, fixtures and single-process deployments.  Holds
    (identity, RoleAssignment) pairs and answers "who holds role R in
    scope S" from them.

Resolution order:
    When several identities match, the one registered first wins.  The
    order is stable across calls.
"""

from __future__ import annotations

import threading
from collections.abc import Iterable

from hierarchy_kernel.domain.hierarchy import Actor, HierarchyRole, RoleAssignment, Scope


class InMemoryDirectory:
    """Thread-safe ``DirectoryLookup`` backed by a list of assignments."""

    def __init__(self, entries: Iterable[tuple[str, RoleAssignment]] = ()):
        self._lock = threading.Lock()
        self._entries: list[tuple[str, RoleAssignment]] = list(entries)

    @classmethod
    def from_actors(cls, actors: Iterable[Actor]) -> InMemoryDirectory:
        return cls(
            (actor.actor_id, assignment)
            for actor in actors
            for assignment in actor.assignments
        )

    def register(self, identity: str, assignment: RoleAssignment) -> None:
        with self._lock:
            self._entries.append((identity, assignment))

    def register_actor(self, actor: Actor) -> None:
        for assignment in actor.assignments:
            self.register(actor.actor_id, assignment)

    def remove(self, identity: str, role: HierarchyRole | None = None) -> int:
        """Drop an identity's assignments (all, or one role). Returns count removed."""
        with self._lock:
            before = len(self._entries)
            self._entries = [
                (ident, a) for ident, a in self._entries
                if not (ident == identity and (role is None or a.role is role))
            ]
            return before - len(self._entries)

    def resolve(self, role: HierarchyRole, scope: Scope) -> str | None:
        with self._lock:
            for identity, assignment in self._entries:
                if assignment.matches(role, scope):
                    return identity
        return None

    def identities_with_role(self, role: HierarchyRole) -> frozenset[str]:
        with self._lock:
            return frozenset(ident for ident, a in self._entries if a.role is role)
