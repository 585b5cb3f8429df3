"""
AssigneeResolver -- who holds role R in scope S.

Responsibility:
    Thin, bounded wrapper over the injected DirectoryLookup.  Narrows the
    scope to what the role is resolved by (global roles ignore scope, state
    roles ignore the branch) and runs the lookup through the
    CollaboratorGateway.

Architecture position:
    Kernel > Services.  No caching: every call is a fresh lookup.

Failure modes:
    - ``resolve`` raises DependencyUnavailableError on timeout / failure.
      Used where a resolved identity is required (create, reject).
    - ``resolve_or_none`` degrades a timeout to "nobody holds the role".
      Used on approve's forward path and for visit ledgers.
"""

from __future__ import annotations

from hierarchy_kernel.domain.collaborators import DirectoryLookup
from hierarchy_kernel.domain.hierarchy import HierarchyRole, Scope
from hierarchy_kernel.exceptions import DependencyUnavailableError
from hierarchy_kernel.logging_config import get_logger
from hierarchy_kernel.services.collaborator_gateway import CollaboratorGateway

logger = get_logger("services.assignee_resolver")

_COLLABORATOR = "directory"


class AssigneeResolver:
    def __init__(
        self,
        directory: DirectoryLookup,
        gateway: CollaboratorGateway,
        timeout_seconds: float = 2.0,
    ):
        self._directory = directory
        self._gateway = gateway
        self._timeout = timeout_seconds

    def resolve(self, role: HierarchyRole, scope: Scope) -> str | None:
        """Identity holding ``role`` in ``scope``, or None if unheld."""
        identity = self._gateway.call(
            _COLLABORATOR,
            "resolve",
            self._directory.resolve,
            role,
            scope.narrowed_for(role),
            timeout=self._timeout,
        )
        logger.debug(
            "assignee_resolved",
            extra={
                "role": role.value,
                "state": scope.state,
                "branch": scope.branch,
                "identity": identity,
            },
        )
        return identity

    def resolve_or_none(self, role: HierarchyRole, scope: Scope) -> str | None:
        """Like ``resolve`` but a dependency failure yields None."""
        try:
            return self.resolve(role, scope)
        except DependencyUnavailableError as exc:
            logger.warning(
                "assignee_resolution_degraded",
                extra={
                    "role": role.value,
                    "state": scope.state,
                    "branch": scope.branch,
                    "reason": exc.reason,
                },
            )
            return None

    def identities_with_role(self, role: HierarchyRole) -> frozenset[str]:
        return frozenset(
            self._gateway.call(
                _COLLABORATOR,
                "identities_with_role",
                self._directory.identities_with_role,
                role,
                timeout=self._timeout,
            )
        )
