"""
Typed Exception Hierarchy for the Hierarchy Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (an HTTP layer, a batch dispatcher, a test) must react differently
to "bad input", "you may not do that", "the request moved on, re-read it"
and "the directory is down".  Parsing messages for that is fragile, so:

  1. Every error has a TYPED exception class (catch by type, not message)
  2. Every exception has a CODE attribute (machine-readable, API-safe)
  3. Exceptions carry structured DATA (not just a message string)

Example:
    try:
        engine.reject(request_id, actor)
    except RollbackLimitReachedError as e:
        escalate_to_human(e.request_id, e.max_rollback_count)
    except StateConflictError as e:
        api_response(code=e.code, retry=True)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    HierarchyKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidDeadlineOrderingError
    |   +-- InvalidRangeError
    |   +-- FieldValidationError
    |   +-- UnknownVerticalError
    |   +-- NoActiveTemplateError
    |
    +-- AuthorizationError
    |   +-- RoleRequiredError
    |   +-- NoHierarchyRoleError
    |   +-- NotCurrentAssigneeError
    |
    +-- StateConflictError
    |   +-- InvalidTransitionError
    |   +-- RequestClosedError
    |   +-- CannotRejectAtTopLevelError
    |   +-- RollbackLimitReachedError
    |   +-- PreviousAssigneeNotFoundError
    |   +-- ConcurrentModificationError
    |
    +-- NotFoundError
    |   +-- VisitNotFoundError
    |   +-- RequestNotFoundError
    |   +-- LedgerEntryNotFoundError
    |
    +-- DependencyError
    |   +-- DependencyUnavailableError
    |
    +-- AppendOnlyViolationError

===============================================================================
HANDLING PATTERNS
===============================================================================

* ValidationError / AuthorizationError -> reject the call, nothing was read
  from collaborators and nothing was written.
* StateConflictError -> re-read the aggregate; the caller may retry.
* DependencyError -> a collaborator timed out or failed; nothing was written.
* AppendOnlyViolationError -> programming error, history rows never change.
"""


class HierarchyKernelError(Exception):
    """Base exception for all hierarchy kernel errors."""

    code: str = "HIERARCHY_KERNEL_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# Validation


class ValidationError(HierarchyKernelError):
    """Bad input shape or range. Raised before any mutation."""

    code: str = "VALIDATION_ERROR"


class InvalidDeadlineOrderingError(ValidationError):
    """A visit's final deadline is not strictly before the visit date."""

    code: str = "INVALID_DEADLINE_ORDERING"

    def __init__(self, visit_date: str, final_deadline: str):
        self.visit_date = visit_date
        self.final_deadline = final_deadline
        super().__init__(
            f"Final deadline {final_deadline} must be strictly before "
            f"visit date {visit_date}"
        )


class InvalidRangeError(ValidationError):
    """Cascade anchors are inverted or equal."""

    code: str = "INVALID_RANGE"

    def __init__(self, start: str, end: str):
        self.start = start
        self.end = end
        super().__init__(f"Invalid cascade range: {end} is not before {start}")


class FieldValidationError(ValidationError):
    """A single input field failed validation."""

    code: str = "FIELD_VALIDATION"

    def __init__(self, field_name: str, reason: str):
        self.field_name = field_name
        self.reason = reason
        super().__init__(f"Invalid {field_name}: {reason}")


class UnknownVerticalError(ValidationError):
    """A vertical is not configured for the given state."""

    code: str = "UNKNOWN_VERTICAL"

    def __init__(self, state: str, vertical: str):
        self.state = state
        self.vertical = vertical
        super().__init__(f"Vertical {vertical!r} is not configured for state {state!r}")


class NoActiveTemplateError(ValidationError):
    """No active form template exists for the request's (state, vertical)."""

    code: str = "NO_ACTIVE_TEMPLATE"

    def __init__(self, state: str, vertical: str | None):
        self.state = state
        self.vertical = vertical
        super().__init__(
            f"No active template for state {state!r} and vertical {vertical!r}"
        )


# Authorization


class AuthorizationError(HierarchyKernelError):
    """Actor lacks the role or assignment the operation requires."""

    code: str = "AUTHORIZATION_ERROR"


class RoleRequiredError(AuthorizationError):
    """Actor does not hold any of the roles the operation requires."""

    code: str = "ROLE_REQUIRED"

    def __init__(self, actor_id: str, required_roles: tuple[str, ...], operation: str):
        self.actor_id = actor_id
        self.required_roles = required_roles
        self.operation = operation
        super().__init__(
            f"Actor {actor_id} needs one of {', '.join(required_roles)} to {operation}"
        )


class NoHierarchyRoleError(AuthorizationError):
    """Actor holds no role in the hierarchy chain."""

    code: str = "NO_HIERARCHY_ROLE"

    def __init__(self, actor_id: str):
        self.actor_id = actor_id
        super().__init__(f"Actor {actor_id} holds no hierarchy role")


class NotCurrentAssigneeError(AuthorizationError):
    """Actor is not the request's current assignee."""

    code: str = "NOT_CURRENT_ASSIGNEE"

    def __init__(self, request_id: str, actor_id: str, assignee_id: str | None):
        self.request_id = request_id
        self.actor_id = actor_id
        self.assignee_id = assignee_id
        super().__init__(
            f"Actor {actor_id} is not the current assignee of request {request_id}"
        )


# State conflicts


class StateConflictError(HierarchyKernelError):
    """Transition invalid for the current state. Caller may re-read and retry."""

    code: str = "STATE_CONFLICT"


class InvalidTransitionError(StateConflictError):
    """Visit status transition not allowed from the current status."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, entity_id: str, from_status: str, action: str, reason: str = ""):
        self.entity_id = entity_id
        self.from_status = from_status
        self.action = action
        self.reason = reason
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"Cannot {action} {entity_id} from status {from_status}{detail}"
        )


class RequestClosedError(StateConflictError):
    """Request is terminal and accepts no further transitions."""

    code: str = "REQUEST_CLOSED"

    def __init__(self, request_id: str, status: str):
        self.request_id = request_id
        self.status = status
        super().__init__(f"Request {request_id} is {status} and cannot change")


class CannotRejectAtTopLevelError(StateConflictError):
    """Reject attempted at the top of the chain."""

    code: str = "CANNOT_REJECT_AT_TOP_LEVEL"

    def __init__(self, request_id: str, stage: str):
        self.request_id = request_id
        self.stage = stage
        super().__init__(f"Request {request_id} cannot be rejected at stage {stage}")


class RollbackLimitReachedError(StateConflictError):
    """Request has used all of its reject cycles."""

    code: str = "ROLLBACK_LIMIT_REACHED"

    def __init__(self, request_id: str, rollback_count: int, max_rollback_count: int):
        self.request_id = request_id
        self.rollback_count = rollback_count
        self.max_rollback_count = max_rollback_count
        super().__init__(
            f"Request {request_id} reached its rollback ceiling "
            f"({rollback_count}/{max_rollback_count})"
        )


class PreviousAssigneeNotFoundError(StateConflictError):
    """Nobody holds the previous role for the request's scope."""

    code: str = "PREVIOUS_ASSIGNEE_NOT_FOUND"

    def __init__(self, request_id: str, role: str):
        self.request_id = request_id
        self.role = role
        super().__init__(
            f"No holder of role {role} found to receive request {request_id}"
        )


class ConcurrentModificationError(StateConflictError):
    """Another writer changed the aggregate first."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        expected_revision: int | None = None,
        actual_revision: int | None = None,
    ):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_revision = expected_revision
        self.actual_revision = actual_revision
        super().__init__(
            f"Concurrent modification of {entity_type} {entity_id}: "
            "re-read and retry"
        )


# Not found


class NotFoundError(HierarchyKernelError):
    """Referenced aggregate does not exist."""

    code: str = "NOT_FOUND"


class VisitNotFoundError(NotFoundError):
    code: str = "VISIT_NOT_FOUND"

    def __init__(self, visit_id: str):
        self.visit_id = visit_id
        super().__init__(f"Scheduled visit {visit_id} not found")


class RequestNotFoundError(NotFoundError):
    code: str = "REQUEST_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = request_id
        super().__init__(f"Workflow request {request_id} not found")


class LedgerEntryNotFoundError(NotFoundError):
    code: str = "LEDGER_ENTRY_NOT_FOUND"

    def __init__(self, visit_id: str, role: str):
        self.visit_id = visit_id
        self.role = role
        super().__init__(f"Visit {visit_id} has no ledger entry for role {role}")


# Dependencies


class DependencyError(HierarchyKernelError):
    """An external collaborator was unavailable."""

    code: str = "DEPENDENCY_ERROR"


class DependencyUnavailableError(DependencyError):
    """Collaborator call timed out or raised."""

    code: str = "DEPENDENCY_UNAVAILABLE"

    def __init__(self, collaborator: str, operation: str, reason: str):
        self.collaborator = collaborator
        self.operation = operation
        self.reason = reason
        super().__init__(
            f"Collaborator {collaborator} unavailable during {operation}: {reason}"
        )


# Append-only sub-collections


class AppendOnlyViolationError(HierarchyKernelError):
    """Attempted to modify or delete an append-only history row."""

    code: str = "APPEND_ONLY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, operation: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.operation = operation
        super().__init__(
            f"Cannot {operation} {entity_type} {entity_id}: rows are append-only"
        )
