"""
Deadline cascade calculator (``hierarchy_kernel.domain.cascade``).

Responsibility
--------------
Derive one due date per hierarchy role from a visit date and the PMO's
final deadline.  Each role gets a fraction of the lead time between the two
anchors, never less than a fixed floor in days:

    offset(role) = max(floor_days(role), span_days * fraction(role))
    due(role)    = final_deadline - offset(role)

Architecture position
---------------------
**Kernel domain layer** -- pure function.  ZERO I/O.

Invariants enforced
-------------------
* ``final_deadline < visit_date`` or ``InvalidRangeError``.
* Exactly one entry per role, ordered DivisionYP first (earliest due)
  to PMO last (due exactly at the final deadline).
* Arithmetic is exact: allocations are Decimal and offsets are rounded
  once, to the microsecond.

Short spans are not re-normalized: when floors dominate, early roles can be
due before the visit was even created.  Callers validate lead time.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_EVEN, Decimal

from hierarchy_kernel.domain.hierarchy import HierarchyRole
from hierarchy_kernel.exceptions import InvalidRangeError

_SECONDS_PER_DAY = Decimal(86400)
_MICROSECONDS = Decimal(1_000_000)


@dataclass(frozen=True)
class DeadlineAllocation:
    """Share of the lead time reserved for a role."""

    role: HierarchyRole
    floor_days: Decimal
    fraction: Decimal


# Evaluated lowest rank (longest lead time) to highest rank.
CASCADE_ALLOCATIONS: tuple[DeadlineAllocation, ...] = (
    DeadlineAllocation(HierarchyRole.DIVISION_YP, Decimal("15"), Decimal("0.95")),
    DeadlineAllocation(HierarchyRole.HOD, Decimal("12"), Decimal("0.80")),
    DeadlineAllocation(HierarchyRole.YP, Decimal("8"), Decimal("0.60")),
    DeadlineAllocation(HierarchyRole.ADVISOR, Decimal("5"), Decimal("0.40")),
    DeadlineAllocation(HierarchyRole.CEO, Decimal("2"), Decimal("0.20")),
    DeadlineAllocation(HierarchyRole.PMO, Decimal("0"), Decimal("0.0")),
)


@dataclass(frozen=True)
class CascadeDeadline:
    """One computed due date."""

    role: HierarchyRole
    due_at: datetime
    offset_days: Decimal


def span_days(visit_date: datetime, final_deadline: datetime) -> Decimal:
    """Lead time between the anchors in (fractional) days, always positive."""
    delta = final_deadline - visit_date
    micros = (delta.days * 86400 + delta.seconds) * 1_000_000 + delta.microseconds
    return abs(Decimal(micros) / _MICROSECONDS / _SECONDS_PER_DAY)


def role_offset_days(allocation: DeadlineAllocation, span: Decimal) -> Decimal:
    return max(allocation.floor_days, span * allocation.fraction)


def _days_to_timedelta(days: Decimal) -> timedelta:
    micros = (days * _SECONDS_PER_DAY * _MICROSECONDS).quantize(
        Decimal(1), rounding=ROUND_HALF_EVEN,
    )
    return timedelta(microseconds=int(micros))


def compute_cascade(
    visit_date: datetime,
    final_deadline: datetime,
) -> tuple[CascadeDeadline, ...]:
    """
    Compute the per-role deadline cascade.

    Preconditions:
        - ``final_deadline`` is strictly before ``visit_date``; both carry
          the same kind of tzinfo (aware or naive).
    Postconditions:
        - One CascadeDeadline per HierarchyRole, DivisionYP first.
        - The PMO entry is due exactly at ``final_deadline``.
    Raises:
        InvalidRangeError: anchors inverted or equal.
    """
    if not final_deadline < visit_date:
        raise InvalidRangeError(visit_date.isoformat(), final_deadline.isoformat())

    span = span_days(visit_date, final_deadline)
    result = []
    for allocation in CASCADE_ALLOCATIONS:
        offset = role_offset_days(allocation, span)
        result.append(
            CascadeDeadline(
                role=allocation.role,
                due_at=final_deadline - _days_to_timedelta(offset),
                offset_days=offset,
            )
        )
    return tuple(result)
