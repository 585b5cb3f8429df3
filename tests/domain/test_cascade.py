"""Tests for the deadline cascade calculator."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from hierarchy_kernel.domain.cascade import (
    CASCADE_ALLOCATIONS,
    compute_cascade,
    span_days,
)
from hierarchy_kernel.domain.hierarchy import HierarchyRole
from hierarchy_kernel.exceptions import InvalidRangeError, ValidationError

UTC = timezone.utc


def _by_role(cascade):
    return {d.role: d for d in cascade}


class TestCascadeScenario:
    """Visit 2025-06-30 with final deadline 2025-06-05 (25-day span)."""

    @pytest.fixture
    def cascade(self):
        return _by_role(compute_cascade(
            datetime(2025, 6, 30, tzinfo=UTC),
            datetime(2025, 6, 5, tzinfo=UTC),
        ))

    def test_pmo_due_at_final_deadline(self, cascade):
        assert cascade[HierarchyRole.PMO].due_at == datetime(2025, 6, 5, tzinfo=UTC)
        assert cascade[HierarchyRole.PMO].offset_days == Decimal("0")

    def test_division_yp_uses_fraction_over_floor(self, cascade):
        entry = cascade[HierarchyRole.DIVISION_YP]
        assert entry.offset_days == Decimal("23.75")
        assert entry.due_at == datetime(2025, 5, 12, 6, 0, tzinfo=UTC)

    def test_every_role_offset(self, cascade):
        expected = {
            HierarchyRole.HOD: Decimal("20.00"),
            HierarchyRole.YP: Decimal("15.00"),
            HierarchyRole.ADVISOR: Decimal("10.00"),
            HierarchyRole.CEO: Decimal("5.00"),
        }
        for role, offset in expected.items():
            assert cascade[role].offset_days == offset
            assert cascade[role].due_at == datetime(2025, 6, 5, tzinfo=UTC) - timedelta(days=int(offset))

    def test_one_entry_per_role_lowest_first(self):
        cascade = compute_cascade(
            datetime(2025, 6, 30, tzinfo=UTC), datetime(2025, 6, 5, tzinfo=UTC),
        )
        assert [d.role for d in cascade] == [a.role for a in CASCADE_ALLOCATIONS]
        assert cascade[0].role is HierarchyRole.DIVISION_YP
        assert cascade[-1].role is HierarchyRole.PMO


class TestShortSpan:
    def test_floors_dominate(self):
        final = datetime(2025, 6, 5, tzinfo=UTC)
        cascade = _by_role(compute_cascade(final + timedelta(days=4), final))
        assert cascade[HierarchyRole.DIVISION_YP].offset_days == Decimal("15")
        assert cascade[HierarchyRole.CEO].offset_days == Decimal("2")
        assert cascade[HierarchyRole.DIVISION_YP].due_at == final - timedelta(days=15)


class TestInvalidRange:
    def test_final_after_visit(self):
        with pytest.raises(InvalidRangeError) as exc_info:
            compute_cascade(
                datetime(2025, 6, 1, tzinfo=UTC), datetime(2025, 6, 2, tzinfo=UTC),
            )
        assert isinstance(exc_info.value, ValidationError)
        assert exc_info.value.code == "INVALID_RANGE"

    def test_equal_anchors(self):
        moment = datetime(2025, 6, 1, tzinfo=UTC)
        with pytest.raises(InvalidRangeError):
            compute_cascade(moment, moment)


class TestSpanDays:
    def test_fractional_days(self):
        start = datetime(2025, 6, 1, tzinfo=UTC)
        assert span_days(start + timedelta(hours=36), start) == Decimal("1.5")


class TestMonotonicity:
    @given(
        final_offset_minutes=st.integers(min_value=0, max_value=60 * 24 * 365),
        span_minutes=st.integers(min_value=20 * 24 * 60, max_value=400 * 24 * 60),
    )
    def test_due_dates_non_decreasing_up_the_chain(self, final_offset_minutes, span_minutes):
        final = datetime(2025, 1, 1, tzinfo=UTC) + timedelta(minutes=final_offset_minutes)
        visit = final + timedelta(minutes=span_minutes)
        cascade = compute_cascade(visit, final)

        due = [d.due_at for d in cascade]
        assert due == sorted(due)
        assert due[-1] == final
        assert all(d <= final for d in due)
