"""Tests for choosing which restores the retention sweep deletes."""

from datetime import datetime, timedelta, timezone

from branchd.restore.retention import plan_retention
from branchd.store.models import Restore, RestoreUsage

T0 = datetime(2025, 9, 1, tzinfo=timezone.utc)


def _usage(name: str, day: int, branches: int = 0) -> RestoreUsage:
    return RestoreUsage(
        restore=Restore(id=name, name=name, created_at=T0 + timedelta(days=day)),
        branch_count=branches,
    )


def _names(usages: list[RestoreUsage]) -> list[str]:
    return [u.restore.name for u in usages]


class TestSuperseded:
    """Branch-less restores older than the completed one go away."""

    def test_older_branchless_restores_are_deleted(self) -> None:
        usages = [_usage("a", 1), _usage("b", 2), _usage("c", 3)]
        assert _names(plan_retention(usages, "c", max_restores=5)) == ["a", "b"]

    def test_restores_with_branches_survive(self) -> None:
        usages = [_usage("a", 1, branches=2), _usage("b", 2), _usage("c", 3)]
        assert _names(plan_retention(usages, "c", max_restores=5)) == ["b"]

    def test_newer_restores_are_not_superseded(self) -> None:
        usages = [_usage("a", 1), _usage("b", 2), _usage("c", 3)]
        assert _names(plan_retention(usages, "a", max_restores=5)) == []


class TestCeiling:
    """More than max_restores left over: the oldest eligible ones go."""

    def test_excess_removed_oldest_first(self) -> None:
        usages = [_usage("a", 1), _usage("b", 2), _usage("c", 3)]
        assert _names(plan_retention(usages, "a", max_restores=1)) == ["b", "c"]

    def test_ceiling_counts_restores_with_branches(self) -> None:
        usages = [
            _usage("a", 1, branches=1),
            _usage("b", 2, branches=1),
            _usage("c", 3),
            _usage("d", 4),
        ]
        assert _names(plan_retention(usages, "c", max_restores=2)) == ["d"]

    def test_ceiling_may_stay_exceeded(self) -> None:
        usages = [_usage("a", 1, branches=1), _usage("b", 2, branches=1), _usage("c", 3)]
        assert plan_retention(usages, "c", max_restores=1) == []

    def test_zero_ceiling_keeps_one(self) -> None:
        usages = [_usage("a", 1), _usage("b", 2)]
        assert _names(plan_retention(usages, "b", max_restores=0)) == ["a"]

    def test_excluded_restore_is_never_deleted(self) -> None:
        usages = [_usage("a", 1), _usage("b", 2)]
        assert "b" not in _names(plan_retention(usages, "b", max_restores=1))

    def test_empty(self) -> None:
        assert plan_retention([], "x", max_restores=1) == []
