"""Which restores to delete after a new restore becomes ready.

Two rules, both applied:

1. A branch-less restore created before the newly ready one is superseded
   and goes away.
2. If more than ``max_restores`` remain, the oldest eligible restores go
   until the ceiling is met.

A restore owning a branch, or the excluded (just completed) restore, is
never a candidate.  When nothing is eligible the ceiling may stay exceeded.
"""

from branchd.store.models import RestoreUsage


def plan_retention(
    usages: list[RestoreUsage], exclude_id: str, max_restores: int
) -> list[RestoreUsage]:
    """Return the restores to delete, oldest first.

    Args:
        usages: Every restore with its branch count.
        exclude_id: Restore that must survive (the one that just completed).
        max_restores: Ceiling on retained restores.

    Returns:
        Deletion candidates in creation order.
    """
    ordered = sorted(usages, key=lambda u: (u.restore.created_at is None, u.restore.created_at))
    excluded = next((u for u in ordered if u.restore.id == exclude_id), None)

    def eligible(usage: RestoreUsage) -> bool:
        return usage.branch_count == 0 and usage.restore.id != exclude_id

    doomed: list[RestoreUsage] = []
    if excluded is not None and excluded.restore.created_at is not None:
        cutoff = excluded.restore.created_at
        doomed = [
            u
            for u in ordered
            if eligible(u) and u.restore.created_at is not None and u.restore.created_at < cutoff
        ]

    doomed_ids = {u.restore.id for u in doomed}
    remaining = [u for u in ordered if u.restore.id not in doomed_ids]
    excess = len(remaining) - max(max_restores, 1)
    for usage in remaining:
        if excess <= 0:
            break
        if eligible(usage):
            doomed.append(usage)
            excess -= 1

    doomed.sort(key=lambda u: (u.restore.created_at is None, u.restore.created_at))
    return doomed
