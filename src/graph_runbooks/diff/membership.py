from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List

from ..logging import get_logger
from ..normalize.schema import Failed
from ..util.errors import MutationError

LOG = get_logger(__name__)


@dataclass(frozen=True)
class MembershipPlan:
    additions: List[str]
    removals: List[str]
    unchanged: int
    desired_total: int
    current_total: int

    @property
    def is_empty(self) -> bool:
        return not self.additions and not self.removals

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "additions": len(self.additions),
            "removals": len(self.removals),
            "unchanged": self.unchanged,
            "desired_total": self.desired_total,
            "current_total": self.current_total,
        }


@dataclass
class MembershipOutcome:
    added: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    pending_additions: List[str] = field(default_factory=list)
    pending_removals: List[str] = field(default_factory=list)
    failed_additions: List[Failed] = field(default_factory=list)
    failed_removals: List[Failed] = field(default_factory=list)

    @property
    def failures(self) -> int:
        return len(self.failed_additions) + len(self.failed_removals)


def _normalize_ids(ids: Iterable[str]) -> set[str]:
    out = set()
    for raw in ids:
        ident = str(raw or "").strip()
        if ident:
            out.add(ident)
    return out


def compute_membership_diff(desired: Iterable[str], current: Iterable[str]) -> MembershipPlan:
    """
    Compute the mutations that make current membership equal the desired set:
      additions = desired - current
      removals  = current - desired
    Lists are sorted so repeated runs plan identically.
    """
    desired_set = _normalize_ids(desired)
    current_set = _normalize_ids(current)
    return MembershipPlan(
        additions=sorted(desired_set - current_set),
        removals=sorted(current_set - desired_set),
        unchanged=len(desired_set & current_set),
        desired_total=len(desired_set),
        current_total=len(current_set),
    )


def apply_membership_plan(
    plan: MembershipPlan,
    add: Callable[[str], None],
    remove: Callable[[str], None],
    *,
    simulate: bool = False,
) -> MembershipOutcome:
    """
    Issue one call per addition and per removal. A failed call is logged and
    recorded; the remaining ids are still attempted. No rollback.
    """
    outcome = MembershipOutcome()
    if simulate:
        outcome.pending_additions.extend(plan.additions)
        outcome.pending_removals.extend(plan.removals)
        LOG.info(
            "Simulation: membership changes not applied",
            extra={"additions": len(plan.additions), "removals": len(plan.removals)},
        )
        return outcome

    for ident in plan.additions:
        try:
            add(ident)
        except MutationError as e:
            LOG.error("Failed to add member", extra={"member_id": ident, "error": str(e)})
            outcome.failed_additions.append(Failed(entity_id=ident, reason=str(e)))
            continue
        outcome.added.append(ident)

    for ident in plan.removals:
        try:
            remove(ident)
        except MutationError as e:
            LOG.error("Failed to remove member", extra={"member_id": ident, "error": str(e)})
            outcome.failed_removals.append(Failed(entity_id=ident, reason=str(e)))
            continue
        outcome.removed.append(ident)

    return outcome
