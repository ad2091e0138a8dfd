from __future__ import annotations

from typing import Any, Dict, List, Tuple

from ..diff.membership import MembershipOutcome, MembershipPlan, apply_membership_plan, compute_membership_diff
from ..graph.clients import quote_segment
from ..logging import get_logger
from ..normalize.schema import Record, Report, ReportRow, Severity, make_row
from .base import RunContext, new_report

LOG = get_logger(__name__)

USER_SELECT = "id,displayName,userPrincipalName,employeeId"
COLUMNS = ("User Principal Name", "Object ID", "Change", "Result")


def _odata_literal(value: str) -> str:
    return value.replace("'", "''")


def desired_members(ctx: RunContext) -> List[Record]:
    """Users whose employeeId matches; requires advanced query headers."""
    return ctx.graph.list_collection(
        "users",
        {
            "$select": USER_SELECT,
            "$filter": f"employeeId eq '{_odata_literal(str(ctx.cfg.employee_id))}'",
            "$count": "true",
        },
        headers={"ConsistencyLevel": "eventual"},
    )


def current_members(ctx: RunContext) -> List[Record]:
    group = quote_segment(str(ctx.cfg.target_group_id))
    return ctx.graph.list_collection(
        f"groups/{group}/members/microsoft.graph.user",
        {"$select": USER_SELECT},
    )


def _outcome_rows(
    plan: MembershipPlan,
    outcome: MembershipOutcome,
    names: Dict[str, str],
) -> List[ReportRow]:
    results: Dict[Tuple[str, str], Tuple[str, Severity]] = {}
    for ident in outcome.added:
        results[(ident, "Add")] = ("Added", Severity.NOMINAL)
    for ident in outcome.removed:
        results[(ident, "Remove")] = ("Removed", Severity.NOMINAL)
    for ident in outcome.pending_additions:
        results[(ident, "Add")] = ("Pending (simulation)", Severity.WARNING)
    for ident in outcome.pending_removals:
        results[(ident, "Remove")] = ("Pending (simulation)", Severity.WARNING)
    for failed in outcome.failed_additions:
        results[(failed.entity_id, "Add")] = (f"Failed: {failed.reason}", Severity.ERROR)
    for failed in outcome.failed_removals:
        results[(failed.entity_id, "Remove")] = (f"Failed: {failed.reason}", Severity.ERROR)

    rows = []
    changes = [(i, "Add") for i in plan.additions] + [(i, "Remove") for i in plan.removals]
    for ident, change in changes:
        text, severity = results[(ident, change)]
        rows.append(make_row((names.get(ident, ""), ident, change, text), severity))
    return rows


class GroupSyncRunbook:
    name = "group-sync"
    title = "Group Membership Sync"
    required_settings: Tuple[str, ...] = ("employee_id", "target_group_id")

    def build_report(self, ctx: RunContext) -> Report:
        cfg = ctx.cfg
        graph = ctx.graph
        excluded = {e.lower() for e in cfg.excluded_ids}
        group = quote_segment(str(cfg.target_group_id))

        desired = desired_members(ctx)
        current = current_members(ctx)
        names: Dict[str, str] = {}
        for user in desired + current:
            names[str(user.get("id") or "")] = str(user.get("userPrincipalName") or "")

        def _keep(user: Record) -> bool:
            ident = str(user.get("id") or "")
            upn = str(user.get("userPrincipalName") or "")
            return ident.lower() not in excluded and upn.lower() not in excluded

        plan = compute_membership_diff(
            [u.get("id") for u in desired if _keep(u)],
            [u.get("id") for u in current if _keep(u)],
        )
        LOG.info("Membership plan computed", extra={"group_id": cfg.target_group_id, **plan.summary})

        def _add(user_id: str) -> None:
            graph.post_ref(f"groups/{group}/members/$ref", f"{graph.base_url}/directoryObjects/{user_id}")

        def _remove(user_id: str) -> None:
            graph.delete(f"groups/{group}/members/{quote_segment(user_id)}/$ref")

        outcome = apply_membership_plan(plan, _add, _remove, simulate=cfg.simulate)
        rows = _outcome_rows(plan, outcome, names)

        summary: Dict[str, Any] = {
            "Employee ID": cfg.employee_id,
            "Target group": cfg.target_group_id,
            "Desired members": plan.desired_total,
            "Current members": plan.current_total,
            "Unchanged": plan.unchanged,
            "Additions": len(plan.additions),
            "Removals": len(plan.removals),
            "Failures": outcome.failures,
            "Mode": "simulation" if cfg.simulate else "applied",
        }
        notes = []
        if plan.is_empty:
            notes.append("Group membership already matches the desired set.")
        return new_report(ctx, self.title, COLUMNS, rows, summary=summary, notes=notes)
