from __future__ import annotations

from datetime import timedelta
from typing import Optional, Tuple

from ..normalize.classify import is_privileged_role, justification_ok
from ..normalize.schema import Record, Report, Severity, make_row
from ..util.time import parse_graph_datetime
from .base import RunContext, new_report

PIM_ACTIVATION_ACTIVITY = "Add member to role completed (PIM activation)"
COLUMNS = ("Activated (UTC)", "User", "Role", "Privileged", "Justification", "Status")


def activation_user(entry: Record) -> str:
    initiated = entry.get("initiatedBy") or {}
    user = initiated.get("user") or {}
    return str(user.get("userPrincipalName") or user.get("displayName") or user.get("id") or "Unknown")


def activation_role(entry: Record) -> Optional[str]:
    targets = entry.get("targetResources") or []
    for target in targets:
        if str(target.get("type") or "").lower() == "role":
            return target.get("displayName")
    return targets[0].get("displayName") if targets else None


def classify_activation(privileged: bool, justified: bool) -> Severity:
    if not justified:
        return Severity.CRITICAL if privileged else Severity.WARNING
    return Severity.NOMINAL


class PimActivationsRunbook:
    name = "pim-activations"
    title = "PIM Role Activations"
    required_settings: Tuple[str, ...] = ()

    def build_report(self, ctx: RunContext) -> Report:
        cfg = ctx.cfg
        since = (ctx.now - timedelta(days=cfg.audit_days)).strftime("%Y-%m-%dT%H:%M:%SZ")
        entries = ctx.graph.list_collection(
            "auditLogs/directoryAudits",
            {
                "$filter": (
                    f"activityDateTime ge {since} "
                    f"and activityDisplayName eq '{PIM_ACTIVATION_ACTIVITY}'"
                ),
            },
        )

        rows = []
        for entry in entries:
            role = activation_role(entry)
            justification = str(entry.get("resultReason") or "").strip()
            privileged = is_privileged_role(role, cfg.privileged_roles)
            justified = justification_ok(justification, cfg.justification_min_length)
            severity = classify_activation(privileged, justified)
            when = parse_graph_datetime(entry.get("activityDateTime"))
            rows.append(
                make_row(
                    (
                        when.strftime("%Y-%m-%d %H:%M") if when else "",
                        activation_user(entry),
                        role or "Unknown",
                        "Yes" if privileged else "No",
                        justification or "(none)",
                        "OK" if justified else "Insufficient justification",
                    ),
                    severity,
                )
            )

        summary = {
            "Activations": len(rows),
            "Privileged activations": sum(1 for r in rows if r.cells[3] == "Yes"),
            "Insufficient justification": sum(1 for r in rows if r.severity is not Severity.NOMINAL),
            "Lookback (days)": cfg.audit_days,
        }
        return new_report(ctx, self.title, COLUMNS, rows, summary=summary)
