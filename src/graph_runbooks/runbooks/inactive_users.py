from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ..graph.clients import quote_segment
from ..logging import get_logger
from ..normalize.classify import days_since, is_excluded, is_inactive
from ..normalize.schema import Record, Report, ReportRow, Severity, make_row
from ..util.errors import MutationError
from ..util.time import format_day, parse_graph_datetime
from .base import RunContext, new_report

LOG = get_logger(__name__)

USER_SELECT = "id,displayName,userPrincipalName,accountEnabled,userType,createdDateTime,signInActivity"
COLUMNS = ("Display Name", "User Principal Name", "Last Sign-In", "Days Inactive", "Action")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def last_sign_in(user: Record) -> Optional[datetime]:
    """Latest interactive or non-interactive sign-in, if any was recorded."""
    activity = user.get("signInActivity") or {}
    stamps = [
        parse_graph_datetime(activity.get("lastSignInDateTime")),
        parse_graph_datetime(activity.get("lastNonInteractiveSignInDateTime")),
    ]
    found = [s for s in stamps if s is not None]
    return max(found) if found else None


def last_activity(user: Record) -> Optional[datetime]:
    # Accounts that never signed in age from their creation date.
    return last_sign_in(user) or parse_graph_datetime(user.get("createdDateTime"))


class InactiveUsersRunbook:
    name = "inactive-users"
    title = "Inactive User Accounts"
    required_settings: Tuple[str, ...] = ()

    def build_report(self, ctx: RunContext) -> Report:
        cfg = ctx.cfg
        users = ctx.graph.list_collection(
            "users",
            {"$select": USER_SELECT, "$filter": "accountEnabled eq true"},
        )
        candidates = [
            u
            for u in users
            if not is_excluded(
                u,
                excluded_ids=cfg.excluded_ids,
                service_account_prefixes=cfg.service_account_prefixes,
            )
        ]

        inactive: List[Tuple[Record, Optional[datetime]]] = []
        for user in candidates:
            activity = last_activity(user)
            if is_inactive(activity, ctx.now, cfg.inactive_days):
                inactive.append((user, activity))
        inactive.sort(key=lambda pair: (pair[1] or _EPOCH, str(pair[0].get("userPrincipalName") or "")))

        counts: Dict[str, int] = {"disabled": 0, "failed": 0}
        rows: List[ReportRow] = []
        for user, activity in inactive:
            action, severity = self._act(ctx, user, counts)
            days = str(days_since(activity, ctx.now)) if activity else "Unknown"
            rows.append(
                make_row(
                    (
                        user.get("displayName") or "",
                        user.get("userPrincipalName") or "",
                        format_day(last_sign_in(user)),
                        days,
                        action,
                    ),
                    severity,
                )
            )

        summary: Dict[str, Any] = {
            "Enabled accounts": len(users),
            "Excluded": len(users) - len(candidates),
            "Inactive": len(inactive),
            "Cutoff (days)": cfg.inactive_days,
        }
        if cfg.disable_inactive and not cfg.simulate:
            summary["Disabled"] = counts["disabled"]
            summary["Disable failures"] = counts["failed"]
        return new_report(ctx, self.title, COLUMNS, rows, summary=summary)

    def _act(self, ctx: RunContext, user: Record, counts: Dict[str, int]) -> Tuple[str, Severity]:
        cfg = ctx.cfg
        if not cfg.disable_inactive:
            return "Reported", Severity.WARNING
        if cfg.simulate:
            return "Would disable", Severity.WARNING
        user_id = str(user.get("id") or "")
        try:
            ctx.graph.patch(f"users/{quote_segment(user_id)}", {"accountEnabled": False})
        except MutationError as e:
            LOG.error("Failed to disable account", extra={"user_id": user_id, "error": str(e)})
            counts["failed"] += 1
            return f"Disable failed: {e}", Severity.ERROR
        counts["disabled"] += 1
        return "Disabled", Severity.CRITICAL
