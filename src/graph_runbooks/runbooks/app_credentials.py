from __future__ import annotations

from typing import Iterator, List, Tuple

from ..normalize.classify import classify_expiry, days_until, expiry_label
from ..normalize.schema import Record, Report, ReportRow, Severity, make_row
from ..util.time import format_day, parse_graph_datetime
from .base import RunContext, new_report

APP_SELECT = "id,appId,displayName,passwordCredentials,keyCredentials"
COLUMNS = (
    "Application",
    "Application ID",
    "Credential Type",
    "Credential Name",
    "Expires",
    "Days Remaining",
    "Status",
)

CREDENTIAL_KINDS = (
    ("passwordCredentials", "Client secret"),
    ("keyCredentials", "Certificate"),
)


def iter_credentials(app: Record) -> Iterator[Tuple[str, Record]]:
    for key, kind in CREDENTIAL_KINDS:
        for cred in app.get(key) or []:
            yield kind, cred


class AppCredentialExpiryRunbook:
    name = "app-credentials"
    title = "Application Credential Expiry"
    required_settings: Tuple[str, ...] = ()

    def build_report(self, ctx: RunContext) -> Report:
        cfg = ctx.cfg
        excluded = {e.lower() for e in cfg.excluded_ids}
        apps = ctx.graph.list_collection("applications", {"$select": APP_SELECT})

        entries: List[Tuple[int, str, ReportRow]] = []
        checked = 0
        for app in apps:
            if str(app.get("appId") or "").lower() in excluded or str(app.get("id") or "").lower() in excluded:
                continue
            name = str(app.get("displayName") or "")
            for kind, cred in iter_credentials(app):
                end = parse_graph_datetime(cred.get("endDateTime"))
                if end is None:
                    continue
                checked += 1
                days = days_until(end, ctx.now)
                severity = classify_expiry(days, cfg.expiry_warning_days)
                if severity is Severity.NOMINAL:
                    continue
                row = make_row(
                    (
                        name,
                        app.get("appId") or "",
                        kind,
                        cred.get("displayName") or cred.get("keyId") or "",
                        format_day(end),
                        days,
                        expiry_label(severity),
                    ),
                    severity,
                )
                entries.append((days, name, row))

        entries.sort(key=lambda e: (e[0], e[1]))
        rows = [e[2] for e in entries]
        summary = {
            "Applications": len(apps),
            "Credentials checked": checked,
            "Expired": sum(1 for r in rows if r.severity is Severity.CRITICAL),
            "Expiring": sum(1 for r in rows if r.severity is Severity.WARNING),
            "Warning window (days)": cfg.expiry_warning_days,
        }
        return new_report(ctx, self.title, COLUMNS, rows, summary=summary)
