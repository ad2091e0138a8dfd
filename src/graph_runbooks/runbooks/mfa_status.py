from __future__ import annotations

from typing import List, Tuple

from ..graph.clients import quote_segment
from ..normalize.classify import has_strong_method, is_excluded, method_type
from ..normalize.schema import Failed, LookupResult, Record, Report, ReportRow, Severity, lookup, make_row
from .base import RunContext, new_report

USER_SELECT = "id,displayName,userPrincipalName,userType"
COLUMNS = ("Display Name", "User Principal Name", "Registered Methods", "Status")
PASSWORD_METHOD = "passwordAuthenticationMethod"
LOOKUP_ERROR_TEXT = "Error querying status"


def fetch_method_types(ctx: RunContext, user_id: str) -> List[str]:
    methods = ctx.graph.list_collection(
        f"users/{quote_segment(user_id)}/authentication/methods",
        page_size=0,
    )
    return [method_type(m.get("@odata.type")) for m in methods]


class MfaStatusRunbook:
    name = "mfa-status"
    title = "MFA Registration Status"
    required_settings: Tuple[str, ...] = ()

    def build_report(self, ctx: RunContext) -> Report:
        cfg = ctx.cfg
        users = ctx.graph.list_collection(
            "users",
            {"$select": USER_SELECT, "$filter": "accountEnabled eq true and userType eq 'Member'"},
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

        def _lookup(user: Record) -> LookupResult[List[str]]:
            user_id = str(user.get("id") or "")
            return lookup(user_id, lambda: fetch_method_types(ctx, user_id))

        results = ctx.lookup_all("Authentication methods", candidates, _lookup)

        rows: List[ReportRow] = []
        for user, result in zip(candidates, results):
            name = user.get("displayName") or ""
            upn = user.get("userPrincipalName") or ""
            if isinstance(result, Failed):
                rows.append(make_row((name, upn, "", LOOKUP_ERROR_TEXT), Severity.ERROR))
                continue
            methods = sorted(t for t in result.value if t != PASSWORD_METHOD)
            if has_strong_method(methods, cfg.expected_auth_methods):
                continue
            rows.append(make_row((name, upn, ", ".join(methods) or "None", "No strong method"), Severity.CRITICAL))

        summary = {
            "Users checked": len(candidates),
            "Excluded": len(users) - len(candidates),
            "Without strong method": sum(1 for r in rows if r.severity is Severity.CRITICAL),
            "Lookup errors": sum(1 for r in rows if r.severity is Severity.ERROR),
        }
        return new_report(ctx, self.title, COLUMNS, rows, summary=summary)
