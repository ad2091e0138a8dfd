from __future__ import annotations

from datetime import datetime, timezone
from typing import List, Optional, Tuple

from ..graph.clients import quote_segment
from ..normalize.classify import days_since, is_stale, worst_severity
from ..normalize.schema import Failed, LookupResult, Record, Report, ReportRow, Severity, lookup, make_row
from ..util.time import format_day, parse_graph_datetime
from .base import RunContext, new_report

DEVICE_SELECT = "id,deviceName,operatingSystem,osVersion,complianceState,lastSyncDateTime"
COLUMNS = ("Device", "Operating System", "Assigned User", "Compliance", "Last Sync", "Days Since Sync")
UNASSIGNED = "Unassigned"
LOOKUP_ERROR_TEXT = "Error querying user"

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def device_severity(device: Record, last_sync: Optional[datetime], now: datetime, stale_days: int) -> Severity:
    if str(device.get("complianceState") or "").lower() == "noncompliant":
        return Severity.CRITICAL
    if is_stale(last_sync, now, stale_days):
        return Severity.WARNING
    return Severity.NOMINAL


def fetch_assigned_user(ctx: RunContext, device_id: str) -> str:
    users = ctx.graph.list_collection(
        f"deviceManagement/managedDevices/{quote_segment(device_id)}/users",
        page_size=0,
    )
    for user in users:
        upn = user.get("userPrincipalName")
        if upn:
            return str(upn)
    return UNASSIGNED


class DeviceComplianceRunbook:
    name = "device-compliance"
    title = "Device Compliance"
    required_settings: Tuple[str, ...] = ()

    def build_report(self, ctx: RunContext) -> Report:
        cfg = ctx.cfg
        excluded = {e.lower() for e in cfg.excluded_ids}
        devices = ctx.graph.list_collection(
            "deviceManagement/managedDevices",
            {"$select": DEVICE_SELECT},
        )

        flagged: List[Tuple[Record, Optional[datetime], Severity]] = []
        for device in devices:
            if str(device.get("id") or "").lower() in excluded:
                continue
            last_sync = parse_graph_datetime(device.get("lastSyncDateTime"))
            severity = device_severity(device, last_sync, ctx.now, cfg.device_stale_days)
            if severity is not Severity.NOMINAL:
                flagged.append((device, last_sync, severity))
        flagged.sort(key=lambda f: (f[1] or _EPOCH, str(f[0].get("deviceName") or "")))

        def _lookup(entry: Tuple[Record, Optional[datetime], Severity]) -> LookupResult[str]:
            device_id = str(entry[0].get("id") or "")
            return lookup(device_id, lambda: fetch_assigned_user(ctx, device_id))

        results = ctx.lookup_all("Device users", flagged, _lookup)

        rows: List[ReportRow] = []
        for (device, last_sync, severity), result in zip(flagged, results):
            if isinstance(result, Failed):
                assigned = LOOKUP_ERROR_TEXT
                severity = worst_severity(severity, Severity.ERROR)
            else:
                assigned = result.value
            os_name = " ".join(
                str(p) for p in (device.get("operatingSystem"), device.get("osVersion")) if p
            )
            rows.append(
                make_row(
                    (
                        device.get("deviceName") or "",
                        os_name,
                        assigned,
                        device.get("complianceState") or "unknown",
                        format_day(last_sync),
                        days_since(last_sync, ctx.now) if last_sync else "Unknown",
                    ),
                    severity,
                )
            )

        summary = {
            "Managed devices": len(devices),
            "Noncompliant": sum(
                1 for d, _, _ in flagged if str(d.get("complianceState") or "").lower() == "noncompliant"
            ),
            "Stale": sum(1 for _, _, s in flagged if s is Severity.WARNING),
            "Lookup errors": sum(1 for r in results if isinstance(r, Failed)),
            "Stale after (days)": cfg.device_stale_days,
        }
        return new_report(ctx, self.title, COLUMNS, rows, summary=summary)
