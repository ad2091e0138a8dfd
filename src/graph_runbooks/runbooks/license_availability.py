from __future__ import annotations

from typing import List, Tuple

from ..normalize.classify import classify_availability
from ..normalize.schema import Record, Report, ReportRow, Severity, make_row
from .base import RunContext, new_report

COLUMNS = ("SKU", "Purchased", "Consumed", "Available", "Status")

_STATUS_LABELS = {
    Severity.CRITICAL: "Exhausted",
    Severity.WARNING: "Low",
    Severity.NOMINAL: "OK",
}


def seat_counts(sku: Record) -> Tuple[int, int, int]:
    """(purchased, consumed, available) for one subscribed SKU."""
    prepaid = sku.get("prepaidUnits") or {}
    purchased = int(prepaid.get("enabled") or 0)
    consumed = int(sku.get("consumedUnits") or 0)
    return purchased, consumed, purchased - consumed


class LicenseAvailabilityRunbook:
    name = "license-availability"
    title = "License Availability"
    required_settings: Tuple[str, ...] = ()

    def build_report(self, ctx: RunContext) -> Report:
        cfg = ctx.cfg
        excluded = {e.lower() for e in cfg.excluded_ids}
        # subscribedSkus rejects $top
        skus = ctx.graph.list_collection("subscribedSkus", page_size=0)

        entries: List[Tuple[int, str, ReportRow]] = []
        skipped = 0
        for sku in skus:
            part = str(sku.get("skuPartNumber") or sku.get("skuId") or "")
            if part.lower() in excluded or str(sku.get("skuId") or "").lower() in excluded:
                skipped += 1
                continue
            purchased, consumed, available = seat_counts(sku)
            if purchased <= 0:
                # free/self-service SKUs carry no purchased seats
                skipped += 1
                continue
            severity = classify_availability(available, cfg.license_min_available)
            row = make_row((part, purchased, consumed, available, _STATUS_LABELS[severity]), severity)
            entries.append((available, part, row))

        entries.sort(key=lambda e: (e[0], e[1]))
        rows = [e[2] for e in entries]
        summary = {
            "SKUs reported": len(rows),
            "SKUs skipped": skipped,
            "Below minimum": sum(1 for r in rows if r.severity is not Severity.NOMINAL),
            "Minimum available seats": cfg.license_min_available,
        }
        return new_report(ctx, self.title, COLUMNS, rows, summary=summary)
