from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from ..graph.clients import ApiClient, quote_segment
from ..normalize.classify import classify_cost
from ..normalize.schema import Failed, LookupResult, Report, ReportRow, Severity, lookup, make_row
from ..util.errors import ConfigError
from ..util.pagination import paginate
from .base import RunContext, new_report

COST_API_VERSION = "2023-03-01"
COST_COLUMN_NAMES = ("totalcost", "cost", "pretaxcost")
COLUMNS = ("Subscription", "Timeframe", "Total Cost", "Currency", "Budget", "Status")

_STATUS_LABELS = {
    Severity.CRITICAL: "Over budget",
    Severity.WARNING: "Near budget",
    Severity.NOMINAL: "OK",
}


def _money_decimal(value: Any) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def _money_fmt(value: Any) -> str:
    dec = _money_decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return f"{dec:.2f}"


def cost_query_body(timeframe: str) -> Dict[str, Any]:
    return {
        "type": "ActualCost",
        "timeframe": timeframe,
        "dataset": {
            "granularity": "None",
            "aggregation": {"totalCost": {"name": "Cost", "function": "Sum"}},
        },
    }


def sum_cost_rows(columns: List[Dict[str, Any]], rows: List[List[Any]]) -> Tuple[Decimal, Optional[str]]:
    """
    Sum the cost column over query result rows and pick up the currency.
    Column positions come from the response; they are not fixed.
    """
    names = [str(c.get("name") or "").lower() for c in columns]
    cost_idx = next((i for i, n in enumerate(names) if n in COST_COLUMN_NAMES), None)
    currency_idx = next((i for i, n in enumerate(names) if n == "currency"), None)
    total = Decimal("0")
    currency = None
    if cost_idx is None:
        return total, currency
    for row in rows:
        if cost_idx < len(row):
            total += _money_decimal(row[cost_idx])
        if currency is None and currency_idx is not None and currency_idx < len(row):
            currency = row[currency_idx]
    return total, currency


def query_subscription_cost(client: ApiClient, subscription_id: str, timeframe: str) -> Tuple[Decimal, Optional[str]]:
    path = f"subscriptions/{quote_segment(subscription_id)}/providers/Microsoft.CostManagement/query"
    body = cost_query_body(timeframe)

    def _fetch(cursor: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
        if cursor is None:
            data = client.post_json(path, body, params={"api-version": COST_API_VERSION})
        else:
            data = client.post_json(cursor, body)
        props = data.get("properties") or {}
        return [props], props.get("nextLink")

    total = Decimal("0")
    currency: Optional[str] = None
    for page in paginate(_fetch):
        page_total, page_currency = sum_cost_rows(page.get("columns") or [], page.get("rows") or [])
        total += page_total
        currency = currency or page_currency
    return total, currency


class SubscriptionCostRunbook:
    name = "subscription-cost"
    title = "Subscription Cost"
    required_settings: Tuple[str, ...] = ("subscription_ids",)

    def build_report(self, ctx: RunContext) -> Report:
        cfg = ctx.cfg
        if ctx.management is None:
            raise ConfigError("subscription-cost requires a management API client")
        client = ctx.management

        def _lookup(subscription_id: str) -> LookupResult[Tuple[Decimal, Optional[str]]]:
            return lookup(
                subscription_id,
                lambda: query_subscription_cost(client, subscription_id, cfg.cost_timeframe),
            )

        results = ctx.lookup_all("Subscription costs", list(cfg.subscription_ids), _lookup)

        rows: List[ReportRow] = []
        grand_total = Decimal("0")
        budget = _money_fmt(cfg.cost_budget) if cfg.cost_budget is not None else "n/a"
        for subscription_id, result in zip(cfg.subscription_ids, results):
            if isinstance(result, Failed):
                rows.append(
                    make_row(
                        (subscription_id, cfg.cost_timeframe, "", "", budget, f"Error querying cost: {result.reason}"),
                        Severity.ERROR,
                    )
                )
                continue
            total, currency = result.value
            grand_total += total
            severity = classify_cost(total, cfg.cost_budget)
            rows.append(
                make_row(
                    (subscription_id, cfg.cost_timeframe, _money_fmt(total), currency or "", budget, _STATUS_LABELS[severity]),
                    severity,
                )
            )

        summary = {
            "Subscriptions": len(cfg.subscription_ids),
            "Timeframe": cfg.cost_timeframe,
            "Combined cost": _money_fmt(grand_total),
            "Over budget": sum(1 for r in rows if r.severity is Severity.CRITICAL),
            "Query errors": sum(1 for r in rows if r.severity is Severity.ERROR),
        }
        notes = ["Combined cost sums subscriptions without currency conversion."]
        return new_report(ctx, self.title, COLUMNS, rows, summary=summary, notes=notes)
