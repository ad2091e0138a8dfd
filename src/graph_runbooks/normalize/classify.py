"""
Pure filtering and classification rules shared by the runbooks.

Every function here is deterministic: thresholds come from configuration and
the only clock is the `now` value passed in by the caller, captured once per
run. Day-based buckets are inclusive (a value equal to the threshold falls in
the bucket); unit thresholds (license seats) are exclusive.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, Mapping, Optional, Sequence

from .schema import SEVERITY_RANK, Severity

EXPIRED_LABEL = "Expired"
EXPIRING_LABEL = "Expiring"
VALID_LABEL = "Valid"

_SECONDS_PER_DAY = 86400


def _whole_days(delta: timedelta) -> int:
    return int(delta.total_seconds() // _SECONDS_PER_DAY)


def days_until(instant: datetime, now: datetime) -> int:
    """Whole days from now until instant (negative once it has passed)."""
    return _whole_days(instant - now)


def days_since(instant: datetime, now: datetime) -> int:
    return _whole_days(now - instant)


def classify_expiry(days_remaining: int, warning_days: int) -> Severity:
    if days_remaining < 0:
        return Severity.CRITICAL
    if days_remaining <= warning_days:
        return Severity.WARNING
    return Severity.NOMINAL


def expiry_label(severity: Severity) -> str:
    if severity is Severity.CRITICAL:
        return EXPIRED_LABEL
    if severity is Severity.WARNING:
        return EXPIRING_LABEL
    return VALID_LABEL


def is_inactive(last_activity: Optional[datetime], now: datetime, cutoff_days: int) -> bool:
    if last_activity is None:
        return True
    return last_activity <= now - timedelta(days=cutoff_days)


def is_stale(last_seen: Optional[datetime], now: datetime, stale_days: int) -> bool:
    # Same inclusive rule as inactivity; devices that never synced are stale.
    return is_inactive(last_seen, now, stale_days)


def classify_availability(available: int, minimum: int) -> Severity:
    if available <= 0:
        return Severity.CRITICAL
    if available < minimum:
        return Severity.WARNING
    return Severity.NOMINAL


def justification_ok(text: Optional[str], min_length: int) -> bool:
    return len((text or "").strip()) >= min_length


def is_privileged_role(role_name: Optional[str], privileged_roles: Iterable[str]) -> bool:
    if not role_name:
        return False
    wanted = role_name.strip().lower()
    return any(wanted == r.strip().lower() for r in privileged_roles)


def method_type(odata_type: Optional[str]) -> str:
    """'#microsoft.graph.fido2AuthenticationMethod' -> 'fido2AuthenticationMethod'."""
    text = (odata_type or "").strip().lstrip("#")
    return text.rsplit(".", 1)[-1]


def has_strong_method(method_types: Iterable[str], expected: Iterable[str]) -> bool:
    expected_set = {e.strip().lower() for e in expected}
    return any(t.strip().lower() in expected_set for t in method_types)


def classify_cost(total: Decimal, budget: Optional[Decimal], warning_ratio: Decimal = Decimal("0.8")) -> Severity:
    if budget is None or budget <= 0:
        return Severity.NOMINAL
    if total >= budget:
        return Severity.CRITICAL
    if total >= budget * warning_ratio:
        return Severity.WARNING
    return Severity.NOMINAL


def worst_severity(*severities: Severity) -> Severity:
    if not severities:
        return Severity.NOMINAL
    return max(severities, key=lambda s: SEVERITY_RANK[s])


def _is_malformed_upn(upn: str) -> bool:
    if not upn or upn.count("@") != 1:
        return True
    local, _, domain = upn.partition("@")
    return not local or not domain


def is_excluded(
    record: Mapping[str, Any],
    *,
    excluded_ids: Sequence[str] = (),
    service_account_prefixes: Sequence[str] = (),
) -> bool:
    """
    True for records the runbooks must skip: explicitly excluded ids/UPNs,
    service accounts (by UPN prefix) and malformed principal names.
    """
    upn = str(record.get("userPrincipalName") or "").strip()
    ident = str(record.get("id") or "").strip()
    excluded = {e.strip().lower() for e in excluded_ids if e and e.strip()}
    if ident.lower() in excluded or upn.lower() in excluded:
        return True
    if _is_malformed_upn(upn):
        return True
    lowered = upn.lower()
    return any(lowered.startswith(p.strip().lower()) for p in service_account_prefixes if p and p.strip())
