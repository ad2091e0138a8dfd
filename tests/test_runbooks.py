from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from conftest import GRAPH_BASE, NOW, FakeGraph, FakeResponse, FakeSession, FakeTokens
from graph_runbooks.graph.clients import graph_client
from graph_runbooks.normalize.schema import Severity
from graph_runbooks.runbooks import get_runbook
from graph_runbooks.runbooks.subscription_cost import sum_cost_rows
from graph_runbooks.util.errors import ConfigError


def _iso(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def _ago(days: int) -> str:
    return _iso(NOW - timedelta(days=days))


def _ahead(days: int) -> str:
    return _iso(NOW + timedelta(days=days))


def _user(ident: str, name: str, last_sign_in=None, created=None, non_interactive=None):
    activity = None
    if last_sign_in or non_interactive:
        activity = {"lastSignInDateTime": last_sign_in, "lastNonInteractiveSignInDateTime": non_interactive}
    return {
        "id": ident,
        "displayName": name.title(),
        "userPrincipalName": f"{name}@example.com",
        "createdDateTime": created or _ago(400),
        "signInActivity": activity,
    }


# inactive-users


def test_inactive_users_across_two_pages(make_ctx) -> None:
    next_link = f"{GRAPH_BASE}/users?$skiptoken=page2"
    page1 = [
        _user("a", "alice", last_sign_in=_ago(5)),
        _user("b", "bob", last_sign_in=_ago(40), non_interactive=_ago(42)),
    ]
    page2 = [
        _user("c", "carol", created=_ago(100)),
        _user("s", "svc-backup", created=_ago(200)),
    ]

    def handler(method, url, params, body):
        if url == f"{GRAPH_BASE}/users":
            assert params["$filter"] == "accountEnabled eq true"
            return FakeResponse(200, {"value": page1, "@odata.nextLink": next_link})
        if url == next_link:
            return FakeResponse(200, {"value": page2})
        raise AssertionError(url)

    session = FakeSession(handler)
    graph = graph_client(FakeTokens(), base_url=GRAPH_BASE, session=session)
    report = get_runbook("inactive-users").build_report(make_ctx(graph, inactive_days=30))

    assert [r.cells for r in report.rows] == [
        ("Carol", "carol@example.com", "Never", "100", "Reported"),
        ("Bob", "bob@example.com", _ago(40)[:10], "40", "Reported"),
    ]
    assert {r.severity for r in report.rows} == {Severity.WARNING}
    assert report.summary["Enabled accounts"] == 4
    assert report.summary["Excluded"] == 1
    assert report.summary["Inactive"] == 2
    assert len(session.calls) == 2


def test_inactive_users_disable_with_partial_failure(make_ctx) -> None:
    graph = FakeGraph(
        {"users": [_user("b", "bob", last_sign_in=_ago(40)), _user("d", "dave", last_sign_in=_ago(60))]},
        mutation_failures=["users/d"],
    )
    ctx = make_ctx(graph, inactive_days=30, disable_inactive=True, simulate=False)

    report = get_runbook("inactive-users").build_report(ctx)

    assert [m[1] for m in graph.mutations] == ["users/d", "users/b"]
    assert graph.mutations[1][2] == {"accountEnabled": False}
    dave, bob = report.rows
    assert dave.severity is Severity.ERROR
    assert dave.cells[4].startswith("Disable failed:")
    assert bob.cells[4] == "Disabled"
    assert bob.severity is Severity.CRITICAL
    assert report.summary["Disabled"] == 1
    assert report.summary["Disable failures"] == 1


def test_inactive_users_simulation_never_mutates(make_ctx) -> None:
    graph = FakeGraph({"users": [_user("b", "bob", last_sign_in=_ago(40))]})
    ctx = make_ctx(graph, inactive_days=30, disable_inactive=True, simulate=True)

    report = get_runbook("inactive-users").build_report(ctx)

    assert graph.mutations == []
    assert report.rows[0].cells[4] == "Would disable"


# license-availability


def test_license_availability(make_ctx) -> None:
    skus = [
        {"skuPartNumber": "SPE_E3", "prepaidUnits": {"enabled": 20}, "consumedUnits": 17},
        {"skuPartNumber": "SPE_E5", "prepaidUnits": {"enabled": 10}, "consumedUnits": 10},
        {"skuPartNumber": "SPE_F1", "prepaidUnits": {"enabled": 100}, "consumedUnits": 10},
        {"skuPartNumber": "FLOW_FREE", "prepaidUnits": {"enabled": 0}, "consumedUnits": 3},
    ]
    graph = FakeGraph({"subscribedSkus": skus})

    report = get_runbook("license-availability").build_report(make_ctx(graph, license_min_available=5))

    assert [r.cells for r in report.rows] == [
        ("SPE_E5", "10", "10", "0", "Exhausted"),
        ("SPE_E3", "20", "17", "3", "Low"),
        ("SPE_F1", "100", "10", "90", "OK"),
    ]
    assert [r.severity for r in report.rows] == [Severity.CRITICAL, Severity.WARNING, Severity.NOMINAL]
    assert report.summary["SKUs skipped"] == 1
    assert report.summary["Below minimum"] == 2


# app-credentials


def test_app_credentials_reports_expired_and_expiring_only(make_ctx) -> None:
    apps = [
        {
            "id": "o1",
            "appId": "app-1",
            "displayName": "Payroll",
            "passwordCredentials": [
                {"displayName": "new", "endDateTime": _ahead(60)},
                {"displayName": "old", "endDateTime": _ago(1)},
            ],
            "keyCredentials": [{"displayName": "cert", "endDateTime": _ahead(10)}],
        },
        {"id": "o2", "appId": "app-2", "displayName": "Empty", "passwordCredentials": [], "keyCredentials": []},
    ]
    graph = FakeGraph({"applications": apps})

    report = get_runbook("app-credentials").build_report(make_ctx(graph, expiry_warning_days=15))

    assert [(r.cells[3], r.cells[5], r.cells[6], r.severity) for r in report.rows] == [
        ("old", "-1", "Expired", Severity.CRITICAL),
        ("cert", "10", "Expiring", Severity.WARNING),
    ]
    assert report.rows[1].cells[2] == "Certificate"
    assert report.summary["Credentials checked"] == 3


# pim-activations


def _activation(upn: str, role: str, reason: str) -> dict:
    return {
        "activityDateTime": _ago(1),
        "initiatedBy": {"user": {"userPrincipalName": upn}},
        "targetResources": [
            {"type": "User", "displayName": upn},
            {"type": "Role", "displayName": role},
        ],
        "resultReason": reason,
    }


def test_pim_activations_classification(make_ctx) -> None:
    graph = FakeGraph(
        {
            "auditLogs/directoryAudits": [
                _activation("alice@example.com", "Global Administrator", "fix"),
                _activation("bob@example.com", "Reports Reader", "quick"),
                _activation("carol@example.com", "Global Administrator", "Investigating incident INC-4421"),
            ]
        }
    )

    report = get_runbook("pim-activations").build_report(make_ctx(graph, audit_days=7))

    assert [(r.cells[1], r.cells[2], r.severity) for r in report.rows] == [
        ("alice@example.com", "Global Administrator", Severity.CRITICAL),
        ("bob@example.com", "Reports Reader", Severity.WARNING),
        ("carol@example.com", "Global Administrator", Severity.NOMINAL),
    ]
    query = graph.list_calls[0]["params"]["$filter"]
    assert f"activityDateTime ge {_ago(7)}" in query
    assert "PIM activation" in query
    assert report.summary["Insufficient justification"] == 2


# mfa-status


@pytest.mark.parametrize("workers", [1, 3])
def test_mfa_status_degrades_failed_lookup_to_error_row(make_ctx, workers) -> None:
    graph = FakeGraph(
        {
            "users": [_user("u1", "alice"), _user("u2", "bob"), _user("u3", "carol")],
            "users/u1/authentication/methods": [
                {"@odata.type": "#microsoft.graph.passwordAuthenticationMethod"},
                {"@odata.type": "#microsoft.graph.microsoftAuthenticatorAuthenticationMethod"},
            ],
            "users/u2/authentication/methods": [
                {"@odata.type": "#microsoft.graph.passwordAuthenticationMethod"},
            ],
        },
        failing=["users/u3/authentication/methods"],
    )

    report = get_runbook("mfa-status").build_report(make_ctx(graph, workers_lookup=workers))

    assert [(r.cells, r.severity) for r in report.rows] == [
        (("Bob", "bob@example.com", "None", "No strong method"), Severity.CRITICAL),
        (("Carol", "carol@example.com", "", "Error querying status"), Severity.ERROR),
    ]
    assert report.summary["Users checked"] == 3
    assert report.summary["Lookup errors"] == 1


# device-compliance


def test_device_compliance(make_ctx) -> None:
    devices = [
        {"id": "d1", "deviceName": "LAPTOP-1", "operatingSystem": "Windows", "osVersion": "10.0",
         "complianceState": "noncompliant", "lastSyncDateTime": _ago(1)},
        {"id": "d2", "deviceName": "LAPTOP-2", "operatingSystem": "Windows",
         "complianceState": "compliant", "lastSyncDateTime": _ago(30)},
        {"id": "d3", "deviceName": "LAPTOP-3", "complianceState": "compliant", "lastSyncDateTime": _ago(2)},
        {"id": "d4", "deviceName": "PHONE-4", "operatingSystem": "iOS",
         "complianceState": "compliant", "lastSyncDateTime": _ago(45)},
    ]
    graph = FakeGraph(
        {
            "deviceManagement/managedDevices": devices,
            "deviceManagement/managedDevices/d1/users": [{"userPrincipalName": "alice@example.com"}],
            "deviceManagement/managedDevices/d4/users": [],
        },
        failing=["deviceManagement/managedDevices/d2/users"],
    )

    report = get_runbook("device-compliance").build_report(make_ctx(graph, device_stale_days=30))

    assert [(r.cells[0], r.cells[2], r.severity) for r in report.rows] == [
        ("PHONE-4", "Unassigned", Severity.WARNING),
        ("LAPTOP-2", "Error querying user", Severity.ERROR),
        ("LAPTOP-1", "alice@example.com", Severity.CRITICAL),
    ]
    assert report.rows[2].cells[1] == "Windows 10.0"
    assert "deviceManagement/managedDevices/d3/users" not in [c["path"] for c in graph.list_calls]
    assert report.summary["Noncompliant"] == 1
    assert report.summary["Stale"] == 2
    assert report.summary["Lookup errors"] == 1


# group-sync

_GROUP_MEMBERS = "groups/g1/members/microsoft.graph.user"


def _group_graph(current, **kwargs) -> FakeGraph:
    return FakeGraph(
        {
            "users": [_user("U1", "alice"), _user("U2", "bob")],
            _GROUP_MEMBERS: current,
        },
        **kwargs,
    )


def test_group_sync_applies_additions_and_removals(make_ctx) -> None:
    graph = _group_graph([_user("U2", "bob"), _user("U3", "carol")])
    ctx = make_ctx(graph, employee_id="O'Brien-7", target_group_id="g1", simulate=False)

    report = get_runbook("group-sync").build_report(ctx)

    assert graph.mutations == [
        ("POST", "groups/g1/members/$ref", {"@odata.id": f"{GRAPH_BASE}/directoryObjects/U1"}),
        ("DELETE", "groups/g1/members/U3/$ref", None),
    ]
    assert [(r.cells, r.severity) for r in report.rows] == [
        (("alice@example.com", "U1", "Add", "Added"), Severity.NOMINAL),
        (("carol@example.com", "U3", "Remove", "Removed"), Severity.NOMINAL),
    ]
    desired_call = graph.list_calls[0]
    assert desired_call["params"]["$filter"] == "employeeId eq 'O''Brien-7'"
    assert desired_call["params"]["$count"] == "true"
    assert desired_call["headers"] == {"ConsistencyLevel": "eventual"}
    assert report.summary["Mode"] == "applied"


def test_group_sync_second_run_is_noop(make_ctx) -> None:
    graph = _group_graph([_user("U1", "alice"), _user("U2", "bob")])
    ctx = make_ctx(graph, employee_id="E1", target_group_id="g1", simulate=False)

    report = get_runbook("group-sync").build_report(ctx)

    assert graph.mutations == []
    assert report.rows == []
    assert report.notes


def test_group_sync_simulation_reports_pending(make_ctx) -> None:
    graph = _group_graph([_user("U2", "bob"), _user("U3", "carol")])
    ctx = make_ctx(graph, employee_id="E1", target_group_id="g1")

    report = get_runbook("group-sync").build_report(ctx)

    assert graph.mutations == []
    assert [r.cells[3] for r in report.rows] == ["Pending (simulation)", "Pending (simulation)"]
    assert {r.severity for r in report.rows} == {Severity.WARNING}
    assert report.summary["Mode"] == "simulation"


def test_group_sync_partial_failure_and_exclusions(make_ctx) -> None:
    graph = _group_graph(
        [_user("U2", "bob"), _user("U3", "carol"), _user("U4", "dave")],
        mutation_failures=["directoryObjects/U1"],
    )
    ctx = make_ctx(graph, employee_id="E1", target_group_id="g1", simulate=False, excluded_ids=["U3"])

    report = get_runbook("group-sync").build_report(ctx)

    assert [(r.cells[1], r.cells[2], r.severity) for r in report.rows] == [
        ("U1", "Add", Severity.ERROR),
        ("U4", "Remove", Severity.NOMINAL),
    ]
    assert report.rows[0].cells[3].startswith("Failed: ")
    assert ("DELETE", "groups/g1/members/U4/$ref", None) in graph.mutations
    assert report.summary["Failures"] == 1


# subscription-cost

_COST_PATH = "subscriptions/{}/providers/Microsoft.CostManagement/query"
_COLUMNS = [{"name": "Cost", "type": "Number"}, {"name": "Currency", "type": "String"}]


def test_subscription_cost_pages_budget_and_errors(make_ctx) -> None:
    management = FakeGraph(
        posts={
            _COST_PATH.format("sub-1"): {
                "properties": {"columns": _COLUMNS, "rows": [[700.456, "USD"]], "nextLink": "https://mgmt.test/next1"}
            },
            "https://mgmt.test/next1": {"properties": {"columns": _COLUMNS, "rows": [[500, "USD"]], "nextLink": None}},
        },
        failing=[_COST_PATH.format("sub-2")],
    )
    ctx = make_ctx(FakeGraph(), management, subscription_ids=["sub-1", "sub-2"], cost_budget=Decimal("1000"))

    report = get_runbook("subscription-cost").build_report(ctx)

    assert report.rows[0].cells == ("sub-1", "MonthToDate", "1200.46", "USD", "1000.00", "Over budget")
    assert report.rows[0].severity is Severity.CRITICAL
    assert report.rows[1].severity is Severity.ERROR
    assert report.rows[1].cells[5].startswith("Error querying cost:")
    first = management.post_calls[0]
    assert first["params"] == {"api-version": "2023-03-01"}
    assert first["body"]["type"] == "ActualCost"
    assert first["body"]["timeframe"] == "MonthToDate"
    assert management.post_calls[1]["path"] == "https://mgmt.test/next1"
    assert report.summary["Combined cost"] == "1200.46"


def test_subscription_cost_without_budget_is_nominal(make_ctx) -> None:
    management = FakeGraph(
        posts={_COST_PATH.format("sub-1"): {"properties": {"columns": _COLUMNS, "rows": [[12, "EUR"]]}}}
    )
    ctx = make_ctx(FakeGraph(), management, subscription_ids=["sub-1"])

    report = get_runbook("subscription-cost").build_report(ctx)

    assert report.rows[0].cells[2:] == ("12.00", "EUR", "n/a", "OK")
    assert report.rows[0].severity is Severity.NOMINAL


def test_subscription_cost_requires_management_client(make_ctx) -> None:
    with pytest.raises(ConfigError):
        get_runbook("subscription-cost").build_report(make_ctx(FakeGraph(), subscription_ids=["sub-1"]))


def test_sum_cost_rows_finds_columns_by_name() -> None:
    columns = [{"name": "Currency"}, {"name": "PreTaxCost"}]
    total, currency = sum_cost_rows(columns, [["USD", "1.10"], ["USD", 2]])
    assert total == Decimal("3.10")
    assert currency == "USD"
    assert sum_cost_rows([{"name": "UsageDate"}], [[1]]) == (Decimal("0"), None)
