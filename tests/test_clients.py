from __future__ import annotations

from types import SimpleNamespace

import pytest
import requests

from conftest import GRAPH_BASE, FakeResponse, FakeSession, FakeTokens
from graph_runbooks.auth.providers import GRAPH_SCOPE, MANAGEMENT_SCOPE
from graph_runbooks.graph.clients import ApiClient, graph_client, management_client, quote_segment
from graph_runbooks.util.errors import FetchError, MutationError, map_http_error


def _client(handler, **kwargs):
    session = FakeSession(handler)
    tokens = FakeTokens()
    return graph_client(tokens, base_url=GRAPH_BASE, session=session, **kwargs), session, tokens


def test_list_collection_follows_next_link_verbatim() -> None:
    next_link = f"{GRAPH_BASE}/users?$skiptoken=abc"

    def handler(method, url, params, body):
        if url == f"{GRAPH_BASE}/users":
            return FakeResponse(200, {"value": [{"id": "1"}, {"id": "2"}], "@odata.nextLink": next_link})
        if url == next_link:
            return FakeResponse(200, {"value": [{"id": "3"}]})
        raise AssertionError(url)

    client, session, tokens = _client(handler)
    items = client.list_collection("users", {"$select": "id"})

    assert [i["id"] for i in items] == ["1", "2", "3"]
    assert session.calls[0]["params"] == {"$select": "id", "$top": 999}
    assert session.calls[1]["url"] == next_link
    assert session.calls[1]["params"] is None
    assert session.calls[0]["headers"]["Authorization"] == "Bearer token-123"
    assert tokens.scopes == [GRAPH_SCOPE, GRAPH_SCOPE]


def test_list_collection_page_size_zero_omits_top() -> None:
    client, session, _ = _client(lambda *a: FakeResponse(200, {"value": []}))
    assert client.list_collection("subscribedSkus", page_size=0) == []
    assert session.calls[0]["params"] == {}


def test_list_collection_passes_extra_headers() -> None:
    client, session, _ = _client(lambda *a: FakeResponse(200, {"value": []}))
    client.list_collection("users", {"$count": "true"}, headers={"ConsistencyLevel": "eventual"})
    assert session.calls[0]["headers"]["ConsistencyLevel"] == "eventual"


def test_http_error_maps_to_fetch_error_with_detail() -> None:
    body = {"error": {"code": "Authorization_RequestDenied", "message": "Insufficient privileges"}}
    client, _, _ = _client(lambda *a: FakeResponse(403, body, url=f"{GRAPH_BASE}/users"))

    with pytest.raises(FetchError) as exc:
        client.list_collection("users")
    assert exc.value.status == 403
    assert "HTTP 403" in str(exc.value)
    assert "Insufficient privileges" in str(exc.value)


def test_mid_pagination_failure_is_fatal() -> None:
    def handler(method, url, params, body):
        if params is not None:
            return FakeResponse(200, {"value": [{"id": "1"}], "@odata.nextLink": f"{GRAPH_BASE}/users?page=2"})
        return FakeResponse(503, text="Service Unavailable")

    client, _, _ = _client(handler)
    with pytest.raises(FetchError):
        client.list_collection("users")


def test_transport_error_maps_to_fetch_error() -> None:
    def handler(*_args):
        raise requests.ConnectionError("connection reset")

    client, _, _ = _client(handler)
    with pytest.raises(FetchError):
        client.get_json("organization")


def test_mutations_raise_mutation_error() -> None:
    client, session, _ = _client(lambda *a: FakeResponse(404, {"error": {"code": "Request_ResourceNotFound"}}))

    with pytest.raises(MutationError):
        client.patch("users/u1", {"accountEnabled": False})
    with pytest.raises(MutationError):
        client.delete("groups/g1/members/u1/$ref")
    assert [c["method"] for c in session.calls] == ["PATCH", "DELETE"]


def test_post_ref_sends_odata_id() -> None:
    client, session, _ = _client(lambda *a: FakeResponse(204))
    client.post_ref("groups/g1/members/$ref", f"{GRAPH_BASE}/directoryObjects/u1")
    assert session.calls[0]["json"] == {"@odata.id": f"{GRAPH_BASE}/directoryObjects/u1"}
    assert session.calls[0]["headers"]["Content-Type"] == "application/json"


def test_management_client_uses_own_scope_and_no_top() -> None:
    session = FakeSession(lambda *a: FakeResponse(200, {"value": [{"id": "x"}]}))
    tokens = FakeTokens()
    client = management_client(tokens, base_url="https://mgmt.test", session=session)

    client.list_collection("subscriptions")

    assert tokens.scopes == [MANAGEMENT_SCOPE]
    assert session.calls[0]["params"] == {}
    assert isinstance(client, ApiClient)


def test_map_http_error_passes_success() -> None:
    assert map_http_error(FakeResponse(204), "DELETE x") is None
    assert map_http_error(FakeResponse(200, {}), "GET x") is None


def test_quote_segment_keeps_upn_readable() -> None:
    assert quote_segment("reports@example.com") == "reports@example.com"
    assert quote_segment("a b/c") == "a%20b%2Fc"


def test_every_request_asks_provider_for_current_token() -> None:
    issued = iter(["tok-1", "tok-2", "tok-3"])
    seen_scopes = []

    def _token(scope):
        seen_scopes.append(scope)
        return next(issued)

    session = FakeSession(lambda *a: FakeResponse(200, {"id": "u1"}))
    tokens = SimpleNamespace(token=_token, tenant_id="tenant-1")
    client = graph_client(tokens, base_url=GRAPH_BASE, session=session)

    for _ in range(3):
        client.get_json("users/u1")

    assert [c["headers"]["Authorization"] for c in session.calls] == [
        "Bearer tok-1",
        "Bearer tok-2",
        "Bearer tok-3",
    ]
    assert seen_scopes == [GRAPH_SCOPE] * 3
