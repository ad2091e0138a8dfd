from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

import pytest

from graph_runbooks.config import RunConfig
from graph_runbooks.runbooks.base import RunContext
from graph_runbooks.util.errors import FetchError, MutationError

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=timezone.utc)
GRAPH_BASE = "https://graph.test/v1.0"


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, url: str = GRAPH_BASE, text: str = "") -> None:
        self.status_code = status_code
        self.url = url
        self._payload = payload
        self.text = text or (json.dumps(payload) if payload is not None else "")
        self.content = self.text.encode("utf-8")

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("no JSON body")
        return self._payload


class FakeSession:
    """Stands in for requests.Session; handler(method, url, params, body) -> FakeResponse."""

    def __init__(self, handler: Callable[..., FakeResponse]) -> None:
        self.handler = handler
        self.calls: List[Dict[str, Any]] = []

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        self.calls.append({"method": method, "url": url, "params": params, "json": json, "headers": headers})
        return self.handler(method, url, params, json)


class FakeTokens:
    tenant_id = "tenant-1"

    def __init__(self, error: Optional[Exception] = None) -> None:
        self.error = error
        self.scopes: List[str] = []

    def token(self, scope: str) -> str:
        self.scopes.append(scope)
        if self.error is not None:
            raise self.error
        return "token-123"


class FakeGraph:
    """
    Path-routed stand-in for ApiClient used by runbook tests.
    Mutations whose path or body contains a string in `mutation_failures` raise MutationError.
    """

    base_url = GRAPH_BASE

    def __init__(
        self,
        collections: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        *,
        failing: Iterable[str] = (),
        posts: Optional[Dict[str, Dict[str, Any]]] = None,
        mutation_failures: Iterable[str] = (),
    ) -> None:
        self.collections = collections or {}
        self.failing = set(failing)
        self.posts = posts or {}
        self.mutation_failures = set(mutation_failures)
        self.list_calls: List[Dict[str, Any]] = []
        self.post_calls: List[Dict[str, Any]] = []
        self.mutations: List[tuple] = []

    def list_collection(self, path, params=None, *, headers=None, page_size=None, **kwargs):
        self.list_calls.append({"path": path, "params": dict(params or {}), "headers": dict(headers or {})})
        if path in self.failing:
            raise FetchError(f"GET {path}: HTTP 500", status=500)
        return [dict(item) for item in self.collections.get(path, [])]

    def post_json(self, path, body, *, params=None, headers=None, error_cls=FetchError):
        self.post_calls.append({"path": path, "params": dict(params or {}), "body": body})
        if path in self.failing:
            raise error_cls(f"POST {path}: HTTP 500", status=500)
        return self.posts[path]

    def _mutate(self, method: str, path: str, body: Any = None) -> None:
        self.mutations.append((method, path, body))
        text = f"{path} {body}"
        if any(marker in text for marker in self.mutation_failures):
            raise MutationError(f"{method} {path}: HTTP 403 (Authorization_RequestDenied)", status=403)

    def patch(self, path, body):
        self._mutate("PATCH", path, body)

    def post_ref(self, path, target_url):
        self._mutate("POST", path, {"@odata.id": target_url})

    def delete(self, path):
        self._mutate("DELETE", path)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch) -> None:
    for key in list(os.environ):
        if key.startswith("GRAPH_RB_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def make_ctx() -> Callable[..., RunContext]:
    def _make(graph: Any, management: Any = None, **overrides: Any) -> RunContext:
        cfg = RunConfig(**overrides)
        return RunContext(cfg=cfg, graph=graph, now=NOW, management=management)

    return _make
