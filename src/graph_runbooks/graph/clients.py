from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple, Type
from urllib.parse import quote

import requests

from ..auth.providers import GRAPH_SCOPE, MANAGEMENT_SCOPE, AuthError, TokenProvider
from ..logging import get_logger
from ..util.errors import ApiError, FetchError, MutationError, map_http_error
from ..util.pagination import paginate

LOG = get_logger(__name__)

DEFAULT_GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
DEFAULT_MANAGEMENT_BASE_URL = "https://management.azure.com"
DEFAULT_PAGE_SIZE = 999
DEFAULT_TIMEOUT_SECS = 60
ODATA_NEXT_LINK = "@odata.nextLink"


def quote_segment(value: str) -> str:
    """Escape an identifier for embedding in a URL path segment."""
    return quote(str(value), safe="@")


class ApiClient:
    """
    Thin bearer-token client for one API audience.

    - No retry or backoff: every non-success status is surfaced to the caller.
    - Read failures raise FetchError; write failures raise MutationError.
    """

    def __init__(
        self,
        tokens: TokenProvider,
        *,
        base_url: str = DEFAULT_GRAPH_BASE_URL,
        scope: str = GRAPH_SCOPE,
        page_size: int = DEFAULT_PAGE_SIZE,
        session: Optional[Any] = None,
        timeout: int = DEFAULT_TIMEOUT_SECS,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.scope = scope
        self.page_size = page_size
        self.timeout = timeout
        self._tokens = tokens
        self._session = session if session is not None else requests.Session()

    def _bearer(self) -> str:
        # Asked per request: msal serves its cached token until a refresh is due.
        return self._tokens.token(self.scope)

    def url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}/{path.lstrip('/')}"

    def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        error_cls: Type[ApiError] = FetchError,
    ) -> Any:
        """
        Issue one request and return the response when its status is 2xx.
        """
        url = self.url(path)
        merged = {
            "Authorization": f"Bearer {self._bearer()}",
            "Accept": "application/json",
        }
        if json_body is not None:
            merged["Content-Type"] = "application/json"
        if headers:
            merged.update(headers)
        LOG.debug("API %s %s params=%s", method, url, params)
        try:
            resp = self._session.request(
                method,
                url,
                params=params,
                json=json_body,
                headers=merged,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise error_cls(f"{method} {url} failed: {e}", url=url) from e
        mapped = map_http_error(resp, f"{method} {url}", error_cls)
        if mapped:
            raise mapped
        return resp

    def get_json(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        resp = self.request("GET", path, params=params, headers=headers)
        return _json_body(resp)

    def post_json(
        self,
        path: str,
        body: Any,
        *,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        error_cls: Type[ApiError] = FetchError,
    ) -> Dict[str, Any]:
        resp = self.request("POST", path, params=params, json_body=body, headers=headers, error_cls=error_cls)
        return _json_body(resp)

    def patch(self, path: str, body: Dict[str, Any]) -> None:
        self.request("PATCH", path, json_body=body, error_cls=MutationError)

    def post_ref(self, path: str, target_url: str) -> None:
        self.request("POST", path, json_body={"@odata.id": target_url}, error_cls=MutationError)

    def delete(self, path: str) -> None:
        self.request("DELETE", path, error_cls=MutationError)

    def list_collection(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        *,
        headers: Optional[Dict[str, str]] = None,
        items_key: str = "value",
        next_key: str = ODATA_NEXT_LINK,
        page_size: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Fetch every page of a collection, following the server-supplied next
        link until it is absent. Items are returned in arrival order.

        page_size overrides the client default for endpoints that reject $top
        (pass 0 to omit it).
        """
        first_params = dict(params or {})
        top = self.page_size if page_size is None else page_size
        if top and "$top" not in first_params:
            first_params["$top"] = top

        def _fetch(cursor: Optional[str]) -> Tuple[List[Dict[str, Any]], Optional[str]]:
            if cursor is None:
                data = self.get_json(path, first_params, headers=headers)
            else:
                # next links already carry every query option
                data = self.get_json(cursor, headers=headers)
            items = data.get(items_key) or []
            return list(items), data.get(next_key)

        return list(paginate(_fetch))


def _json_body(resp: Any) -> Dict[str, Any]:
    if getattr(resp, "status_code", None) == 204 or not getattr(resp, "content", b"x"):
        return {}
    try:
        data = resp.json()
    except ValueError as e:
        raise FetchError(f"Invalid JSON from {getattr(resp, 'url', '?')}: {e}") from e
    return data if isinstance(data, dict) else {"value": data}


def graph_client(
    tokens: TokenProvider,
    *,
    base_url: str = DEFAULT_GRAPH_BASE_URL,
    page_size: int = DEFAULT_PAGE_SIZE,
    session: Optional[Any] = None,
) -> ApiClient:
    """
    Client for the directory API (users, groups, audit logs, mail).
    """
    return ApiClient(tokens, base_url=base_url, scope=GRAPH_SCOPE, page_size=page_size, session=session)


def management_client(
    tokens: TokenProvider,
    *,
    base_url: str = DEFAULT_MANAGEMENT_BASE_URL,
    session: Optional[Any] = None,
) -> ApiClient:
    """
    Client for the cost-management audience. Uses its own token; page size is
    controlled by the query body, not $top.
    """
    return ApiClient(tokens, base_url=base_url, scope=MANAGEMENT_SCOPE, page_size=0, session=session)


def verify_token(tokens: TokenProvider, scope: str = GRAPH_SCOPE) -> None:
    """
    Acquire a token once to prove the credential works.
    """
    token = tokens.token(scope)
    if not token:
        raise AuthError(f"Empty token returned for scope {scope}")
