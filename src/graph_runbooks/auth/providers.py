from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import msal
import requests

from ..util.errors import ConfigError

DEFAULT_AUTHORITY_HOST = "https://login.microsoftonline.com"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
MANAGEMENT_SCOPE = "https://management.azure.com/.default"


@dataclass(frozen=True)
class Credential:
    """
    App registration used for the client-credentials exchange.
    The secret is excluded from repr so it never lands in logs or tracebacks.
    """

    tenant_id: str
    client_id: str
    client_secret: str = field(repr=False)


class AuthError(RuntimeError):
    pass


def resolve_credential(
    tenant_id: Optional[str],
    client_id: Optional[str],
    client_secret: Optional[str],
) -> Credential:
    missing = [
        name
        for name, value in (
            ("tenant id", tenant_id),
            ("client id", client_id),
            ("client secret", client_secret),
        )
        if not (value or "").strip()
    ]
    if missing:
        raise ConfigError(f"Missing credential values: {', '.join(missing)}")
    return Credential(
        tenant_id=str(tenant_id).strip(),
        client_id=str(client_id).strip(),
        client_secret=str(client_secret),
    )


def _describe_failure(result: Dict[str, Any]) -> str:
    code = result.get("error") or "unknown_error"
    desc = (result.get("error_description") or "").strip()
    # AADSTS descriptions carry trace/correlation ids on following lines
    first_line = desc.splitlines()[0] if desc else ""
    return f"{code}: {first_line}" if first_line else str(code)


class TokenProvider:
    """
    Acquires client-credentials tokens for one run.

    A single confidential client is built lazily per run; tokens for different
    audiences (directory vs. cost management) are requested by scope. Repeated
    calls are answered from msal's in-memory cache until the token nears expiry.
    Nothing is persisted across runs.
    """

    def __init__(
        self,
        credential: Credential,
        *,
        authority_host: str = DEFAULT_AUTHORITY_HOST,
    ) -> None:
        self._credential = credential
        self._authority = f"{authority_host.rstrip('/')}/{credential.tenant_id}"
        self._app: Any = None

    @property
    def tenant_id(self) -> str:
        return self._credential.tenant_id

    def _client_app(self) -> Any:
        if self._app is None:
            try:
                self._app = msal.ConfidentialClientApplication(
                    self._credential.client_id,
                    authority=self._authority,
                    client_credential=self._credential.client_secret,
                )
            except (ValueError, requests.RequestException) as e:
                raise AuthError(f"Failed to initialise token client for {self._authority}: {e}") from e
        return self._app

    def token(self, scope: str) -> str:
        """
        Return a bearer token for the given scope, or raise AuthError.
        """
        app = self._client_app()
        try:
            result = app.acquire_token_for_client(scopes=[scope])
        except (ValueError, requests.RequestException) as e:
            raise AuthError(f"Token endpoint unreachable for scope {scope}: {e}") from e
        if not isinstance(result, dict) or "access_token" not in result:
            raise AuthError(
                f"Token request rejected for scope {scope}: {_describe_failure(result or {})}"
            )
        return str(result["access_token"])
