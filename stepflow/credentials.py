"""Connection resolution: turn a step's connection reference into an HTTP client.

The engine treats the credential store as an opaque collaborator. Anything
implementing :class:`CredentialResolver` can be plugged into the step runner;
:class:`StaticCredentialResolver` covers configuration-driven deployments and
tests.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol

import httpx
from pydantic import BaseModel, Field

from .errors import CredentialUnavailableError

logger = logging.getLogger(__name__)


class AuthType(str, Enum):
    NONE = "NONE"
    API_KEY = "API_KEY"
    BEARER_TOKEN = "BEARER_TOKEN"
    BASIC_AUTH = "BASIC_AUTH"


class ConnectionConfig(BaseModel):
    """Static description of an API connection."""

    base_url: str
    auth_type: AuthType = AuthType.NONE
    api_key: Optional[str] = None
    api_key_header: str = "X-API-Key"
    token: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)

    def auth_headers(self) -> Dict[str, str]:
        if self.auth_type is AuthType.API_KEY:
            if not self.api_key:
                raise CredentialUnavailableError("API key connection has no api_key")
            return {self.api_key_header: self.api_key}
        if self.auth_type is AuthType.BEARER_TOKEN:
            if not self.token:
                raise CredentialUnavailableError("Bearer connection has no token")
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    def basic_auth(self) -> Optional[httpx.BasicAuth]:
        if self.auth_type is not AuthType.BASIC_AUTH:
            return None
        if not self.username or self.password is None:
            raise CredentialUnavailableError("Basic auth connection has no username/password")
        return httpx.BasicAuth(self.username, self.password)


class AuthenticatedClient:
    """An ``httpx.AsyncClient`` bound to one connection's base URL and credentials."""

    def __init__(
        self,
        connection_ref: str,
        client: httpx.AsyncClient,
        owns_client: bool = True,
    ) -> None:
        self.connection_ref = connection_ref
        self._client = client
        self._owns_client = owns_client

    async def request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        json: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> httpx.Response:
        return await self._client.request(method, path, params=params, json=json, headers=headers)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "AuthenticatedClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()


class CredentialResolver(Protocol):
    """Protocol for connection/credential backends."""

    async def resolve(self, connection_ref: str) -> AuthenticatedClient:
        """Return an authenticated client or raise ``CredentialUnavailableError``."""


class StaticCredentialResolver:
    """Resolve connections from an in-process mapping."""

    def __init__(
        self,
        connections: Optional[Mapping[str, ConnectionConfig]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._connections: Dict[str, ConnectionConfig] = dict(connections or {})
        self._transport = transport

    def register(self, connection_ref: str, connection: ConnectionConfig) -> None:
        self._connections[connection_ref] = connection

    async def resolve(self, connection_ref: str) -> AuthenticatedClient:
        connection = self._connections.get(connection_ref)
        if connection is None:
            raise CredentialUnavailableError(f"Unknown connection: {connection_ref}")
        headers = {"Content-Type": "application/json", **connection.headers}
        headers.update(connection.auth_headers())
        client = httpx.AsyncClient(
            base_url=connection.base_url,
            headers=headers,
            auth=connection.basic_auth(),
            transport=self._transport,
            timeout=None,
        )
        logger.debug(f"Resolved connection {connection_ref} -> {connection.base_url}")
        return AuthenticatedClient(connection_ref, client)
