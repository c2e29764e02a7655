"""HTTP transport for the sync endpoints."""

import logging
from typing import Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from healthsync.schemas.sync import (
    AuthRequest,
    AuthResponse,
    PullRequest,
    PullResponse,
    PushRequest,
    PushResponse,
)
from healthsync.services.errors import LoginFailedError, SyncAuthError, SyncNetworkError
from healthsync.services.local_config import LocalConfig

logger = logging.getLogger(__name__)

ResponseT = TypeVar("ResponseT", bound=BaseModel)


class RemoteClient:
    """
    Async client for the server's ``/sync`` endpoints.

    401 responses raise SyncAuthError; every other failure (transport error,
    non-2xx status, malformed body) raises SyncNetworkError.
    """

    def __init__(
        self,
        config: LocalConfig,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.config = config
        self.timeout = timeout
        self.transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create async HTTP client."""
        if self.client is None:
            self.client = httpx.AsyncClient(timeout=self.timeout, transport=self.transport)
        return self.client

    async def close(self):
        """Close the HTTP client."""
        if self.client:
            await self.client.aclose()
            self.client = None

    def _url(self, endpoint: str) -> str:
        return f"{self.config.get_server_url().rstrip('/')}{endpoint}"

    async def _post_sync(self, endpoint: str, body: BaseModel, response_model: type[ResponseT]) -> ResponseT:
        headers = {}
        token = self.config.get_auth_token()
        if token:
            headers["Authorization"] = f"Bearer {token}"

        client = await self._get_client()
        try:
            response = await client.post(
                self._url(endpoint),
                json=body.model_dump(by_alias=True, exclude_none=True),
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise SyncNetworkError(f"Network error: {e}", cause=e) from e

        if response.status_code == 401:
            raise SyncAuthError("Unauthorized: invalid or expired token")
        if not response.is_success:
            raise SyncNetworkError(f"Network error: HTTP {response.status_code} from {endpoint}")

        try:
            return response_model.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            logger.error(f"{endpoint}: unexpected response body: {response.text[:200]}")
            raise SyncNetworkError(f"Network error: invalid response from {endpoint}", cause=e) from e

    async def pull(self, request: PullRequest) -> PullResponse:
        """Pull changes from the server since the given cursor."""
        return await self._post_sync("/sync/pull", request, PullResponse)

    async def push(self, request: PushRequest) -> PushResponse:
        """Push local changes to the server."""
        return await self._post_sync("/sync/push", request, PushResponse)

    async def authenticate(self, request: AuthRequest) -> AuthResponse:
        """Exchange email/password for a CLI token."""
        client = await self._get_client()
        try:
            response = await client.post(
                self._url("/sync/authenticate"),
                json=request.model_dump(by_alias=True),
            )
        except httpx.HTTPError as e:
            raise LoginFailedError("network_error", f"Network error: {e}") from e

        if response.status_code in (401, 403):
            raise LoginFailedError("invalid_credentials", "Invalid email or password")
        if response.status_code == 423:
            raise LoginFailedError("account_locked", "Account is locked")
        if not response.is_success:
            raise LoginFailedError("network_error", f"Unexpected status: {response.status_code}")

        try:
            return AuthResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise LoginFailedError("network_error", "Invalid authentication response format") from e
