"""LaunchDarkly REST API client: request building and rate-governed dispatch."""

import asyncio
import json
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ld_migrate.config import InstanceConfig, MigrationConfig
from ld_migrate.exceptions import APIError
from ld_migrate.rate_limits import RateGovernor

logger = structlog.get_logger(__name__)

API_VERSION = "20240415"
USER_AGENT = "ld-project-migrator"
WRITE_METHODS = frozenset({"POST", "PATCH", "PUT"})


class LaunchDarklyClient:
    """Thin wrapper around httpx.AsyncClient for one LaunchDarkly instance.

    Provides:
    - Request construction (auth, content and API-version headers)
    - Dispatch through a shared RateGovernor
    - Retry with exponential backoff on network failures
    - Structured logging
    """

    def __init__(
        self,
        instance: InstanceConfig,
        migration_config: MigrationConfig,
        governor: RateGovernor,
        org_name: str = "destination",
        transport: httpx.AsyncBaseTransport | None = None,
        retry_sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            instance: Domain and API key of the instance.
            migration_config: Retry and timeout settings.
            governor: Rate governor shared by every client of the run.
            org_name: Human-readable name for this side (source/destination).
            transport: Optional httpx transport (used by tests).
            retry_sleep: Sleep used between network retries.
        """
        if not instance.api_key:
            raise ValueError(f"No API key configured for {org_name}")

        self.instance = instance
        self.migration_config = migration_config
        self.governor = governor
        self.org_name = org_name
        self._transport = transport
        self._retry_sleep = retry_sleep
        self._http_client: httpx.AsyncClient | None = None
        self._logger = logger.bind(org=org_name, domain=instance.domain)

    async def __aenter__(self) -> "LaunchDarklyClient":
        """Async context manager entry."""
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()

    @property
    def base_url(self) -> str:
        return f"https://{self.instance.domain}/api/v2"

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http_client is not None:
            return

        self._http_client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.migration_config.request_timeout),
            limits=httpx.Limits(max_connections=20, max_keepalive_connections=5),
            transport=self._transport,
        )
        self._logger.debug("Opened HTTP client")

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http_client is not None:
            try:
                await self._http_client.aclose()
            except Exception as e:
                self._logger.warning("Error closing HTTP client", error=str(e))
            finally:
                self._http_client = None
            self._logger.debug("Closed HTTP client")

    def build_request(
        self,
        method: str,
        path: str,
        body: Any = None,
        beta: bool = False,
    ) -> httpx.Request:
        """Build an API request without sending it.

        Args:
            method: HTTP verb.
            path: Path below /api/v2, e.g. "flags/my-project".
            body: JSON-serialisable body for write verbs.
            beta: Opt in to the beta API surface (used by view endpoints).

        Returns:
            The request, ready to be dispatched by the rate governor.
        """
        method = method.upper()
        headers = {
            "Authorization": self.instance.api_key,
            "User-Agent": USER_AGENT,
        }
        if method in WRITE_METHODS:
            headers["Content-Type"] = "application/json"
        if beta:
            headers["LD-API-Version"] = "beta"
        elif method == "PATCH":
            headers["LD-API-Version"] = API_VERSION

        content = None
        if body is not None and method in WRITE_METHODS:
            content = json.dumps(body).encode()

        return httpx.Request(
            method,
            f"{self.base_url}/{path.lstrip('/')}",
            headers=headers,
            content=content,
        )

    async def _send(self, request: httpx.Request) -> httpx.Response:
        """Perform one HTTP exchange, retrying on network failures."""
        if self._http_client is None:
            await self.connect()

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.migration_config.retry_attempts + 1),
            wait=wait_exponential(
                multiplier=self.migration_config.retry_delay,
                max=30.0,
            ),
            retry=retry_if_exception_type(httpx.TransportError),
            sleep=self._retry_sleep,
            reraise=True,
        ):
            with attempt:
                try:
                    return await self._http_client.send(request)
                except httpx.TransportError as e:
                    self._logger.warning(
                        "Request failed, will retry",
                        method=request.method,
                        url=str(request.url),
                        attempt=attempt.retry_state.attempt_number,
                        error=str(e),
                    )
                    raise

    async def request(
        self,
        method: str,
        route: str,
        path: str,
        body: Any = None,
        beta: bool = False,
    ) -> httpx.Response:
        """Build a request and dispatch it through the rate governor.

        Args:
            method: HTTP verb.
            route: Rate-limit route category (e.g. "flags").
            path: Path below /api/v2.
            body: Optional JSON body.
            beta: Opt in to the beta API surface.

        Returns:
            The final (non-429) response.
        """
        req = self.build_request(method, path, body, beta)
        response = await self.governor.dispatch(route, req, self._send)
        self._logger.debug(
            "API call",
            method=method,
            path=path,
            status=response.status_code,
        )
        return response

    async def get(self, route: str, path: str, beta: bool = False) -> httpx.Response:
        return await self.request("GET", route, path, beta=beta)

    async def post(
        self, route: str, path: str, body: Any, beta: bool = False
    ) -> httpx.Response:
        return await self.request("POST", route, path, body, beta)

    async def patch(self, route: str, path: str, body: Any) -> httpx.Response:
        return await self.request("PATCH", route, path, body)

    async def delete(self, route: str, path: str) -> httpx.Response:
        return await self.request("DELETE", route, path)

    async def get_json(
        self, route: str, path: str, beta: bool = False
    ) -> dict[str, Any] | None:
        """GET a resource and decode it.

        Returns:
            The decoded body on 200, None on any other status.

        Raises:
            APIError: If a 200 response body is not valid JSON.
        """
        response = await self.get(route, path, beta)
        if response.status_code != 200:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise APIError(
                f"Invalid JSON from {path}",
                status_code=response.status_code,
                response_text=response.text,
            ) from e

    async def current_member_id(self) -> str | None:
        """Return the member id behind the API token.

        Service tokens have no member, in which case None is returned.
        """
        try:
            data = await self.get_json("members", "members/me")
        except (APIError, httpx.HTTPError) as e:
            self._logger.warning("Could not determine authenticated member", error=str(e))
            return None

        if not data:
            self._logger.info(
                "Authenticated with a service token; approval requests may not notify anyone"
            )
            return None

        member_id = data.get("_id")
        self._logger.info(
            "Authenticated as member", member=data.get("email") or member_id
        )
        return member_id

    async def health_check(self, project_key: str | None = None) -> dict[str, Any]:
        """Check that the token can reach the API.

        Args:
            project_key: Optional project to look up as part of the check.

        Returns:
            Health check data.

        Raises:
            APIError: If the API rejects the token.
        """
        path = f"projects/{project_key}" if project_key else "projects?limit=1"
        response = await self.get("projects", path)
        if response.status_code in (401, 403):
            raise APIError(
                f"Authentication failed for {self.org_name}",
                status_code=response.status_code,
                response_text=response.text,
            )

        health_data = {
            "status": "healthy",
            "domain": self.instance.domain,
            "project_key": project_key,
            "project_exists": response.status_code == 200 if project_key else None,
        }
        self._logger.debug("Health check passed", health_data=health_data)
        return health_data


@asynccontextmanager
async def create_client(
    instance: InstanceConfig,
    migration_config: MigrationConfig,
    governor: RateGovernor | None = None,
    org_name: str = "destination",
) -> AsyncGenerator[LaunchDarklyClient, None]:
    """Create a connected client and close it afterwards.

    Args:
        instance: Instance configuration.
        migration_config: Retry and timeout settings.
        governor: Shared rate governor; a fresh one is created if omitted.
        org_name: Human-readable name for logs.

    Yields:
        The connected client.
    """
    client = LaunchDarklyClient(
        instance, migration_config, governor or RateGovernor(), org_name
    )
    try:
        await client.connect()
        yield client
    finally:
        await client.close()
