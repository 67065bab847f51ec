"""
HTTP client for the hosted Supabase backend.

Implements the :class:`~resq_dispatch.backend.Backend` contract over the
PostgREST, Auth and Storage HTTP APIs. Transport failures and server errors
are retried with exponential backoff behind a circuit breaker; whatever still
fails is returned as a ``BackendResult`` error rather than raised.
"""

import asyncio
import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from typing import Any

import httpx

from .backend import BackendError, BackendResult
from .circuit_breaker import CircuitBreaker, CircuitBreakerError
from .config import ResQConfig

logger = logging.getLogger(__name__)

# Read-only procedures that are safe to repeat after a failed attempt
IDEMPOTENT_PROCEDURES = frozenset({"preview_routes", "get_nearby_units"})


class SupabaseClient:
    """Async client for the Supabase REST, RPC, Auth and Storage endpoints."""

    def __init__(
        self,
        config: ResQConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            config: Configuration containing the backend URL and keys
            transport: Optional httpx transport (used to stub the network)
        """
        self.config = config
        self.base_url = config.supabase_url.rstrip("/")
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        # Retry configuration
        self.max_retries = config.max_retries
        self.base_delay = 1.0  # Base delay for exponential backoff
        self.max_delay = 30.0  # Maximum delay between retries

        self.timeout = config.request_timeout_seconds
        self.circuit_breaker = CircuitBreaker(name="supabase")

        bearer = config.supabase_access_token or config.supabase_anon_key
        self.headers = {
            "apikey": config.supabase_anon_key,
            "Authorization": f"Bearer {bearer}",
            "Accept": "application/json",
            "User-Agent": "resq-dispatch/0.1.0",
        }

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.close()

    async def start(self) -> None:
        """Start the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self.timeout),
                headers=self.headers,
                follow_redirects=True,
                limits=httpx.Limits(max_keepalive_connections=10, max_connections=20),
                transport=self._transport,
            )
            logger.info("Supabase client started")

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Supabase client closed")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, str] | None = None,
        json: Any = None,
        content: bytes | None = None,
        headers: dict[str, str] | None = None,
        retry: bool = True,
    ) -> BackendResult:
        """Make a request, retrying server and transport errors when allowed; never raises."""
        if self._client is None:
            await self.start()
        client = self._client

        last_error: BackendError | None = None
        attempts = self.max_retries + 1 if retry else 1

        for attempt in range(attempts):
            try:
                logger.debug(f"{method} {path} (attempt {attempt + 1}/{attempts})")
                response = await self.circuit_breaker.call(
                    lambda: client.request(
                        method,
                        path,
                        params=params,
                        json=json,
                        content=content,
                        headers=headers,
                    )
                )
            except CircuitBreakerError as e:
                logger.warning(f"{method} {path} rejected: {e}")
                return BackendResult(
                    error=BackendError(message=str(e), code="circuit_open")
                )
            except httpx.TransportError as e:
                last_error = BackendError(message=str(e) or type(e).__name__, code="transport")
                logger.warning(f"{method} {path} failed (attempt {attempt + 1}): {e}")
            except Exception as e:
                logger.error(f"Unexpected error during {method} {path}: {e}")
                return BackendResult(error=BackendError(message=str(e), code="unexpected"))
            else:
                if response.status_code < 400:
                    return BackendResult(data=self._decode(response))

                last_error = self._error_from_response(response)
                if response.status_code < 500:
                    # Client errors (including permission denials) are final
                    logger.error(f"{method} {path} returned {response.status_code}: {last_error}")
                    return BackendResult(error=last_error)

                logger.warning(
                    f"{method} {path} returned {response.status_code} (attempt {attempt + 1})"
                )

            if attempt < attempts - 1:
                delay = min(self.base_delay * (2**attempt), self.max_delay)
                logger.info(f"Retrying in {delay:.1f} seconds...")
                await asyncio.sleep(delay)

        logger.error(
            f"{method} {path} failed after {attempts} attempts: {last_error}"
        )
        return BackendResult(error=last_error)

    @staticmethod
    def _decode(response: httpx.Response) -> Any:
        if response.status_code == 204 or not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return response.text

    @staticmethod
    def _error_from_response(response: httpx.Response) -> BackendError:
        """Build an error object from a PostgREST, Auth or Storage error body."""
        try:
            body = response.json()
        except ValueError:
            body = None

        if isinstance(body, dict):
            message = (
                body.get("message")
                or body.get("msg")
                or body.get("error_description")
                or body.get("error")
                or f"HTTP {response.status_code}"
            )
            return BackendError(
                message=str(message),
                code=str(body.get("code") or response.status_code),
                details=body.get("details") or body.get("hint"),
            )

        text = response.text if len(response.text) < 500 else response.text[:500] + "..."
        return BackendError(
            message=text or f"HTTP {response.status_code}",
            code=str(response.status_code),
        )

    @staticmethod
    def _filter_params(
        eq: dict[str, Any] | None = None,
        in_filter: tuple[str, Sequence[Any]] | None = None,
    ) -> dict[str, str]:
        params: dict[str, str] = {}
        for column, value in (eq or {}).items():
            params[column] = "is.null" if value is None else f"eq.{value}"
        if in_filter is not None:
            column, values = in_filter
            quoted = ",".join(f'"{value}"' for value in values)
            params[column] = f"in.({quoted})"
        return params

    async def select(
        self,
        table: str,
        *,
        columns: str = "*",
        order_by: str | None = None,
        ascending: bool = True,
        in_filter: tuple[str, Sequence[Any]] | None = None,
        eq: dict[str, Any] | None = None,
    ) -> BackendResult:
        """Fetch rows of a table."""
        params = {"select": columns, **self._filter_params(eq, in_filter)}
        if order_by:
            params["order"] = f"{order_by}.{'asc' if ascending else 'desc'}"
        return await self._request("GET", f"/rest/v1/{table}", params=params)

    async def update(
        self, table: str, values: dict[str, Any], *, eq: dict[str, Any]
    ) -> BackendResult:
        """Update matching rows and return them."""
        return await self._request(
            "PATCH",
            f"/rest/v1/{table}",
            params=self._filter_params(eq),
            json=values,
            headers={"Prefer": "return=representation"},
        )

    async def delete(self, table: str, *, eq: dict[str, Any]) -> BackendResult:
        """Delete matching rows and return them."""
        return await self._request(
            "DELETE",
            f"/rest/v1/{table}",
            params=self._filter_params(eq),
            headers={"Prefer": "return=representation"},
        )

    async def rpc(self, name: str, params: dict[str, Any]) -> BackendResult:
        """Call a remote procedure; only read-only procedures are retried."""
        return await self._request(
            "POST",
            f"/rest/v1/rpc/{name}",
            json=params,
            retry=name in IDEMPOTENT_PROCEDURES,
        )

    def public_url(self, bucket: str, key: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{bucket}/{key}"

    async def upload(
        self,
        bucket: str,
        key: str,
        content: bytes,
        *,
        content_type: str,
        cache_control: str = "3600",
        upsert: bool = False,
    ) -> BackendResult:
        """Upload an object and return its public URL."""
        result = await self._request(
            "POST",
            f"/storage/v1/object/{bucket}/{key}",
            content=content,
            headers={
                "Content-Type": content_type,
                "Cache-Control": f"max-age={cache_control}",
                "x-upsert": "true" if upsert else "false",
            },
            retry=False,
        )
        if not result.ok:
            return result
        return BackendResult(data=self.public_url(bucket, key))

    async def remove(self, bucket: str, keys: Sequence[str]) -> BackendResult:
        """Delete objects from a bucket."""
        return await self._request(
            "DELETE", f"/storage/v1/object/{bucket}", json={"prefixes": list(keys)}
        )

    async def current_user_id(self) -> str | None:
        """ID of the signed-in user, or None for anonymous sessions."""
        if not self.config.supabase_access_token:
            return None

        result = await self._request("GET", "/auth/v1/user")
        if not result.ok:
            logger.warning(f"Could not resolve current user: {result.error}")
            return None
        if isinstance(result.data, dict) and result.data.get("id"):
            return str(result.data["id"])
        return None

    async def health_check(self) -> dict[str, Any]:
        """Check that the backend answers.

        Returns:
            Dictionary with health check results
        """
        start_time = datetime.now(UTC)
        result = await self._request("GET", "/auth/v1/health")
        response_time = (datetime.now(UTC) - start_time).total_seconds()

        health = {
            "status": "healthy" if result.ok else "unhealthy",
            "response_time_seconds": response_time,
            "endpoint": self.base_url,
            "circuit_breaker": self.circuit_breaker.get_statistics(),
            "timestamp": start_time.isoformat(),
        }
        if not result.ok:
            health["error"] = str(result.error)
        return health
