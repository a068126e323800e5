"""
ApiClient - thin async HTTP client for the Spresso APIs.

Turns transport and status failures into the service layer exception
hierarchy so callers can map them onto their error taxonomy:
- 401/403            -> AuthenticationError
- 400                -> BadRequestError
- timeout / refused  -> RequestTimeoutError (the timeout bounds each request)
- anything else      -> ServiceError
"""

import asyncio
from datetime import timedelta
from typing import Any
from urllib.parse import parse_qsl

import httpx
from loguru import logger

from spresso.services.errors import (
    AuthenticationError,
    BadRequestError,
    RequestTimeoutError,
    ServiceError,
)


class ApiClient:
    """
    HTTP client bound to one Spresso host.

    Several ApiClients may share a single httpx.AsyncClient; a client that
    creates its own connection pool closes it in close().

    Usage:
        async with ApiClient("pricing", "https://api.spresso.com") as api:
            data = await api.request("GET", "/pim/v1/prices", params={...}, token=token)
    """

    def __init__(
        self,
        service_id: str,
        base_url: str,
        timeout: timedelta = timedelta(seconds=10),
        http_client: httpx.AsyncClient | None = None,
        additional_parameters: str = "",
    ):
        self.service_id = service_id
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._additional_params = parse_qsl(additional_parameters.lstrip("?"))
        self._http_client = http_client
        self._owns_client = http_client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout.total_seconds()),
            )
        return self._http_client

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json_data: Any = None,
        token: str | None = None,
        original_ip: str | None = None,
        http_headers: dict[str, str] | None = None,
        include_additional_parameters: bool = True,
    ) -> Any:
        """
        Execute a request and return the decoded JSON body.

        Args:
            method: HTTP method (GET, POST, PUT)
            path: Path relative to the base URL
            params: Query parameters
            json_data: JSON body
            token: Bearer token for the Authorization header
            original_ip: End-user IP, forwarded as x-real-ip
            http_headers: End-user request headers; the cookie is forwarded
            include_additional_parameters: Append the configured debug query

        Returns:
            Decoded JSON, or None for an empty body

        Raises:
            AuthenticationError, BadRequestError, RequestTimeoutError, ServiceError
        """
        client = await self._get_http_client()
        url = f"{self.base_url}/{path.lstrip('/')}"

        query: list[tuple[str, Any]] = [
            (k, v) for k, v in (params or {}).items() if v is not None
        ]
        if include_additional_parameters:
            query.extend(self._additional_params)

        headers = self._build_headers(token, original_ip, http_headers)
        seconds = self.timeout.total_seconds()

        logger.debug(f"[{self.service_id}] {method} {url}")

        try:
            # The deadline covers the whole exchange, including transports
            # that do not enforce httpx timeouts
            response = await asyncio.wait_for(
                client.request(
                    method=method,
                    url=url,
                    params=query or None,
                    headers=headers,
                    json=json_data,
                    timeout=seconds,
                ),
                timeout=seconds,
            )
        except (httpx.TimeoutException, asyncio.TimeoutError) as e:
            raise RequestTimeoutError(self.service_id, seconds) from e
        except httpx.ConnectError as e:
            raise RequestTimeoutError(self.service_id, None) from e
        except httpx.RequestError as e:
            raise ServiceError(str(e), service_id=self.service_id) from e

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(self.service_id, status)
        if status == 400:
            raise BadRequestError(
                f"HTTP 400: {response.text[:200]}", service_id=self.service_id
            )
        if not response.is_success:
            raise ServiceError(
                f"HTTP {status}: {response.text[:200]}", service_id=self.service_id
            )

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as e:
            raise ServiceError(
                f"Invalid JSON response: {e}", service_id=self.service_id
            ) from e

    @staticmethod
    def _build_headers(
        token: str | None,
        original_ip: str | None,
        http_headers: dict[str, str] | None,
    ) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        if original_ip and original_ip.strip():
            headers["x-real-ip"] = original_ip.strip()
        if http_headers:
            cookie = {k.lower(): v for k, v in http_headers.items()}.get("cookie")
            if cookie:
                headers["x-real-cookie"] = cookie
        return headers

    async def close(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
            logger.debug(f"[{self.service_id}] ApiClient closed")

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
