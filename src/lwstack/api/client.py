#!/usr/bin/env python3
"""Generic HTTP Client for the LoRaWAN Stack APIs.

This module provides a reusable HTTP client that handles the common concerns
of talking to the stack's HTTP (gRPC gateway) API:

    - Bearer authentication with an API key
    - Connection pooling via a shared aiohttp session
    - Per-request timeouts
    - Translation of error responses into typed exceptions, including the
      stack's gRPC status codes carried in JSON error bodies

Design Philosophy:
    This client knows HOW to talk to the stack, but not WHAT to send.
    It has no knowledge of end devices or field masks; that belongs in
    EndDeviceRegistry, which composes this client.

    The client never retries. Callers that register devices in bulk report
    a failed call for that device and move on; re-running the import is the
    recovery mechanism.

Usage:
    async with StackClient(APIKeyCredentials()) as client:
        await client.delete("/api/v3/applications/app1/devices/dev1")
"""
import asyncio
import json
import logging
import os
from typing import Any, Optional

import aiohttp

from .auth import APIKeyCredentials
from .exceptions import (
    AlreadyExistsError,
    APIError,
    AuthenticationError,
    ConfigurationError,
    ConnectionError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    ServerError,
    TimeoutError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# gRPC status codes used in stack error bodies
GRPC_INVALID_ARGUMENT = 3
GRPC_NOT_FOUND = 5
GRPC_ALREADY_EXISTS = 6
GRPC_PERMISSION_DENIED = 7
GRPC_UNAUTHENTICATED = 16


def extract_error_message(response_body: str) -> Optional[str]:
    """Pull the human-readable message out of a stack error body.

    Stack errors look like::

        {"code": 6,
         "message": "error:pkg/identityserver/store:id_taken (ID already taken)",
         "details": [{"message_format": "ID already taken", "attributes": {...}}]}

    The first detail's message format, with its attributes filled in, is the
    most precise text. Otherwise the parenthesized part of ``message`` is used.

    Args:
        response_body: Raw response text

    Returns:
        The message, or None if the body is not a stack error
    """
    try:
        data = json.loads(response_body)
    except (TypeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None

    details = data.get("details") or []
    if details and isinstance(details[0], dict) and details[0].get("message_format"):
        text = details[0]["message_format"]
        for key, value in (details[0].get("attributes") or {}).items():
            text = text.replace(f"{{{key}}}", str(value))
        return text

    message = data.get("message")
    if not isinstance(message, str) or not message:
        return None
    if message.startswith("error:") and message.endswith(")") and " (" in message:
        return message[message.index(" (") + 2 : -1]
    return message


def extract_grpc_code(response_body: str) -> Optional[int]:
    """Return the gRPC status code of a stack error body, if present."""
    try:
        data = json.loads(response_body)
    except (TypeError, ValueError):
        return None
    if isinstance(data, dict) and isinstance(data.get("code"), int):
        return data["code"]
    return None


class StackClient:
    """Async HTTP client for the LoRaWAN Stack APIs.

    This client is designed to be used as an async context manager to ensure
    proper session lifecycle management:

        async with StackClient(credentials) as client:
            data = await client.post("/some/endpoint", json_body={})

    Attributes:
        credentials: Credential source for the Authorization header
        base_url: Base URL for API requests (e.g., "https://eu1.cloud.thethings.network")
        request_timeout: Total timeout for one request, in seconds
    """

    def __init__(
        self,
        credentials: APIKeyCredentials,
        base_url: Optional[str] = None,
        request_timeout: float = 30.0,
        max_connections: int = 10,
    ):
        """Initialize the StackClient.

        Args:
            credentials: Credential source for authentication
            base_url: API base URL. If not provided, reads from LWS_BASE_URL env var.
            request_timeout: Total timeout for one request, in seconds
            max_connections: Connection pool size

        Raises:
            ConfigurationError: If base_url is not provided and LWS_BASE_URL is not set.
        """
        self.credentials = credentials
        self.base_url = (base_url or os.getenv("LWS_BASE_URL", "")).rstrip("/")
        self.request_timeout = request_timeout
        self.max_connections = max_connections

        if not self.base_url:
            raise ConfigurationError(
                "Base URL is required. Provide base_url parameter or set LWS_BASE_URL environment variable.",
                missing_keys=["LWS_BASE_URL"],
            )

        # Session is created in __aenter__, closed in __aexit__
        self._session: Optional[aiohttp.ClientSession] = None

    # ----------------------------------------
    # Context Manager Protocol
    # ----------------------------------------

    async def __aenter__(self) -> "StackClient":
        """Enter async context: create the HTTP session."""
        self._session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(
                limit=self.max_connections,
                limit_per_host=self.max_connections,
            ),
            timeout=aiohttp.ClientTimeout(
                total=self.request_timeout,
                connect=10,
            ),
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Exit async context: close the HTTP session."""
        if self._session:
            await self._session.close()
            self._session = None

    # ----------------------------------------
    # Low-Level Request Methods
    # ----------------------------------------

    async def _get_auth_headers(self) -> dict[str, str]:
        """Get authorization headers with the current credentials."""
        token = await self.credentials.get_token()
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Make a single HTTP request.

        Args:
            method: HTTP method (POST, PUT, DELETE)
            endpoint: API endpoint path (e.g., "/api/v3/applications/app1/devices")
            params: Query parameters
            json_body: JSON request body (for POST/PUT)

        Returns:
            Parsed JSON response as dict ({} for empty bodies)

        Raises:
            APIError: If response status is not 2xx
            RuntimeError: If called outside of async context manager
            ConnectionError: If connection to server fails
            TimeoutError: If request times out
        """
        if not self._session:
            raise RuntimeError(
                "StackClient must be used as async context manager: "
                "async with StackClient(...) as client:"
            )

        url = f"{self.base_url}{endpoint}"

        try:
            headers = await self._get_auth_headers()

            async with self._session.request(
                method=method,
                url=url,
                headers=headers,
                params=params,
                json=json_body,
            ) as response:
                if response.status >= 400:
                    error_text = await response.text()
                    raise self._create_api_error(
                        status=response.status,
                        method=method,
                        endpoint=endpoint,
                        response_body=error_text,
                    )

                body = await response.text()
                if not body:
                    return {}
                return json.loads(body)

        except aiohttp.ClientConnectionError as e:
            raise ConnectionError(
                f"Failed to connect to {self.base_url}",
                host=self.base_url,
                cause=e,
            )

        except asyncio.TimeoutError as e:
            raise TimeoutError(
                f"Request to {endpoint} timed out",
                timeout_seconds=self.request_timeout,
                cause=e,
            )

        except aiohttp.ClientError as e:
            raise NetworkError(
                f"Network error during {method} {endpoint}: {e}",
                cause=e,
            )

    def _create_api_error(
        self,
        status: int,
        method: str,
        endpoint: str,
        response_body: str,
    ) -> APIError:
        """Create appropriate APIError subclass based on status and gRPC code."""
        grpc_code = extract_grpc_code(response_body)
        message = extract_error_message(response_body)

        if status == 409 or grpc_code == GRPC_ALREADY_EXISTS:
            return AlreadyExistsError(
                message or "End device already exists",
                status_code=status,
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        if status == 401 or grpc_code == GRPC_UNAUTHENTICATED:
            return AuthenticationError(
                message or "API key rejected",
                details={"endpoint": endpoint},
            )

        if status == 403 or grpc_code == GRPC_PERMISSION_DENIED:
            return PermissionDeniedError(
                message or f"Permission denied for {method} {endpoint}",
                status_code=status,
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        if status == 404:
            return NotFoundError(
                resource_type="Resource",
                resource_id=endpoint,
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        if status in (400, 422) or grpc_code == GRPC_INVALID_ARGUMENT:
            return ValidationError(
                message or f"Validation failed for {method} {endpoint}",
                status_code=status,
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        if status >= 500:
            return ServerError(
                message or f"Server error ({status}) for {method} {endpoint}",
                status_code=status,
                endpoint=endpoint,
                method=method,
                response_body=response_body,
            )

        return APIError(
            message or f"{method} {endpoint} failed",
            status_code=status,
            endpoint=endpoint,
            method=method,
            response_body=response_body,
        )

    # ----------------------------------------
    # High-Level Request Methods
    # ----------------------------------------

    async def post(
        self,
        endpoint: str,
        json_body: dict,
        params: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Make a POST request.

        Args:
            endpoint: API endpoint path
            json_body: Request body as dict (will be JSON-encoded)
            params: Query parameters

        Returns:
            Parsed JSON response
        """
        return await self._request("POST", endpoint, params=params, json_body=json_body)

    async def put(
        self,
        endpoint: str,
        json_body: dict,
        params: Optional[dict] = None,
    ) -> dict[str, Any]:
        """Make a PUT request.

        Args:
            endpoint: API endpoint path
            json_body: Request body as dict (will be JSON-encoded)
            params: Query parameters

        Returns:
            Parsed JSON response
        """
        return await self._request("PUT", endpoint, params=params, json_body=json_body)

    async def delete(self, endpoint: str, params: Optional[dict] = None) -> dict[str, Any]:
        """Make a DELETE request."""
        return await self._request("DELETE", endpoint, params=params)
