"""FastAPI dependency injection for the import API.

This module provides dependency injection functions that create
and return adapter instances for use in API endpoints.

Lifecycle Management:
- Stack client: Initialized at startup, shared across requests and runs
- Closed at application shutdown

Security:
- API key authentication required for all endpoints (except /health)
- Set API_KEY environment variable to enable authentication
- DISABLE_AUTH=true disables authentication (development mode)

Configuration:
- LWS_BASE_URL, LWS_API_KEY: stack connection (see StackClient)
- LWS_COMPONENTS: enabled stack components (default is,ns,as,js)
- LWS_IMPORT_CONCURRENCY: registrations in flight per run (default 1)
- LWS_IMPORT_TIMEOUT: per-registration timeout in seconds (default 30)
"""

import logging
import os
import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader

from ...api.device_registry import NS, components_from_env
from ...api.exceptions import ConfigurationError
from ..adapters import DecoderRegistry, StackRegistrationBackend, get_registry
from ..domain.ports import IRegistrationBackend
from ..use_cases import DEFAULT_CONCURRENCY, SubmitOptions, ValidationPolicy
from ..use_cases.submit_registrations import DEFAULT_SUBMIT_TIMEOUT

logger = logging.getLogger(__name__)

# ========== API Key Authentication ==========

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

_api_key: Optional[str] = None


def _get_api_key() -> Optional[str]:
    """Get the API key from environment (cached)."""
    global _api_key
    if _api_key is None:
        _api_key = os.getenv("API_KEY", "")
    return _api_key if _api_key else None


async def verify_api_key(
    api_key: Optional[str] = Security(api_key_header),
) -> bool:
    """Verify the API key from the request header.

    Security model:
    - If DISABLE_AUTH=true (dev mode): authentication is disabled
    - Otherwise: API_KEY is required (fail-closed)

    Raises:
        HTTPException: 401 if API key is missing or invalid
    """
    if os.getenv("DISABLE_AUTH", "").lower() == "true":
        logger.warning("Authentication disabled (DISABLE_AUTH=true). Only use this in development!")
        return True

    expected_key = _get_api_key()

    if not expected_key:
        logger.error(
            "API_KEY not set - rejecting request. "
            "Set API_KEY environment variable or DISABLE_AUTH=true for development."
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: API_KEY not set",
        )

    if not api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API key. Provide X-API-Key header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    # Constant-time comparison
    if not secrets.compare_digest(api_key, expected_key):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return True


# ========== Settings ==========


@dataclass(frozen=True)
class ImportSettings:
    """Per-run execution settings."""

    concurrency: int = DEFAULT_CONCURRENCY
    submit_timeout: float = DEFAULT_SUBMIT_TIMEOUT

    @classmethod
    def from_env(cls) -> "ImportSettings":
        """Read LWS_IMPORT_CONCURRENCY and LWS_IMPORT_TIMEOUT.

        Raises:
            ConfigurationError: If either is not a number
        """
        try:
            return cls(
                concurrency=int(os.getenv("LWS_IMPORT_CONCURRENCY", str(DEFAULT_CONCURRENCY))),
                submit_timeout=float(os.getenv("LWS_IMPORT_TIMEOUT", str(DEFAULT_SUBMIT_TIMEOUT))),
            )
        except ValueError as e:
            raise ConfigurationError(
                "LWS_IMPORT_CONCURRENCY must be an integer and LWS_IMPORT_TIMEOUT a number",
                cause=e,
            )


# ========== Global State ==========

# Stack client and registry (initialized on startup)
_stack_client = None
_registry = None


async def init_stack_client():
    """Initialize the stack client and end device registry.

    Should be called on application startup.
    """
    global _stack_client, _registry

    from ...api.auth import APIKeyCredentials
    from ...api.client import StackClient
    from ...api.device_registry import EndDeviceRegistry

    credentials = APIKeyCredentials()
    _stack_client = StackClient(credentials)
    await _stack_client.__aenter__()

    _registry = EndDeviceRegistry(_stack_client)
    logger.info(f"Stack client initialized (components={','.join(_registry.components)})")


async def close_stack_client():
    """Close the stack client.

    Should be called on application shutdown.
    """
    global _stack_client, _registry

    if _stack_client:
        await _stack_client.__aexit__(None, None, None)
        _stack_client = None

    _registry = None
    logger.info("Stack client closed")


# ========== Dependency Functions ==========


def get_decoder_registry() -> DecoderRegistry:
    """Get the registry of supported formats."""
    return get_registry()


def get_registration_backend() -> IRegistrationBackend:
    """Get the registration backend.

    Uses the shared StackClient initialized at startup.
    """
    if _registry is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Stack client not initialized. Check LWS_BASE_URL and LWS_API_KEY.",
        )
    return StackRegistrationBackend(_registry)


def _misconfigured(e: ConfigurationError) -> HTTPException:
    logger.error(f"Import API misconfigured: {e.message}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"Server misconfiguration: {e.message}",
    )


def get_validation_policy() -> ValidationPolicy:
    """Validation policy matching the enabled stack components."""
    try:
        components = components_from_env()
    except ConfigurationError as e:
        raise _misconfigured(e)
    return ValidationPolicy(network_server_enabled=NS in components)


def get_submit_options() -> SubmitOptions:
    """Server addresses for the enabled stack components."""
    try:
        return SubmitOptions.from_env()
    except ConfigurationError as e:
        raise _misconfigured(e)


def get_import_settings() -> ImportSettings:
    """Concurrency and timeout for import runs."""
    try:
        return ImportSettings.from_env()
    except ConfigurationError as e:
        raise _misconfigured(e)
