"""LoRaWAN Stack API modules.

This package provides the HTTP client and the end device registry used to
register devices on a LoRaWAN network stack.

Classes:
    StackClient: Generic async HTTP client with error classification
    APIKeyCredentials: API key credentials from the environment
    EndDeviceRegistry: End device create/delete across IS/NS/AS/JS

Exceptions:
    StackError: Base exception for all stack errors
    ConfigurationError: Missing or invalid configuration
    AuthenticationError: API key rejected
    APIError: API request failures
    AlreadyExistsError: Device ID or EUI already registered
    NetworkError: Network connectivity issues
    FormatError: Import file does not parse
"""
from .auth import APIKeyCredentials
from .client import StackClient, extract_error_message, extract_grpc_code
from .device_registry import (
    ALL_COMPONENTS,
    AS,
    IS,
    JS,
    NS,
    EndDeviceRegistry,
    components_from_env,
    owners_of,
)
from .error_sanitizer import ErrorSanitizer, get_sanitizer, sanitize_error_message
from .exceptions import (
    AlreadyExistsError,
    APIError,
    AuthenticationError,
    ConfigurationError,
    ConnectionError,
    FormatError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    ServerError,
    StackError,
    TimeoutError,
    ValidationError,
)

__all__ = [
    # Client
    "StackClient",
    "APIKeyCredentials",
    "extract_error_message",
    "extract_grpc_code",
    # Registry
    "EndDeviceRegistry",
    "components_from_env",
    "owners_of",
    "ALL_COMPONENTS",
    "IS",
    "NS",
    "AS",
    "JS",
    # Sanitization
    "ErrorSanitizer",
    "get_sanitizer",
    "sanitize_error_message",
    # Exceptions
    "StackError",
    "ConfigurationError",
    "AuthenticationError",
    "APIError",
    "AlreadyExistsError",
    "NotFoundError",
    "ValidationError",
    "PermissionDeniedError",
    "ServerError",
    "NetworkError",
    "ConnectionError",
    "TimeoutError",
    "FormatError",
]
