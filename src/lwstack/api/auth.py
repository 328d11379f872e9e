#!/usr/bin/env python3
"""API Key Credentials for the LoRaWAN Stack.

The stack authenticates machine clients with long-lived API keys sent as
bearer tokens. This module loads the key from the environment and exposes it
to the HTTP client without ever logging its content.

Security Notes:
    - Keys are kept in memory only (never persisted to disk)
    - Keys should be provided via environment variables (LWS_API_KEY)
    - The key ID in debug output is a SHA-256 hash (first 8 chars)

Example:
    >>> credentials = APIKeyCredentials()
    >>> token = await credentials.get_token()
"""
import hashlib
import logging
import os
from typing import Optional

from dotenv import load_dotenv

from .exceptions import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)


class APIKeyCredentials:
    """Bearer credentials backed by a stack API key.

    Attributes:
        api_key: The API key (from env: LWS_API_KEY).
    """

    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key or os.getenv("LWS_API_KEY")

        if not self.api_key:
            raise ConfigurationError(
                "Missing required environment variable: LWS_API_KEY",
                missing_keys=["LWS_API_KEY"],
            )

        logger.debug(f"Loaded API key (id={self.key_id})")

    @property
    def key_id(self) -> str:
        """Get a safe identifier for logging (SHA-256 hash, first 8 chars)."""
        return hashlib.sha256(self.api_key.encode()).hexdigest()[:8]

    async def get_token(self) -> str:
        """Return the bearer token for the Authorization header.

        API keys do not expire on their own, so there is nothing to refresh;
        the method is async so that the client can treat every credential
        source the same way.
        """
        return self.api_key
