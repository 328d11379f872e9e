"""Registration submission.

Submits one validated record to the registration backend and classifies
the result:

    - success                       -> Registered
    - AlreadyExistsError (409)      -> Conflict
    - any other error or a timeout  -> Failed

Each record is one backend call. A failure is reported for that record
only and is never retried; re-running the import is the recovery path, and
devices registered by the earlier run then show up as conflicts.
"""

import asyncio
import copy
import logging
import os
import secrets
from dataclasses import dataclass
from typing import Iterable, Optional
from urllib.parse import urlparse

from ...api.device_registry import AS, JS, NS, components_from_env
from ...api.exceptions import AlreadyExistsError, StackError
from ...api.field_mask import covers, set_path
from ..domain.entities import Conflict, Failed, Registered, SubmissionOutcome, Valid
from ..domain.ports import IRegistrationBackend

logger = logging.getLogger(__name__)

DEFAULT_SUBMIT_TIMEOUT = 30.0


def generate_claim_authentication_code() -> str:
    """Random claim authentication code of 8 hex characters."""
    return secrets.token_hex(4).upper()


@dataclass(frozen=True)
class SubmitOptions:
    """Stack-specific fields set on every record just before submission.

    These are explicit caller choices, separate from the fallback values:
    they are applied to records that do not set the field themselves.

    Attributes:
        set_claim_authentication_code: Give every device a random claim code
        join_server_address: Join Server address (OTAA devices only)
        network_server_address: Network Server address
        application_server_address: Application Server address
    """

    set_claim_authentication_code: bool = False
    join_server_address: Optional[str] = None
    network_server_address: Optional[str] = None
    application_server_address: Optional[str] = None

    @classmethod
    def from_env(
        cls,
        components: Optional[Iterable[str]] = None,
        set_claim_authentication_code: bool = False,
    ) -> "SubmitOptions":
        """Build options from LWS_*_SERVER_ADDRESS.

        Unset addresses default to the host of LWS_BASE_URL for every
        enabled component, and stay unset for disabled ones.
        """
        enabled = tuple(components) if components is not None else components_from_env()
        default_host = urlparse(os.getenv("LWS_BASE_URL", "")).hostname

        def address(component: str, env_var: str) -> Optional[str]:
            if component not in enabled:
                return None
            return os.getenv(env_var) or default_host

        return cls(
            set_claim_authentication_code=set_claim_authentication_code,
            join_server_address=address(JS, "LWS_JOIN_SERVER_ADDRESS"),
            network_server_address=address(NS, "LWS_NETWORK_SERVER_ADDRESS"),
            application_server_address=address(AS, "LWS_APPLICATION_SERVER_ADDRESS"),
        )

    def apply(self, end_device: dict, field_mask: Iterable[str]) -> tuple[dict, list[str]]:
        """Return a copy of the device and mask with the options applied."""
        device = copy.deepcopy(end_device)
        mask = list(field_mask)

        if self.set_claim_authentication_code and not covers(mask, "claim_authentication_code"):
            device["claim_authentication_code"] = {"value": generate_claim_authentication_code()}
            mask.append("claim_authentication_code")

        addresses = (
            ("network_server_address", self.network_server_address),
            ("application_server_address", self.application_server_address),
        )
        if device.get("supports_join"):
            addresses += (("join_server_address", self.join_server_address),)

        for name, value in addresses:
            if value and not covers(mask, name):
                set_path(device, name, value)
                mask.append(name)

        return device, mask


class RegistrationSubmitter:
    """Submit validated records to a registration backend, one call each."""

    def __init__(
        self,
        backend: IRegistrationBackend,
        application_id: str,
        options: Optional[SubmitOptions] = None,
        timeout: float = DEFAULT_SUBMIT_TIMEOUT,
    ):
        """Initialize the submitter.

        Args:
            backend: Registration backend
            application_id: Application every device is registered in
            options: Stack enrichment applied before each call
            timeout: Per-call timeout in seconds
        """
        self.backend = backend
        self.application_id = application_id
        self.options = options or SubmitOptions()
        self.timeout = timeout

    async def submit(self, valid: Valid) -> SubmissionOutcome:
        """Register one record and classify the result.

        Never raises for backend failures; every failure becomes an outcome.
        """
        record = valid.record
        device_id = record.device_id or record.identifier
        end_device, field_mask = self.options.apply(record.end_device, record.field_mask)

        try:
            await asyncio.wait_for(
                self.backend.register_device(self.application_id, end_device, field_mask),
                timeout=self.timeout,
            )

        except AlreadyExistsError as e:
            logger.warning(f"End device {device_id} already registered: {e.message}")
            return Conflict(index=record.index, device_id=device_id, reason=e.message)

        except asyncio.TimeoutError:
            reason = f"registration timed out after {self.timeout:g}s"
            logger.warning(f"End device {device_id}: {reason}")
            return Failed(index=record.index, device_id=device_id, reason=reason)

        except StackError as e:
            logger.warning(f"Registration of end device {device_id} failed: {e}")
            return Failed(index=record.index, device_id=device_id, reason=e.message)

        except Exception as e:
            logger.exception(f"Unexpected error registering end device {device_id}")
            return Failed(
                index=record.index,
                device_id=device_id,
                reason=str(e) or e.__class__.__name__,
            )

        logger.debug(f"Registered end device {device_id}")
        return Registered(index=record.index, device_id=device_id)
