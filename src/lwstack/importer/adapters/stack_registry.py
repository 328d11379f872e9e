"""LoRaWAN Stack registry adapter.

This adapter wraps the EndDeviceRegistry class to implement
the IRegistrationBackend interface.
"""

import logging
from typing import Sequence

from ...api.device_registry import EndDeviceRegistry
from ..domain.ports import IRegistrationBackend

logger = logging.getLogger(__name__)


class StackRegistrationBackend(IRegistrationBackend):
    """Adapter wrapping the existing EndDeviceRegistry.

    Errors are not translated: AlreadyExistsError and the other StackError
    subclasses raised by the registry are what the submitter classifies.
    """

    def __init__(self, registry: EndDeviceRegistry):
        """Initialize with an existing EndDeviceRegistry.

        Args:
            registry: Configured EndDeviceRegistry instance
        """
        self.registry = registry

    async def register_device(
        self,
        application_id: str,
        end_device: dict,
        field_mask: Sequence[str],
    ) -> dict:
        """Create the device in the IS and set its parts on NS/AS/JS."""
        logger.debug(f"Registering end device with {len(field_mask)} field paths")
        return await self.registry.create_end_device(
            application_id=application_id,
            end_device=end_device,
            field_mask=list(field_mask),
        )
