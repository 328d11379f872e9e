"""Port interfaces for bulk end device import.

These are abstract interfaces (ports) that define how the import pipeline
interacts with external systems. Concrete implementations (adapters)
are provided in the adapters module.

This follows the Hexagonal Architecture pattern.
"""

from abc import ABC, abstractmethod
from typing import Iterator, Sequence

from .entities import RawDeviceRecord


class IFormatDecoder(ABC):
    """Port for turning an uploaded file into raw device records.

    One implementation per supported file format. Decoders only parse:
    they never apply fallback values or check device semantics.
    """

    format_id: str = ""
    name: str = ""
    description: str = ""
    file_extensions: tuple[str, ...] = ()

    @abstractmethod
    def decode(self, data: bytes) -> Iterator[RawDeviceRecord]:
        """Decode file content into records, in file order.

        Args:
            data: Raw file content

        Returns:
            Iterator of RawDeviceRecord with 0-based indexes

        Raises:
            FormatError: If the content does not parse as this format
        """
        ...

    def describe(self) -> dict:
        """Format metadata for listings."""
        return {
            "id": self.format_id,
            "name": self.name,
            "description": self.description,
            "file_extensions": list(self.file_extensions),
        }


class IRegistrationBackend(ABC):
    """Port for registering one end device.

    Implementations might call the stack's HTTP API, an in-memory fake, etc.
    """

    @abstractmethod
    async def register_device(
        self,
        application_id: str,
        end_device: dict,
        field_mask: Sequence[str],
    ) -> dict:
        """Register a single end device.

        Args:
            application_id: Application to register the device in
            end_device: End device fields
            field_mask: Paths of ``end_device`` to write

        Returns:
            The registered end device

        Raises:
            AlreadyExistsError: If the device ID or an EUI is already registered
            StackError: For every other failure
        """
        ...
