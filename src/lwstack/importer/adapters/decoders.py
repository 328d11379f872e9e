"""Format registry.

Maps format IDs to their decoders. Callers pick the format explicitly;
files are never sniffed for their format.
"""

import logging
from typing import Iterable, Iterator, Optional

from ...api.exceptions import FormatError
from ..domain.entities import RawDeviceRecord
from ..domain.ports import IFormatDecoder
from .csv_decoder import TheThingsStackCSVDecoder
from .json_decoder import TheThingsStackJSONDecoder

logger = logging.getLogger(__name__)


class DecoderRegistry:
    """Registered format decoders, keyed by format ID."""

    def __init__(self, decoders: Optional[Iterable[IFormatDecoder]] = None):
        self._decoders: dict[str, IFormatDecoder] = {}
        for decoder in decoders if decoders is not None else default_decoders():
            self.register(decoder)

    def register(self, decoder: IFormatDecoder) -> None:
        if decoder.format_id in self._decoders:
            raise ValueError(f"Format `{decoder.format_id}` is already registered")
        self._decoders[decoder.format_id] = decoder

    @property
    def format_ids(self) -> list[str]:
        return list(self._decoders)

    def get(self, format_id: str) -> IFormatDecoder:
        """Look up a decoder.

        Raises:
            FormatError: If no decoder is registered for ``format_id``
        """
        decoder = self._decoders.get(format_id)
        if decoder is None:
            raise FormatError(
                f"Unknown format `{format_id}`. Supported formats: {', '.join(self.format_ids)}",
                format_id=format_id,
            )
        return decoder

    def decode(self, data: bytes, format_id: str) -> Iterator[RawDeviceRecord]:
        """Decode ``data`` with the decoder registered for ``format_id``."""
        return self.get(format_id).decode(data)

    def list_formats(self) -> list[dict]:
        return [decoder.describe() for decoder in self._decoders.values()]


def default_decoders() -> list[IFormatDecoder]:
    return [TheThingsStackJSONDecoder(), TheThingsStackCSVDecoder()]


_default_registry: Optional[DecoderRegistry] = None


def get_registry() -> DecoderRegistry:
    """Get the shared registry of built-in formats."""
    global _default_registry
    if _default_registry is None:
        _default_registry = DecoderRegistry()
    return _default_registry


def decode(data: bytes, format_id: str) -> Iterator[RawDeviceRecord]:
    """Decode an import file with one of the built-in formats.

    Raises:
        FormatError: If the format is unknown or the data does not parse
    """
    return get_registry().decode(data, format_id)


def list_formats() -> list[dict]:
    return get_registry().list_formats()
