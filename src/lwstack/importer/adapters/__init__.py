"""Infrastructure adapters for bulk end device import.

These adapters implement the port interfaces defined in the domain layer,
connecting the import pipeline to file formats and the stack's device
registry.
"""

from .csv_decoder import TheThingsStackCSVDecoder
from .decoders import DecoderRegistry, decode, get_registry, list_formats
from .json_decoder import TheThingsStackJSONDecoder
from .stack_registry import StackRegistrationBackend

__all__ = [
    "TheThingsStackJSONDecoder",
    "TheThingsStackCSVDecoder",
    "DecoderRegistry",
    "get_registry",
    "decode",
    "list_formats",
    "StackRegistrationBackend",
]
