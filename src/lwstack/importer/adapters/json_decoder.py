"""The Things Stack JSON format decoder.

This adapter implements IFormatDecoder for end device files exported from
(or written for) The Things Stack:

    {
      "end_devices": [
        {
          "end_device": {"ids": {"device_id": "dev1", "dev_eui": "70B3D57ED0000001"}, ...},
          "field_mask": {"paths": ["ids.device_id", "ids.dev_eui", ...]}
        }
      ]
    }

A bare top-level array of entries is accepted too. An entry without a field
mask, or a bare end device object without the ``end_device`` wrapper, gets
a mask derived from the fields it sets.
"""

import json
import logging
from typing import Any, Iterator

from ...api.exceptions import FormatError
from ...api.field_mask import leaf_paths
from ..domain.entities import RawDeviceRecord
from ..domain.ports import IFormatDecoder

logger = logging.getLogger(__name__)

FORMAT_ID = "the-things-stack"


def _unique(paths) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for path in paths:
        seen.setdefault(path, None)
    return tuple(seen)


class TheThingsStackJSONDecoder(IFormatDecoder):
    """Decoder for The Things Stack JSON end device files."""

    format_id = FORMAT_ID
    name = "The Things Stack JSON"
    description = "File containing end devices in The Things Stack JSON format."
    file_extensions = (".json",)

    def decode(self, data: bytes) -> Iterator[RawDeviceRecord]:
        """Decode a JSON document into records, in file order.

        Raises:
            FormatError: If the document is not valid JSON or not shaped as
                an end device list
        """
        entries = self._load_entries(data)
        logger.info(f"Decoding {len(entries)} end device entries from JSON")

        for index, entry in enumerate(entries):
            end_device, field_mask = self._parse_entry(index, entry)
            yield RawDeviceRecord(index=index, end_device=end_device, field_mask=field_mask)

    def _load_entries(self, data: bytes) -> list:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise FormatError(
                "File is not valid UTF-8 text",
                format_id=self.format_id,
                cause=e,
            )

        try:
            document: Any = json.loads(text)
        except json.JSONDecodeError as e:
            raise FormatError(
                f"Invalid JSON: {e.msg}",
                format_id=self.format_id,
                line=e.lineno,
                column=e.colno,
                cause=e,
            )

        if isinstance(document, list):
            return document
        if isinstance(document, dict) and isinstance(document.get("end_devices"), list):
            return document["end_devices"]
        raise FormatError(
            "Expected an object with an `end_devices` array or a top-level array",
            format_id=self.format_id,
        )

    def _parse_entry(self, index: int, entry: Any) -> tuple[dict, tuple[str, ...]]:
        position = index + 1
        if not isinstance(entry, dict):
            raise FormatError(
                f"Entry {position} is not an object",
                format_id=self.format_id,
            )

        if "end_device" not in entry:
            # Bare end device object
            return entry, _unique(leaf_paths(entry))

        end_device = entry["end_device"]
        if not isinstance(end_device, dict):
            raise FormatError(
                f"Entry {position}: `end_device` is not an object",
                format_id=self.format_id,
            )

        field_mask = entry.get("field_mask")
        if field_mask is None or (isinstance(field_mask, dict) and "paths" not in field_mask):
            return end_device, _unique(leaf_paths(end_device))

        paths = field_mask.get("paths") if isinstance(field_mask, dict) else None
        if not isinstance(paths, list) or not all(isinstance(p, str) for p in paths):
            raise FormatError(
                f"Entry {position}: `field_mask.paths` is not a list of strings",
                format_id=self.format_id,
            )
        return end_device, _unique(paths)
