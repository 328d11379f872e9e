"""The Things Stack CSV format decoder.

This adapter implements IFormatDecoder for flat CSV files with one end
device per row:

    id;dev_eui;join_eui;frequency_plan_id;lorawan_version;app_key
    sensor-1;70B3D57ED0000001;0000000000000000;EU_863_870_TTN;MAC_V1_0_2;0123...CDEF

- First row is the header; unknown columns are ignored
- Delimiter is detected from the header (semicolon, comma or tab)
- Empty cells leave the field unset
- Every set cell adds its field path(s) to the record's field mask
"""

import base64
import csv
import io
import logging
import re
import secrets
from typing import Callable, Iterator

from ...api.exceptions import FormatError
from ...api.field_mask import set_path
from ..domain.entities import RawDeviceRecord
from ..domain.ports import IFormatDecoder

logger = logging.getLogger(__name__)

FORMAT_ID = "the-things-stack-csv"

EUI_PATTERN = re.compile(r"^[0-9A-Fa-f]{16}$")
KEY_PATTERN = re.compile(r"^[0-9A-Fa-f]{32}$")
DEV_ADDR_PATTERN = re.compile(r"^[0-9A-Fa-f]{8}$")

TRUE_VALUES = {"1", "t", "true"}
FALSE_VALUES = {"0", "f", "false"}

UINT32_MAX = 2**32 - 1


# ----------------------------------------
# Cell parsers (raise ValueError)
# ----------------------------------------


def _parse_eui(value: str) -> str:
    if not EUI_PATTERN.match(value):
        raise ValueError(f"`{value}` is not a 64-bit EUI")
    return value.upper()


def _parse_key(value: str) -> str:
    if not KEY_PATTERN.match(value):
        raise ValueError("not a 128-bit key")
    return value.upper()


def _parse_dev_addr(value: str) -> str:
    if not DEV_ADDR_PATTERN.match(value):
        raise ValueError(f"`{value}` is not a DevAddr")
    return value.upper()


def _parse_bool(value: str) -> bool:
    lowered = value.lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise ValueError(f"`{value}` is not a boolean")


def _parse_uint32(value: str) -> int:
    if not value.isdigit() or int(value) > UINT32_MAX:
        raise ValueError(f"`{value}` is not an unsigned 32-bit integer")
    return int(value)


def _parse_rx_delay(value: str) -> str:
    upper = value.upper()
    if upper.startswith("RX_DELAY_"):
        upper = upper[len("RX_DELAY_"):]
    if not upper.isdigit() or int(upper) > 15:
        raise ValueError(f"`{value}` is not an RX delay")
    return f"RX_DELAY_{int(upper)}"


def _new_session_key_id() -> str:
    return base64.b64encode(secrets.token_bytes(16)).decode("ascii")


# ----------------------------------------
# Column setters: (end_device, value) -> paths
# ----------------------------------------

ColumnSetter = Callable[[dict, str], list[str]]


def _simple(path: str, parse: Callable[[str], object] = str) -> ColumnSetter:
    def setter(device: dict, value: str) -> list[str]:
        set_path(device, path, parse(value))
        return [path]

    return setter


def _root_key(name: str) -> ColumnSetter:
    def setter(device: dict, value: str) -> list[str]:
        set_path(device, f"root_keys.{name}.key", _parse_key(value))
        device["supports_join"] = True
        return [f"root_keys.{name}.key", "supports_join"]

    return setter


def _session_key(name: str) -> ColumnSetter:
    def setter(device: dict, value: str) -> list[str]:
        key = _parse_key(value)
        session = device.setdefault("session", {})
        keys = session.setdefault("keys", {})
        keys.setdefault("session_key_id", _new_session_key_id())
        keys[name] = {"key": key}
        return [f"session.keys.{name}.key", "session.keys.session_key_id"]

    return setter


def _wrapped(path: str, parse: Callable[[str], object]) -> ColumnSetter:
    def setter(device: dict, value: str) -> list[str]:
        set_path(device, path, {"value": parse(value)})
        return [path]

    return setter


COLUMN_SETTERS: dict[str, ColumnSetter] = {
    "id": _simple("ids.device_id"),
    "dev_eui": _simple("ids.dev_eui", _parse_eui),
    "join_eui": _simple("ids.join_eui", _parse_eui),
    "app_eui": _simple("ids.join_eui", _parse_eui),
    "name": _simple("name"),
    "description": _simple("description"),
    "frequency_plan_id": _simple("frequency_plan_id"),
    "lorawan_version": _simple("lorawan_version"),
    "lorawan_phy_version": _simple("lorawan_phy_version"),
    "brand_id": _simple("version_ids.brand_id"),
    "model_id": _simple("version_ids.model_id"),
    "hardware_version": _simple("version_ids.hardware_version"),
    "firmware_version": _simple("version_ids.firmware_version"),
    "band_id": _simple("version_ids.band_id"),
    "vendor_id": _simple("version_ids.vendor_id", _parse_uint32),
    "vendor_profile_id": _simple("version_ids.vendor_profile_id", _parse_uint32),
    "app_key": _root_key("app_key"),
    "nwk_key": _root_key("nwk_key"),
    "rx1_delay": _wrapped("mac_settings.rx1_delay", _parse_rx_delay),
    "supports_32_bit_f_cnt": _wrapped("mac_settings.supports_32_bit_f_cnt", _parse_bool),
    "dev_addr": _simple("session.dev_addr", _parse_dev_addr),
    "app_s_key": _session_key("app_s_key"),
    "f_nwk_s_int_key": _session_key("f_nwk_s_int_key"),
    "last_f_cnt_up": _simple("session.last_f_cnt_up", _parse_uint32),
    "last_n_f_cnt_down": _simple("session.last_n_f_cnt_down", _parse_uint32),
    "last_a_f_cnt_down": _simple("session.last_a_f_cnt_down", _parse_uint32),
    "supports_class_c": _simple("supports_class_c", _parse_bool),
}


class TheThingsStackCSVDecoder(IFormatDecoder):
    """Decoder for The Things Stack CSV end device files."""

    format_id = FORMAT_ID
    name = "The Things Stack CSV"
    description = "File containing end devices in The Things Stack CSV format."
    file_extensions = (".csv",)

    DELIMITERS = ";,\t"

    def decode(self, data: bytes) -> Iterator[RawDeviceRecord]:
        """Decode CSV rows into records, in file order.

        Raises:
            FormatError: If the header has no known column or a cell does
                not parse
        """
        try:
            text = data.decode("utf-8-sig")  # Handle BOM
        except UnicodeDecodeError as e:
            raise FormatError("File is not valid UTF-8 text", format_id=self.format_id, cause=e)

        reader = csv.reader(io.StringIO(text), self._detect_dialect(text), skipinitialspace=True)

        try:
            header = next(reader)
        except StopIteration:
            raise FormatError("No known columns in CSV header", format_id=self.format_id, line=1)
        except csv.Error as e:
            raise FormatError(f"Invalid CSV: {e}", format_id=self.format_id, line=reader.line_num, cause=e)

        setters = {
            column: COLUMN_SETTERS[name.strip().lower()]
            for column, name in enumerate(header)
            if name and name.strip().lower() in COLUMN_SETTERS
        }
        if not setters:
            raise FormatError("No known columns in CSV header", format_id=self.format_id, line=1)

        index = 0
        while True:
            try:
                row = next(reader)
            except StopIteration:
                break
            except csv.Error as e:
                raise FormatError(
                    f"Invalid CSV: {e}",
                    format_id=self.format_id,
                    line=reader.line_num,
                    cause=e,
                )

            if not any(cell.strip() for cell in row):
                continue

            end_device, paths = self._parse_row(row, setters, reader.line_num)
            yield RawDeviceRecord(index=index, end_device=end_device, field_mask=paths)
            index += 1

        logger.info(f"Decoded {index} end devices from CSV")

    def _detect_dialect(self, text: str):
        first_line = text.splitlines()[0] if text else ""
        try:
            return csv.Sniffer().sniff(first_line, delimiters=self.DELIMITERS)
        except csv.Error:
            # Single column or no delimiter on the header line
            return csv.excel

    def _parse_row(
        self,
        row: list[str],
        setters: dict[int, ColumnSetter],
        line: int,
    ) -> tuple[dict, tuple[str, ...]]:
        end_device: dict = {"ids": {}}
        paths: dict[str, None] = {}
        for column, setter in setters.items():
            if column >= len(row):
                continue
            value = row[column].strip()
            if not value:
                continue
            try:
                for path in setter(end_device, value):
                    paths.setdefault(path, None)
            except ValueError as e:
                raise FormatError(
                    f"Invalid value at line {line} column {column + 1}: {e}",
                    format_id=self.format_id,
                    line=line,
                    column=column + 1,
                    cause=e,
                )
        return end_device, tuple(paths)
