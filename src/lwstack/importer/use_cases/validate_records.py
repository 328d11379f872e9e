"""Record validation before submission.

Checks each resolved record on its own for what the registry would reject
anyway: a usable device ID, well-formed EUIs, and, when the Network Server
is enabled, a frequency plan and known LoRaWAN MAC/PHY versions. Records
are never compared with each other; duplicates inside a batch surface as
registry conflicts.

Checks run in a fixed order and the first failing check is the reason
reported for the record.
"""

import copy
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from ...api.field_mask import covers, get_path
from ..domain.entities import Invalid, ResolvedDeviceRecord, Valid, ValidationOutcome

logger = logging.getLogger(__name__)

# Lowercase alphanumerics and single dashes, 2-36 characters,
# no leading or trailing dash
DEVICE_ID_PATTERN = re.compile(r"^[a-z0-9](?:-?[a-z0-9]){1,35}$")
EUI_PATTERN = re.compile(r"^[0-9A-Fa-f]{16}$")

KNOWN_MAC_VERSIONS = frozenset({
    "MAC_V1_0",
    "MAC_V1_0_1",
    "MAC_V1_0_2",
    "MAC_V1_0_3",
    "MAC_V1_0_4",
    "MAC_V1_1",
})

KNOWN_PHY_VERSIONS = frozenset({
    "PHY_V1_0",
    "PHY_V1_0_1",
    "PHY_V1_0_2_REV_A",
    "PHY_V1_0_2_REV_B",
    "PHY_V1_1_REV_A",
    "PHY_V1_1_REV_B",
    "PHY_V1_0_3_REV_A",
    "RP001_V1_0_3_REV_A",
    "RP001_V1_1_REV_B",
    "RP002_V1_0_0",
    "RP002_V1_0_1",
    "RP002_V1_0_2",
    "RP002_V1_0_3",
    "RP002_V1_0_4",
})


@dataclass(frozen=True)
class ValidationPolicy:
    """Caller-supplied validation settings.

    Attributes:
        network_server_enabled: Require frequency plan and MAC/PHY versions
        derive_device_id_from_eui: Give records without a device ID the ID
            ``eui-<dev_eui>``; an explicit device ID always wins
        known_frequency_plans: If set, reject plans outside this set
    """

    network_server_enabled: bool = True
    derive_device_id_from_eui: bool = False
    known_frequency_plans: Optional[frozenset[str]] = None


def derive_device_id(dev_eui: str) -> str:
    """Device ID generated from a DevEUI, e.g. ``eui-70b3d57ed0000001``."""
    return f"eui-{dev_eui.lower()}"


def _text(value: Any) -> str:
    """Render a field value for a reason message (absent renders empty)."""
    if value is None:
        return ""
    return str(value)


class RecordValidator:
    """Validate resolved records against a ValidationPolicy."""

    def __init__(self, policy: Optional[ValidationPolicy] = None):
        self.policy = policy or ValidationPolicy()

    def validate(self, record: ResolvedDeviceRecord) -> ValidationOutcome:
        """Check one record.

        Returns:
            Valid with the (possibly ID-derived) record, or Invalid with the
            reason of the first failing check
        """
        record = self._with_derived_device_id(record)
        reason = self._first_failure(record)
        if reason is not None:
            return Invalid(index=record.index, identifier=record.identifier, reason=reason)
        return Valid(record=record)

    def _with_derived_device_id(self, record: ResolvedDeviceRecord) -> ResolvedDeviceRecord:
        if not self.policy.derive_device_id_from_eui or record.device_id:
            return record

        ids = record.end_device.get("ids")
        dev_eui = ids.get("dev_eui") if isinstance(ids, dict) else None
        if not isinstance(dev_eui, str) or not EUI_PATTERN.match(dev_eui):
            return record

        end_device = copy.deepcopy(record.end_device)
        end_device["ids"]["device_id"] = derive_device_id(dev_eui)
        field_mask = record.field_mask
        if "ids.device_id" not in field_mask:
            field_mask = (*field_mask, "ids.device_id")
        return ResolvedDeviceRecord(
            index=record.index,
            end_device=end_device,
            field_mask=field_mask,
            injected_paths=record.injected_paths,
        )

    def _first_failure(self, record: ResolvedDeviceRecord) -> Optional[str]:
        ids = record.end_device.get("ids")
        if not isinstance(ids, dict):
            ids = {}

        # 1-2. Device ID
        device_id = ids.get("device_id")
        if not device_id:
            return "device ID is required"
        if not isinstance(device_id, str) or not DEVICE_ID_PATTERN.match(device_id):
            return f"device ID `{device_id}` is invalid"

        # 3. EUIs
        for key, label in (("dev_eui", "DevEUI"), ("join_eui", "JoinEUI")):
            if key in ids:
                value = ids[key]
                if not isinstance(value, str) or not EUI_PATTERN.match(value):
                    return f"{label} `{_text(value)}` is invalid"

        # 4. Frequency plan
        frequency_plan_id = self._masked(record, "frequency_plan_id")
        if self.policy.network_server_enabled:
            known = self.policy.known_frequency_plans
            if not isinstance(frequency_plan_id, str) or (
                known is not None and frequency_plan_id not in known
            ):
                return f"frequency plan `{_text(frequency_plan_id)}` not found"

        # 5. LoRaWAN versions
        checks = (
            ("lorawan_version", KNOWN_MAC_VERSIONS, "LoRaWAN version"),
            ("lorawan_phy_version", KNOWN_PHY_VERSIONS, "LoRaWAN PHY version"),
        )
        for name, known_versions, label in checks:
            value = self._masked(record, name)
            if value is None and not self.policy.network_server_enabled:
                continue
            if not isinstance(value, str) or value not in known_versions:
                return f"{label} `{_text(value)}` not found"

        return None

    @staticmethod
    def _masked(record: ResolvedDeviceRecord, path: str) -> Any:
        """Value of a field the record writes, or None if it does not write it."""
        if not covers(record.field_mask, path):
            return None
        value = get_path(record.end_device, path)
        return value if value != "" else None
