"""Default resolution for imported records.

Fills the batch-level fallback values (frequency plan, MAC version and PHY
version) into records that do not set them. A field the record's mask
already names is never touched, and no other field is ever invented.
"""

import copy
import logging
from typing import Optional

from ...api.field_mask import covers, set_path
from ..domain.entities import FallbackConfig, RawDeviceRecord, ResolvedDeviceRecord

logger = logging.getLogger(__name__)


def resolve(record: RawDeviceRecord, fallback: Optional[FallbackConfig] = None) -> ResolvedDeviceRecord:
    """Apply fallback values to a record.

    Pure: the input record is not modified. Resolving the same record twice
    with the same fallback gives equal results.

    Args:
        record: Decoded record
        fallback: Batch-level fallback values (None means no fallback)

    Returns:
        ResolvedDeviceRecord whose field mask includes the injected paths
    """
    end_device = copy.deepcopy(record.end_device)
    field_mask = list(record.field_mask)
    injected: list[str] = []

    for name, value in (fallback.values() if fallback else {}).items():
        if covers(field_mask, name):
            continue
        set_path(end_device, name, value)
        field_mask.append(name)
        injected.append(name)

    if injected:
        logger.debug(f"Applied fallback {', '.join(injected)} to {record.identifier}")

    return ResolvedDeviceRecord(
        index=record.index,
        end_device=end_device,
        field_mask=tuple(field_mask),
        injected_paths=tuple(injected),
    )
