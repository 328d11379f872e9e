#!/usr/bin/env python3
"""End Device Registration for the LoRaWAN Stack.

This module provides the EndDeviceRegistry class for creating end devices
through the stack's HTTP API.

Architecture:
    An end device is not stored in one place. Each stack component owns a
    part of it:

    - Identity Server (IS): identifiers, name, attributes, server addresses
    - Network Server (NS): frequency plan, MAC/PHY versions, MAC settings, session
    - Application Server (AS): payload formatters, application session key
    - Join Server (JS): root keys and join settings

    Creating a device means registering it in the IS first, then setting the
    component-owned fields on every enabled component that owns a path in
    the field mask. If a component rejects its part, or the create is
    cancelled while the parts are being set, the registration is rolled back so the device ID and EUIs are free for a corrected retry.

API Details:
    - IS create: POST /api/v3/applications/{app}/devices
    - NS/AS/JS set: PUT /api/v3/{ns|as|js}/applications/{app}/devices/{id}
    - Delete: DELETE on the same resources
    - ID/EUI collisions are reported by the IS as ALREADY_EXISTS

Example:
    async with StackClient(credentials) as client:
        registry = EndDeviceRegistry(client)
        device = await registry.create_end_device(
            application_id="my-app",
            end_device={"ids": {"device_id": "dev1", "dev_eui": "70B3D57ED0000001"},
                        "frequency_plan_id": "EU_863_870_TTN"},
            field_mask=["ids.device_id", "ids.dev_eui", "frequency_plan_id"],
        )
"""
import asyncio
import copy
import logging
import os
from typing import Iterable, Optional

from .client import StackClient
from .exceptions import ConfigurationError, NotFoundError, StackError, ValidationError
from .field_mask import get_path, select_paths

logger = logging.getLogger(__name__)

IS = "is"
NS = "ns"
AS = "as"
JS = "js"

ALL_COMPONENTS = (IS, NS, AS, JS)

# Path prefix -> owning components. Longest prefix wins.
COMPONENT_PATHS: dict[str, tuple[str, ...]] = {
    "ids": (IS,),
    "name": (IS,),
    "description": (IS,),
    "attributes": (IS,),
    "version_ids": (IS, NS, AS),
    "locations": (IS,),
    "picture": (IS,),
    "service_profile_id": (IS,),
    "claim_authentication_code": (IS,),
    "network_server_address": (IS,),
    "application_server_address": (IS,),
    "join_server_address": (IS,),
    "lora_alliance_profile_ids": (IS,),
    "serial_number": (IS,),
    "frequency_plan_id": (NS,),
    "lorawan_version": (NS,),
    "lorawan_phy_version": (NS,),
    "supports_join": (NS, JS),
    "supports_class_b": (NS,),
    "supports_class_c": (NS,),
    "multicast": (NS, AS),
    "mac_settings": (NS,),
    "mac_state": (NS,),
    "session": (NS,),
    "session.dev_addr": (NS, AS),
    "session.keys.app_s_key": (AS,),
    "session.keys.session_key_id": (NS, AS),
    "session.last_a_f_cnt_down": (AS,),
    "formatters": (AS,),
    "skip_payload_crypto": (AS,),
    "skip_payload_crypto_override": (AS,),
    "root_keys": (JS,),
    "net_id": (JS,),
    "resets_join_nonces": (JS,),
    "application_server_id": (JS,),
    "application_server_kek_label": (JS,),
    "network_server_kek_label": (JS,),
}

# Set by the stack itself; present in exports but never written on create
READ_ONLY_PATHS = ("created_at", "updated_at", "activated_at", "last_seen_at")


def owners_of(path: str) -> tuple[str, ...]:
    """Return the components owning a field path (empty if unknown)."""
    parts = path.split(".")
    for end in range(len(parts), 0, -1):
        owners = COMPONENT_PATHS.get(".".join(parts[:end]))
        if owners is not None:
            return owners
    return ()


def components_from_env() -> tuple[str, ...]:
    """Read the enabled components from LWS_COMPONENTS (default: all).

    Raises:
        ConfigurationError: If an unknown component is listed or IS is missing
    """
    raw = os.getenv("LWS_COMPONENTS", "")
    if not raw.strip():
        return ALL_COMPONENTS
    components = tuple(c.strip().lower() for c in raw.split(",") if c.strip())
    unknown = [c for c in components if c not in ALL_COMPONENTS]
    if unknown:
        raise ConfigurationError(
            f"Unknown stack components in LWS_COMPONENTS: {', '.join(unknown)}",
            details={"allowed": list(ALL_COMPONENTS)},
        )
    if IS not in components:
        raise ConfigurationError("LWS_COMPONENTS must include the Identity Server (is)")
    return components


class EndDeviceRegistry:
    """Create and delete end devices across the stack components.

    Attributes:
        client: StackClient instance for API communication
        components: Enabled stack components
    """

    def __init__(
        self,
        client: StackClient,
        components: Optional[Iterable[str]] = None,
    ):
        """Initialize EndDeviceRegistry.

        Args:
            client: Configured StackClient instance
            components: Enabled components. Defaults to LWS_COMPONENTS.
        """
        self.client = client
        self.components = tuple(components) if components is not None else components_from_env()

    # ----------------------------------------
    # Path Splitting
    # ----------------------------------------

    def split_paths(self, field_mask: Iterable[str], supports_join: bool = False) -> dict[str, list[str]]:
        """Assign every path of a field mask to the components owning it.

        Identifier paths always go to the IS. Read-only timestamps and
        paths owned only by disabled components are dropped; the JS is
        skipped for ABP devices.

        Args:
            field_mask: Dotted field paths
            supports_join: Whether the device is OTAA (activates by joining)

        Returns:
            Component -> list of paths, for components with at least one path

        Raises:
            ValidationError: If a path is not an end device field
        """
        tree: dict[str, list[str]] = {}
        for path in field_mask:
            if path.split(".", 1)[0] in READ_ONLY_PATHS:
                continue
            owners = owners_of(path)
            if not owners:
                raise ValidationError(
                    f"Invalid or unknown field mask path used: {path}",
                    field=path,
                )
            for component in owners:
                if component not in self.components:
                    continue
                if component == JS and not supports_join:
                    continue
                tree.setdefault(component, [])
                if path not in tree[component]:
                    tree[component].append(path)
        return tree

    # ----------------------------------------
    # Create (POST + PUT)
    # ----------------------------------------

    async def create_end_device(
        self,
        application_id: str,
        end_device: dict,
        field_mask: Iterable[str],
    ) -> dict:
        """Register an end device in the IS and set its parts on NS/AS/JS.

        Args:
            application_id: Application the device is registered in
            end_device: End device fields (``ids.device_id`` is required)
            field_mask: Paths of ``end_device`` to write

        Returns:
            The created end device, merged from the component responses

        Raises:
            ValidationError: If the device ID is missing or belongs elsewhere
            AlreadyExistsError: If the device ID or an EUI is already taken
            StackError: For any other registry or transport failure
        """
        device = copy.deepcopy(end_device)
        ids = device.setdefault("ids", {})
        device_id = ids.get("device_id")
        if not device_id:
            raise ValidationError("Missing device_id for end device", field="ids.device_id")

        record_app = get_path(ids, "application_ids.application_id")
        if record_app and record_app != application_id:
            raise ValidationError(
                f"end device `{device_id}` belongs to application `{record_app}`, not `{application_id}`",
                field="ids.application_ids",
            )
        ids["application_ids"] = {"application_id": application_id}

        paths = list(field_mask)
        tree = self.split_paths(paths, supports_join=bool(device.get("supports_join")))

        is_paths = [p for p in tree.get(IS, []) if not p.startswith("ids")]
        is_payload = select_paths(device, is_paths)
        is_payload["ids"] = copy.deepcopy(ids)

        logger.info(f"Creating end device {device_id} in application {application_id}")
        created = await self.client.post(
            f"/api/v3/applications/{application_id}/devices",
            json_body={"end_device": is_payload},
        )

        components = [c for c in (NS, AS, JS) if c in tree]
        if not components:
            return created or is_payload

        try:
            results = await asyncio.gather(
                *[
                    self._set_component(component, application_id, device_id, device, ids, tree[component])
                    for component in components
                ],
                return_exceptions=True,
            )
        except asyncio.CancelledError:
            # Cancelled mid-way (e.g. a submit timeout); any component may be set
            await asyncio.shield(self._rollback(application_id, device_id, components))
            raise

        errors = [r for r in results if isinstance(r, BaseException)]
        if errors:
            succeeded = [c for c, r in zip(components, results) if not isinstance(r, BaseException)]
            await self._rollback(application_id, device_id, succeeded)
            first = errors[0]
            if isinstance(first, StackError):
                raise first
            raise StackError(f"Could not create end device `{device_id}`", cause=first)

        merged = dict(created or is_payload)
        for part in results:
            for key, value in (part or {}).items():
                if key != "ids":
                    merged[key] = value
        return merged

    async def _set_component(
        self,
        component: str,
        application_id: str,
        device_id: str,
        device: dict,
        ids: dict,
        paths: list[str],
    ) -> dict:
        """Set the component-owned part of the device on NS, AS or JS."""
        payload = select_paths(device, paths)
        payload["ids"] = copy.deepcopy(ids)
        return await self.client.put(
            f"/api/v3/{component}/applications/{application_id}/devices/{device_id}",
            json_body={"end_device": payload, "field_mask": {"paths": paths}},
        )

    async def _rollback(self, application_id: str, device_id: str, components: list[str]) -> None:
        """Best-effort removal of a partially created device.

        Every part is deleted on its own, IS last, so one failed delete does
        not keep the IS registration alive. Parts that were never set are
        reported as not found and skipped.
        """
        logger.warning(f"Rolling back partially created end device {device_id}")
        for component in [*components, IS]:
            try:
                await self.delete_end_device(application_id, device_id, [component])
            except NotFoundError:
                logger.debug(f"End device {device_id} not set on {component}, nothing to roll back")
            except StackError as e:
                logger.error(f"Rollback of end device {device_id} on {component} failed: {e}")

    # ----------------------------------------
    # Delete
    # ----------------------------------------

    async def delete_end_device(
        self,
        application_id: str,
        device_id: str,
        components: Optional[Iterable[str]] = None,
    ) -> None:
        """Delete an end device from the given components.

        Component parts are deleted before the IS registration, which is
        removed last.

        Args:
            application_id: Application ID
            device_id: End device ID
            components: Components to delete from (default: all enabled)
        """
        targets = [c for c in (components or self.components) if c in self.components]
        for component in (NS, AS, JS):
            if component in targets:
                await self.client.delete(
                    f"/api/v3/{component}/applications/{application_id}/devices/{device_id}"
                )
        if IS in targets:
            await self.client.delete(f"/api/v3/applications/{application_id}/devices/{device_id}")
