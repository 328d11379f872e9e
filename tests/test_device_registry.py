#!/usr/bin/env python3
"""Unit tests for the end device registry.

Tests cover:
    - Field path ownership and splitting across IS/NS/AS/JS
    - Component configuration from LWS_COMPONENTS
    - IS create followed by component sets
    - Rollback when a component rejects its part or the create times out
    - Delete order

Note: EndDeviceRegistry composes StackClient; the tests mock StackClient
      rather than aiohttp directly.
"""
import asyncio
import sys
from unittest.mock import AsyncMock, MagicMock, call

import pytest

sys.path.insert(0, str(__file__).rsplit("/tests", 1)[0])
from src.lwstack.api.client import StackClient
from src.lwstack.api.device_registry import (
    ALL_COMPONENTS,
    AS,
    IS,
    JS,
    NS,
    EndDeviceRegistry,
    components_from_env,
    owners_of,
)
from src.lwstack.api.exceptions import (
    AlreadyExistsError,
    ConfigurationError,
    NotFoundError,
    ServerError,
    ValidationError,
)

OTAA_DEVICE = {
    "ids": {"device_id": "dev1", "dev_eui": "70B3D57ED0000001", "join_eui": "0000000000000000"},
    "name": "Device 1",
    "frequency_plan_id": "EU_863_870_TTN",
    "lorawan_version": "MAC_V1_0_3",
    "lorawan_phy_version": "PHY_V1_0_3_REV_A",
    "supports_join": True,
    "root_keys": {"app_key": {"key": "0123456789ABCDEF0123456789ABCDEF"}},
    "formatters": {"up_formatter": "FORMATTER_NONE"},
}

OTAA_MASK = [
    "ids.device_id",
    "ids.dev_eui",
    "ids.join_eui",
    "name",
    "frequency_plan_id",
    "lorawan_version",
    "lorawan_phy_version",
    "supports_join",
    "root_keys.app_key.key",
    "formatters.up_formatter",
]


@pytest.fixture
def mock_client():
    client = MagicMock(spec=StackClient)
    client.post = AsyncMock(return_value={"ids": {"device_id": "dev1"}, "name": "Device 1"})
    client.put = AsyncMock(return_value={})
    client.delete = AsyncMock(return_value={})
    return client


@pytest.fixture
def registry(mock_client):
    return EndDeviceRegistry(mock_client, components=ALL_COMPONENTS)


# ============================================
# Path Ownership
# ============================================

class TestPathOwnership:
    def test_longest_prefix_wins(self):
        assert owners_of("session") == (NS,)
        assert owners_of("session.keys.app_s_key.key") == (AS,)
        assert owners_of("session.dev_addr") == (NS, AS)

    def test_unknown_path(self):
        assert owners_of("not_a_field") == ()

    def test_split_otaa(self, registry):
        tree = registry.split_paths(OTAA_MASK, supports_join=True)

        assert tree[IS] == ["ids.device_id", "ids.dev_eui", "ids.join_eui", "name"]
        assert tree[NS] == ["frequency_plan_id", "lorawan_version", "lorawan_phy_version", "supports_join"]
        assert tree[AS] == ["formatters.up_formatter"]
        assert tree[JS] == ["supports_join", "root_keys.app_key.key"]

    def test_split_skips_join_server_for_abp(self, registry):
        tree = registry.split_paths(["ids.device_id", "supports_join"], supports_join=False)
        assert JS not in tree

    def test_split_skips_disabled_components(self, mock_client):
        registry = EndDeviceRegistry(mock_client, components=(IS, NS))
        tree = registry.split_paths(OTAA_MASK, supports_join=True)
        assert set(tree) == {IS, NS}

    def test_split_skips_read_only_paths(self, registry):
        tree = registry.split_paths(["ids.device_id", "created_at", "updated_at"])
        assert tree == {IS: ["ids.device_id"]}

    def test_split_rejects_unknown_path(self, registry):
        with pytest.raises(ValidationError, match="unknown field mask path"):
            registry.split_paths(["ids.device_id", "bogus"])


class TestComponentsFromEnv:
    def test_default_is_all(self, monkeypatch):
        monkeypatch.delenv("LWS_COMPONENTS", raising=False)
        assert components_from_env() == ALL_COMPONENTS

    def test_subset(self, monkeypatch):
        monkeypatch.setenv("LWS_COMPONENTS", "IS, as")
        assert components_from_env() == (IS, AS)

    def test_unknown_component(self, monkeypatch):
        monkeypatch.setenv("LWS_COMPONENTS", "is,gs")
        with pytest.raises(ConfigurationError, match="gs"):
            components_from_env()

    def test_identity_server_required(self, monkeypatch):
        monkeypatch.setenv("LWS_COMPONENTS", "ns,as")
        with pytest.raises(ConfigurationError):
            components_from_env()


# ============================================
# Create
# ============================================

class TestCreateEndDevice:
    @pytest.mark.asyncio
    async def test_creates_in_identity_server_then_components(self, registry, mock_client):
        await registry.create_end_device("app1", OTAA_DEVICE, OTAA_MASK)

        endpoint = mock_client.post.call_args.args[0]
        body = mock_client.post.call_args.kwargs["json_body"]
        assert endpoint == "/api/v3/applications/app1/devices"
        assert body["end_device"]["ids"]["application_ids"] == {"application_id": "app1"}
        assert body["end_device"]["name"] == "Device 1"
        assert "frequency_plan_id" not in body["end_device"]

        put_endpoints = sorted(c.args[0] for c in mock_client.put.call_args_list)
        assert put_endpoints == [
            "/api/v3/as/applications/app1/devices/dev1",
            "/api/v3/js/applications/app1/devices/dev1",
            "/api/v3/ns/applications/app1/devices/dev1",
        ]

    @pytest.mark.asyncio
    async def test_component_set_carries_field_mask(self, registry, mock_client):
        await registry.create_end_device("app1", OTAA_DEVICE, OTAA_MASK)

        bodies = {c.args[0]: c.kwargs["json_body"] for c in mock_client.put.call_args_list}
        js_body = bodies["/api/v3/js/applications/app1/devices/dev1"]
        assert js_body["field_mask"] == {"paths": ["supports_join", "root_keys.app_key.key"]}
        assert js_body["end_device"]["root_keys"]["app_key"]["key"] == "0123456789ABCDEF0123456789ABCDEF"
        assert "name" not in js_body["end_device"]

    @pytest.mark.asyncio
    async def test_does_not_modify_input(self, registry):
        device = {"ids": {"device_id": "dev1"}, "name": "x"}
        await registry.create_end_device("app1", device, ["ids.device_id", "name"])
        assert device == {"ids": {"device_id": "dev1"}, "name": "x"}

    @pytest.mark.asyncio
    async def test_identity_server_only(self, registry, mock_client):
        await registry.create_end_device("app1", {"ids": {"device_id": "dev1"}}, ["ids.device_id"])
        mock_client.post.assert_awaited_once()
        mock_client.put.assert_not_called()

    @pytest.mark.asyncio
    async def test_requires_device_id(self, registry, mock_client):
        with pytest.raises(ValidationError, match="device_id"):
            await registry.create_end_device("app1", {"ids": {}}, ["name"])
        mock_client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_rejects_other_application(self, registry, mock_client):
        device = {"ids": {"device_id": "dev1", "application_ids": {"application_id": "other"}}}
        with pytest.raises(ValidationError, match="belongs to application"):
            await registry.create_end_device("app1", device, ["ids.device_id"])
        mock_client.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_already_exists_propagates_without_rollback(self, registry, mock_client):
        mock_client.post.side_effect = AlreadyExistsError("ID already taken")
        with pytest.raises(AlreadyExistsError):
            await registry.create_end_device("app1", OTAA_DEVICE, OTAA_MASK)
        mock_client.put.assert_not_called()
        mock_client.delete.assert_not_called()

    @pytest.mark.asyncio
    async def test_component_failure_rolls_back(self, registry, mock_client):
        async def put(endpoint, json_body):
            if "/ns/" in endpoint:
                raise ServerError("NS unavailable")
            return {}

        mock_client.put.side_effect = put

        with pytest.raises(ServerError, match="NS unavailable"):
            await registry.create_end_device("app1", OTAA_DEVICE, OTAA_MASK)

        deleted = [c.args[0] for c in mock_client.delete.call_args_list]
        assert "/api/v3/ns/applications/app1/devices/dev1" not in deleted
        assert "/api/v3/as/applications/app1/devices/dev1" in deleted
        assert "/api/v3/js/applications/app1/devices/dev1" in deleted
        assert deleted[-1] == "/api/v3/applications/app1/devices/dev1"

    @pytest.mark.asyncio
    async def test_failed_rollback_keeps_original_error(self, registry, mock_client):
        mock_client.put.side_effect = ServerError("AS unavailable")
        mock_client.delete.side_effect = ServerError("IS unavailable")

        with pytest.raises(ServerError, match="AS unavailable"):
            await registry.create_end_device("app1", OTAA_DEVICE, OTAA_MASK)

    @pytest.mark.asyncio
    async def test_rollback_continues_past_missing_parts(self, registry, mock_client):
        async def put(endpoint, json_body):
            if "/as/" in endpoint:
                raise ServerError("AS unavailable")
            return {}

        async def delete(endpoint):
            if "/ns/" in endpoint:
                raise NotFoundError("end device", "dev1")
            return {}

        mock_client.put.side_effect = put
        mock_client.delete.side_effect = delete

        with pytest.raises(ServerError, match="AS unavailable"):
            await registry.create_end_device("app1", OTAA_DEVICE, OTAA_MASK)

        deleted = [c.args[0] for c in mock_client.delete.call_args_list]
        assert deleted[-1] == "/api/v3/applications/app1/devices/dev1"

    @pytest.mark.asyncio
    async def test_timeout_while_setting_components_rolls_back(self, registry, mock_client):
        async def slow_put(endpoint, json_body):
            await asyncio.sleep(1)
            return {}

        mock_client.put.side_effect = slow_put

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                registry.create_end_device("app1", OTAA_DEVICE, OTAA_MASK),
                timeout=0.05,
            )

        mock_client.post.assert_awaited_once()
        deleted = [c.args[0] for c in mock_client.delete.call_args_list]
        assert deleted == [
            "/api/v3/ns/applications/app1/devices/dev1",
            "/api/v3/as/applications/app1/devices/dev1",
            "/api/v3/js/applications/app1/devices/dev1",
            "/api/v3/applications/app1/devices/dev1",
        ]


# ============================================
# Delete
# ============================================

class TestDeleteEndDevice:
    @pytest.mark.asyncio
    async def test_identity_server_deleted_last(self, registry, mock_client):
        await registry.delete_end_device("app1", "dev1")

        assert mock_client.delete.call_args_list == [
            call("/api/v3/ns/applications/app1/devices/dev1"),
            call("/api/v3/as/applications/app1/devices/dev1"),
            call("/api/v3/js/applications/app1/devices/dev1"),
            call("/api/v3/applications/app1/devices/dev1"),
        ]

    @pytest.mark.asyncio
    async def test_only_enabled_components(self, mock_client):
        registry = EndDeviceRegistry(mock_client, components=(IS, AS))
        await registry.delete_end_device("app1", "dev1", [IS, NS, AS])

        assert mock_client.delete.call_args_list == [
            call("/api/v3/as/applications/app1/devices/dev1"),
            call("/api/v3/applications/app1/devices/dev1"),
        ]
