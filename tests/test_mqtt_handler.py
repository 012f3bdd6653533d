# Multi-Vendor PDU Bridge
# Created by Matthew Valancy, Valpatel Software LLC
# Copyright 2026 GPL-3.0 License
# https://github.com/mvalancy/CyberPower-PDU

"""Unit tests for MQTT handler."""

import json
import os
import sys
from unittest.mock import MagicMock, patch

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "bridge"))

from pdu_bridge.pdu_model import DeviceIdentity, Outlet
from pdu_bridge.vendor_profiles import APC, RARITAN


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_config(**overrides):
    """Create a mock Config with default values."""
    config = MagicMock()
    config.bridge_id = overrides.get("bridge_id", "pdu-bridge")
    config.mqtt_broker = overrides.get("mqtt_broker", "mosquitto")
    config.mqtt_port = overrides.get("mqtt_port", 1883)
    config.mqtt_username = overrides.get("mqtt_username", "")
    config.mqtt_password = overrides.get("mqtt_password", "")
    return config


def make_identity(profile=APC, serial="5A1234", **kw):
    fields = dict(host="10.0.0.5", community="public", profile=profile,
                  serial=serial, outlet_count=2, manufacturer=profile.name,
                  model="AP8941", firmware="v6.8.2")
    fields.update(kw)
    return DeviceIdentity(**fields)


def make_mqtt_message(topic, payload):
    """Create a mock MQTTMessage."""
    msg = MagicMock()
    msg.topic = topic
    msg.payload = payload.encode("utf-8") if isinstance(payload, str) else payload
    return msg


def make_publish_info(rc=0):
    """Create a mock publish info result."""
    info = MagicMock()
    info.rc = rc
    return info


def published(client) -> dict:
    """Map topic -> (payload, retain) for every publish on the mock client."""
    return {
        c.args[0]: (c.args[1], c.kwargs.get("retain", False))
        for c in client.publish.call_args_list
    }


@pytest.fixture()
def handler():
    with patch("paho.mqtt.client.Client") as MockClient:
        from pdu_bridge.mqtt_handler import MQTTHandler

        MockClient.return_value.publish.return_value = make_publish_info()
        h = MQTTHandler(make_config())
        h.mock_client_class = MockClient
        yield h


# ---------------------------------------------------------------------------
# Construction and connection
# ---------------------------------------------------------------------------

class TestInit:
    def test_client_id_and_lwt(self, handler):
        kwargs = handler.mock_client_class.call_args.kwargs
        assert kwargs["client_id"] == "pdu-bridge"
        handler.client.will_set.assert_called_once_with(
            "pdu/pdu-bridge/bridge/status", "offline", qos=1, retain=True,
        )

    def test_reconnect_backoff(self, handler):
        handler.client.reconnect_delay_set.assert_called_once_with(min_delay=1, max_delay=30)


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_starts_loop(self, handler):
        handler.connect()
        handler.client.connect.assert_called_once_with("mosquitto", 1883, keepalive=60)
        handler.client.loop_start.assert_called_once()
        handler.client.username_pw_set.assert_not_called()

    @pytest.mark.asyncio
    async def test_connect_with_credentials(self, handler):
        handler.config.mqtt_username = "bridge"
        handler.config.mqtt_password = "secret"
        handler.connect()
        handler.client.username_pw_set.assert_called_once_with("bridge", "secret")

    @pytest.mark.asyncio
    async def test_connect_failure_is_logged(self, handler):
        handler.client.connect.side_effect = OSError("refused")
        handler.connect()
        handler.client.loop_start.assert_not_called()

    def test_on_connect_announces_and_subscribes(self, handler):
        client = MagicMock()
        handler._on_connect(client, None, {}, 0, None)

        client.publish.assert_any_call("pdu/pdu-bridge/bridge/status", "online", qos=1, retain=True)
        topics = [c.args[0] for c in client.subscribe.call_args_list]
        assert topics == [
            "pdu/+/outlet/+/command", "pdu/+/refresh",
            "pdu/+/outlet/+/get", "pdu/+/power/get",
        ]
        assert handler.get_status()["connected"] is True

    def test_reconnect_counted(self, handler):
        handler._on_connect(MagicMock(), None, {}, 0, None)
        handler._on_disconnect(MagicMock(), None, {}, 7, None)
        assert handler.get_status()["connected"] is False
        handler._on_connect(MagicMock(), None, {}, 0, None)
        assert handler.get_status()["reconnect_count"] == 1

    def test_retained_publishes_queued_and_drained(self, handler):
        handler.client.publish.return_value = make_publish_info(rc=4)
        handler.publish_outlet_state("pdu_A", 1, True)
        handler.publish_command_response("pdu_A", 1, "on", True)
        assert handler.get_status()["publish_errors"] == 2
        # Only retained messages are kept for replay
        assert len(handler._pending_publishes) == 1

        client = MagicMock()
        handler._on_connect(client, None, {}, 0, None)
        client.publish.assert_any_call("pdu/pdu_A/outlet/1/state", "on", qos=0, retain=True)
        assert handler._pending_publishes == []


# ---------------------------------------------------------------------------
# Publishing
# ---------------------------------------------------------------------------

class TestPublish:
    def test_outlet_state(self, handler):
        handler.publish_outlet_state("pdu_A", 3, False)
        handler.client.publish.assert_called_once_with(
            "pdu/pdu_A/outlet/3/state", "off", qos=0, retain=True,
        )

    def test_power(self, handler):
        handler.publish_power("pdu_A", 0.0001)
        handler.client.publish.assert_called_once_with(
            "pdu/pdu_A/power", "0.0001", qos=0, retain=True,
        )

    def test_command_response(self, handler):
        handler.publish_command_response("pdu_A", 2, "off", False, "timeout")
        topic, payload = handler.client.publish.call_args.args
        assert topic == "pdu/pdu_A/outlet/2/command/response"
        body = json.loads(payload)
        assert body["success"] is False
        assert body["command"] == "off"
        assert body["outlet"] == 2
        assert body["error"] == "timeout"

    def test_publish_exception_does_not_raise(self, handler):
        handler.client.publish.side_effect = RuntimeError("boom")
        handler.publish_power("pdu_A", 10)
        assert handler.get_status()["publish_errors"] == 1


class TestDiscovery:
    def test_switch_per_outlet_and_power_sensor(self, handler):
        identity = make_identity()
        handler.publish_ha_discovery(identity, [Outlet(0, "NAS"), Outlet(1)])
        msgs = published(handler.client)

        switch_1, retain = msgs["homeassistant/switch/pdu_5A1234_outlet_1/config"]
        assert retain is True
        switch_1 = json.loads(switch_1)
        assert switch_1["name"] == "NAS"
        assert switch_1["state_topic"] == "pdu/pdu_5A1234/outlet/1/state"
        assert switch_1["command_topic"] == "pdu/pdu_5A1234/outlet/1/command"
        assert switch_1["device"]["identifiers"] == ["pdu_5A1234"]
        assert switch_1["device"]["manufacturer"] == "APC"
        assert switch_1["device"]["serial_number"] == "5A1234"
        assert switch_1["device"]["sw_version"] == "v6.8.2"

        switch_2 = json.loads(msgs["homeassistant/switch/pdu_5A1234_outlet_2/config"][0])
        assert switch_2["name"] == "Outlet 2"

        sensor = json.loads(msgs["homeassistant/sensor/pdu_5A1234_power/config"][0])
        assert sensor["unit_of_measurement"] == "W"
        assert sensor["device_class"] == "power"
        assert sensor["state_topic"] == "pdu/pdu_5A1234/power"

        # Only resolved names are published
        assert msgs["pdu/pdu_5A1234/outlet/1/name"][0] == "NAS"
        assert "pdu/pdu_5A1234/outlet/2/name" not in msgs

    def test_sent_once_unless_forced(self, handler):
        identity = make_identity(profile=RARITAN, serial="R1")
        handler.publish_ha_discovery(identity, [Outlet(0)])
        count = handler.client.publish.call_count
        handler.publish_ha_discovery(identity, [Outlet(0)])
        assert handler.client.publish.call_count == count
        handler.publish_ha_discovery(identity, [Outlet(0)], force=True)
        assert handler.client.publish.call_count == 2 * count
        assert handler.get_status()["ha_discovery_sent"] == {"pdu_R1": True}

    def test_no_firmware_omits_sw_version(self, handler):
        handler.publish_ha_discovery(make_identity(firmware=""), [])
        sensor = json.loads(published(handler.client)["homeassistant/sensor/pdu_5A1234_power/config"][0])
        assert "sw_version" not in sensor["device"]

    def test_remove_clears_retained_configs(self, handler):
        handler.publish_ha_discovery(make_identity(), [Outlet(0), Outlet(1)])
        handler.client.publish.reset_mock()

        handler.remove_ha_discovery("pdu_5A1234", 2)

        assert published(handler.client) == {
            "homeassistant/switch/pdu_5A1234_outlet_1/config": ("", True),
            "homeassistant/switch/pdu_5A1234_outlet_2/config": ("", True),
            "homeassistant/sensor/pdu_5A1234_power/config": ("", True),
        }
        assert handler.get_status()["ha_discovery_sent"] == {}


# ---------------------------------------------------------------------------
# Incoming routing
# ---------------------------------------------------------------------------

class TestRouting:
    def test_command_routed_to_device(self, handler):
        handler._loop = MagicMock()
        callback = MagicMock(return_value="coro")
        handler.register_device("pdu_A", callback)

        with patch("pdu_bridge.mqtt_handler.asyncio.run_coroutine_threadsafe") as rcts:
            handler._on_message(None, None, make_mqtt_message("pdu/pdu_A/outlet/3/command", " ON "))

        callback.assert_called_once_with(3, "on")
        rcts.assert_called_once_with("coro", handler._loop)

    def test_refresh_routed_to_device(self, handler):
        handler._loop = MagicMock()
        refresh = MagicMock(return_value="coro")
        handler.register_device("pdu_A", MagicMock(), refresh)

        with patch("pdu_bridge.mqtt_handler.asyncio.run_coroutine_threadsafe") as rcts:
            handler._on_message(None, None, make_mqtt_message("pdu/pdu_A/refresh", ""))

        refresh.assert_called_once_with()
        rcts.assert_called_once_with("coro", handler._loop)

    def test_outlet_read_routed_to_device(self, handler):
        handler._loop = MagicMock()
        read = MagicMock(return_value="coro")
        handler.register_device("pdu_A", MagicMock(), MagicMock(), read)

        with patch("pdu_bridge.mqtt_handler.asyncio.run_coroutine_threadsafe") as rcts:
            handler._on_message(None, None, make_mqtt_message("pdu/pdu_A/outlet/3/get", ""))

        read.assert_called_once_with(3)
        rcts.assert_called_once_with("coro", handler._loop)

    def test_power_read_routed_to_device(self, handler):
        handler._loop = MagicMock()
        read = MagicMock(return_value="coro")
        handler.register_device("pdu_A", MagicMock(), MagicMock(), read)

        with patch("pdu_bridge.mqtt_handler.asyncio.run_coroutine_threadsafe") as rcts:
            handler._on_message(None, None, make_mqtt_message("pdu/pdu_A/power/get", ""))

        read.assert_called_once_with(None)
        rcts.assert_called_once_with("coro", handler._loop)

    def test_read_without_callback_ignored(self, handler):
        handler._loop = MagicMock()
        handler.register_device("pdu_A", MagicMock())

        with patch("pdu_bridge.mqtt_handler.asyncio.run_coroutine_threadsafe") as rcts:
            handler._on_message(None, None, make_mqtt_message("pdu/pdu_A/power/get", ""))
            handler._on_message(None, None, make_mqtt_message("pdu/pdu_B/outlet/1/get", ""))

        rcts.assert_not_called()

    def test_read_dropped_after_unregister(self, handler):
        handler._loop = MagicMock()
        read = MagicMock()
        handler.register_device("pdu_A", MagicMock(), MagicMock(), read)
        handler.unregister_device("pdu_A")

        handler._on_message(None, None, make_mqtt_message("pdu/pdu_A/outlet/1/get", ""))
        read.assert_not_called()

    def test_unknown_device_ignored(self, handler):
        handler._loop = MagicMock()
        callback = MagicMock()
        handler.register_device("pdu_A", callback)

        with patch("pdu_bridge.mqtt_handler.asyncio.run_coroutine_threadsafe") as rcts:
            handler._on_message(None, None, make_mqtt_message("pdu/pdu_B/outlet/1/command", "on"))

        callback.assert_not_called()
        rcts.assert_not_called()

    def test_unregistered_device_ignored(self, handler):
        handler._loop = MagicMock()
        callback = MagicMock()
        handler.register_device("pdu_A", callback)
        handler.unregister_device("pdu_A")

        handler._on_message(None, None, make_mqtt_message("pdu/pdu_A/outlet/1/command", "on"))
        callback.assert_not_called()
        assert handler.get_status()["registered_devices"] == []

    def test_bad_outlet_number_does_not_raise(self, handler):
        handler._loop = MagicMock()
        callback = MagicMock()
        handler.register_device("pdu_A", callback)
        handler._on_message(None, None, make_mqtt_message("pdu/pdu_A/outlet/x/command", "on"))
        callback.assert_not_called()

    def test_no_loop_drops_message(self, handler):
        callback = MagicMock()
        handler.register_device("pdu_A", callback)
        handler._on_message(None, None, make_mqtt_message("pdu/pdu_A/outlet/1/command", "on"))
        callback.assert_not_called()


def test_disconnect_publishes_offline(handler):
    handler.disconnect()
    handler.client.publish.assert_called_once_with(
        "pdu/pdu-bridge/bridge/status", "offline", qos=1, retain=True,
    )
    handler.client.loop_stop.assert_called_once()
    handler.client.disconnect.assert_called_once()
