#!/usr/bin/env python3
"""Tests for the MQTT bridge payloads, with the broker and daemon replaced."""

import importlib.util
import json
import os

import pytest

SCRIPT = os.path.join(os.path.dirname(__file__), "..", "scripts", "mqtt_client.py")


def load_bridge_module():
    module_spec = importlib.util.spec_from_file_location("brickd_mqtt_client", SCRIPT)
    module = importlib.util.module_from_spec(module_spec)
    module_spec.loader.exec_module(module)
    return module


bridge_module = load_bridge_module()


class RecordingMQTT:
    def __init__(self):
        self.published = []

    def publish(self, topic, payload, qos=0, retain=False):
        self.published.append((topic, payload, retain))


class StubBrickd:
    def __init__(self, properties=None, notice=None, replies=None):
        self.properties = properties or {}
        self.notice = notice
        self.replies = replies or {}

    def get_property(self, key):
        return self.properties.get(key)

    def get(self, key):
        return self.replies.get(key)

    def get_last_notice(self):
        return self.notice

    def watch(self, subsystem):
        return subsystem == "POWER"


@pytest.fixture
def bridge():
    b = bridge_module.BrickdMQTTBridge()
    b.client = RecordingMQTT()
    return b


def test_config_published_for_every_sensor(bridge):
    bridge.publish_config()
    topics = [topic for topic, _, retain in bridge.client.published if retain]
    assert topics == [f"homeassistant/sensor/brickd/{sensor}/config" for sensor in bridge_module.SENSOR_CONFIGS]
    voltage_config = json.loads(bridge.client.published[0][1])
    assert voltage_config["unit_of_measurement"] == "mV"


def test_status_uses_broadcast_voltage(bridge):
    bridge.brickd = StubBrickd(properties={"system.battery.voltage": 7550},
                               notice={"level": "WARN", "message": "Battery is getting low"})
    bridge.serial = "0016533f1cd8"
    assert bridge.get_battery_status() == {
        "battery_voltage": 7550,
        "battery_notice": "Battery is getting low",
        "board_serial": "0016533f1cd8",
    }


def test_status_falls_back_to_get(bridge):
    bridge.brickd = StubBrickd(replies={"system.battery.voltage": 7620})
    status = bridge.get_battery_status()
    assert status["battery_voltage"] == 7620
    assert status["battery_notice"] == "OK"


def test_notices_forwarded_immediately(bridge):
    bridge.on_brickd_message({"type": "PROPERTY", "key": "system.battery.voltage", "value": 7550})
    bridge.on_brickd_message({"type": "MSG", "level": "CRITICAL",
                              "message": "System is shutting down due to low battery"})
    assert len(bridge.client.published) == 1
    topic, payload, retain = bridge.client.published[0]
    assert topic == bridge_module.NOTICE_TOPIC
    assert json.loads(payload)["level"] == "CRITICAL"
    assert retain is False


def test_connected_hook_watches_and_reads_serial(bridge):
    bridge.brickd = StubBrickd(replies={"system.info.serial": "0016533f1cd8"})
    bridge.on_brickd_connected()
    assert bridge.watching is True
    assert bridge.serial == "0016533f1cd8"
