#!/usr/bin/env python3
"""Tests for protocol parsing and formatting helpers."""

import pytest

from brickd.protocol import (
    format_bad,
    format_msg,
    format_ok,
    format_property,
    format_version,
    is_handshake,
    parse_command,
    parse_message,
    state_message,
)
from brickd.supply import BatteryState


def test_parse_command_is_case_insensitive():
    assert parse_command("get system.battery.voltage\n") == ("GET", "system.battery.voltage")
    assert parse_command("Watch power") == ("WATCH", "power")
    assert parse_command("BYE\r\n") == ("BYE", None)


def test_parse_command_rejects_empty_line():
    with pytest.raises(ValueError):
        parse_command("   \n")


def test_handshake_matching():
    assert is_handshake("YOU ARE A ROBOT\n")
    assert is_handshake("you are a robot")
    assert not is_handshake("I AM A ROBOT")
    assert not is_handshake(None)


def test_format_helpers():
    assert format_version() == "BRICKD VERSION 1.1.0"
    assert format_ok() == "OK"
    assert format_ok(7620) == "OK 7620"
    assert format_ok(0) == "OK 0"
    assert format_bad("Unknown command") == "BAD Unknown command"
    assert format_msg("warn", "Battery is getting low") == "MSG WARN Battery is getting low"
    assert format_property("system.battery.voltage", 7550) == "MSG PROPERTY system.battery.voltage 7550"


def test_format_msg_rejects_unknown_level():
    with pytest.raises(ValueError):
        format_msg("LOUD", "hello")


def test_state_messages():
    """Only the low voltage states produce a broadcast."""
    assert state_message(BatteryState.LOW_VOLT) == "MSG WARN Battery is getting low"
    assert state_message(BatteryState.CRITICAL_LOW_VOLT) == \
        "MSG CRITICAL System is shutting down due to low battery"
    for state in (BatteryState.OK, BatteryState.HIGH_TEMP,
                  BatteryState.CRITICAL_HIGH_TEMP, BatteryState.NOT_PRESENT):
        assert state_message(state) is None


@pytest.mark.parametrize("line,expected", [
    ("BRICKD VERSION 1.1.0", {"type": "VERSION", "version": "1.1.0"}),
    ("OK", {"type": "OK", "message": ""}),
    ("OK Until next time...", {"type": "OK", "message": "Until next time..."}),
    ("BAD Unknown property", {"type": "BAD", "message": "Unknown property"}),
    ("MSG WARN Battery is getting low", {"type": "MSG", "level": "WARN", "message": "Battery is getting low"}),
    ("MSG PROPERTY system.battery.voltage 7620",
     {"type": "PROPERTY", "key": "system.battery.voltage", "value": 7620}),
    ("MSG PROPERTY system.info.serial 0016533f1cd8",
     {"type": "PROPERTY", "key": "system.info.serial", "value": "0016533f1cd8"}),
    ("MSG PROPERTY system.info.serial 00123456",
     {"type": "PROPERTY", "key": "system.info.serial", "value": "00123456"}),
])
def test_parse_message(line, expected):
    assert parse_message(line + "\n") == expected


@pytest.mark.parametrize("line", ["", "HELLO there", "BRICKD 1.1.0", "MSG LOUD hi", "MSG PROPERTY"])
def test_parse_message_rejects_garbage(line):
    with pytest.raises(ValueError):
        parse_message(line)
