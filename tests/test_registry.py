#!/usr/bin/env python3
"""Tests for supply add/remove handling and system battery binding."""

import asyncio

import pytest

from brickd.events import BATTERY_STATE_CHANGED, BATTERY_VOLTAGE_CHANGED, EventBus
from brickd.registry import SupplyRegistry
from brickd.supply import DEBOUNCE_TICKS, BatteryState

BRICKPI_ATTRS = {
    "POWER_SUPPLY_NAME": "brickpi3-battery",
    "POWER_SUPPLY_TYPE": "Battery",
    "POWER_SUPPLY_SCOPE": "System",
}
MAINS_ATTRS = {"POWER_SUPPLY_TYPE": "Mains"}


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def registry(bus, reader):
    return SupplyRegistry(bus, reader, autostart=False)


def test_add_non_system_supply_does_not_bind(registry):
    registry.handle_event("add", "ac", MAINS_ATTRS)
    assert "ac" in registry.monitors
    assert registry.system_battery is None
    assert registry.system_battery_state is BatteryState.OK
    assert registry.system_battery_voltage == 0


def test_system_battery_voltage_passes_through(registry, bus, reader, ev3_attrs):
    voltages = []
    bus.subscribe(BATTERY_VOLTAGE_CHANGED, voltages.append)
    monitor = registry.add("lego-ev3-battery", ev3_attrs)
    assert registry.system_battery is monitor
    monitor.poll()
    assert registry.system_battery_voltage == 7620
    reader.set_voltage(7550)
    monitor.poll()
    assert voltages == [7620, 7550]


def test_system_battery_state_passes_through(registry, bus, reader, ev3_attrs):
    states = []
    bus.subscribe(BATTERY_STATE_CHANGED, states.append)
    monitor = registry.add("lego-ev3-battery", ev3_attrs)
    reader.set_voltage(6400)
    for _ in range(DEBOUNCE_TICKS):
        monitor.poll()
    assert registry.system_battery_state is BatteryState.LOW_VOLT
    assert states == [BatteryState.LOW_VOLT]


def test_rebinding_replaces_previous_system_battery(registry, reader, ev3_attrs):
    """Only the most recently added system battery is published."""
    first = registry.add("lego-ev3-battery", ev3_attrs)
    first.poll()
    assert registry.system_battery_voltage == 7620

    second = registry.add("brickpi3-battery", BRICKPI_ATTRS)
    assert registry.system_battery is second
    # the new binding syncs immediately; the new monitor has not polled yet
    assert registry.system_battery_voltage == 0

    reader.set_voltage(9000)
    first.poll()
    assert registry.system_battery_voltage == 0
    second.poll()
    assert registry.system_battery_voltage == 9000
    # the old monitor is still tracked
    assert "lego-ev3-battery" in registry.monitors


def test_remove_bound_battery_resets_system_state(registry, bus, reader, ev3_attrs):
    monitor = registry.add("lego-ev3-battery", ev3_attrs)
    reader.set_voltage(6400)
    for _ in range(DEBOUNCE_TICKS):
        monitor.poll()
    states = []
    bus.subscribe(BATTERY_STATE_CHANGED, states.append)

    registry.handle_event("remove", "lego-ev3-battery")
    assert registry.system_battery is None
    assert registry.system_battery_state is BatteryState.OK
    assert registry.system_battery_voltage == 0
    assert states == [BatteryState.OK]
    assert "lego-ev3-battery" not in registry.monitors

    # a stale tick from the removed monitor changes nothing
    reader.set_voltage(5000)
    for _ in range(DEBOUNCE_TICKS):
        monitor.poll()
    assert registry.system_battery_voltage == 0
    assert registry.system_battery_state is BatteryState.OK


def test_remove_unbound_supply_keeps_binding(registry, ev3_attrs):
    monitor = registry.add("lego-ev3-battery", ev3_attrs)
    registry.add("ac", MAINS_ATTRS)
    monitor.poll()
    registry.remove("ac")
    assert registry.system_battery is monitor
    assert registry.system_battery_voltage == 7620


def test_remove_unknown_supply_is_ignored(registry):
    registry.remove("nothing")
    registry.handle_event("change", "nothing", {})
    assert registry.monitors == {}


def test_repeated_add_replaces_monitor(registry, ev3_attrs):
    first = registry.add("lego-ev3-battery", ev3_attrs)
    second = registry.add("lego-ev3-battery", ev3_attrs)
    assert first is not second
    assert registry.monitors["lego-ev3-battery"] is second
    assert registry.system_battery is second


def test_close_drops_everything(registry, ev3_attrs):
    registry.add("lego-ev3-battery", ev3_attrs)
    registry.close()
    assert registry.monitors == {}
    assert registry.system_battery is None


@pytest.mark.asyncio
async def test_autostart_runs_poll_task(bus, reader, ev3_attrs):
    """With autostart the monitor's poll task is running until removal."""
    registry = SupplyRegistry(bus, reader)
    monitor = registry.add("lego-ev3-battery", ev3_attrs)
    assert monitor.running
    registry.remove("lego-ev3-battery")
    assert not monitor.running
    await asyncio.sleep(0)


def test_bus_seeded_before_any_battery(bus, reader):
    """Subscribers asking for the current value get OK/0 with no battery bound."""
    SupplyRegistry(bus, reader, autostart=False)
    states, voltages = [], []
    bus.subscribe(BATTERY_STATE_CHANGED, states.append, deliver_current=True)
    bus.subscribe(BATTERY_VOLTAGE_CHANGED, voltages.append, deliver_current=True)
    assert states == [BatteryState.OK]
    assert voltages == [0]
