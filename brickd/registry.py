# brickd - Supply Registry
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Tracks the set of known power supplies, owns their monitors and
# republishes the one "system" battery as the process-wide battery signal.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.

"""brickd.registry

SupplyRegistry reacts to discovery events (``add``/``remove``) and keeps a
``SupplyMonitor`` per supply, keyed by device name.

At most one supply is bound as the system battery. Binding subscribes to
the monitor's own bus; rebinding cancels the previous binding's
subscriptions first, so the old monitor keeps polling but is no longer
published. Removing the bound supply resets the system battery to
``OK``/0 mV. The registry publishes ``OK``/0 on construction, so the
process bus always has a current value to hand to new subscribers.
"""
from __future__ import annotations

import logging
from typing import Dict, List, Optional

from .events import BATTERY_STATE_CHANGED, BATTERY_VOLTAGE_CHANGED, EventBus, Subscription
from .supply import BatteryState, PowerSupply, RawReader, SupplyMonitor

log = logging.getLogger(__name__)


class SupplyRegistry:
    def __init__(self, bus: EventBus, reader: RawReader, autostart: bool = True):
        self.bus = bus
        self._reader = reader
        # start poll tasks on add; tests drive poll() by hand instead
        self.autostart = autostart
        self.monitors: Dict[str, SupplyMonitor] = {}

        self.system_battery_state = BatteryState.OK
        self.system_battery_voltage = 0
        self._system_name: Optional[str] = None
        self._binding: List[Subscription] = []

        # the bus always has a current value, even before a battery is bound
        self.bus.publish(BATTERY_STATE_CHANGED, self.system_battery_state)
        self.bus.publish(BATTERY_VOLTAGE_CHANGED, self.system_battery_voltage)

    @property
    def system_battery(self) -> Optional[SupplyMonitor]:
        if self._system_name is None:
            return None
        return self.monitors.get(self._system_name)

    def handle_event(self, action: str, name: str, attributes: Optional[Dict[str, str]] = None) -> None:
        """Entry point for the discovery feed."""
        if action == "add":
            self.add(name, attributes or {})
        elif action == "remove":
            self.remove(name)
        else:
            log.debug("ignoring %s event for %s", action, name)

    def add(self, name: str, attributes: Dict[str, str]) -> SupplyMonitor:
        if name in self.monitors:
            # a repeated add replaces the old monitor
            self.remove(name)
        supply = PowerSupply.from_attributes(name, attributes)
        monitor = SupplyMonitor(supply, self._reader)
        self.monitors[name] = monitor
        log.info("added supply %s (type=%s scope=%s)", name, supply.type_, supply.scope)
        if self.autostart:
            monitor.start()
        if supply.is_system_battery:
            self._bind(monitor)
        return monitor

    def remove(self, name: str) -> None:
        monitor = self.monitors.pop(name, None)
        if monitor is None:
            log.debug("remove for unknown supply %s", name)
            return
        monitor.stop()
        log.info("removed supply %s", name)
        if self._system_name == name:
            self._unbind()
            self._set_state(BatteryState.OK)
            self._set_voltage(0)

    def close(self) -> None:
        """Stop every monitor and drop the binding."""
        self._unbind()
        for monitor in self.monitors.values():
            monitor.stop()
        self.monitors.clear()

    def _bind(self, monitor: SupplyMonitor) -> None:
        if self._system_name is not None and self._system_name != monitor.name:
            log.warning("system battery %s replaced by %s", self._system_name, monitor.name)
        self._unbind()
        self._system_name = monitor.name
        name = monitor.name
        self._binding = [
            monitor.events.subscribe(BATTERY_STATE_CHANGED, lambda state: self._on_state(name, state)),
            monitor.events.subscribe(BATTERY_VOLTAGE_CHANGED, lambda mv: self._on_voltage(name, mv)),
        ]
        self._set_state(monitor.battery_state)
        self._set_voltage(monitor.voltage)

    def _unbind(self) -> None:
        for sub in self._binding:
            sub.cancel()
        self._binding = []
        self._system_name = None

    # a stale update from a no longer bound monitor must not touch the binding
    def _on_state(self, name: str, state: BatteryState) -> None:
        if name == self._system_name:
            self._set_state(state)

    def _on_voltage(self, name: str, voltage: int) -> None:
        if name == self._system_name:
            self._set_voltage(voltage)

    def _set_state(self, state: BatteryState) -> None:
        if state == self.system_battery_state:
            return
        self.system_battery_state = state
        self.bus.publish(BATTERY_STATE_CHANGED, state)

    def _set_voltage(self, voltage: int) -> None:
        if voltage == self.system_battery_voltage:
            return
        self.system_battery_voltage = voltage
        self.bus.publish(BATTERY_VOLTAGE_CHANGED, voltage)
