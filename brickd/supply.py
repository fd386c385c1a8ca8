# brickd - Power Supply Monitor
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Describes discovered power supplies, their voltage/temperature thresholds,
# and the per-supply polling loop that debounces raw readings into a
# battery state.
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

"""brickd.supply

Primary types / functions
- BatteryState: the classification published for each supply
- ThresholdProfile: immutable per-supply voltage/temperature limits
- profile_for(name, type_, technology, attributes): known-hardware lookup,
  falling back to the manufacturer design voltages
- PowerSupply: static identity of one discovered supply
- SupplyMonitor: polling loop for one supply

Polling
- Each tick reads ``voltage_now`` (and ``current_now`` when thermal tracking
  is on) through the injected raw reader. A failed read counts as 0.
- The published voltage only moves when the new reading differs from the
  last published one by at least the profile's ``voltage_delta``.
- A candidate state is computed every tick; it is committed only after the
  same candidate has been seen on ``DEBOUNCE_TICKS`` consecutive ticks.

Changes are published on the monitor's own ``EventBus`` (``events``) using
the topic names from ``brickd.events``.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional

from .events import (
    BATTERY_STATE_CHANGED,
    BATTERY_TEMPERATURE_CHANGED,
    BATTERY_VOLTAGE_CHANGED,
    EventBus,
)
from .thermal import SAMPLE_PERIOD, ThermalEstimator

log = logging.getLogger(__name__)

POLL_INTERVAL = 1.0
THERMAL_POLL_INTERVAL = SAMPLE_PERIOD
DEBOUNCE_TICKS = 10
# lms2012 calibration factor applied to the measured current
CURRENT_CALIBRATION = 1.1
TEMPERATURE_DELTA = 0.1

# uevent keys
ATTR_NAME = "POWER_SUPPLY_NAME"
ATTR_TYPE = "POWER_SUPPLY_TYPE"
ATTR_SCOPE = "POWER_SUPPLY_SCOPE"
ATTR_TECHNOLOGY = "POWER_SUPPLY_TECHNOLOGY"
ATTR_VOLTAGE_MAX_DESIGN = "POWER_SUPPLY_VOLTAGE_MAX_DESIGN"
ATTR_VOLTAGE_MIN_DESIGN = "POWER_SUPPLY_VOLTAGE_MIN_DESIGN"

# sysfs attribute files
VOLTAGE_NOW = "voltage_now"
CURRENT_NOW = "current_now"


class BatteryState(enum.Enum):
    OK = "ok"
    LOW_VOLT = "low-volt"
    CRITICAL_LOW_VOLT = "critical-low-volt"
    HIGH_TEMP = "high-temp"
    CRITICAL_HIGH_TEMP = "critical-high-temp"
    NOT_PRESENT = "not-present"


@dataclass(frozen=True)
class ThresholdProfile:
    """Voltage limits in mV, temperature limits on the thermal model scale."""

    full_voltage: int = 0
    empty_voltage: int = 0
    low_warn_voltage: int = 0
    low_shutdown_voltage: int = 0
    not_present_voltage: int = 0
    high_temp_warn: Optional[float] = None
    high_temp_shutdown: Optional[float] = None
    monitor_temperature: bool = False
    voltage_delta: int = 50

    @property
    def poll_interval(self) -> float:
        return THERMAL_POLL_INTERVAL if self.monitor_temperature else POLL_INTERVAL

    def classify(self, voltage: int, temperature: float = 0.0) -> BatteryState:
        """Return the candidate state for a reading; first match wins."""
        if voltage < self.not_present_voltage:
            return BatteryState.NOT_PRESENT
        if self.high_temp_shutdown is not None and temperature > self.high_temp_shutdown:
            return BatteryState.CRITICAL_HIGH_TEMP
        if voltage < self.low_shutdown_voltage:
            return BatteryState.CRITICAL_LOW_VOLT
        if self.high_temp_warn is not None and temperature > self.high_temp_warn:
            return BatteryState.HIGH_TEMP
        if voltage < self.low_warn_voltage:
            return BatteryState.LOW_VOLT
        return BatteryState.OK


EV3_LI_ION = ThresholdProfile(
    full_voltage=7500, empty_voltage=7100,
    low_warn_voltage=6500, low_shutdown_voltage=6000,
    # EVB shows ~0.01V when powered from USB
    not_present_voltage=500,
)
EV3_ALKALINE = ThresholdProfile(
    full_voltage=7500, empty_voltage=6200,
    low_warn_voltage=5500, low_shutdown_voltage=4500,
    not_present_voltage=500,
    high_temp_warn=40.0, high_temp_shutdown=45.0,
    monitor_temperature=True,
)
BRICKPI = ThresholdProfile(
    full_voltage=10000, empty_voltage=8500,
    low_warn_voltage=8000, low_shutdown_voltage=7000,
    # brickpi3 back-feeds 4V to 5V from USB
    not_present_voltage=4750,
)
PISTORMS = ThresholdProfile(
    full_voltage=8100, empty_voltage=6500,
    low_warn_voltage=6000, low_shutdown_voltage=5000,
    voltage_delta=20,
)

# name -> (Li-ion profile, any other technology)
KNOWN_PROFILES: Dict[str, tuple] = {
    "lego-ev3-battery": (EV3_LI_ION, EV3_ALKALINE),
    "evb-battery": (EV3_LI_ION, EV3_ALKALINE),
    "brickpi-battery": (BRICKPI, BRICKPI),
    "brickpi3-battery": (BRICKPI, BRICKPI),
    "pistorms-battery": (PISTORMS, PISTORMS),
}

DESIGN_VOLTAGE_DELTA = 10


def _design_mv(attributes: Dict[str, str], key: str) -> int:
    raw = attributes.get(key)
    try:
        return int(raw) // 1000
    except (TypeError, ValueError):
        log.warning("missing or invalid %s (%r); using 0", key, raw)
        return 0


def profile_for(name: str, type_: Optional[str], technology: Optional[str],
                attributes: Dict[str, str]) -> ThresholdProfile:
    """Pick the threshold profile for a supply.

    Known hardware uses its own numbers since we may know more about the
    battery than the driver does. Other batteries are derived from the
    design voltages; non-batteries get an all-zero profile.
    """
    if type_ != "Battery":
        return ThresholdProfile()
    known = KNOWN_PROFILES.get(name)
    if known is not None:
        li_ion, other = known
        return li_ion if technology == "Li-ion" else other

    max_design = _design_mv(attributes, ATTR_VOLTAGE_MAX_DESIGN)
    shutdown = _design_mv(attributes, ATTR_VOLTAGE_MIN_DESIGN)
    return ThresholdProfile(
        full_voltage=max_design * 85 // 100,
        empty_voltage=shutdown * 130 // 100,
        low_warn_voltage=shutdown * 120 // 100,
        low_shutdown_voltage=shutdown,
        voltage_delta=DESIGN_VOLTAGE_DELTA,
    )


@dataclass
class PowerSupply:
    """Static description of a discovered supply.

    ``key`` is the device name reported by discovery (the sysfs directory);
    ``name`` is ``POWER_SUPPLY_NAME`` when present, else the key.
    """

    key: str
    name: str
    type_: Optional[str] = None
    scope: Optional[str] = None
    technology: Optional[str] = None
    attributes: Dict[str, str] = field(default_factory=dict)
    profile: ThresholdProfile = field(default_factory=ThresholdProfile)

    @classmethod
    def from_attributes(cls, key: str, attributes: Dict[str, str]) -> "PowerSupply":
        name = attributes.get(ATTR_NAME) or key
        type_ = attributes.get(ATTR_TYPE)
        technology = attributes.get(ATTR_TECHNOLOGY)
        return cls(
            key=key,
            name=name,
            type_=type_,
            scope=attributes.get(ATTR_SCOPE),
            technology=technology,
            attributes=dict(attributes),
            profile=profile_for(name, type_, technology, attributes),
        )

    @property
    def is_system_battery(self) -> bool:
        return self.scope == "System" and self.type_ == "Battery"


# reader(supply, attribute) -> raw string; raises OSError / ValueError
RawReader = Callable[[PowerSupply, str], str]


class SupplyMonitor:
    """Poll one supply and publish its voltage, temperature and state."""

    def __init__(self, supply: PowerSupply, reader: RawReader, debounce_ticks: int = DEBOUNCE_TICKS):
        self.supply = supply
        self._reader = reader
        self._debounce_ticks = debounce_ticks
        self.events = EventBus()

        self.voltage = 0
        self.temperature = 0.0
        self.battery_state = BatteryState.OK
        self._pending: Optional[BatteryState] = None
        self._debounce = 0

        self.estimator: Optional[ThermalEstimator] = None
        if supply.profile.monitor_temperature:
            self.estimator = ThermalEstimator(sample_period=supply.profile.poll_interval)

        self._task: Optional[asyncio.Task] = None

    @property
    def name(self) -> str:
        return self.supply.key

    @property
    def poll_interval(self) -> float:
        return self.supply.profile.poll_interval

    def _read_milli(self, attribute: str) -> int:
        """Read a micro-unit sysfs attribute and return milli-units, 0 on failure."""
        try:
            raw = self._reader(self.supply, attribute)
            return int(int(raw.strip()) / 1000)
        except (OSError, ValueError, AttributeError) as exc:
            log.debug("%s: failed to read %s: %s", self.name, attribute, exc)
            return 0

    def poll(self) -> BatteryState:
        """Run one tick and return the committed state."""
        profile = self.supply.profile

        new_voltage = self._read_milli(VOLTAGE_NOW)
        if abs(self.voltage - new_voltage) >= profile.voltage_delta:
            self.voltage = new_voltage
            self.events.publish(BATTERY_VOLTAGE_CHANGED, new_voltage)

        if self.estimator is not None:
            new_current = self._read_milli(CURRENT_NOW)
            new_temp = self.estimator.update(new_voltage / 1000.0,
                                             new_current / 1000.0 * CURRENT_CALIBRATION)
            if abs(self.temperature - new_temp) > TEMPERATURE_DELTA:
                self.temperature = new_temp
                log.debug("%s: temperature %.1f", self.name, new_temp)
                self.events.publish(BATTERY_TEMPERATURE_CHANGED, new_temp)

        candidate = profile.classify(self.voltage, self.temperature)
        if candidate == self.battery_state:
            self._pending = None
            self._debounce = 0
        else:
            if candidate != self._pending:
                self._pending = candidate
                self._debounce = 0
            self._debounce += 1
            if self._debounce >= self._debounce_ticks:
                self._commit(candidate)
        return self.battery_state

    def _commit(self, state: BatteryState) -> None:
        old = self.battery_state
        self.battery_state = state
        self._pending = None
        self._debounce = 0
        log.info("%s: battery state %s -> %s (%d mV)", self.name, old.name, state.name, self.voltage)
        self.events.publish(BATTERY_STATE_CHANGED, state)

    # Lifecycle

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name=f"monitor-{self.name}")
        log.debug("%s: monitor started (%.1fs period)", self.name, self.poll_interval)

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None
            log.debug("%s: monitor stopped", self.name)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _run(self) -> None:
        while True:
            try:
                self.poll()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("%s: poll failed", self.name)
            await asyncio.sleep(self.poll_interval)
