# brickd - Battery Monitoring Daemon
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# This package provides a small always-on daemon that tracks the power state
# of an embedded board and serves it to local clients over a line-oriented
# TCP protocol, plus a client library for that protocol.
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

"""brickd battery daemon package

This package exposes:

- `SupplyMonitor`, `ThresholdProfile`, `BatteryState`: per-supply polling,
  debouncing and classification of battery readings.
- `ThermalEstimator`: battery temperature estimation for packs without a
  sensor.
- `SupplyRegistry`: add/remove handling and system battery selection.
- `EventBus`: in-process publish/subscribe of battery changes.
- `ProtocolServer`: the loopback TCP server speaking the brickd protocol.
- `BrickdClient`: a background-thread client for that protocol.
"""

from .client import BrickdClient
from .events import EventBus, Subscription
from .registry import SupplyRegistry
from .server import ConnectionSession, ProtocolServer
from .supply import BatteryState, PowerSupply, SupplyMonitor, ThresholdProfile
from .thermal import ThermalEstimator

__all__ = [
    "BrickdClient",
    "EventBus",
    "Subscription",
    "SupplyRegistry",
    "ConnectionSession",
    "ProtocolServer",
    "BatteryState",
    "PowerSupply",
    "SupplyMonitor",
    "ThresholdProfile",
    "ThermalEstimator",
]
__version__ = "1.1.0"
