# brickd - Event Bus
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# In-process topic based publish/subscribe used to fan battery state and
# voltage changes out to network sessions and local safety actions.
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

"""brickd.events

A minimal synchronous publish/subscribe bus.

- ``subscribe(topic, handler)`` returns a ``Subscription`` whose ``cancel()``
  removes the handler. Cancelling twice is harmless.
- ``publish(topic, value)`` records ``value`` as the topic's current value and
  calls every handler subscribed at that moment, in subscription order,
  before returning.
- Nothing is buffered for absent subscribers. A subscriber can ask for the
  current value up front with ``deliver_current=True``.

The bus is not thread-safe; it is driven from the daemon's event loop only.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

log = logging.getLogger(__name__)

# Topics published on the process-wide bus
BATTERY_STATE_CHANGED = "battery-state-changed"
BATTERY_VOLTAGE_CHANGED = "battery-voltage-changed"
# Only published on a single supply's own bus
BATTERY_TEMPERATURE_CHANGED = "battery-temperature-changed"

Handler = Callable[[Any], None]

_MISSING = object()


class Subscription:
    """Handle for one handler registered on one topic."""

    def __init__(self, bus: "EventBus", topic: str, handler: Handler):
        self.bus = bus
        self.topic = topic
        self.handler = handler
        self.active = True

    def cancel(self) -> None:
        if not self.active:
            return
        self.active = False
        self.bus._remove(self)

    def __repr__(self) -> str:
        state = "active" if self.active else "cancelled"
        return f"<Subscription {self.topic} {state}>"


class EventBus:
    def __init__(self):
        self._subscribers: Dict[str, List[Subscription]] = {}
        self._values: Dict[str, Any] = {}

    def subscribe(self, topic: str, handler: Handler, deliver_current: bool = False) -> Subscription:
        """Register ``handler`` for ``topic``.

        With ``deliver_current`` the handler is called immediately with the
        topic's current value, if one has been published.
        """
        sub = Subscription(self, topic, handler)
        self._subscribers.setdefault(topic, []).append(sub)
        if deliver_current:
            value = self._values.get(topic, _MISSING)
            if value is not _MISSING:
                self._call(sub, value)
        return sub

    def publish(self, topic: str, value: Any) -> None:
        self._values[topic] = value
        # copy: handlers may cancel or add subscriptions while we iterate
        for sub in list(self._subscribers.get(topic, ())):
            if sub.active:
                self._call(sub, value)

    def current(self, topic: str, default: Optional[Any] = None) -> Any:
        return self._values.get(topic, default)

    def subscriber_count(self, topic: str) -> int:
        return len(self._subscribers.get(topic, ()))

    def _call(self, sub: Subscription, value: Any) -> None:
        try:
            sub.handler(value)
        except Exception:
            log.exception("handler for %s failed", sub.topic)

    def _remove(self, sub: Subscription) -> None:
        subs = self._subscribers.get(sub.topic)
        if not subs:
            return
        try:
            subs.remove(sub)
        except ValueError:
            pass
        if not subs:
            del self._subscribers[sub.topic]
