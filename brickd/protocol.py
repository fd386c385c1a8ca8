# brickd - Wire Protocol Helpers
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Provides deterministic helpers for the newline-delimited text protocol
# spoken between brickd and its local clients: command parsing on the
# server side, reply/broadcast formatting, and message parsing for clients.
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

"""Parsing and formatting helpers for the brickd protocol.

Grammar (ASCII, one message per ``\\n`` terminated line; keywords are
case-insensitive on input and upper-case on output)::

    server: BRICKD VERSION <major>.<minor>.<revision>
    client: YOU ARE A ROBOT
    server: OK | BAD <message>

    client: BYE | GET <key> | WATCH <subsystem>
    server: OK [<value or message>] | BAD <message>

    server: MSG INFO|WARN|CRITICAL <message>
    server: MSG PROPERTY <key> <value>

Key functions
- parse_command(line) -> (command, argument)
    Split a client line into an upper-cased command and its argument.
    Raises ValueError on an empty line.
- format_* helpers build server lines (without the trailing newline).
- parse_message(line) -> dict
    Parse a server line for client use. Raises ValueError on anything that
    is not part of the grammar.
- convert_value(key, raw)
    Typed property value; only the voltage key becomes an int.
"""
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from .supply import BatteryState

VERSION = "1.1.0"
DEFAULT_PORT = 31313
HANDSHAKE = "YOU ARE A ROBOT"
ENCODING = "ascii"

# Commands
BYE = "BYE"
GET = "GET"
WATCH = "WATCH"

# Subsystems
POWER = "POWER"

# Property keys
SERIAL_KEY = "system.info.serial"
VOLTAGE_KEY = "system.battery.voltage"

# Message levels
INFO = "INFO"
WARN = "WARN"
CRITICAL = "CRITICAL"
PROPERTY = "PROPERTY"
LEVELS = (INFO, WARN, CRITICAL)

BYE_MESSAGE = "Until next time..."
HANDSHAKE_FAILED = "You don't know the secret handshake"
UNKNOWN_COMMAND = "Unknown command"
UNKNOWN_PROPERTY = "Unknown property"
MISSING_PROPERTY = "Missing property key"
UNKNOWN_WATCH_TARGET = "Unknown WATCH target"
MISSING_WATCH_TARGET = "Missing WATCH target"

# Broadcasts sent to every authenticated session on a system battery
# state change. Other states produce no message.
STATE_MESSAGES: Dict[BatteryState, Tuple[str, str]] = {
    BatteryState.LOW_VOLT: (WARN, "Battery is getting low"),
    BatteryState.CRITICAL_LOW_VOLT: (CRITICAL, "System is shutting down due to low battery"),
}


def parse_command(line: str) -> Tuple[str, Optional[str]]:
    """Split a client line into (COMMAND, argument-or-None)."""
    line = line.strip()
    if not line:
        raise ValueError("empty line")
    parts = line.split(None, 1)
    command = parts[0].upper()
    arg = parts[1].strip() if len(parts) > 1 else None
    return command, arg or None


def is_handshake(line: Optional[str]) -> bool:
    return line is not None and line.strip().upper() == HANDSHAKE


def format_version(version: str = VERSION) -> str:
    return f"BRICKD VERSION {version}"


def format_ok(message: Optional[Any] = None) -> str:
    if message is None or message == "":
        return "OK"
    return f"OK {message}"


def format_bad(message: str) -> str:
    return f"BAD {message}"


def format_msg(level: str, message: str) -> str:
    level = level.upper()
    if level not in LEVELS:
        raise ValueError(f"invalid message level: {level}")
    return f"MSG {level} {message}"


def format_property(key: str, value: Any) -> str:
    return f"MSG {PROPERTY} {key} {value}"


def state_message(state: BatteryState) -> Optional[str]:
    """Return the broadcast line for a system battery state, if any."""
    entry = STATE_MESSAGES.get(state)
    if entry is None:
        return None
    return format_msg(*entry)


def convert_value(key: str, raw: str) -> Any:
    """Typed value for a property: voltages are ints, everything else stays text.

    Serial numbers may be all digits with leading zeros, so only known
    numeric keys are converted.
    """
    if key.lower() != VOLTAGE_KEY:
        return raw
    try:
        return int(raw)
    except ValueError:
        return raw


def parse_message(line: str) -> Dict[str, Any]:
    """Parse one server line into a dict with a ``type`` field.

    Returned shapes:
    - {"type": "VERSION", "version": "1.1.0"}
    - {"type": "OK", "message": str}           (message may be "")
    - {"type": "BAD", "message": str}
    - {"type": "MSG", "level": "WARN", "message": str}
    - {"type": "PROPERTY", "key": str, "value": int | str}
    """
    line = line.strip()
    if not line:
        raise ValueError("empty line")
    parts = line.split(" ", 1)
    head = parts[0].upper()
    rest = parts[1] if len(parts) > 1 else ""

    if head == "BRICKD":
        words = rest.split()
        if len(words) != 2 or words[0].upper() != "VERSION":
            raise ValueError(f"invalid version line: {line!r}")
        return {"type": "VERSION", "version": words[1]}
    if head in ("OK", "BAD"):
        return {"type": head, "message": rest}
    if head == "MSG":
        level, _, body = rest.partition(" ")
        level = level.upper()
        if level == PROPERTY:
            key, _, value = body.partition(" ")
            if not key:
                raise ValueError(f"property message without key: {line!r}")
            return {"type": PROPERTY, "key": key, "value": convert_value(key, value)}
        if level in LEVELS:
            return {"type": "MSG", "level": level, "message": body}
        raise ValueError(f"unknown message level: {level!r}")
    raise ValueError(f"unknown message: {line!r}")
