# brickd - Protocol Server
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Accepts loopback TCP connections, runs the handshake and command loop for
# each client and forwards battery notifications to subscribed sessions.
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

"""brickd.server

ProtocolServer: asyncio listener(s) on the loopback addresses, one
ConnectionSession per accepted client.

Session lifecycle
- CONNECTED: the version banner is queued.
- AWAITING_HANDSHAKE: one line is read. Anything other than the handshake
  phrase gets ``BAD`` and the connection is closed.
- AUTHENTICATED: the session is subscribed to battery state changes and
  reads commands until ``BYE``, EOF or an I/O error.
- CLOSED: subscriptions are cancelled, queued output is flushed, the socket
  is closed.

Design notes
- All output goes through a per-session queue drained by its own writer
  task. EventBus handlers only enqueue, so a client that stops reading
  never delays delivery to other sessions or the poll loop.
- The queue is bounded (``OUTBOX_LIMIT``). A client that falls that far
  behind is dropped like one with a broken connection.
- Sessions only read shared state (registry values) and add/cancel their
  own subscriptions.
"""
from __future__ import annotations

import asyncio
import enum
import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from .events import BATTERY_STATE_CHANGED, BATTERY_VOLTAGE_CHANGED, EventBus, Subscription
from .protocol import (
    BYE,
    BYE_MESSAGE,
    DEFAULT_PORT,
    ENCODING,
    GET,
    HANDSHAKE_FAILED,
    MISSING_PROPERTY,
    MISSING_WATCH_TARGET,
    POWER,
    SERIAL_KEY,
    UNKNOWN_COMMAND,
    UNKNOWN_PROPERTY,
    UNKNOWN_WATCH_TARGET,
    VERSION,
    VOLTAGE_KEY,
    WATCH,
    format_bad,
    format_ok,
    format_property,
    format_version,
    is_handshake,
    parse_command,
    state_message,
)
from .registry import SupplyRegistry
from .supply import BatteryState

log = logging.getLogger(__name__)

# just listen on localhost to prevent remote meddling
DEFAULT_HOSTS = ("127.0.0.1", "::1")
SHUTDOWN_TIMEOUT = 5.0
# lines queued for one client before it is treated as dead
OUTBOX_LIMIT = 256
SERIAL_UNAVAILABLE = "Serial number not available"


class SessionState(enum.Enum):
    CONNECTED = "connected"
    AWAITING_HANDSHAKE = "awaiting-handshake"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


class ConnectionSession:
    """One client connection."""

    def __init__(self, server: "ProtocolServer", reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 outbox_limit: int = OUTBOX_LIMIT):
        self.server = server
        self._reader = reader
        self._writer = writer
        self.peer = writer.get_extra_info("peername")

        self.state = SessionState.CONNECTED
        self.watching_power = False
        self.last_voltage_sent: Optional[int] = None
        self.subscriptions: List[Subscription] = []

        self._outbox: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=outbox_limit)
        self._writer_task: Optional[asyncio.Task] = None
        self._closing = False
        self.task: Optional[asyncio.Task] = None

    def send(self, line: str) -> None:
        """Queue a line for the writer task. Dropped once the session is closing."""
        if self._closing:
            return
        try:
            self._outbox.put_nowait(line)
        except asyncio.QueueFull:
            log.debug("%s: client is not reading; dropping connection", self.peer)
            self.abort()

    async def run(self) -> None:
        self.task = asyncio.current_task()
        self._writer_task = asyncio.get_running_loop().create_task(self._write_loop())
        try:
            self.send(format_version(self.server.version))
            self.state = SessionState.AWAITING_HANDSHAKE

            try:
                line = await self._read_line()
            except ValueError:
                # longer than the stream limit; cannot be the handshake
                line = None
            if not is_handshake(line):
                log.debug("%s: failed handshake: %r", self.peer, line)
                self.send(format_bad(HANDSHAKE_FAILED))
                return
            self.send(format_ok())
            self._subscribe(BATTERY_STATE_CHANGED, self._on_battery_state)
            self.state = SessionState.AUTHENTICATED
            log.debug("%s: authenticated", self.peer)

            while self.state is SessionState.AUTHENTICATED:
                line = await self._read_line()
                if line is None:
                    log.debug("%s: connection closed by peer", self.peer)
                    break
                if not line.strip():
                    continue
                self.handle_line(line)
        except (ConnectionError, OSError, ValueError) as exc:
            log.debug("%s: connection error: %s", self.peer, exc)
        finally:
            await self.close()

    async def _read_line(self) -> Optional[str]:
        data = await self._reader.readline()
        if not data:
            return None
        return data.decode(ENCODING, errors="replace")

    def handle_line(self, line: str) -> None:
        """Dispatch one command line from an authenticated client."""
        try:
            command, arg = parse_command(line)
        except ValueError:
            return
        if command == BYE:
            self.send(format_ok(BYE_MESSAGE))
            self.state = SessionState.CLOSED
        elif command == GET:
            self._handle_get(arg)
        elif command == WATCH:
            self._handle_watch(arg)
        else:
            log.debug("%s: unknown command %r", self.peer, command)
            self.send(format_bad(UNKNOWN_COMMAND))

    def _handle_get(self, key: Optional[str]) -> None:
        if key is None:
            self.send(format_bad(MISSING_PROPERTY))
            return
        key = key.lower()
        if key not in self.server.properties:
            self.send(format_bad(UNKNOWN_PROPERTY))
            return
        value = self.server.properties[key]()
        if value is None:
            self.send(format_bad(SERIAL_UNAVAILABLE if key == SERIAL_KEY else UNKNOWN_PROPERTY))
            return
        self.send(format_ok(value))

    def _handle_watch(self, subsystem: Optional[str]) -> None:
        if subsystem is None:
            self.send(format_bad(MISSING_WATCH_TARGET))
            return
        if subsystem.upper() != POWER:
            self.send(format_bad(UNKNOWN_WATCH_TARGET))
            return
        if self.watching_power:
            self.send(format_ok(f"Already watching {POWER}"))
            return
        self.send(format_ok())
        self.watching_power = True
        self._subscribe(BATTERY_VOLTAGE_CHANGED, self._on_battery_voltage)

    def _subscribe(self, topic: str, handler: Callable[[Any], None]) -> None:
        self.subscriptions.append(self.server.bus.subscribe(topic, handler, deliver_current=True))

    def _on_battery_state(self, state: BatteryState) -> None:
        line = state_message(state)
        if line is not None:
            self.send(line)

    def _on_battery_voltage(self, voltage: int) -> None:
        self.send(format_property(VOLTAGE_KEY, voltage))
        self.last_voltage_sent = voltage

    async def _write_loop(self) -> None:
        while True:
            line = await self._outbox.get()
            if line is None:
                break
            try:
                self._writer.write((line + "\n").encode(ENCODING, errors="replace"))
                await self._writer.drain()
            except (ConnectionError, OSError) as exc:
                log.debug("%s: write failed: %s", self.peer, exc)
                break
        # closing the transport also wakes up a pending readline()
        if not self._writer.is_closing():
            self._writer.close()

    def shutdown(self) -> None:
        """Cancel subscriptions and stop accepting output; queued lines still flush."""
        if self._closing:
            return
        self._closing = True
        for sub in self.subscriptions:
            sub.cancel()
        self.subscriptions.clear()
        self.watching_power = False
        self.state = SessionState.CLOSED
        if self._outbox.full():
            # make room for the sentinel
            self._outbox.get_nowait()
        self._outbox.put_nowait(None)

    async def close(self) -> None:
        self.shutdown()
        if self._writer_task is not None:
            await self._writer_task
        if not self._writer.is_closing():
            self._writer.close()
        try:
            await self._writer.wait_closed()
        except (ConnectionError, OSError) as exc:
            log.debug("%s: error while closing: %s", self.peer, exc)
        log.debug("%s: session closed", self.peer)

    def abort(self) -> None:
        """Drop the connection without flushing; a blocked write fails and the writer task exits."""
        self.shutdown()
        self._writer.transport.abort()


class ProtocolServer:
    def __init__(self, bus: EventBus, registry: SupplyRegistry, serial: Optional[str] = None,
                 hosts: Sequence[str] = DEFAULT_HOSTS, port: int = DEFAULT_PORT, version: str = VERSION,
                 outbox_limit: int = OUTBOX_LIMIT):
        self.bus = bus
        self.registry = registry
        self.serial = serial
        self.hosts = tuple(hosts)
        self.port = port
        self.version = version
        self.outbox_limit = outbox_limit
        self.sessions: Set[ConnectionSession] = set()
        self._servers: List[asyncio.AbstractServer] = []

        self.properties: Dict[str, Callable[[], Any]] = {
            SERIAL_KEY: lambda: self.serial,
            VOLTAGE_KEY: lambda: self.registry.system_battery_voltage,
        }

    async def start(self) -> None:
        """Bind every listener address. Raises OSError if any bind fails.

        All addresses share one port; with port 0 the first bind picks it.
        """
        port = self.port
        try:
            for host in self.hosts:
                server = await asyncio.start_server(self._handle_client, host, port)
                self._servers.append(server)
                if port == 0:
                    port = server.sockets[0].getsockname()[1]
                log.debug("listening on %s", [s.getsockname() for s in server.sockets])
        except OSError:
            self.close()
            raise

    @property
    def addresses(self) -> List[Any]:
        return [sock.getsockname() for server in self._servers for sock in server.sockets]

    def close(self) -> None:
        """Stop accepting connections; established sessions are left alone."""
        for server in self._servers:
            server.close()
        self._servers = []

    async def shutdown(self, timeout: float = SHUTDOWN_TIMEOUT) -> None:
        """Close the listeners, then flush and close every session."""
        self.close()
        sessions = list(self.sessions)
        tasks = [s.task for s in sessions if s.task is not None]
        for session in sessions:
            session.shutdown()
        if not tasks:
            return
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        for session in sessions:
            if session.task in pending:
                log.debug("%s: session did not close in time; aborting", session.peer)
                session.abort()
        if pending:
            await asyncio.wait(pending, timeout=timeout)

    async def _handle_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        session = ConnectionSession(self, reader, writer, self.outbox_limit)
        self.sessions.add(session)
        log.debug("connection from %s", session.peer)
        try:
            await session.run()
        finally:
            self.sessions.discard(session)
