# brickd - Protocol Client
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Provides the BrickdClient class: a background TCP client that keeps a
# persistent connection to brickd, performs the handshake, tracks property
# broadcasts and offers thread-safe helpers for issuing commands.
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

"""brickd.client

BrickdClient: a background TCP client that keeps the most recent values
broadcast by brickd and provides safe helpers for querying it.

High-level responsibilities
- Maintain a single persistent TCP connection to the daemon, run the
  handshake, then read newline-delimited messages and dispatch them.
- Keep the latest ``MSG PROPERTY`` values and the last
  ``MSG INFO|WARN|CRITICAL`` notice.
- Provide a synchronous ``send_command`` that waits for the matching
  ``OK``/``BAD`` reply. The protocol has no request ids, so replies are
  matched to commands in the order the commands were sent.
- Re-issue ``WATCH`` for every subsystem watched so far after a reconnect.

Primary types / functions
- class BrickdClient
    - start/stop: manage the background thread
    - send_command(line, timeout, wait): send one command line
    - get(key), watch(subsystem): command helpers
    - get_property(key), get_last_notice(), get_connection_status()
    - wait_for_update(timeout) / clear_update()

Thread safety
- ``self._lock`` (an RLock) guards the socket, cached values and the
  queue of outstanding commands. Writes to the socket and the registration
  of the matching waiter happen under the same lock so FIFO order holds.
"""
from __future__ import annotations

import logging
import socket
import threading
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterator, Optional, Set

from .protocol import DEFAULT_PORT, ENCODING, HANDSHAKE, PROPERTY, convert_value, parse_message

log = logging.getLogger(__name__)

MessageCallback = Callable[[Dict[str, Any]], None]


class BrickdClient:
    """Talk to a brickd daemon over TCP and keep the latest broadcasts."""

    def __init__(self, host: str = "127.0.0.1", port: int = DEFAULT_PORT, timeout: float = 1.0,
                 on_message: Optional[MessageCallback] = None):
        self.host = host
        self.port = port

        # Socket owned by the background thread; only touched under self._lock.
        self._sock: Optional[socket.socket] = None
        self._lock = threading.RLock()

        # Thread & lifecycle controls
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

        # Read timeout; also how quickly the reader notices stop()
        self._timeout = float(timeout)
        if self._timeout <= 0:
            raise ValueError("timeout must be > 0")

        # state
        self._server_version: Optional[str] = None
        self._properties: Dict[str, Any] = {}
        self._last_notice: Optional[Dict[str, Any]] = None
        self._watching: Set[str] = set()
        self._connected: bool = False
        self._last_error: Optional[str] = None

        # commands waiting for a reply, oldest first: (Event, storage)
        self._outstanding: Deque[Any] = deque()

        self.on_message = on_message

        # Set whenever a broadcast or reply is processed
        self._update_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name="brickd-client")
        self._thread.start()
        log.debug("BrickdClient thread started")

    def stop(self) -> None:
        self._stop_event.set()
        with self._lock:
            sock = self._sock
        if sock is not None:
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
        if self._thread:
            self._thread.join(timeout=2.0)
        log.debug("BrickdClient stopped")

    def _run(self) -> None:
        backoff = 1.0
        while not self._stop_event.is_set():
            try:
                self._connect_and_read()
                self._last_error = None
                backoff = 1.0
            except (OSError, ConnectionError, ValueError) as exc:
                self._last_error = str(exc)
                # the daemon restarting is expected; log at DEBUG
                log.debug("client connection error: %s", exc)
            finally:
                self._disconnected()
            if self._stop_event.wait(backoff):
                break
            backoff = min(backoff * 2, 30.0)

    def _iter_lines(self, s: socket.socket) -> Iterator[str]:
        recv_buf = b''
        while not self._stop_event.is_set():
            try:
                chunk = s.recv(4096)
            except socket.timeout:
                continue
            if not chunk:
                log.debug("connection closed by peer")
                self._last_error = "connection closed by peer"
                return
            recv_buf += chunk
            while b'\n' in recv_buf:
                line_bytes, recv_buf = recv_buf.split(b'\n', 1)
                yield line_bytes.decode(ENCODING, errors="replace")

    def _connect_and_read(self) -> None:
        log.debug("connecting to %s:%s", self.host, self.port)
        with socket.create_connection((self.host, self.port), timeout=max(self._timeout, 5.0)) as s:
            s.settimeout(self._timeout)
            lines = self._iter_lines(s)

            banner = next(lines, None)
            if banner is None:
                raise ConnectionError("connection closed before banner")
            msg = parse_message(banner)
            if msg["type"] != "VERSION":
                raise ConnectionError(f"unexpected banner: {banner!r}")
            version = msg["version"]
            s.sendall((HANDSHAKE + "\n").encode(ENCODING))
            reply = next(lines, None)
            if reply is None:
                raise ConnectionError("connection closed during handshake")
            msg = parse_message(reply)
            if msg["type"] != "OK":
                raise ConnectionError(f"handshake rejected: {msg.get('message')}")

            with self._lock:
                self._server_version = version
                self._sock = s
                self._connected = True
                self._last_error = None
                watching = sorted(self._watching)
            log.debug("connected to %s:%s (brickd %s)", self.host, self.port, self._server_version)

            for subsystem in watching:
                self.send_command(f"WATCH {subsystem}", wait=False)

            for line in lines:
                try:
                    msg = parse_message(line)
                except ValueError as exc:
                    log.debug("failed to parse line: %s", exc)
                    continue
                self._handle_msg(msg)

    def _disconnected(self) -> None:
        with self._lock:
            self._connected = False
            self._sock = None
            pending = list(self._outstanding)
            self._outstanding.clear()
        # wake every waiter; they see no response and report the disconnect
        for ev, _store in pending:
            ev.set()

    def _handle_msg(self, msg: Dict[str, Any]) -> None:
        kind = msg["type"]
        if kind in ("OK", "BAD"):
            with self._lock:
                entry = self._outstanding.popleft() if self._outstanding else None
            if entry is None:
                log.debug("unsolicited reply: %s", msg)
            else:
                ev, store = entry
                store["response"] = msg
                ev.set()
        elif kind == PROPERTY:
            with self._lock:
                self._properties[msg["key"]] = msg["value"]
        elif kind == "MSG":
            with self._lock:
                self._last_notice = {"level": msg["level"], "message": msg["message"], "ts": time.time()}
            log.info("brickd %s: %s", msg["level"], msg["message"])
        if self.on_message is not None:
            try:
                self.on_message(msg)
            except Exception as exc:
                log.debug("on_message callback failed: %s", exc)
        self._update_event.set()

    # Command send/response matching
    def send_command(self, line: str, timeout: float = 5.0, wait: bool = True) -> Optional[Dict[str, Any]]:
        """Send one command line.

        - If ``wait`` is True (default) this blocks up to ``timeout`` seconds
          for the reply and returns it (``{"type": "OK"|"BAD", "message": ...}``)
          or raises TimeoutError.
        - If ``wait`` is False the reply is consumed by the reader thread and
          the function returns None.
        Raises RuntimeError when not connected.
        """
        ev = threading.Event()
        store: Dict[str, Any] = {}
        data = (line.strip() + "\n").encode(ENCODING)
        with self._lock:
            if not self._sock:
                raise RuntimeError("not connected")
            entry = (ev, store)
            self._outstanding.append(entry)
            try:
                self._sock.sendall(data)
            except OSError:
                self._outstanding.remove(entry)
                raise
        if not wait:
            return None
        if not ev.wait(timeout=timeout):
            raise TimeoutError("no reply to %r" % line)
        if "response" not in store:
            raise ConnectionError("connection lost before reply to %r" % line)
        return store["response"]

    def get(self, key: str, timeout: float = 2.0) -> Optional[Any]:
        """Query a property with GET. Returns None on BAD, timeout or disconnect."""
        try:
            resp = self.send_command(f"GET {key}", timeout=timeout)
        except (TimeoutError, RuntimeError, OSError) as exc:
            log.debug("get %s failed: %s", key, exc)
            return None
        if resp["type"] != "OK":
            log.debug("get %s refused: %s", key, resp["message"])
            return None
        return convert_value(key, resp["message"])

    def watch(self, subsystem: str, timeout: float = 2.0) -> bool:
        """Subscribe to a subsystem; remembered so reconnects watch it again."""
        subsystem = subsystem.upper()
        try:
            resp = self.send_command(f"WATCH {subsystem}", timeout=timeout)
        except (TimeoutError, RuntimeError, OSError) as exc:
            log.debug("watch %s failed: %s", subsystem, exc)
            return False
        if resp["type"] != "OK":
            return False
        with self._lock:
            self._watching.add(subsystem)
        return True

    def bye(self, timeout: float = 2.0) -> bool:
        try:
            resp = self.send_command("BYE", timeout=timeout)
        except (TimeoutError, RuntimeError, OSError):
            return False
        return resp["type"] == "OK"

    # Public getters
    def get_property(self, key: str) -> Optional[Any]:
        with self._lock:
            return self._properties.get(key)

    def get_last_notice(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            return dict(self._last_notice) if self._last_notice is not None else None

    def get_server_version(self) -> Optional[str]:
        with self._lock:
            return self._server_version

    def get_connection_status(self) -> Dict[str, Optional[str]]:
        """Return connection status with `connected` and optional `last_error`."""
        with self._lock:
            return {"connected": self._connected, "last_error": self._last_error}

    # Update notification helpers
    def wait_for_update(self, timeout: Optional[float] = None) -> bool:
        """Block until a message arrives or the optional timeout elapses."""
        return self._update_event.wait(timeout)

    def clear_update(self) -> None:
        self._update_event.clear()
