#!/usr/bin/env python3
# brickd - Daemon Entry Point
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Wires the supply registry, event bus, protocol server and safety actions
# into one process context and runs it until SIGINT/SIGTERM.
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
"""
brickd daemon

Monitors the board's power supplies and serves battery information to
local clients on TCP port 31313 (loopback only).

Usage:
    brickd --verbose
    brickd --port 31313 --sysfs-root /sys/class/power_supply --no-actions
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Set, Tuple

from .events import BATTERY_STATE_CHANGED, EventBus, Subscription
from .protocol import DEFAULT_PORT
from .registry import SupplyRegistry
from .server import DEFAULT_HOSTS, ProtocolServer
from .supply import BatteryState
from .sysfs import (
    BOARD_INFO_ROOT,
    POWER_SUPPLY_ROOT,
    RESCAN_INTERVAL,
    SupplyWatcher,
    SysfsReader,
    read_board_serial,
)

log = logging.getLogger(__name__)

WALL = "wall"
POWEROFF = "/sbin/poweroff"
LOW_BATTERY_WALL = "Low battery. Power off or connect a charger soon."
HIGH_TEMP_WALL = "Battery is getting hot. Reduce load soon."


class SafetyActions:
    """Run the local consequences of system battery state changes.

    LOW_VOLT / HIGH_TEMP broadcast a wall message; the critical states power
    the board off. Commands are spawned in the background; ``runner`` can be
    replaced to capture them instead.
    """

    COMMANDS = {
        BatteryState.LOW_VOLT: (WALL, LOW_BATTERY_WALL),
        BatteryState.HIGH_TEMP: (WALL, HIGH_TEMP_WALL),
        BatteryState.CRITICAL_LOW_VOLT: (POWEROFF,),
        BatteryState.CRITICAL_HIGH_TEMP: (POWEROFF,),
    }

    def __init__(self, bus: EventBus, runner=None):
        self.bus = bus
        self._runner = runner or self._spawn
        self._subscription: Optional[Subscription] = None
        self._tasks: Set[asyncio.Task] = set()

    def start(self) -> None:
        if self._subscription is None:
            self._subscription = self.bus.subscribe(BATTERY_STATE_CHANGED, self.on_critical_transition)

    def stop(self) -> None:
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None

    def on_critical_transition(self, state: BatteryState) -> None:
        argv = self.COMMANDS.get(state)
        if argv is None:
            return
        log.warning("system battery is %s; running %s", state.name, argv[0])
        self._runner(argv)

    def _spawn(self, argv: Tuple[str, ...]) -> None:
        task = asyncio.get_running_loop().create_task(self._exec(argv))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _exec(self, argv: Tuple[str, ...]) -> None:
        try:
            proc = await asyncio.create_subprocess_exec(*argv)
            rc = await proc.wait()
        except OSError as exc:
            log.error("failed to run %s: %s", argv[0], exc)
            return
        if rc != 0:
            log.error("%s exited with status %s", argv[0], rc)


@dataclass
class DaemonConfig:
    port: int = DEFAULT_PORT
    hosts: List[str] = field(default_factory=lambda: list(DEFAULT_HOSTS))
    sysfs_root: str = POWER_SUPPLY_ROOT
    board_info_root: str = BOARD_INFO_ROOT
    serial: Optional[str] = None
    rescan_interval: float = RESCAN_INTERVAL
    actions: bool = True

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "DaemonConfig":
        return cls(
            port=args.port,
            hosts=list(args.listen) if args.listen else list(DEFAULT_HOSTS),
            sysfs_root=args.sysfs_root,
            board_info_root=args.board_info_root,
            serial=args.serial,
            rescan_interval=args.rescan_interval,
            actions=not args.no_actions,
        )


class BrickdContext:
    """Process context: owns every long-lived component of the daemon."""

    def __init__(self, config: DaemonConfig):
        self.config = config
        self.bus = EventBus()
        self.registry = SupplyRegistry(self.bus, SysfsReader(config.sysfs_root))
        serial = config.serial
        if serial is None:
            serial = read_board_serial(config.board_info_root)
        self.server = ProtocolServer(self.bus, self.registry, serial=serial,
                                     hosts=config.hosts, port=config.port)
        self.watcher = SupplyWatcher(self.registry.handle_event, root=config.sysfs_root,
                                     interval=config.rescan_interval)
        self.actions = SafetyActions(self.bus) if config.actions else None
        self._stop_event: Optional[asyncio.Event] = None

    async def start(self) -> None:
        """Bind the listeners (OSError is fatal), then start monitoring."""
        self._stop_event = asyncio.Event()
        await self.server.start()
        if self.actions is not None:
            self.actions.start()
        try:
            self.watcher.start()
        except OSError:
            self.server.close()
            raise
        log.info("brickd started on %s", self.server.addresses)

    def shutdown(self) -> None:
        """Ask a running context to stop. Safe to call from a signal handler."""
        log.info("shutdown requested")
        if self._stop_event is not None:
            self._stop_event.set()

    async def stop(self) -> None:
        await self.server.shutdown()
        self.watcher.stop()
        self.registry.close()
        if self.actions is not None:
            self.actions.stop()
        log.info("brickd stopped")

    async def run(self) -> None:
        await self.start()
        try:
            await self._stop_event.wait()
        finally:
            await self.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Battery monitoring daemon")
    parser.add_argument("--port", default=DEFAULT_PORT, type=int,
                        help=f"TCP port (default: {DEFAULT_PORT})")
    parser.add_argument("--listen", action="append", metavar="ADDR",
                        help="Loopback address to listen on; repeat for several (default: 127.0.0.1 and ::1)")
    parser.add_argument("--sysfs-root", default=POWER_SUPPLY_ROOT,
                        help=f"Power supply class directory (default: {POWER_SUPPLY_ROOT})")
    parser.add_argument("--board-info-root", default=BOARD_INFO_ROOT,
                        help=f"Board info class directory (default: {BOARD_INFO_ROOT})")
    parser.add_argument("--serial", default=None, help="Board serial number reported to clients")
    parser.add_argument("--rescan-interval", default=RESCAN_INTERVAL, type=float,
                        help=f"Seconds between supply rescans, 0 to disable (default: {RESCAN_INTERVAL})")
    parser.add_argument("--no-actions", action="store_true",
                        help="Do not run wall/poweroff on low battery")
    parser.add_argument("--log-level", default="WARNING",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Log level (default: WARNING)")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose (DEBUG) logging")
    return parser


async def _serve(config: DaemonConfig) -> int:
    context = BrickdContext(config)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, context.shutdown)
    try:
        await context.run()
    except OSError as exc:
        log.error("Failed to start: %s", exc)
        return 1
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)

    log_level = logging.DEBUG if args.verbose else getattr(logging, args.log_level)
    log_format = '[%(asctime)s] %(levelname)s: %(message)s'
    logging.basicConfig(level=log_level, format=log_format, datefmt='%H:%M:%S')

    return asyncio.run(_serve(DaemonConfig.from_args(args)))


if __name__ == "__main__":
    sys.exit(main())
