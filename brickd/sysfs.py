# brickd - sysfs Access
# Author: IntelligentToasters
# License: GNU General Public License v3.0
#
# Reads power supply attributes and board information from sysfs and feeds
# supply add/remove events to the registry by rescanning the class
# directory.
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

"""sysfs helpers.

- SysfsReader: the raw attribute reader handed to supply monitors. Raises
  OSError when an attribute cannot be read.
- parse_uevent / scan_supplies: turn ``<root>/<name>/uevent`` files into the
  attribute maps used by discovery events.
- SupplyWatcher: rescans the power supply class directory periodically and
  reports new and vanished supplies as ``add``/``remove`` events.
- read_board_serial: serial number of the main board from board-info.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Dict, Optional, Union

from .supply import ATTR_TYPE, PowerSupply

log = logging.getLogger(__name__)

POWER_SUPPLY_ROOT = "/sys/class/power_supply"
BOARD_INFO_ROOT = "/sys/class/board-info"
RESCAN_INTERVAL = 2.0

BOARD_INFO_TYPE = "BOARD_INFO_TYPE"
BOARD_INFO_SERIAL = "BOARD_INFO_SERIAL_NUM"
MAIN_BOARD = "main"

PathLike = Union[str, Path]
EventHandler = Callable[[str, str, Dict[str, str]], None]


class SysfsReader:
    """Read ``<root>/<supply key>/<attribute>`` as text."""

    def __init__(self, root: PathLike = POWER_SUPPLY_ROOT):
        self.root = Path(root)

    def __call__(self, supply: PowerSupply, attribute: str) -> str:
        return (self.root / supply.key / attribute).read_text(encoding="ascii")


def parse_uevent(text: str) -> Dict[str, str]:
    """Parse ``KEY=VALUE`` lines. Lines without ``=`` are skipped."""
    out: Dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.strip().partition("=")
        if not sep or not key:
            continue
        out[key] = value
    return out


def read_attributes(path: Path) -> Dict[str, str]:
    """Attributes for one supply directory: its uevent plus ``type``."""
    try:
        attributes = parse_uevent((path / "uevent").read_text(encoding="utf-8", errors="replace"))
    except OSError as exc:
        log.debug("cannot read uevent for %s: %s", path.name, exc)
        attributes = {}
    if ATTR_TYPE not in attributes:
        try:
            attributes[ATTR_TYPE] = (path / "type").read_text(encoding="utf-8").strip()
        except OSError:
            pass
    return attributes


def scan_supplies(root: PathLike = POWER_SUPPLY_ROOT) -> Dict[str, Dict[str, str]]:
    """Return name -> attributes for every supply currently under ``root``."""
    root = Path(root)
    if not root.is_dir():
        log.debug("power supply root %s does not exist", root)
        return {}
    return {entry.name: read_attributes(entry) for entry in sorted(root.iterdir()) if entry.is_dir()}


class SupplyWatcher:
    """Emit add/remove events by diffing successive scans of ``root``."""

    def __init__(self, handler: EventHandler, root: PathLike = POWER_SUPPLY_ROOT,
                 interval: float = RESCAN_INTERVAL):
        self.handler = handler
        self.root = Path(root)
        self.interval = float(interval)
        self.known: Dict[str, Dict[str, str]] = {}
        self._task: Optional[asyncio.Task] = None

    def rescan(self) -> None:
        current = scan_supplies(self.root)
        for name in [n for n in self.known if n not in current]:
            del self.known[name]
            self.handler("remove", name, {})
        for name, attributes in current.items():
            if name not in self.known:
                self.known[name] = attributes
                self.handler("add", name, attributes)

    def start(self) -> None:
        """Scan once now; keep rescanning in the background if interval > 0."""
        self.rescan()
        if self.interval > 0 and self._task is None:
            self._task = asyncio.get_running_loop().create_task(self._run(), name="supply-watcher")

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.rescan()
            except OSError as exc:
                log.debug("rescan of %s failed: %s", self.root, exc)


def read_board_serial(root: PathLike = BOARD_INFO_ROOT, board_type: str = MAIN_BOARD) -> Optional[str]:
    """Serial number of the board whose BOARD_INFO_TYPE is ``board_type``."""
    root = Path(root)
    if not root.is_dir():
        return None
    for entry in sorted(root.iterdir()):
        try:
            info = parse_uevent((entry / "uevent").read_text(encoding="utf-8", errors="replace"))
        except OSError:
            continue
        if info.get(BOARD_INFO_TYPE) == board_type:
            return info.get(BOARD_INFO_SERIAL) or None
    log.debug("no %s board found under %s", board_type, root)
    return None
