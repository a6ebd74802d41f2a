#
# Copyright 2025 The AppleTV Enhanced contributors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
#
"""Discovery loop publishing every Apple TV as its own HomeKit accessory."""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Union

from pyhap.accessory_driver import AccessoryDriver

from .accessory import AppleTVAccessory
from .device import DeviceInfo, scan
from .environment import EnvironmentChecker
from .storage import DeviceStorage

logger = logging.getLogger(__name__)

DISCOVERY_INTERVAL_SECONDS = 30
HAP_PORT_BASE = 51826
STATE_FILENAME = "accessory.state"
DEFAULT_NAME = "Apple TV Enhanced"


@dataclass
class PlatformConfig:
    """Settings from the optional JSON config file.

    ``media_types`` / ``device_states`` of None publish a sensor for every
    value; a list limits the sensors to the listed values.
    """

    name: str = DEFAULT_NAME
    blacklist: List[str] = field(default_factory=list)
    media_types: Optional[List[str]] = None
    device_states: Optional[List[str]] = None
    python_executable: Optional[str] = None
    force_venv_recreate: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlatformConfig":
        return cls(
            name=data.get("name") or DEFAULT_NAME,
            blacklist=list(data.get("blacklist") or []),
            media_types=data.get("mediaTypes"),
            device_states=data.get("deviceStates"),
            python_executable=data.get("pythonExecutable") or None,
            force_venv_recreate=bool(data.get("forceVenvRecreate", False)),
        )

    @classmethod
    def load(cls, path: Optional[Union[str, Path]]) -> "PlatformConfig":
        """Read the config file. A missing or broken file yields the defaults."""
        if path is None:
            return cls()
        path = Path(path).expanduser()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            logger.error(f"Config file {path} not found, using defaults")
            return cls()
        except ValueError as e:
            logger.error(f"Config file {path} is not valid JSON ({e}), using defaults")
            return cls()
        if not isinstance(data, dict):
            logger.error(f"Config file {path} must contain a JSON object, using defaults")
            return cls()
        return cls.from_dict(data)


def create_driver(port: int, persist_file: Path) -> AccessoryDriver:
    return AccessoryDriver(port=port, persist_file=str(persist_file), loop=asyncio.get_running_loop())


class AppleTVPlatform:
    def __init__(
        self,
        config: PlatformConfig,
        storage_path: Union[str, Path],
        discovery_interval: float = DISCOVERY_INTERVAL_SECONDS,
        hap_port_base: int = HAP_PORT_BASE,
        checker: Optional[EnvironmentChecker] = None,
        scanner=scan,
        driver_factory=create_driver,
        accessory_factory=AppleTVAccessory,
    ):
        self.config = config
        self.storage_path = Path(storage_path).expanduser()
        self.discovery_interval = discovery_interval
        self.hap_port_base = hap_port_base
        self.checker = checker or EnvironmentChecker(self.storage_path, config.python_executable)
        self._scan = scanner
        self._driver_factory = driver_factory
        self._accessory_factory = accessory_factory

        self.accessories: Dict[str, AppleTVAccessory] = {}
        self.drivers: Dict[str, AccessoryDriver] = {}
        self._next_port = hap_port_base
        self._free_ports: List[int] = []
        self._tasks: Set[asyncio.Task] = set()
        self._stop_event = asyncio.Event()

    @property
    def bin_dir(self) -> Path:
        return self.checker.bin_dir

    async def run(self):
        """Prepare the environment, then discover until ``stop()`` is called."""
        await self.checker.ensure(self.config.force_venv_recreate)
        logger.info(f"*** {self.config.name} ready! ***")
        while not self._stop_event.is_set():
            await self.discover()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.discovery_interval)
            except asyncio.TimeoutError:
                pass

    async def discover(self):
        logger.debug("Starting device discovery ...")
        devices = await self._scan(self.bin_dir / "atvscript", self.config.blacklist, log=logger)
        for info in devices:
            if info.identifier in self.accessories:
                logger.debug(f"{info.name} ({info.identifier}) is already published")
                continue
            logger.info(f"Found Apple TV {info.name} ({info.identifier}) at {info.host}")
            task = asyncio.create_task(self._publish(info))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    def _allocate_port(self) -> int:
        if self._free_ports:
            return self._free_ports.pop(0)
        port = self._next_port
        self._next_port += 1
        return port

    def _release_port(self, port: int):
        self._free_ports.append(port)
        self._free_ports.sort()

    async def _publish(self, info: DeviceInfo):
        port = self._allocate_port()

        directory = DeviceStorage(self.storage_path, info.identifier).directory
        directory.mkdir(parents=True, exist_ok=True)
        driver = self._driver_factory(port, directory / STATE_FILENAME)
        accessory = self._accessory_factory(
            info,
            driver,
            self.storage_path,
            self.bin_dir,
            media_types=self.config.media_types,
            device_states=self.config.device_states,
        )
        self.accessories[info.identifier] = accessory

        try:
            television = await accessory.start()
            await accessory.until_booted()
            driver.add_accessory(television)
            await driver.async_start()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to publish {info.name} ({info.identifier}): {e}")
            del self.accessories[info.identifier]
            await accessory.stop()
            self._release_port(port)
            return

        self.drivers[info.identifier] = driver
        logger.info(
            f"Published {info.name} ({info.identifier}) on port {port}. "
            f"HomeKit setup code: {driver.state.pincode.decode()}"
        )

    async def stop(self):
        self._stop_event.set()
        for task in list(self._tasks):
            if not task.done():
                task.cancel()
        for accessory in self.accessories.values():
            await accessory.stop()
        for driver in self.drivers.values():
            await driver.async_stop()
