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
"""Brings up one Apple TV: pairing, control channel, HomeKit state."""

import asyncio
import logging
from pathlib import Path
from typing import Iterable, Optional, Union

from .connectivity import ConnectivityMonitor, PowerState
from .device import AppleTVDevice, DeviceEventStream, DeviceInfo
from .homekit import TelevisionAccessory
from .pairing import PairingCoordinator
from .remote import RemoteControlCommand, RocketRemote
from .storage import CredentialStore, DeviceConfigStore, DeviceStorage

logger = logging.getLogger(__name__)

REMOTE_RECONNECT_DELAY_SECONDS = 5
BOOT_POLL_INTERVAL_SECONDS = 0.1


class DeviceLogger(logging.LoggerAdapter):
    """Prefixes messages with the configured name and identifier of the Apple TV."""

    def process(self, msg, kwargs):
        return f"[{self.extra['name']} ({self.extra['identifier']})] {msg}", kwargs


class AppleTVAccessory:
    """Lifecycle and HomeKit request handling of a single Apple TV.

    ``start()`` pairs first when no credentials are stored, then opens the
    control channel, builds the HomeKit television and subscribes to the
    device's event stream. HomeKit writes arrive through ``set_active``,
    ``set_active_identifier``, ``send_remote_command`` and ``rename``.
    """

    def __init__(
        self,
        info: DeviceInfo,
        driver,
        storage_path: Union[str, Path],
        bin_dir: Union[str, Path],
        media_types: Optional[Iterable[str]] = None,
        device_states: Optional[Iterable[str]] = None,
        pairing: Optional[PairingCoordinator] = None,
        remote_factory=RocketRemote.open,
        device_factory=AppleTVDevice,
        events_factory=DeviceEventStream,
        television_factory=TelevisionAccessory,
    ):
        self.info = info
        self.driver = driver
        self.bin_dir = Path(bin_dir)
        self.media_types = media_types
        self.device_states = device_states

        storage = DeviceStorage(storage_path, info.identifier)
        self.log = DeviceLogger(logger, {"name": info.name, "identifier": info.identifier})
        self.credential_store = CredentialStore(storage, self.log)
        self.config_store = DeviceConfigStore(storage, self.log)
        self.state_file = storage.directory / "accessory.state"

        self.pairing = pairing or PairingCoordinator(str(self.bin_dir / "atvremote"), log=self.log)
        self._remote_factory = remote_factory
        self._device_factory = device_factory
        self._events_factory = events_factory
        self._television_factory = television_factory

        self.power_state = PowerState()
        self.credentials = ""
        self.device = None
        self.remote: Optional[RocketRemote] = None
        self.events = None
        self.monitor: Optional[ConnectivityMonitor] = None
        self.television: Optional[TelevisionAccessory] = None
        self.booted = False
        self._stopping = False
        self._reconnect_task: Optional[asyncio.Task] = None

    @property
    def offline(self) -> bool:
        return self.monitor is not None and self.monitor.offline

    async def start(self) -> TelevisionAccessory:
        """Bring the Apple TV up and return its HomeKit accessory."""
        credentials = self.credential_store.get_credentials()
        if not credentials:
            credentials = await self.pairing.pair(self.info.host, self.info.name)
            self.credential_store.save_credentials(credentials)
            self.log.warning("Pairing was successful. Add it to your home in the Home app.")
        self.credentials = credentials
        try:
            await self._start_up()
        except Exception:
            # Tear down whatever was opened, the platform retries on the next discovery
            await self.stop()
            raise
        return self.television

    async def _start_up(self):
        self.device = self._device_factory(self.info, self.credentials, self.bin_dir, log=self.log)
        await self._open_remote()

        configured_name = self.config_store.get_common_config().get("configuredName")
        if configured_name:
            self.rename(configured_name)

        self.television = self._television_factory(
            self.driver,
            self.info,
            self.config_store,
            self,
            media_types=self.media_types,
            device_states=self.device_states,
            log=self.log,
        )
        self.television.add_inputs(await self.device.list_apps())

        self.monitor = ConnectivityMonitor(self.device, self.television, self.power_state, self.log)
        self.events = self._events_factory(self.info, self.credentials, self.bin_dir, log=self.log)
        self.monitor.attach(self.events)
        await self.events.start()

        self.booted = True
        self.log.debug("Finished booting")

    async def until_booted(self):
        while not self.booted:
            await asyncio.sleep(BOOT_POLL_INTERVAL_SECONDS)

    async def stop(self):
        self._stopping = True
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
        if self.events is not None:
            await self.events.stop()
        if self.remote is not None:
            await self.remote.close()

    # Control channel

    async def _open_remote(self):
        self.remote = await self._remote_factory(
            self.info.identifier,
            str(self.bin_dir / "atvremote"),
            self.credentials,
            self.credentials,
            log=self.log,
        )
        self.remote.on_close(self._on_remote_closed)

    def _on_remote_closed(self):
        if self._stopping:
            return
        self._reconnect_task = asyncio.create_task(self._reconnect_remote())

    async def _reconnect_remote(self):
        while not self._stopping:
            await asyncio.sleep(REMOTE_RECONNECT_DELAY_SECONDS)
            try:
                await self._open_remote()
                return
            except OSError as e:
                self.log.error(f"Could not reopen the remote control channel: {e}")

    # HomeKit requests

    async def set_active(self, active: bool):
        await self.monitor.set_active(active)

    async def set_active_identifier(self, identifier: int):
        app_id = self.television.app_id_for(identifier)
        if app_id is None:
            self.log.warning(f"Ignoring unknown input identifier {identifier}")
            return
        self.config_store.set_common_config("activeIdentifier", identifier)
        self.log.info(f"Launching App: {self.television.app_configs[app_id]['configuredName']}")
        await self.device.launch_app(app_id)

    def send_remote_command(self, command: RemoteControlCommand):
        if self.remote is None:
            self.log.warning(f"Dropping {command.value}, the remote control channel is not open yet")
            return
        self.remote.send(command)

    def rename(self, name: str):
        self.log.extra["name"] = name
