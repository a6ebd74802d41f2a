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
"""HomeKit television accessory built with HAP-python.

The accessory publishes one Television service with:

* an InputSource service per installed app
* a MotionSensor per device state and per media type, used as automation
  triggers ("when the Apple TV starts playing ...")

Names and input settings the user changes in the Home app are persisted
through ``DeviceConfigStore``. Requests that need the Apple TV (power,
launching apps, remote keys) are delegated to the controller, an
``AppleTVAccessory``.
"""

import asyncio
import functools
import hashlib
import logging
from enum import IntEnum
from typing import Any, Callable, Dict, Iterable, Optional

from pyhap.accessory import Accessory
from pyhap.const import CATEGORY_TELEVISION

from .connectivity import MediaState
from .device import DEVICE_STATES, MEDIA_TYPES, App, DeviceInfo
from .remote import RemoteControlCommand
from .storage import DeviceConfigStore

logger = logging.getLogger(__name__)

MANUFACTURER = "Apple Inc."

DEFAULT_ACTIVE_APP = "com.apple.TVSettings"

# System apps most users never want in the input list
HIDE_BY_DEFAULT_APPS = (
    "com.apple.podcasts",
    "com.apple.TVAppStore",
    "com.apple.TVSearch",
    "com.apple.Arcade",
    "com.apple.TVHomeSharing",
    "com.apple.TVSettings",
    "com.apple.Fitness",
    "com.apple.TVShows",
    "com.apple.TVMovies",
    "com.apple.facetime",
)

VISIBILITY_SHOWN = 0
VISIBILITY_HIDDEN = 1
IS_CONFIGURED = 1
INPUT_SOURCE_TYPE_APPLICATION = 10
INPUT_DEVICE_TYPE_OTHER = 0
SLEEP_DISCOVERY_ALWAYS_DISCOVERABLE = 1

MEDIA_STATE_VALUES = {
    "Play": MediaState.PLAY,
    "Pause": MediaState.PAUSE,
    "Stop": MediaState.STOP,
    "Loading": MediaState.LOADING,
    "Interrupted": MediaState.INTERRUPTED,
}


class RemoteKey(IntEnum):
    """Values written to the RemoteKey characteristic by the Control Center remote."""

    REWIND = 0
    FAST_FORWARD = 1
    NEXT_TRACK = 2
    PREVIOUS_TRACK = 3
    ARROW_UP = 4
    ARROW_DOWN = 5
    ARROW_LEFT = 6
    ARROW_RIGHT = 7
    SELECT = 8
    BACK = 9
    EXIT = 10
    PLAY_PAUSE = 11
    INFORMATION = 15


REMOTE_KEY_COMMANDS = {
    RemoteKey.REWIND: RemoteControlCommand.SKIP_BACKWARD,
    RemoteKey.FAST_FORWARD: RemoteControlCommand.SKIP_FORWARD,
    RemoteKey.NEXT_TRACK: RemoteControlCommand.NEXT,
    RemoteKey.PREVIOUS_TRACK: RemoteControlCommand.PREVIOUS,
    RemoteKey.ARROW_UP: RemoteControlCommand.UP,
    RemoteKey.ARROW_DOWN: RemoteControlCommand.DOWN,
    RemoteKey.ARROW_LEFT: RemoteControlCommand.LEFT,
    RemoteKey.ARROW_RIGHT: RemoteControlCommand.RIGHT,
    RemoteKey.SELECT: RemoteControlCommand.SELECT,
    RemoteKey.BACK: RemoteControlCommand.MENU,
    RemoteKey.EXIT: RemoteControlCommand.HOME,
    RemoteKey.PLAY_PAUSE: RemoteControlCommand.PLAY_PAUSE,
    RemoteKey.INFORMATION: RemoteControlCommand.TOP_MENU,
}


def app_identifier(app_id: str) -> int:
    """Stable input identifier of an app: first 4 bytes of the MD5 of its bundle id."""
    return int.from_bytes(hashlib.md5(app_id.encode("utf-8")).digest()[:4], "big")


class TelevisionAccessory(Accessory):
    category = CATEGORY_TELEVISION

    def __init__(
        self,
        driver,
        info: DeviceInfo,
        config_store: DeviceConfigStore,
        controller,
        media_types: Optional[Iterable[str]] = None,
        device_states: Optional[Iterable[str]] = None,
        log: Optional[logging.Logger] = None,
    ):
        super().__init__(driver, info.name)
        self.info = info
        self.config_store = config_store
        self.controller = controller
        self.log = log or logger

        self.set_info_service(
            firmware_revision=info.version or None,
            manufacturer=MANUFACTURER,
            model=info.model or "Apple TV",
            serial_number=info.identifier,
        )

        common = config_store.get_common_config()
        self.configured_name = common.get("configuredName") or info.name

        self.serv_tv = self.add_preload_service("Television", chars=["RemoteKey", "CurrentMediaState"])
        self.char_active = self.serv_tv.configure_char("Active", value=0, setter_callback=self._on_active_set)
        self.char_active_identifier = self.serv_tv.configure_char(
            "ActiveIdentifier",
            value=common.get("activeIdentifier") or app_identifier(DEFAULT_ACTIVE_APP),
            setter_callback=self._on_active_identifier_set,
        )
        self.char_configured_name = self.serv_tv.configure_char(
            "ConfiguredName", value=self.configured_name, setter_callback=self._on_configured_name_set
        )
        self.serv_tv.configure_char("SleepDiscoveryMode", value=SLEEP_DISCOVERY_ALWAYS_DISCOVERABLE)
        self.serv_tv.configure_char("RemoteKey", setter_callback=self._on_remote_key)
        self.char_current_media_state = self.serv_tv.configure_char("CurrentMediaState")
        self.char_current_media_state.override_properties(valid_values=MEDIA_STATE_VALUES)
        self.char_current_media_state.set_value(int(MediaState.INTERRUPTED), should_notify=False)

        self.app_configs: Dict[str, Dict[str, Any]] = {}
        self.input_services: Dict[str, Any] = {}

        self.device_state_sensors = self._add_sensors(
            DEVICE_STATES, device_states, "device state",
            config_store.get_device_state_config(), config_store.set_device_state_config,
        )
        self.media_type_sensors = self._add_sensors(
            MEDIA_TYPES, media_types, "media type",
            config_store.get_media_type_config(), config_store.set_media_type_config,
        )

    @property
    def available(self) -> bool:
        """Reads fail with a communication error while the Apple TV is unreachable."""
        return not self.controller.offline

    # Sensors

    def _add_sensors(self, keys, selected, kind: str, names: Dict[str, str],
                     save: Callable[[str, str], None]) -> Dict[str, Any]:
        selected = None if selected is None else set(selected)
        sensors = {}
        for key in keys:
            if selected is not None and key not in selected:
                continue
            self.log.info(f"Adding {kind} {key} as a motion sensor.")
            default_name = key.capitalize()
            service = self.add_preload_service("MotionSensor", chars=["Name", "ConfiguredName"], unique_id=f"{kind}:{key}")
            service.configure_char("Name", value=default_name)
            service.configure_char(
                "ConfiguredName",
                value=names.get(key) or default_name,
                setter_callback=functools.partial(self._on_sensor_name_set, kind, key, save),
            )
            sensors[key] = service.configure_char("MotionDetected", value=False)
            self.serv_tv.add_linked_service(service)
        return sensors

    def _on_sensor_name_set(self, kind: str, key: str, save: Callable[[str, str], None], value: str):
        names = (self.config_store.get_device_state_config() if kind == "device state"
                 else self.config_store.get_media_type_config())
        old_name = names.get(key) or key.capitalize()
        if not value or value == old_name:
            return
        self.log.info(f"Changing configured name of {kind} sensor {key} from {old_name} to {value}.")
        save(key, value)

    def set_device_state_indicator(self, device_state: str, on: bool):
        char = self.device_state_sensors.get(device_state)
        if char is not None:
            char.set_value(on)

    def set_media_type_indicator(self, media_type: str, on: bool):
        char = self.media_type_sensors.get(media_type)
        if char is not None:
            char.set_value(on)

    # Inputs

    def add_inputs(self, apps: Iterable[App]):
        """Publish installed apps as inputs, merging the persisted settings."""
        configs = {app_id: dict(config) for app_id, config in self.config_store.get_app_configs().items()}
        for app in apps:
            if app.identifier in self.input_services:
                continue
            config = configs.setdefault(app.identifier, {
                "configuredName": app.name,
                "isConfigured": IS_CONFIGURED,
                "visibilityState": VISIBILITY_HIDDEN if app.identifier in HIDE_BY_DEFAULT_APPS else VISIBILITY_SHOWN,
                "identifier": app_identifier(app.identifier),
            })
            self.log.info(f"Adding {config['configuredName']} ({app.identifier}) as an input.")

            service = self.add_preload_service(
                "InputSource",
                chars=["Identifier", "Name", "InputDeviceType", "TargetVisibilityState"],
                unique_id=app.identifier,
            )
            service.configure_char("Name", value=app.name)
            service.configure_char("InputSourceType", value=INPUT_SOURCE_TYPE_APPLICATION)
            service.configure_char("InputDeviceType", value=INPUT_DEVICE_TYPE_OTHER)
            service.configure_char("Identifier", value=config["identifier"])
            service.configure_char(
                "ConfiguredName",
                value=config["configuredName"],
                setter_callback=functools.partial(self._on_input_name_set, app.identifier),
            )
            service.configure_char(
                "IsConfigured",
                value=config["isConfigured"],
                setter_callback=functools.partial(self._on_input_configured_set, app.identifier),
            )
            service.configure_char("CurrentVisibilityState", value=config["visibilityState"])
            service.configure_char(
                "TargetVisibilityState",
                value=config["visibilityState"],
                setter_callback=functools.partial(self._on_input_visibility_set, app.identifier),
            )
            self.serv_tv.add_linked_service(service)
            self.input_services[app.identifier] = service

        self.app_configs = configs
        self.config_store.set_app_configs(configs)

    def app_id_for(self, identifier: int) -> Optional[str]:
        for app_id, config in self.app_configs.items():
            if config.get("identifier") == identifier:
                return app_id
        return None

    def _on_input_name_set(self, app_id: str, value: str):
        config = self.app_configs[app_id]
        if not value or value == config["configuredName"]:
            return
        self.log.info(f"Changing configured name of {app_id} from {config['configuredName']} to {value}.")
        config["configuredName"] = value
        self.config_store.set_app_configs(self.app_configs)

    def _on_input_configured_set(self, app_id: str, value: int):
        config = self.app_configs[app_id]
        self.log.info(
            f"Changing is configured of {config['configuredName']} ({app_id}) "
            f"from {config['isConfigured']} to {value}."
        )
        config["isConfigured"] = value
        self.config_store.set_app_configs(self.app_configs)

    def _on_input_visibility_set(self, app_id: str, value: int):
        config = self.app_configs[app_id]
        self.log.info(
            f"Changing visibility state of {config['configuredName']} ({app_id}) "
            f"from {config['visibilityState']} to {value}."
        )
        config["visibilityState"] = value
        self.input_services[app_id].get_characteristic("CurrentVisibilityState").set_value(value)
        self.config_store.set_app_configs(self.app_configs)

    # Television

    @property
    def active(self) -> bool:
        return self.char_active.value == 1

    def set_active(self, active: bool):
        self.char_active.set_value(1 if active else 0)

    def set_current_media_state(self, state: MediaState):
        self.char_current_media_state.set_value(int(state))

    def _on_active_set(self, value: int):
        self._schedule(self.controller.set_active(value == 1))

    def _on_active_identifier_set(self, value: int):
        self._schedule(self.controller.set_active_identifier(value))

    def _on_configured_name_set(self, value: str):
        if not value or value == self.configured_name:
            return
        self.log.info(f"Changed Configured Name from {self.configured_name} to {value}")
        self.configured_name = value
        self.config_store.set_common_config("configuredName", value)
        self.controller.rename(value)

    def _on_remote_key(self, value: int):
        try:
            command = REMOTE_KEY_COMMANDS[RemoteKey(value)]
        except (KeyError, ValueError):
            self.log.debug(f"Ignoring unsupported remote key {value}")
            return
        self.log.info(f"remote {RemoteKey(value).name.lower().replace('_', ' ')}")
        self.controller.send_remote_command(command)

    def _schedule(self, coro):
        # HAP-python calls setters synchronously; the work runs on the driver loop
        future = asyncio.run_coroutine_threadsafe(coro, self.driver.loop)
        future.add_done_callback(self._log_failure)

    def _log_failure(self, future):
        if not future.cancelled() and future.exception() is not None:
            self.log.error(f"Error handling HomeKit request: {future.exception()}")
