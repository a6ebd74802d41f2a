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
"""Mirrors the device event stream into HomeKit state.

The monitor owns the offline flag and decides which events reach the
television: errors are dropped, repeated values are ignored and a power off
reported shortly after we turned the device on is treated as noise. The
television side is any object providing::

    active                              -> bool
    set_active(active)
    set_current_media_state(state)
    set_device_state_indicator(state, on)
    set_media_type_indicator(media_type, on)
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Optional

from .device import DeviceEvent

logger = logging.getLogger(__name__)

GRACE_PERIOD_SECONDS = 7.5
POWER_ON_POLL_INTERVAL_SECONDS = 0.25
POWER_ON_WAIT_SECONDS = 30


class MediaState(IntEnum):
    """Values of the HomeKit CurrentMediaState characteristic."""

    PLAY = 0
    PAUSE = 1
    STOP = 2
    LOADING = 4
    INTERRUPTED = 5


DEVICE_STATE_TO_MEDIA_STATE = {
    "playing": MediaState.PLAY,
    "paused": MediaState.PAUSE,
    "stopped": MediaState.STOP,
    "loading": MediaState.LOADING,
    None: MediaState.INTERRUPTED,
}


@dataclass
class PowerState:
    """Power-on bookkeeping shared by the power command and the event handlers.

    Only the power-on command path writes it.
    """

    turning_on: bool = False
    last_power_on: Optional[float] = None
    clock: Callable[[], float] = time.monotonic

    def mark_power_on(self):
        self.last_power_on = self.clock()

    def within_grace(self) -> bool:
        """True while a power off report should be ignored."""
        if self.last_power_on is None:
            return False
        return self.clock() - self.last_power_on < GRACE_PERIOD_SECONDS


class ConnectivityMonitor:
    def __init__(self, device, television, power_state: Optional[PowerState] = None,
                 log: Optional[logging.Logger] = None, sleep=asyncio.sleep):
        self.device = device
        self.television = television
        self.power_state = power_state or PowerState()
        self.log = log or logger
        self.offline = False
        self._sleep = sleep

    def attach(self, events):
        """Subscribe to a ``DeviceEventStream``."""
        events.on("powerState", self._drop_errors(self.handle_power_event))
        events.on("deviceState", self._drop_errors(self.handle_device_state_event))
        events.on("mediaType", self._drop_errors(self.handle_media_type_event))
        events.on_error(self.handle_error)

    def handle_error(self, error: Exception):
        self.log.debug(f"{error}")
        self.offline = True
        self.log.warning("Lost connection. Trying to reconnect ...")

    def _drop_errors(self, handler: Callable[[DeviceEvent], None]):
        def listener(event):
            if isinstance(event, Exception):
                return
            if self.offline and event.value is not None:
                self.log.info("Reestablished the connection")
                self.offline = False
            self.log.debug(f"event {event.key}: {event.value}")
            handler(event)
        return listener

    def handle_power_event(self, event: DeviceEvent):
        if event.value is None or event.value == event.old_value:
            return
        active = event.value == "on"
        if not active and self.power_state.within_grace():
            self.log.debug("Ignoring power off event right after turning on")
            return
        self.log.info(f"New Active State: {event.value}")
        self.television.set_active(active)

    def handle_device_state_event(self, event: DeviceEvent):
        if not self._move_indicator(event, self.television.set_device_state_indicator, "Device State"):
            return
        if event.value in DEVICE_STATE_TO_MEDIA_STATE:
            self.television.set_current_media_state(DEVICE_STATE_TO_MEDIA_STATE[event.value])

    def handle_media_type_event(self, event: DeviceEvent):
        self._move_indicator(event, self.television.set_media_type_indicator, "Media Type")

    def _move_indicator(self, event: DeviceEvent, set_indicator: Callable[[str, bool], None], label: str) -> bool:
        """Switch the indicator of the old value off and the new one on.

        Returns False when the event was skipped.
        """
        if event.value == event.old_value:
            return False
        if not self.television.active:
            return False
        if event.old_value is not None:
            set_indicator(event.old_value, False)
        self.log.info(f"New {label}: {event.value}")
        if event.value is not None:
            set_indicator(event.value, True)
        return True

    async def set_active(self, active: bool):
        """Handle an Active write coming from HomeKit."""
        if active:
            if self.power_state.turning_on:
                self.log.debug("Already turning on")
                return
            await self._turn_on()
        elif self.power_state.within_grace():
            self.log.debug("Ignoring turn off request right after turning on")
        else:
            self.log.info("Turning off")
            await self.device.turn_off()

    async def _turn_on(self):
        self.power_state.turning_on = True
        self.power_state.mark_power_on()
        try:
            self.log.info("Turning on")
            await self.device.turn_on()
            waited = 0.0
            while waited < POWER_ON_WAIT_SECONDS:
                state = await self.device.get_state()
                if state.device_state is not None and state.media_type is not None:
                    self._show_state(state.device_state, state.media_type)
                    return
                await self._sleep(POWER_ON_POLL_INTERVAL_SECONDS)
                waited += POWER_ON_POLL_INTERVAL_SECONDS
                self.log.debug(f"Waiting until media type and device state are reported: {waited:.2f}s")
            self.log.warning(f"Media type and device state not reported within {POWER_ON_WAIT_SECONDS} seconds")
        finally:
            self.power_state.turning_on = False

    def _show_state(self, device_state: str, media_type: str):
        self.log.info(f"New Media Type State: {media_type}")
        self.television.set_media_type_indicator(media_type, True)
        self.log.info(f"New Device State: {device_state}")
        self.television.set_device_state_indicator(device_state, True)
        if device_state in DEVICE_STATE_TO_MEDIA_STATE:
            self.television.set_current_media_state(DEVICE_STATE_TO_MEDIA_STATE[device_state])
