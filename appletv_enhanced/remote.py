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
"""Persistent remote control channel to an Apple TV.

A single ``atvremote ... cli`` process stays open per Apple TV. Commands are
written to its stdin, one per line, which avoids paying the connection setup
for every key press. A harmless ``app_list`` is sent every 15 seconds so a
dead connection makes the process exit, which is reported once through the
close callback. The owner reconnects by opening a new channel.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, Union

from .process import ManagedProcess

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL_SECONDS = 15
HEARTBEAT_COMMAND = "app_list"


class RemoteControlCommand(str, Enum):
    """Commands understood by the atvremote interactive mode."""

    CHANNEL_DOWN = "channel_down"
    CHANNEL_UP = "channel_up"
    DOWN = "down"
    HOME = "home"
    HOME_HOLD = "home_hold"
    LEFT = "left"
    MENU = "menu"
    NEXT = "next"
    PAUSE = "pause"
    PLAY = "play"
    PLAY_PAUSE = "play_pause"
    PREVIOUS = "previous"
    RIGHT = "right"
    SELECT = "select"
    SKIP_BACKWARD = "skip_backward"
    SKIP_FORWARD = "skip_forward"
    STOP = "stop"
    TOP_MENU = "top_menu"
    TURN_OFF = "turn_off"
    TURN_ON = "turn_on"
    UP = "up"
    VOLUME_DOWN = "volume_down"
    VOLUME_UP = "volume_up"


class RocketRemote:
    """Long-lived ``atvremote`` process accepting one command per line."""

    def __init__(
        self,
        mac: str,
        atvremote_path: str,
        airplay_credentials: str,
        companion_credentials: str,
        log: Optional[logging.Logger] = None,
        spawn: Callable[..., Awaitable[ManagedProcess]] = ManagedProcess.spawn,
        heartbeat_interval: float = HEARTBEAT_INTERVAL_SECONDS,
    ):
        self.mac = mac
        self.atvremote_path = atvremote_path
        self.airplay_credentials = airplay_credentials
        self.companion_credentials = companion_credentials
        self.log = log or logger
        self.heartbeat_interval = heartbeat_interval
        self._spawn = spawn

        self.process: Optional[ManagedProcess] = None
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._has_close_subscriber = False

    @classmethod
    async def open(
        cls,
        mac: str,
        atvremote_path: str,
        airplay_credentials: str,
        companion_credentials: str,
        **kwargs,
    ) -> "RocketRemote":
        """Start the control process for ``mac`` and return the channel."""
        remote = cls(mac, atvremote_path, airplay_credentials, companion_credentials, **kwargs)
        await remote._init_process()
        return remote

    async def _init_process(self):
        self.log.debug("creating rocket remote")
        self.process = await self._spawn(
            self.atvremote_path,
            [
                "--id", self.mac,
                "--companion-credentials", self.companion_credentials,
                "--airplay-credentials", self.airplay_credentials,
                "cli",
            ],
            on_stdout=self._on_stdout,
            on_stderr=self._on_stderr,
        )
        # Registered before any subscriber so cleanup always runs first
        self.process.closed.add_done_callback(self._on_process_closed)
        self._heartbeat_task = asyncio.create_task(self._heartbeat())

    @property
    def connected(self) -> bool:
        return self.process is not None and self.process.running

    async def _heartbeat(self):
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self.connected:
                return
            self.log.debug("heartbeat")
            self.process.write(f"{HEARTBEAT_COMMAND}\n")

    def _on_stdout(self, line: str):
        if line.strip():
            self.log.debug(f"rocket remote: {line}")

    def _on_stderr(self, line: str):
        if line.strip():
            self.log.debug(f"rocket remote stderr: {line}")

    def _on_process_closed(self, _future: asyncio.Future):
        self.process.remove_listeners()
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        self.log.warning("Lost connection. Trying to reconnect ...")

    def on_close(self, callback: Callable[[], None]):
        """Register the function called once when the control process exits.

        Only one subscriber is allowed.
        """
        if self._has_close_subscriber:
            raise RuntimeError("RocketRemote already has a close callback")
        if self.process is None:
            raise RuntimeError("RocketRemote is not open")
        self._has_close_subscriber = True
        self.process.closed.add_done_callback(lambda _future: callback())

    def send(self, command: Union[RemoteControlCommand, str]):
        cmd = RemoteControlCommand(command)
        self.log.info(cmd.value)
        if not self.connected:
            self.log.warning(f"Dropping {cmd.value}, the remote control channel is not connected")
            return
        self.process.write(f"{cmd.value}\n")

    async def close(self):
        """Stop the control process. The close callback still fires."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
        if self.process is not None:
            await self.process.terminate()

    def channel_down(self):
        self.send(RemoteControlCommand.CHANNEL_DOWN)

    def channel_up(self):
        self.send(RemoteControlCommand.CHANNEL_UP)

    def down(self):
        self.send(RemoteControlCommand.DOWN)

    def home(self):
        self.send(RemoteControlCommand.HOME)

    def home_hold(self):
        self.send(RemoteControlCommand.HOME_HOLD)

    def left(self):
        self.send(RemoteControlCommand.LEFT)

    def menu(self):
        self.send(RemoteControlCommand.MENU)

    def next(self):
        self.send(RemoteControlCommand.NEXT)

    def pause(self):
        self.send(RemoteControlCommand.PAUSE)

    def play(self):
        self.send(RemoteControlCommand.PLAY)

    def play_pause(self):
        self.send(RemoteControlCommand.PLAY_PAUSE)

    def previous(self):
        self.send(RemoteControlCommand.PREVIOUS)

    def right(self):
        self.send(RemoteControlCommand.RIGHT)

    def select(self):
        self.send(RemoteControlCommand.SELECT)

    def skip_backward(self):
        self.send(RemoteControlCommand.SKIP_BACKWARD)

    def skip_forward(self):
        self.send(RemoteControlCommand.SKIP_FORWARD)

    def stop(self):
        self.send(RemoteControlCommand.STOP)

    def top_menu(self):
        self.send(RemoteControlCommand.TOP_MENU)

    def turn_off(self):
        self.send(RemoteControlCommand.TURN_OFF)

    def turn_on(self):
        self.send(RemoteControlCommand.TURN_ON)

    def up(self):
        self.send(RemoteControlCommand.UP)

    def volume_down(self):
        self.send(RemoteControlCommand.VOLUME_DOWN)

    def volume_up(self):
        self.send(RemoteControlCommand.VOLUME_UP)
