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
"""Apple TV command surface, event stream and discovery on top of pyatv's tools.

pyatv ships two executables that are installed into the managed venv:

* ``atvremote`` runs single commands (``turn_on``, ``app_list``, ...)
* ``atvscript`` prints JSON, either once (``scan``, ``playing``) or one
  document per line for ``push_updates``
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from .process import ManagedProcess, run_command

logger = logging.getLogger(__name__)

STREAM_RECONNECT_DELAY_SECONDS = 5

MAC_ADDRESS_RE = re.compile(r"^([0-9A-F]{2}[:-]){5}([0-9A-F]{2})$", re.IGNORECASE)
APP_RE = re.compile(r"App: (.+?) \(([^()\s]+)\)(?=, App: |\s*$)")

APPLE_TV_MODEL_MARKER = "Apple TV"
TVOS = "TvOS"

# atvscript push_updates key -> event category
EVENT_CATEGORIES = {
    "power_state": "powerState",
    "device_state": "deviceState",
    "media_type": "mediaType",
}

DEVICE_STATES = ("idle", "loading", "paused", "playing", "seeking", "stopped")
MEDIA_TYPES = ("music", "tv", "unknown", "video")


@dataclass(frozen=True)
class DeviceInfo:
    """An Apple TV found by discovery."""

    identifier: str
    host: str
    name: str
    model: str = ""
    version: str = ""

    @classmethod
    def from_scan(cls, device: Dict[str, Any]) -> "DeviceInfo":
        info = device.get("device_info") or {}
        return cls(
            identifier=device.get("identifier") or "",
            host=device.get("address") or "",
            name=device.get("name") or "",
            model=info.get("model_str") or "",
            version=info.get("version") or "",
        )


@dataclass(frozen=True)
class App:
    name: str
    identifier: str


@dataclass
class PlayingState:
    """Snapshot returned by ``atvscript playing``."""

    device_state: Optional[str] = None
    media_type: Optional[str] = None
    app_id: Optional[str] = None
    title: Optional[str] = None


@dataclass
class DeviceEvent:
    """A changed value of one event category."""

    key: str
    value: Any
    old_value: Any


class DeviceStreamError(Exception):
    """The event stream reported a failure or lost its connection."""


def credential_args(identifier: str, credentials: str) -> List[str]:
    return [
        "--id", identifier,
        "--companion-credentials", credentials,
        "--airplay-credentials", credentials,
    ]


def parse_app_list(output: str) -> List[App]:
    """Parse ``App: <name> (<bundle id>), App: ...`` as printed by ``atvremote app_list``."""
    return [App(name=m.group(1), identifier=m.group(2)) for m in APP_RE.finditer(output.strip())]


def is_supported_device(device: Dict[str, Any]) -> bool:
    info = device.get("device_info") or {}
    return (
        bool(MAC_ADDRESS_RE.match(device.get("identifier") or ""))
        and APPLE_TV_MODEL_MARKER in (info.get("model_str") or "")
        and info.get("operating_system") == TVOS
    )


async def scan(atvscript_path: Union[str, Path], blacklist: Sequence[str] = (),
               log: Optional[logging.Logger] = None, run=run_command) -> List[DeviceInfo]:
    """Discover Apple TVs on the local network.

    Devices that are not an Apple TV running tvOS, that have no MAC based
    identifier, or whose identifier is blacklisted are skipped.
    """
    log = log or logger
    stdout, _stderr, returncode = await run(str(atvscript_path), ["scan"], hide_output=True, log=log)
    if returncode is None:
        return []
    try:
        result = json.loads(stdout)
    except ValueError:
        log.debug(f"Ignoring unparsable scan output: {stdout!r}")
        return []
    if not isinstance(result, dict) or result.get("result") == "failure":
        log.warning(f"Scanning for Apple TVs failed: {result}")
        return []

    blocked = {entry.upper() for entry in blacklist}
    devices = []
    for device in result.get("devices") or []:
        if not is_supported_device(device):
            log.debug(f"Skipping {device.get('name')} ({device.get('identifier')}), not an Apple TV running tvOS")
            continue
        info = DeviceInfo.from_scan(device)
        if info.identifier.upper() in blocked:
            log.debug(f"Skipping {info.name} ({info.identifier}) since it is on the blacklist")
            continue
        devices.append(info)
    return devices


class AppleTVDevice:
    """One-shot commands against a paired Apple TV."""

    def __init__(self, info: DeviceInfo, credentials: str, bin_dir: Union[str, Path],
                 log: Optional[logging.Logger] = None, run=run_command):
        self.info = info
        self.credentials = credentials
        self.atvremote_path = str(Path(bin_dir) / "atvremote")
        self.atvscript_path = str(Path(bin_dir) / "atvscript")
        self.log = log or logger
        self._run = run

    async def _atvremote(self, *command: str, hide_output: bool = True) -> str:
        args = credential_args(self.info.identifier, self.credentials) + list(command)
        stdout, _stderr, _returncode = await self._run(self.atvremote_path, args, hide_output=hide_output, log=self.log)
        return stdout

    async def turn_on(self):
        await self._atvremote("turn_on")

    async def turn_off(self):
        await self._atvremote("turn_off")

    async def get_state(self) -> PlayingState:
        """Current playback state. Fields are None when unknown or on failure."""
        args = credential_args(self.info.identifier, self.credentials) + ["playing"]
        stdout, _stderr, _returncode = await self._run(self.atvscript_path, args, hide_output=True, log=self.log)
        try:
            data = json.loads(stdout)
        except ValueError:
            self.log.debug(f"Ignoring unparsable playing output: {stdout!r}")
            return PlayingState()
        if not isinstance(data, dict) or data.get("result") == "failure":
            return PlayingState()
        return PlayingState(
            device_state=data.get("device_state"),
            media_type=data.get("media_type"),
            app_id=data.get("app_id"),
            title=data.get("title"),
        )

    async def list_apps(self) -> List[App]:
        return parse_app_list(await self._atvremote("app_list"))

    async def launch_app(self, app_id: str):
        await self._atvremote(f"launch_app={app_id}")


EventCallback = Callable[[Union[DeviceEvent, DeviceStreamError]], None]
ErrorCallback = Callable[[DeviceStreamError], None]


class DeviceEventStream:
    """Pushes device updates from ``atvscript push_updates`` to subscribers.

    Every category callback receives either a ``DeviceEvent`` or, when the
    stream fails, the ``DeviceStreamError`` that was also sent to the error
    callbacks. Events are emitted when a value changes; the first document
    after (re)starting the process is emitted in full. The process is
    restarted after a delay whenever it exits, until ``stop()`` is called.
    """

    def __init__(self, info: DeviceInfo, credentials: str, bin_dir: Union[str, Path],
                 log: Optional[logging.Logger] = None, spawn=ManagedProcess.spawn,
                 reconnect_delay: float = STREAM_RECONNECT_DELAY_SECONDS):
        self.info = info
        self.credentials = credentials
        self.atvscript_path = str(Path(bin_dir) / "atvscript")
        self.log = log or logger
        self.reconnect_delay = reconnect_delay
        self._spawn = spawn

        self._listeners: Dict[str, List[EventCallback]] = {category: [] for category in EVENT_CATEGORIES.values()}
        self._error_listeners: List[ErrorCallback] = []
        self._values: Dict[str, Any] = {}
        self._emit_all = True
        self._stopped = True
        self._process: Optional[ManagedProcess] = None
        self._restart_task: Optional[asyncio.Task] = None

    def on(self, category: str, callback: EventCallback):
        if category not in self._listeners:
            raise ValueError(f"Unknown event category: {category}")
        self._listeners[category].append(callback)

    def on_error(self, callback: ErrorCallback):
        self._error_listeners.append(callback)

    async def start(self):
        self._stopped = False
        await self._start_process()

    async def stop(self):
        self._stopped = True
        if self._restart_task is not None:
            self._restart_task.cancel()
            self._restart_task = None
        if self._process is not None:
            await self._process.terminate()
            self._process = None

    async def _start_process(self):
        self._emit_all = True
        args = credential_args(self.info.identifier, self.credentials) + ["push_updates"]
        self._process = await self._spawn(
            self.atvscript_path,
            args,
            on_stdout=self.handle_line,
            on_stderr=self._on_stderr,
        )
        self._process.closed.add_done_callback(self._on_closed)

    def _on_stderr(self, line: str):
        if line.strip():
            self.log.debug(f"push_updates stderr: {line}")

    def _on_closed(self, _future: asyncio.Future):
        if self._stopped:
            return
        self._emit_error(DeviceStreamError("push_updates exited"))
        self._restart_task = asyncio.create_task(self._restart())

    async def _restart(self):
        while not self._stopped:
            await asyncio.sleep(self.reconnect_delay)
            if self._stopped:
                return
            self.log.debug("Restarting push_updates")
            try:
                await self._start_process()
                return
            except OSError as e:
                self.log.error(f"Could not restart push_updates: {e}")

    def handle_line(self, line: str):
        """Turn one line of ``push_updates`` output into events."""
        try:
            document = json.loads(line)
        except ValueError:
            if line.strip():
                self.log.debug(f"Ignoring push_updates output: {line}")
            return
        if not isinstance(document, dict):
            return

        if document.get("result") == "failure":
            message = document.get("error") or document.get("exception") or "unknown error"
            self._emit_error(DeviceStreamError(message))
            return

        emit_all = self._emit_all
        for key, category in EVENT_CATEGORIES.items():
            if key not in document:
                continue
            value = document[key]
            old_value = self._values.get(category)
            if value == old_value and not emit_all:
                continue
            self._emit_all = False
            self._values[category] = value
            self._emit(category, DeviceEvent(category, value, old_value))

    def _emit(self, category: str, event: Union[DeviceEvent, DeviceStreamError]):
        for callback in list(self._listeners[category]):
            callback(event)

    def _emit_error(self, error: DeviceStreamError):
        for callback in list(self._error_listeners):
            callback(error)
        for category in self._listeners:
            self._emit(category, error)
