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

"""AppleTV Enhanced - Apple TVs as HomeKit televisions via pyatv."""

from .__version__ import __version__

__author__ = "AppleTV Enhanced Contributors"
__description__ = "Apple TVs as HomeKit televisions via pyatv"

from .process import ManagedProcess, run_command
from .storage import CredentialStore, DeviceConfigStore, DeviceStorage
from .pairing import PairingCoordinator, PairingSession
from .remote import RemoteControlCommand, RocketRemote
from .device import AppleTVDevice, DeviceEvent, DeviceEventStream, DeviceInfo, DeviceStreamError, scan
from .connectivity import ConnectivityMonitor, PowerState
from .environment import EnvironmentChecker, EnvironmentConfig
from .homekit import TelevisionAccessory
from .accessory import AppleTVAccessory
from .platform import AppleTVPlatform, PlatformConfig

__all__ = [
    "__version__",
    "ManagedProcess",
    "run_command",
    "CredentialStore",
    "DeviceConfigStore",
    "DeviceStorage",
    "PairingCoordinator",
    "PairingSession",
    "RemoteControlCommand",
    "RocketRemote",
    "AppleTVDevice",
    "DeviceEvent",
    "DeviceEventStream",
    "DeviceInfo",
    "DeviceStreamError",
    "scan",
    "ConnectivityMonitor",
    "PowerState",
    "EnvironmentChecker",
    "EnvironmentConfig",
    "TelevisionAccessory",
    "AppleTVAccessory",
    "AppleTVPlatform",
    "PlatformConfig",
]
