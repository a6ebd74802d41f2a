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
"""Per-device files on disk: credentials and display name overrides."""

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

logger = logging.getLogger(__name__)


def mask_secret(value: str) -> str:
    """Describe a secret for log output without revealing it."""
    if not value:
        return "<empty>"
    return f"<{len(value)} characters>"


class DeviceStorage:
    """Directory holding every file that belongs to one Apple TV.

    The directory is ``<storage>/<identifier without separators>`` and is
    created the first time a file inside it is requested.
    """

    def __init__(self, storage_path: Union[str, Path], identifier: str):
        self.storage_path = Path(storage_path)
        self.identifier = identifier
        self.directory = self.storage_path / identifier.replace(":", "")

    def path(self, filename: str, default_content: str = "{}") -> Path:
        """Return the path of ``filename``, creating it with ``default_content`` if missing."""
        self.directory.mkdir(parents=True, exist_ok=True)
        file_path = self.directory / filename
        if not file_path.exists():
            file_path.write_text(default_content, encoding="utf-8")
        return file_path


class CredentialStore:
    """Reads and writes the pairing credentials of a device (``credentials.txt``)."""

    FILENAME = "credentials.txt"

    def __init__(self, storage: DeviceStorage, log: Optional[logging.Logger] = None):
        self.storage = storage
        self.log = log or logger

    def get_credentials(self) -> str:
        """Return the stored credentials, or an empty string if the device is not paired."""
        credentials = self.storage.path(self.FILENAME, "").read_text(encoding="utf-8").strip()
        self.log.debug(f"Loaded credentials: {mask_secret(credentials)}")
        return credentials

    def save_credentials(self, credentials: str):
        self.storage.path(self.FILENAME, "").write_text(credentials.strip(), encoding="utf-8")
        self.log.debug(f"Saved credentials: {mask_secret(credentials)}")


class DeviceConfigStore:
    """JSON documents with user chosen names and input settings.

    * ``apps.json``: per app id ``configuredName``, ``isConfigured``,
      ``visibilityState`` and ``identifier``
    * ``common.json``: ``configuredName`` and ``activeIdentifier`` of the TV
    * ``mediaTypes.json`` / ``deviceStates.json``: sensor name overrides
    """

    APPS = "apps.json"
    COMMON = "common.json"
    MEDIA_TYPES = "mediaTypes.json"
    DEVICE_STATES = "deviceStates.json"

    def __init__(self, storage: DeviceStorage, log: Optional[logging.Logger] = None):
        self.storage = storage
        self.log = log or logger
        self._cache: Dict[str, Dict[str, Any]] = {}

    def _load(self, filename: str) -> Dict[str, Any]:
        if filename not in self._cache:
            path = self.storage.path(filename)
            try:
                data = json.loads(path.read_text(encoding="utf-8") or "{}")
            except json.JSONDecodeError as e:
                self.log.warning(f"Ignoring unreadable {path}: {e}")
                data = {}
            self._cache[filename] = data if isinstance(data, dict) else {}
        return self._cache[filename]

    def _save(self, filename: str, data: Dict[str, Any]):
        self._cache[filename] = data
        path = self.storage.path(filename)
        path.write_text(json.dumps(data, indent=4), encoding="utf-8")

    def get_app_configs(self) -> Dict[str, Dict[str, Any]]:
        return self._load(self.APPS)

    def set_app_configs(self, configs: Dict[str, Dict[str, Any]]):
        self._save(self.APPS, configs)

    def get_common_config(self) -> Dict[str, Any]:
        return self._load(self.COMMON)

    def set_common_config(self, key: str, value: Any):
        config = dict(self._load(self.COMMON))
        config[key] = value
        self._save(self.COMMON, config)

    def get_media_type_config(self) -> Dict[str, str]:
        return self._load(self.MEDIA_TYPES)

    def set_media_type_config(self, media_type: str, name: str):
        config = dict(self._load(self.MEDIA_TYPES))
        config[media_type] = name
        self._save(self.MEDIA_TYPES, config)

    def get_device_state_config(self) -> Dict[str, str]:
        return self._load(self.DEVICE_STATES)

    def set_device_state_config(self, device_state: str, name: str):
        config = dict(self._load(self.DEVICE_STATES))
        config[device_state] = name
        self._save(self.DEVICE_STATES, config)
