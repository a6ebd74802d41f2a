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
"""Prepare the Python virtual environment that hosts pyatv.

``EnvironmentChecker.ensure()`` runs the following steps in order:

1. check the OpenSSL version, falling back to the legacy requirements
2. check that the system Python is a supported version
3. create the venv if it is missing (or recreation is forced)
4. recreate the venv when it was built from another Python installation
5. update pip inside the venv when PyPI has a newer release
6. install the pinned requirements when ``pip freeze`` does not match

Unrecoverable problems (unsupported Python, no venv module) are reported
every five minutes forever instead of raising, so the service keeps running
and the log explains what to fix.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

import aiohttp

from .process import run_command

logger = logging.getLogger(__name__)

SUPPORTED_PYTHON_VERSIONS = ("3.9", "3.10", "3.11", "3.12", "3.13")
MIN_OPENSSL_VERSION = "3.0.0"
BLOCK_RETRY_SECONDS = 300
PYPI_PIP_URL = "https://pypi.org/pypi/pip/json"
PYPI_TIMEOUT_SECONDS = 10

REQUIREMENTS_DIR = Path(__file__).parent / "python_requirements"

VENV_MISSING_MESSAGE = (
    "virtualenv python module is not installed. Install the venv module of your Python "
    "installation (e.g. the python3-venv package on Debian based systems) and restart."
)

_VERSION_RE = re.compile(r"\d+\.\d+\.\d+")
_PYTHON_HOME_SCRIPT = "import sys; print(sys.base_prefix)"


@dataclass(frozen=True)
class EnvironmentConfig:
    """Which requirements manifest and Python versions apply to this host."""

    requirements_path: Path
    supported_python_versions: Tuple[str, ...]
    openssl_legacy: bool = False

    @classmethod
    def default(cls) -> "EnvironmentConfig":
        return cls(REQUIREMENTS_DIR / "default" / "requirements.txt", SUPPORTED_PYTHON_VERSIONS)

    @classmethod
    def legacy(cls) -> "EnvironmentConfig":
        """OpenSSL < 3: older pyatv pins, newest Python dropped."""
        return cls(
            REQUIREMENTS_DIR / "openssl_legacy" / "requirements.txt",
            SUPPORTED_PYTHON_VERSIONS[:-1],
            openssl_legacy=True,
        )


def parse_version(version: str) -> Tuple[int, ...]:
    """``"3.0.13"`` -> ``(3, 0, 13)``. Non numeric parts end the version."""
    parts = []
    for part in version.strip().split("."):
        match = re.match(r"\d+", part)
        if not match:
            break
        parts.append(int(match.group(0)))
    return tuple(parts)


def normalize_package_name(name: str) -> str:
    return name.strip().lower().replace("_", "-")


def parse_freeze(text: str) -> Dict[str, str]:
    """Parse ``name==version`` lines as written by ``pip freeze`` and in the manifests."""
    packages = {}
    for line in text.splitlines():
        line = line.split("#", 1)[0].strip()
        if "==" not in line:
            continue
        name, version = line.split("==", 1)
        packages[normalize_package_name(name)] = version.strip()
    return packages


async def fetch_latest_pip_version(log: Optional[logging.Logger] = None) -> Optional[str]:
    """Latest pip release on PyPI, or None if PyPI could not be asked."""
    log = log or logger
    try:
        timeout = aiohttp.ClientTimeout(total=PYPI_TIMEOUT_SECONDS)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            logger.debug(f"Fetching {PYPI_PIP_URL}")
            async with session.get(PYPI_PIP_URL) as resp:
                if resp.status != 200:
                    log.warning(f"PyPI returned status {resp.status} for the pip release lookup")
                    return None
                data = await resp.json()
                return data["info"]["version"]
    except (aiohttp.ClientError, asyncio.TimeoutError, KeyError, TypeError, ValueError) as e:
        log.warning(f"Could not look up the latest pip version: {e}")
        return None


class EnvironmentChecker:
    def __init__(
        self,
        storage_path: Union[str, Path],
        python_executable: Optional[str] = None,
        log: Optional[logging.Logger] = None,
        run=run_command,
        fetch_latest_pip=fetch_latest_pip_version,
        sleep=asyncio.sleep,
    ):
        self.log = log or logger
        self.python_executable = python_executable or "python3"
        self.log.debug(f"Using {self.python_executable} as the python executable")

        self.storage_dir = Path(storage_path)
        self.venv_path = self.storage_dir / ".venv"
        self.bin_dir = self.venv_path / "bin"
        self.venv_python = self.bin_dir / "python3"
        self.venv_pip = self.bin_dir / "pip3"
        self.venv_config = self.venv_path / "pyvenv.cfg"

        self._run = run
        self._fetch_latest_pip = fetch_latest_pip
        self._sleep = sleep

    async def ensure(self, force_venv_recreate: bool = False) -> EnvironmentConfig:
        """Run all checks. Returns once the venv is usable."""
        self.log.info("Starting python check.")
        self._ensure_storage_dir()
        config = await self._check_openssl()
        await self._ensure_python_version(config)
        await self._ensure_venv_created(force_venv_recreate)
        await self._ensure_venv_python_home()
        await self._ensure_pip_up_to_date()
        await self._ensure_requirements(config)
        self.log.info("Finished")
        return config

    async def _block(self, message: str):
        while True:
            self.log.error(message)
            await self._sleep(BLOCK_RETRY_SECONDS)

    def _ensure_storage_dir(self):
        if self.storage_dir.is_dir():
            self.log.info("storage dir exists.")
            return
        self.log.info("creating storage dir ...")
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.log.info("storage dir created")

    async def _check_openssl(self) -> EnvironmentConfig:
        stdout, _stderr, _returncode = await self._run("openssl", ["version"], hide_output=True, log=self.log)
        match = _VERSION_RE.search(stdout)
        if match and parse_version(match.group(0)) >= parse_version(MIN_OPENSSL_VERSION):
            self.log.info(f"OpenSSL {match.group(0)} is installed and compatible.")
            return EnvironmentConfig.default()

        config = EnvironmentConfig.legacy()
        dropped = SUPPORTED_PYTHON_VERSIONS[-1]
        if match is None:
            self.log.warning(
                "Could not verify that the correct OpenSSL version is installed. Falling back to openssl "
                f"legacy mode. Be aware that Python {dropped} is not compatible with openssl legacy mode."
            )
        else:
            self.log.warning(
                f"You are using OpenSSL {match.group(0)}. However, OpenSSL {MIN_OPENSSL_VERSION} or later is "
                "required for the latest pyatv. Falling back to openssl legacy mode. Be aware that "
                f"Python {dropped} is not compatible with openssl legacy mode."
            )
        return config

    async def _system_python_version(self) -> str:
        stdout, stderr, _returncode = await self._run(
            self.python_executable, ["--version"], hide_output=True, log=self.log
        )
        # Python 2 and very old 3.x print the version to stderr
        return (stdout.strip() or stderr.strip()).replace("Python ", "")

    async def _ensure_python_version(self, config: EnvironmentConfig):
        version = await self._system_python_version()
        major_minor = ".".join(version.split(".")[:2])
        if major_minor not in config.supported_python_versions:
            supported = config.supported_python_versions
            await self._block(
                f"Python {version or '<unknown>'} is installed. However, only Python "
                f"{supported[0]} to {supported[-1]} is supported."
            )
        self.log.info(f"Python {version} is installed and supported.")

    def is_venv_created(self) -> bool:
        return self.venv_pip.exists() and self.venv_python.exists() and self.venv_config.exists()

    async def _create_venv(self):
        stdout, _stderr, _returncode = await self._run(
            self.python_executable, ["-m", "venv", str(self.venv_path), "--clear"], hide_output=True, log=self.log
        )
        if "not created successfully" in stdout or not self.is_venv_created():
            await self._block(VENV_MISSING_MESSAGE)
        if stdout.strip():
            self.log.warning(stdout.strip())
        self.log.info("Virtual python environment (re)created")

    async def _ensure_venv_created(self, force_venv_recreate: bool):
        if force_venv_recreate:
            self.log.warning("Forcing the python virtual environment to be recreated ...")
            await self._create_venv()
        elif not self.is_venv_created():
            self.log.info("Virtual python environment is not present. Creating now ...")
            await self._create_venv()
        else:
            self.log.info("Virtual environment already exists.")

    async def _python_home(self, executable: str) -> str:
        stdout, _stderr, _returncode = await self._run(
            executable, ["-c", _PYTHON_HOME_SCRIPT], hide_output=True, log=self.log
        )
        return stdout.strip()

    async def _ensure_venv_python_home(self):
        venv_home = await self._python_home(str(self.venv_python))
        system_home = await self._python_home(self.python_executable)
        if venv_home != system_home:
            self.log.warning(
                "The virtual environment does not use the systems default python environment. "
                "Recreating virtual environment ..."
            )
            self.log.debug(f"System Python {system_home}; Venv Python {venv_home}")
            await self._create_venv()
        else:
            self.log.info("Virtual environment is using the systems default python environment. Continuing ...")

    async def _venv_pip_version(self) -> str:
        stdout, _stderr, _returncode = await self._run(
            str(self.venv_pip), ["--version"], hide_output=True, log=self.log
        )
        # "pip 24.0 from /path/to/site-packages/pip (python 3.11)"
        return stdout.strip().replace("pip ", "", 1).split(" ")[0]

    async def _ensure_pip_up_to_date(self):
        current = await self._venv_pip_version()
        self.log.info(f"Venv pip version: {current}")
        self.log.info("Checking if there is an update for venv pip ...")
        latest = await self._fetch_latest_pip(self.log)
        if latest is None:
            self.log.warning("Skipping the venv pip update since the latest version is unknown")
        elif latest == current:
            self.log.info("Venv pip is up-to-date")
        else:
            self.log.warning(f"Venv pip {current} differs from the latest release {latest}. Updating now ...")
            await self._run(str(self.venv_pip), ["install", "--upgrade", "pip"], log=self.log)
            self.log.info("Venv pip updated")

    async def requirements_satisfied(self, config: EnvironmentConfig) -> bool:
        stdout, _stderr, _returncode = await self._run(
            str(self.venv_pip), ["freeze"], hide_output=True, log=self.log
        )
        installed = parse_freeze(stdout)
        required = parse_freeze(config.requirements_path.read_text(encoding="utf-8"))
        for name, version in required.items():
            if installed.get(name) != version:
                self.log.debug(f"{name}: required {version}, installed {installed.get(name)}")
                return False
        return True

    async def _ensure_requirements(self, config: EnvironmentConfig):
        if await self.requirements_satisfied(config):
            self.log.info("Python requirements are satisfied.")
            return
        self.log.warning("Python requirements are not satisfied. Installing them now ...")
        await self._run(str(self.venv_pip), ["install", "-r", str(config.requirements_path)], log=self.log)
        self.log.info("Python requirements installed.")
