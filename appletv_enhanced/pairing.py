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
"""First-time pairing with an Apple TV.

Pairing is interactive: ``atvremote pair`` asks for the PIN the Apple TV
shows on screen. Since the service runs headless, a small web page is served
on ``42000 + <last octet of the Apple TV IP>`` where the user types the PIN,
which is then written to the stdin of the pairing process.

One attempt looks like this:

1. spawn ``atvremote -s <host> --protocol companion pair``
2. serve the PIN entry page and arm a 32 second watchdog
3. wait until the output told us how the attempt went and the process exited
4. honour a ``BackOff=<n>s`` rate limit before the next attempt

Attempts repeat until credentials are obtained.
"""

import asyncio
import logging
import re
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import HTMLResponse

from .process import ManagedProcess
from .storage import mask_secret

logger = logging.getLogger(__name__)

PAIRING_PORT_BASE = 42000
BACKOFF_MARGIN_SECONDS = 5
PAIRING_TIMEOUT_SECONDS = 32
POLL_INTERVAL_SECONDS = 0.1

PIN_PROMPT_MARKER = "Enter PIN on screen"
BACKOFF_MARKER = "BackOff="
ERROR_MARKER = "error"
SUCCESS_MARKER = "You may now use these credentials: "

PIN_FIELD_OFFSET = 2

STATIC_DIR = Path(__file__).parent / "static"

PAGE_HEADERS = {
    "Content-Security-Policy": (
        "default-src * 'self' data: 'unsafe-inline' 'unsafe-hashes' 'unsafe-eval'; "
        "script-src * 'self' data: 'unsafe-inline' 'unsafe-hashes' 'unsafe-eval'; "
        "script-src-elem * 'self' data: 'unsafe-inline' 'unsafe-hashes' 'unsafe-eval'; "
        "script-src-attr * 'self' data: 'unsafe-inline' 'unsafe-hashes' 'unsafe-eval'; "
        "media-src * 'self'"
    ),
    "Cache-Control": "max-age=0, no-cache, must-revalidate, proxy-revalidate",
}

_BACKOFF_RE = re.compile(re.escape(BACKOFF_MARKER) + r"\s*(\d+)")


def callback_port(host: str) -> int:
    """Port of the PIN entry page for an Apple TV at ``host``."""
    return PAIRING_PORT_BASE + int(host.split(".")[-1])


def pin_from_form_body(body: str) -> str:
    """Rebuild the PIN from a urlencoded 4-field form body.

    Each field carries one digit right after its one letter name and the
    equals sign (``a=1&b=2&c=3&d=4``). Missing characters are skipped, so a
    short result means the submission was incomplete.
    """
    fields = body.split("&")[:4]
    return "".join(field[PIN_FIELD_OFFSET] for field in fields if len(field) > PIN_FIELD_OFFSET)


def get_local_ip() -> str:
    """Best-effort primary IPv4 address of this host, used in the PIN entry URL."""
    try:
        s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        # No traffic is sent, connect only selects the outbound interface
        s.connect(("8.8.8.8", 80))
        addr = s.getsockname()[0]
        s.close()
        return addr
    except OSError:
        try:
            return socket.gethostbyname(socket.gethostname())
        except OSError:
            return "127.0.0.1"


@dataclass
class PairingSession:
    """State of a single pairing attempt. A fresh session is used for every retry."""

    host: str
    port: int
    process: Optional[ManagedProcess] = None
    pin_prompt_seen: bool = False
    go_ahead: bool = False
    backoff_seconds: int = 0
    succeeded: bool = False
    process_exited: bool = False
    credentials: str = ""

    @property
    def finished(self) -> bool:
        return self.go_ahead and self.process_exited

    def handle_output(self, line: str):
        """Classify one line of pairing output. The first matching marker wins."""
        if PIN_PROMPT_MARKER in line:
            self.pin_prompt_seen = True
            self.go_ahead = True
        elif BACKOFF_MARKER in line:
            match = _BACKOFF_RE.search(line)
            if match:
                self.backoff_seconds = int(match.group(1)) + BACKOFF_MARGIN_SECONDS
            self.go_ahead = True
        elif ERROR_MARKER in line.lower():
            self.go_ahead = True
        elif SUCCESS_MARKER in line:
            self.credentials = line.split(SUCCESS_MARKER, 1)[1].strip()
            self.go_ahead = True
            self.succeeded = True

    def mark_exited(self, _future: Optional[asyncio.Future] = None):
        self.process_exited = True

    def submit_pin(self, pin: str) -> bool:
        if self.process is None:
            return False
        return self.process.write(f"{pin}\n")


def create_pin_app(session: PairingSession, device_name: str, log: Optional[logging.Logger] = None) -> FastAPI:
    """Create the web app that collects the PIN for ``session``."""
    log = log or logger
    input_page = (STATIC_DIR / "pin.html").read_text(encoding="utf-8")
    confirmation_page = (STATIC_DIR / "paired.html").read_text(encoding="utf-8")

    app = FastAPI(title="Apple TV pairing", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/", response_class=HTMLResponse)
    async def pin_form():
        return HTMLResponse(input_page, headers=PAGE_HEADERS)

    @app.post("/", response_class=HTMLResponse)
    async def submit_pin(request: Request):
        body = (await request.body()).decode("utf-8", errors="replace")
        pin = pin_from_form_body(body)
        if len(pin) != 4 or not pin.isdigit():
            log.warning(f"Ignoring incomplete PIN submission for Apple TV {device_name}.")
        else:
            log.info(f"Got PIN {pin} for Apple TV {device_name}.")
            session.submit_pin(pin)
        return HTMLResponse(confirmation_page, headers=PAGE_HEADERS)

    return app


class PinEntryServer:
    """Serves the PIN entry app with uvicorn for the lifetime of one attempt."""

    def __init__(self, app: FastAPI, port: int, host: str = "0.0.0.0"):
        self.app = app
        self.port = port
        self.host = host
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self):
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level="warning",
            access_log=False,
            lifespan="off",
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._serve())

    async def _serve(self):
        try:
            await self._server.serve()
        except SystemExit:
            # uvicorn exits when the port cannot be bound
            logger.error(f"Could not serve the PIN entry page on port {self.port}")

    async def close(self):
        if self._server is not None:
            self._server.should_exit = True
        if self._task is not None:
            await self._task
        self._server = None
        self._task = None


SpawnFunction = Callable[..., Awaitable[ManagedProcess]]
ServerFactory = Callable[[FastAPI, int], PinEntryServer]


class PairingCoordinator:
    """Runs pairing attempts against one Apple TV until credentials are obtained."""

    def __init__(
        self,
        atvremote_path: str,
        log: Optional[logging.Logger] = None,
        spawn: SpawnFunction = ManagedProcess.spawn,
        server_factory: ServerFactory = PinEntryServer,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.atvremote_path = atvremote_path
        self.log = log or logger
        self._spawn = spawn
        self._server_factory = server_factory
        self._sleep = sleep

    async def pair(self, host: str, name: str) -> str:
        """Pair with the Apple TV at ``host`` and return its credentials.

        Does not return before pairing succeeded.
        """
        self.log.debug("Got empty credentials, initiating pairing process.")
        port = callback_port(host)
        local_ip = get_local_ip()

        while True:
            session = PairingSession(host=host, port=port)
            await self._attempt(session, name, local_ip)
            if session.succeeded:
                return session.credentials
            if session.backoff_seconds:
                await self._back_off(session.backoff_seconds, name)

    async def _attempt(self, session: PairingSession, name: str, local_ip: str):
        def on_stdout(line: str):
            session.handle_output(line)
            if SUCCESS_MARKER in line:
                prefix = line.split(SUCCESS_MARKER, 1)[0]
                self.log.debug(f"stdout: {prefix}{SUCCESS_MARKER}{mask_secret(session.credentials)}")
            else:
                self.log.debug(f"stdout: {line}")

        def on_stderr(line: str):
            self.log.error(f"stderr: {line}")
            session.go_ahead = True

        session.process = await self._spawn(
            self.atvremote_path,
            ["-s", session.host, "--protocol", "companion", "pair"],
            on_stdout=on_stdout,
            on_stderr=on_stderr,
        )
        session.process.closed.add_done_callback(session.mark_exited)

        server = self._server_factory(create_pin_app(session, name, self.log), session.port)
        await server.start()
        self.log.warning(
            "You need to pair your Apple TV before AppleTV Enhanced can connect to it. Enter the PIN that "
            f"is currently displayed on the device here: http://{local_ip}:{session.port}/"
        )

        watchdog = asyncio.get_running_loop().call_later(PAIRING_TIMEOUT_SECONDS, self._on_timeout, session)
        self.log.debug("Wait for the atvremote process to terminate")
        try:
            while not session.finished:
                await self._sleep(POLL_INTERVAL_SECONDS)
        finally:
            watchdog.cancel()
            await server.close()

    def _on_timeout(self, session: PairingSession):
        if session.process_exited or session.process is None:
            return
        self.log.warning("Pairing request timed out, retrying ...")
        self.log.debug("Send \\n to the stdin of the atvremote process to terminate it.")
        session.process.write("\n")

    async def _back_off(self, seconds: int, name: str):
        self.log.warning(f"Apple TV {name}: Too many attempts. Waiting for {seconds} seconds before retrying.")
        for remaining in range(seconds, 0, -1):
            self.log.debug(f"{remaining} seconds remaining.")
            await self._sleep(1)
