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
"""Running external executables: one-shot commands and long-lived processes."""

import asyncio
import logging
from typing import Callable, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]

# Flags whose value is a secret and must never show up in a log line
SECRET_FLAGS = ("--companion-credentials", "--airplay-credentials", "--mrp-credentials", "--raop-credentials")

# Lines longer than the default 64k StreamReader limit are legal for atvscript JSON
STREAM_LIMIT = 1024 * 1024


def describe_command(executable: str, args: Sequence[str]) -> str:
    """Render a command line for logging with credential values masked."""
    parts = [executable]
    mask_next = False
    for arg in args:
        if mask_next:
            parts.append("***")
            mask_next = False
            continue
        parts.append(arg)
        if arg in SECRET_FLAGS:
            mask_next = True
    return " ".join(parts)


async def run_command(
    executable: str,
    args: Sequence[str] = (),
    cwd: Optional[str] = None,
    hide_output: bool = False,
    log: Optional[logging.Logger] = None,
) -> Tuple[str, str, Optional[int]]:
    """Run a command until it exits.

    Args:
        executable: Program to run
        args: Arguments passed to the program
        cwd: Optional working directory
        hide_output: When False, stdout lines are logged at info level and
            stderr lines at warning level as they are collected
        log: Logger (or adapter) to report through

    Returns:
        Tuple of (stdout, stderr, returncode). The return code is None when
        the executable could not be started.
    """
    log = log or logger
    log.debug(f"Running {describe_command(executable, args)}")

    try:
        process = await asyncio.create_subprocess_exec(
            executable,
            *args,
            cwd=cwd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        log.error(f"Could not start {executable}: {e}")
        return "", "", None

    stdout_bytes, stderr_bytes = await process.communicate()
    stdout = stdout_bytes.decode("utf-8", errors="replace")
    stderr = stderr_bytes.decode("utf-8", errors="replace")

    if not hide_output:
        for line in stdout.splitlines():
            if line.strip():
                log.info(line)
        for line in stderr.splitlines():
            if line.strip():
                log.warning(line)

    log.debug(f"{executable} exited with code {process.returncode}")
    return stdout, stderr, process.returncode


class ManagedProcess:
    """A long-running child process with line based output listeners.

    stdout and stderr are consumed by reader tasks and handed to the
    registered listeners one line at a time. A trailing partial line is
    delivered when the stream reaches EOF, so prompts without a newline are
    still seen once the process exits.

    ``closed`` is a one-shot future resolved with the exit code after both
    streams are drained and the process has been reaped.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        name: str,
        on_stdout: Optional[LineCallback] = None,
        on_stderr: Optional[LineCallback] = None,
    ):
        self._process = process
        self.name = name
        self._stdout_listener = on_stdout
        self._stderr_listener = on_stderr

        self.closed: asyncio.Future = asyncio.get_running_loop().create_future()
        self._readers = [
            asyncio.create_task(self._read(process.stdout, "stdout")),
            asyncio.create_task(self._read(process.stderr, "stderr")),
        ]
        self._waiter = asyncio.create_task(self._wait())

    @classmethod
    async def spawn(
        cls,
        executable: str,
        args: Sequence[str],
        on_stdout: Optional[LineCallback] = None,
        on_stderr: Optional[LineCallback] = None,
    ) -> "ManagedProcess":
        """Start ``executable`` with pipes on all three standard streams."""
        name = describe_command(executable, args)
        logger.debug(f"Spawning {name}")
        process = await asyncio.create_subprocess_exec(
            executable,
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            limit=STREAM_LIMIT,
        )
        return cls(process, name, on_stdout, on_stderr)

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def running(self) -> bool:
        return not self.closed.done()

    def set_listeners(self, on_stdout: Optional[LineCallback], on_stderr: Optional[LineCallback]):
        self._stdout_listener = on_stdout
        self._stderr_listener = on_stderr

    def remove_listeners(self):
        self._stdout_listener = None
        self._stderr_listener = None

    def write(self, text: str) -> bool:
        """Write text to the process stdin. Returns False if it could not be delivered."""
        stdin = self._process.stdin
        if not self.running or stdin is None or stdin.is_closing():
            return False
        try:
            stdin.write(text.encode("utf-8"))
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Write to {self.name} failed: {e}")
            return False
        return True

    async def terminate(self, timeout: float = 5.0):
        """Ask the process to stop, killing it if it does not exit in time."""
        if not self.running:
            return
        try:
            self._process.terminate()
        except ProcessLookupError:
            pass
        try:
            await asyncio.wait_for(asyncio.shield(self.closed), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{self.name} did not terminate within {timeout}s, killing it")
            try:
                self._process.kill()
            except ProcessLookupError:
                pass
            await self.closed

    async def _read(self, stream: Optional[asyncio.StreamReader], which: str):
        if stream is None:
            return
        try:
            async for raw in stream:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                listener = self._stdout_listener if which == "stdout" else self._stderr_listener
                if listener is None:
                    continue
                try:
                    listener(line)
                except Exception as e:
                    logger.error(f"Error handling {which} of {self.name}: {e}")
        except ValueError as e:
            logger.warning(f"Dropping oversized {which} output of {self.name}: {e}")

    async def _wait(self):
        await asyncio.gather(*self._readers, return_exceptions=True)
        returncode = await self._process.wait()
        logger.debug(f"{self.name} exited with code {returncode}")
        if not self.closed.done():
            self.closed.set_result(returncode)
