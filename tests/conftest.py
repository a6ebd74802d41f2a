import asyncio

import pytest


class FakeProcess:
    """Stands in for ManagedProcess: records stdin, lets tests feed output and exit."""

    def __init__(self, executable, args, on_stdout=None, on_stderr=None):
        self.executable = str(executable)
        self.args = list(args)
        self.on_stdout = on_stdout
        self.on_stderr = on_stderr
        self.closed = asyncio.get_running_loop().create_future()
        self.written = []

    @property
    def running(self):
        return not self.closed.done()

    def write(self, text):
        if not self.running:
            return False
        self.written.append(text)
        return True

    def set_listeners(self, on_stdout, on_stderr):
        self.on_stdout = on_stdout
        self.on_stderr = on_stderr

    def remove_listeners(self):
        self.on_stdout = None
        self.on_stderr = None

    def stdout(self, line):
        if self.on_stdout:
            self.on_stdout(line)

    def stderr(self, line):
        if self.on_stderr:
            self.on_stderr(line)

    def exit(self, code=0):
        if not self.closed.done():
            self.closed.set_result(code)

    async def terminate(self, timeout=5.0):
        self.exit(-15)


class FakeSpawner:
    """Async replacement for ManagedProcess.spawn."""

    def __init__(self, on_spawn=None):
        self.processes = []
        self.on_spawn = on_spawn

    async def __call__(self, executable, args, on_stdout=None, on_stderr=None):
        process = FakeProcess(executable, args, on_stdout, on_stderr)
        self.processes.append(process)
        if self.on_spawn:
            self.on_spawn(process)
        return process


class FakeTelevision:
    """Records what the connectivity monitor shows in HomeKit."""

    def __init__(self, active=True):
        self.active = active
        self.active_updates = []
        self.media_states = []
        self.device_states = {}
        self.media_types = {}

    def set_active(self, active):
        self.active = active
        self.active_updates.append(active)

    def set_current_media_state(self, state):
        self.media_states.append(state)

    def set_device_state_indicator(self, device_state, on):
        self.device_states[device_state] = on

    def set_media_type_indicator(self, media_type, on):
        self.media_types[media_type] = on


@pytest.fixture
def spawner():
    return FakeSpawner()
