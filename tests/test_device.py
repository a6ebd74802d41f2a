import asyncio
import json

import pytest

from appletv_enhanced.device import (
    App,
    AppleTVDevice,
    DeviceEvent,
    DeviceEventStream,
    DeviceInfo,
    DeviceStreamError,
    parse_app_list,
    scan,
)
from conftest import FakeSpawner

INFO = DeviceInfo(identifier='AA:BB:CC:DD:EE:FF', host='192.168.1.10', name='Living Room',
                  model='Apple TV 4K', version='17.1')

SCAN_OUTPUT = {
    'result': 'success',
    'devices': [
        {
            'name': 'Living Room', 'address': '192.168.1.10', 'identifier': 'AA:BB:CC:DD:EE:FF',
            'device_info': {'model_str': 'Apple TV 4K (gen 3)', 'operating_system': 'TvOS', 'version': '17.1'},
        },
        {
            'name': 'Bedroom', 'address': '192.168.1.11', 'identifier': '11:22:33:44:55:66',
            'device_info': {'model_str': 'Apple TV HD', 'operating_system': 'TvOS', 'version': '16.0'},
        },
        {
            'name': 'Kitchen HomePod', 'address': '192.168.1.12', 'identifier': '66:55:44:33:22:11',
            'device_info': {'model_str': 'HomePod Mini', 'operating_system': 'TvOS', 'version': '17.1'},
        },
        {
            'name': 'Old TV', 'address': '192.168.1.13', 'identifier': '0x1234ABCD',
            'device_info': {'model_str': 'Apple TV 3', 'operating_system': 'Legacy', 'version': '8.0'},
        },
    ],
}


class FakeRun:
    def __init__(self, stdout='', returncode=0):
        self.stdout = stdout
        self.returncode = returncode
        self.calls = []

    async def __call__(self, executable, args=(), cwd=None, hide_output=False, log=None):
        self.calls.append([executable] + list(args))
        return self.stdout, '', self.returncode


def test_parse_app_list():
    output = 'App: Netflix (com.netflix.Netflix), App: TV (com.apple.TVWatchList), App: Disney+ (com.disney.disneyplus)\n'
    assert parse_app_list(output) == [
        App('Netflix', 'com.netflix.Netflix'),
        App('TV', 'com.apple.TVWatchList'),
        App('Disney+', 'com.disney.disneyplus'),
    ]
    assert parse_app_list('') == []


@pytest.mark.asyncio
async def test_scan_filters_devices():
    run = FakeRun(json.dumps(SCAN_OUTPUT))
    devices = await scan('/venv/bin/atvscript', run=run)

    assert [d.name for d in devices] == ['Living Room', 'Bedroom']
    assert devices[0] == DeviceInfo('AA:BB:CC:DD:EE:FF', '192.168.1.10', 'Living Room', 'Apple TV 4K (gen 3)', '17.1')
    assert run.calls == [['/venv/bin/atvscript', 'scan']]


@pytest.mark.asyncio
async def test_scan_applies_blacklist():
    devices = await scan('/venv/bin/atvscript', blacklist=['11:22:33:44:55:66'], run=FakeRun(json.dumps(SCAN_OUTPUT)))
    assert [d.name for d in devices] == ['Living Room']


@pytest.mark.asyncio
async def test_scan_tolerates_garbage():
    assert await scan('/venv/bin/atvscript', run=FakeRun('Traceback ...')) == []
    assert await scan('/venv/bin/atvscript', run=FakeRun('', returncode=None)) == []
    assert await scan('/venv/bin/atvscript', run=FakeRun('{"result": "failure"}')) == []


@pytest.mark.asyncio
async def test_device_commands(tmp_path):
    run = FakeRun('App: Netflix (com.netflix.Netflix)')
    device = AppleTVDevice(INFO, 'creds', tmp_path, run=run)

    await device.turn_on()
    apps = await device.list_apps()
    await device.launch_app('com.netflix.Netflix')

    prefix = [str(tmp_path / 'atvremote'), '--id', 'AA:BB:CC:DD:EE:FF',
              '--companion-credentials', 'creds', '--airplay-credentials', 'creds']
    assert run.calls == [
        prefix + ['turn_on'],
        prefix + ['app_list'],
        prefix + ['launch_app=com.netflix.Netflix'],
    ]
    assert apps == [App('Netflix', 'com.netflix.Netflix')]


@pytest.mark.asyncio
async def test_get_state(tmp_path):
    run = FakeRun(json.dumps({'result': 'success', 'device_state': 'playing', 'media_type': 'video',
                              'app_id': 'com.netflix.Netflix', 'title': 'Show'}))
    state = await AppleTVDevice(INFO, 'creds', tmp_path, run=run).get_state()
    assert (state.device_state, state.media_type, state.app_id) == ('playing', 'video', 'com.netflix.Netflix')
    assert run.calls[0][0] == str(tmp_path / 'atvscript')
    assert run.calls[0][-1] == 'playing'

    state = await AppleTVDevice(INFO, 'creds', tmp_path, run=FakeRun('not json')).get_state()
    assert state.device_state is None and state.media_type is None


def collect(stream):
    events = {'powerState': [], 'deviceState': [], 'mediaType': [], 'error': []}
    for category in ('powerState', 'deviceState', 'mediaType'):
        stream.on(category, events[category].append)
    stream.on_error(events['error'].append)
    return events


def test_stream_emits_changes_only(tmp_path):
    stream = DeviceEventStream(INFO, 'creds', tmp_path)
    events = collect(stream)

    stream.handle_line('{"result": "success", "power_state": "on"}')
    stream.handle_line('{"result": "success", "power_state": "on"}')
    stream.handle_line('{"result": "success", "device_state": "playing", "media_type": "video"}')
    stream.handle_line('{"result": "success", "device_state": "paused", "media_type": "video"}')
    stream.handle_line('Press ENTER to stop')

    assert events['powerState'] == [DeviceEvent('powerState', 'on', None)]
    assert events['deviceState'] == [
        DeviceEvent('deviceState', 'playing', None),
        DeviceEvent('deviceState', 'paused', 'playing'),
    ]
    assert events['mediaType'] == [DeviceEvent('mediaType', 'video', None)]


def test_stream_failure_goes_to_every_listener(tmp_path):
    stream = DeviceEventStream(INFO, 'creds', tmp_path)
    events = collect(stream)

    stream.handle_line('{"result": "failure", "error": "connection lost"}')

    assert len(events['error']) == 1
    assert isinstance(events['error'][0], DeviceStreamError)
    for category in ('powerState', 'deviceState', 'mediaType'):
        assert events[category] == events['error']


def test_stream_unknown_category_rejected(tmp_path):
    with pytest.raises(ValueError):
        DeviceEventStream(INFO, 'creds', tmp_path).on('volume', print)


@pytest.mark.asyncio
async def test_stream_restarts_and_reemits_after_exit(tmp_path):
    spawner = FakeSpawner()
    stream = DeviceEventStream(INFO, 'creds', tmp_path, spawn=spawner, reconnect_delay=0)
    events = collect(stream)

    await stream.start()
    first = spawner.processes[0]
    assert first.args[-1] == 'push_updates'
    first.stdout('{"result": "success", "power_state": "on"}')

    first.exit(1)
    for _ in range(5):
        await asyncio.sleep(0)

    assert len(spawner.processes) == 2
    assert len(events['error']) == 1

    spawner.processes[1].stdout('{"result": "success", "power_state": "on"}')
    assert events['powerState'][-1] == DeviceEvent('powerState', 'on', 'on')

    await stream.stop()
    for _ in range(5):
        await asyncio.sleep(0)
    assert len(spawner.processes) == 2
