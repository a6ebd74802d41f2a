import pytest

from appletv_enhanced.connectivity import (
    GRACE_PERIOD_SECONDS,
    POWER_ON_POLL_INTERVAL_SECONDS,
    POWER_ON_WAIT_SECONDS,
    ConnectivityMonitor,
    MediaState,
    PowerState,
)
from appletv_enhanced.device import DeviceEvent, DeviceStreamError, PlayingState
from conftest import FakeTelevision


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeDevice:
    def __init__(self, states=()):
        self.states = list(states)
        self.calls = []

    async def turn_on(self):
        self.calls.append('turn_on')

    async def turn_off(self):
        self.calls.append('turn_off')

    async def get_state(self):
        self.calls.append('get_state')
        if self.states:
            return self.states.pop(0)
        return PlayingState()


class FakeEvents:
    def __init__(self):
        self.listeners = {}
        self.error_listeners = []

    def on(self, category, callback):
        self.listeners.setdefault(category, []).append(callback)

    def on_error(self, callback):
        self.error_listeners.append(callback)

    def emit(self, category, event):
        for callback in self.listeners[category]:
            callback(event)

    def fail(self, error):
        for callback in self.error_listeners:
            callback(error)
        for category in self.listeners:
            self.emit(category, error)


async def no_sleep(seconds):
    pass


def make_monitor(device=None, television=None, clock=None):
    clock = clock or Clock()
    power_state = PowerState(clock=clock)
    monitor = ConnectivityMonitor(device or FakeDevice(), television or FakeTelevision(), power_state, sleep=no_sleep)
    return monitor, clock


def test_power_event_null_or_unchanged_is_ignored():
    monitor, _ = make_monitor()
    monitor.handle_power_event(DeviceEvent('powerState', None, 'on'))
    monitor.handle_power_event(DeviceEvent('powerState', 'on', 'on'))
    assert monitor.television.active_updates == []


def test_power_events_update_active():
    monitor, _ = make_monitor()
    monitor.handle_power_event(DeviceEvent('powerState', 'on', None))
    monitor.handle_power_event(DeviceEvent('powerState', 'off', 'on'))
    assert monitor.television.active_updates == [True, False]


def test_power_off_inside_grace_window_is_suppressed():
    monitor, clock = make_monitor()
    monitor.power_state.mark_power_on()

    clock.now += GRACE_PERIOD_SECONDS - 0.5
    monitor.handle_power_event(DeviceEvent('powerState', 'off', 'on'))
    assert monitor.television.active_updates == []

    clock.now += 1
    monitor.handle_power_event(DeviceEvent('powerState', 'off', 'on'))
    assert monitor.television.active_updates == [False]


def test_power_on_is_never_suppressed():
    monitor, _ = make_monitor()
    monitor.power_state.mark_power_on()
    monitor.handle_power_event(DeviceEvent('powerState', 'on', 'off'))
    assert monitor.television.active_updates == [True]


def test_error_channel_sets_offline_and_events_clear_it(caplog):
    monitor, _ = make_monitor()
    events = FakeEvents()
    monitor.attach(events)

    events.fail(DeviceStreamError('connection lost'))
    assert monitor.offline
    assert 'Lost connection. Trying to reconnect ...' in caplog.text
    assert monitor.television.active_updates == []

    events.emit('powerState', DeviceEvent('powerState', None, None))
    assert monitor.offline

    events.emit('powerState', DeviceEvent('powerState', 'on', None))
    assert not monitor.offline
    assert monitor.television.active_updates == [True]


def test_device_state_moves_indicator_and_media_state():
    monitor, _ = make_monitor()
    monitor.handle_device_state_event(DeviceEvent('deviceState', 'playing', None))
    monitor.handle_device_state_event(DeviceEvent('deviceState', 'paused', 'playing'))

    tv = monitor.television
    assert tv.device_states == {'playing': False, 'paused': True}
    assert tv.media_states == [MediaState.PLAY, MediaState.PAUSE]


def test_device_state_none_means_interrupted():
    monitor, _ = make_monitor()
    monitor.handle_device_state_event(DeviceEvent('deviceState', None, 'playing'))
    assert monitor.television.device_states == {'playing': False}
    assert monitor.television.media_states == [MediaState.INTERRUPTED]


def test_indicators_skipped_while_inactive():
    monitor, _ = make_monitor(television=FakeTelevision(active=False))
    monitor.handle_device_state_event(DeviceEvent('deviceState', 'playing', 'paused'))
    monitor.handle_media_type_event(DeviceEvent('mediaType', 'video', 'music'))
    assert monitor.television.device_states == {}
    assert monitor.television.media_types == {}
    assert monitor.television.media_states == []


def test_unchanged_indicator_value_is_noop():
    monitor, _ = make_monitor()
    monitor.handle_media_type_event(DeviceEvent('mediaType', 'music', 'music'))
    assert monitor.television.media_types == {}


def test_media_type_moves_indicator():
    monitor, _ = make_monitor()
    monitor.handle_media_type_event(DeviceEvent('mediaType', 'video', 'music'))
    assert monitor.television.media_types == {'music': False, 'video': True}


@pytest.mark.asyncio
async def test_turn_on_waits_for_state_and_shows_it():
    device = FakeDevice([
        PlayingState(),
        PlayingState(device_state='idle'),
        PlayingState(device_state='playing', media_type='video'),
    ])
    monitor, clock = make_monitor(device=device)

    await monitor.set_active(True)

    assert device.calls == ['turn_on', 'get_state', 'get_state', 'get_state']
    assert monitor.television.device_states == {'playing': True}
    assert monitor.television.media_types == {'video': True}
    assert not monitor.power_state.turning_on
    assert monitor.power_state.last_power_on == clock.now


@pytest.mark.asyncio
async def test_turn_on_gives_up_after_ceiling():
    device = FakeDevice()
    monitor, _ = make_monitor(device=device)

    await monitor.set_active(True)

    polls = device.calls.count('get_state')
    assert polls == int(POWER_ON_WAIT_SECONDS / POWER_ON_POLL_INTERVAL_SECONDS)
    assert not monitor.power_state.turning_on


@pytest.mark.asyncio
async def test_turn_on_ignored_while_turning_on():
    device = FakeDevice()
    monitor, _ = make_monitor(device=device)
    monitor.power_state.turning_on = True

    await monitor.set_active(True)
    assert device.calls == []


@pytest.mark.asyncio
async def test_turning_on_cleared_when_turn_on_fails():
    class BrokenDevice(FakeDevice):
        async def turn_on(self):
            raise OSError('atvremote vanished')

    monitor, _ = make_monitor(device=BrokenDevice())
    with pytest.raises(OSError):
        await monitor.set_active(True)
    assert not monitor.power_state.turning_on


@pytest.mark.asyncio
async def test_turn_off_only_outside_grace_window():
    device = FakeDevice()
    monitor, clock = make_monitor(device=device)
    monitor.power_state.mark_power_on()

    clock.now += 2
    await monitor.set_active(False)
    assert device.calls == []

    clock.now += GRACE_PERIOD_SECONDS
    await monitor.set_active(False)
    assert device.calls == ['turn_off']


def test_power_off_exactly_at_end_of_grace_window_is_applied():
    monitor, clock = make_monitor()
    monitor.power_state.mark_power_on()

    clock.now += GRACE_PERIOD_SECONDS
    monitor.handle_power_event(DeviceEvent('powerState', 'off', 'on'))
    assert monitor.television.active_updates == [False]


@pytest.mark.asyncio
async def test_turn_off_exactly_at_end_of_grace_window_is_sent():
    device = FakeDevice()
    monitor, clock = make_monitor(device=device)
    monitor.power_state.mark_power_on()

    clock.now += GRACE_PERIOD_SECONDS
    await monitor.set_active(False)
    assert device.calls == ['turn_off']
