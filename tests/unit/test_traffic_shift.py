import asyncio

import pytest

from safedeploy.capabilities import InMemoryHosting, ScriptedAlarmReader
from safedeploy.contracts import AlarmState, ShiftPlan, ShiftStep
from safedeploy.errors import ActionCancelled, AlarmTriggered, ConfigurationError
from safedeploy.traffic import TrafficShiftController


def _plan(*weights, hold=300.0, poll=60.0) -> ShiftPlan:
    return ShiftPlan(
        steps=[ShiftStep(weight=w, hold_seconds=hold) for w in weights],
        poll_interval_seconds=poll,
    )


class FakeClock:
    def __init__(self):
        self.now = 0.0

    async def sleep(self, seconds: float) -> None:
        self.now += seconds


@pytest.mark.asyncio
async def test_full_rollout_retires_previous_variant():
    hosting = InMemoryHosting({"nyctaxi-prd": {"v1": 100}})
    alarms = ScriptedAlarmReader()
    clock = FakeClock()
    controller = TrafficShiftController(hosting, alarms, sleep=clock.sleep)

    state = await controller.shift("nyctaxi-prd", "v2", _plan(10, 50, 100))

    assert state.weights() == {"v2": 100}
    applied = [s.weights() for s in hosting.history]
    assert applied[:4] == [
        {"v1": 100, "v2": 0},
        {"v1": 90, "v2": 10},
        {"v1": 50, "v2": 50},
        {"v1": 0, "v2": 100},
    ]
    assert all(sum(s.weights().values()) == 100 for s in hosting.history)
    # five polls per 300 second hold
    assert alarms.polls == 15
    assert clock.now == 900


@pytest.mark.asyncio
async def test_alarm_during_second_step_rolls_back_to_stable():
    hosting = InMemoryHosting({"nyctaxi-prd": {"v1": 100}})
    alarms = ScriptedAlarmReader(alarm_on_poll=7)
    observed = []

    async def observe(state):
        observed.append(state)

    controller = TrafficShiftController(
        hosting, alarms, sleep=FakeClock().sleep, observer=observe
    )

    with pytest.raises(AlarmTriggered) as exc:
        await controller.shift("nyctaxi-prd", "v2", _plan(10, 50, 100))

    assert exc.value.weight == 50
    assert exc.value.failure_type == "RolledBack"
    final = (await hosting.get_endpoint("nyctaxi-prd")).weights()
    assert final == {"v1": 100, "v2": 0}
    assert all(sum(s.weights().values()) == 100 for s in hosting.history)
    # the 100% step was never applied
    assert {"v1": 0, "v2": 100} not in [s.weights() for s in hosting.history]
    assert observed[-1].alarm == AlarmState.ALARM
    assert observed[-1].step_index == 1


@pytest.mark.asyncio
async def test_cancel_reverts_target_at_next_poll():
    hosting = InMemoryHosting({"nyctaxi-prd": {"v1": 100}})
    cancel = asyncio.Event()
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)
        if len(sleeps) == 3:
            cancel.set()

    controller = TrafficShiftController(hosting, ScriptedAlarmReader(), sleep=sleep)

    with pytest.raises(ActionCancelled):
        await controller.shift("nyctaxi-prd", "v2", _plan(10, 50, 100), cancel_event=cancel)

    assert (await hosting.get_endpoint("nyctaxi-prd")).weights() == {"v1": 100, "v2": 0}
    assert len(sleeps) == 3


@pytest.mark.asyncio
async def test_last_hold_poll_is_shortened_to_hold_duration():
    hosting = InMemoryHosting({"ep": {"v1": 100}})
    sleeps = []

    async def sleep(seconds):
        sleeps.append(seconds)

    controller = TrafficShiftController(hosting, ScriptedAlarmReader(), sleep=sleep)
    await controller.shift("ep", "v2", _plan(100, hold=150, poll=60))

    assert sleeps == [60, 60, 30]


@pytest.mark.asyncio
async def test_zero_hold_step_still_samples_alarm():
    hosting = InMemoryHosting({"ep": {"v1": 100}})
    alarms = ScriptedAlarmReader(alarm_on_poll=1)
    clock = FakeClock()
    controller = TrafficShiftController(hosting, alarms, sleep=clock.sleep)

    with pytest.raises(AlarmTriggered) as exc:
        await controller.shift("ep", "v2", _plan(50, 100, hold=0))

    assert exc.value.weight == 50
    assert alarms.polls == 1
    assert clock.now == 0
    assert (await hosting.get_endpoint("ep")).weights() == {"v1": 100, "v2": 0}


@pytest.mark.asyncio
async def test_zero_hold_rollout_polls_once_per_step():
    hosting = InMemoryHosting({"ep": {"v1": 100}})
    alarms = ScriptedAlarmReader()
    controller = TrafficShiftController(hosting, alarms, sleep=FakeClock().sleep)

    state = await controller.shift("ep", "v2", _plan(50, 100, hold=0))

    assert state.weights() == {"v2": 100}
    assert alarms.polls == 2


@pytest.mark.asyncio
async def test_zero_hold_step_honours_cancellation():
    hosting = InMemoryHosting({"ep": {"v1": 100}})
    cancel = asyncio.Event()
    cancel.set()
    controller = TrafficShiftController(hosting, ScriptedAlarmReader(), sleep=FakeClock().sleep)

    with pytest.raises(ActionCancelled):
        await controller.shift("ep", "v2", _plan(50, 100, hold=0), cancel_event=cancel)

    assert (await hosting.get_endpoint("ep")).weights() == {"v1": 100, "v2": 0}


@pytest.mark.asyncio
async def test_empty_endpoint_receives_target_at_full_weight():
    hosting = InMemoryHosting()
    alarms = ScriptedAlarmReader()
    controller = TrafficShiftController(hosting, alarms, sleep=FakeClock().sleep)

    state = await controller.shift("new-prd", "v1", _plan(10, 100))

    assert state.weights() == {"v1": 100}
    assert alarms.polls == 0


@pytest.mark.asyncio
async def test_ambiguous_stable_variant_is_rejected():
    hosting = InMemoryHosting({"ep": {"a": 60, "b": 40}})
    controller = TrafficShiftController(hosting, ScriptedAlarmReader())

    with pytest.raises(ConfigurationError):
        await controller.shift("ep", "c", _plan(100))
    assert hosting.history == []


def test_shift_plan_must_ascend_to_full_traffic():
    with pytest.raises(ValueError):
        _plan(50, 10, 100)
    with pytest.raises(ValueError):
        _plan(10, 50)
    with pytest.raises(ValueError):
        ShiftPlan(steps=[])
