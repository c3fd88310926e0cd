import math

import pytest

from remisim.dosing import (
    bolus,
    boluses_at,
    continuous_infusion,
    infusion_rate_at,
    schedule,
    segment_boundaries,
)
from remisim.errors import InvalidDoseSchedule


def test_infusion_rate_is_converted_to_mg_per_min():
    """1 mg/kg/h for 70 kg is 70 mg/h, i.e. 7/6 mg/min."""
    ev = continuous_infusion(1.0, 70.0)
    assert ev.rate_mg_per_min == pytest.approx(70.0 / 60.0)
    assert math.isinf(ev.end_min)


def test_schedule_queries():
    sched = schedule(
        continuous_infusion(0.6, 60.0, start_min=2.0, duration_min=8.0),
        bolus(5.0, time_min=4.0),
        bolus(12.0),
    )
    assert [e.time_min for e in sched.events] == [0.0, 2.0, 4.0]

    assert infusion_rate_at(sched, 1.9) == 0.0
    assert infusion_rate_at(sched, 2.0) == pytest.approx(0.6)
    assert infusion_rate_at(sched, 9.99) == pytest.approx(0.6)
    assert infusion_rate_at(sched, 10.0) == 0.0

    assert boluses_at(sched, 0.0) == 12.0
    assert boluses_at(sched, 4.0) == 5.0
    assert boluses_at(sched, 3.0) == 0.0


def test_overlapping_infusions_add_up():
    sched = schedule(continuous_infusion(1.0, 60.0), continuous_infusion(1.0, 60.0, start_min=5.0))
    assert infusion_rate_at(sched, 1.0) == pytest.approx(1.0)
    assert infusion_rate_at(sched, 6.0) == pytest.approx(2.0)


def test_segment_boundaries():
    sched = schedule(
        bolus(12.0),
        continuous_infusion(1.0, 70.0, start_min=3.0, duration_min=7.0),
        bolus(2.0, time_min=30.0),
    )
    assert segment_boundaries(sched, 0.0, 20.0) == [0.0, 3.0, 10.0, 20.0]
    assert segment_boundaries(sched, 5.0, 60.0) == [5.0, 10.0, 30.0, 60.0]
    assert segment_boundaries(schedule(), 0.0, 1.0) == [0.0, 1.0]


@pytest.mark.parametrize("build", [
    lambda: bolus(0.0),
    lambda: bolus(-1.0),
    lambda: bolus(5.0, time_min=-1.0),
    lambda: bolus(float("nan")),
    lambda: continuous_infusion(0.0, 70.0),
    lambda: continuous_infusion(1.0, -70.0),
    lambda: continuous_infusion(1.0, 70.0, duration_min=0.0),
])
def test_invalid_events_are_rejected(build):
    with pytest.raises(InvalidDoseSchedule):
        build()
