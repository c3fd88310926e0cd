# src/remisim/dosing.py
from __future__ import annotations

import math
from typing import Optional

from .errors import InvalidDoseSchedule
from .types import DoseEvent, DoseSchedule


def bolus(amount_mg: float, time_min: float = 0.0) -> DoseEvent:
    """
    An IV bolus: the whole amount lands in the central compartment at time_min.
    Example: 12 mg at t=0.
    """
    _validate_positive("amount_mg", amount_mg)
    _validate_non_negative("time_min", time_min)
    return DoseEvent(time_min=float(time_min), kind="bolus", amount_mg=float(amount_mg))


def continuous_infusion(rate_mg_per_kg_per_h: float, weight_kg: float, start_min: float = 0.0,
                        duration_min: Optional[float] = None) -> DoseEvent:
    """
    A weight-based continuous infusion.

    rate_mg_per_kg_per_h : prescribed rate, e.g. 1 mg/kg/h
    weight_kg            : total body weight used for the conversion
    start_min            : when the pump starts
    duration_min         : how long it runs; None keeps it running

    The stored rate is mg/min = rate * weight / 60.
    """
    _validate_positive("rate_mg_per_kg_per_h", rate_mg_per_kg_per_h)
    _validate_positive("weight_kg", weight_kg)
    _validate_non_negative("start_min", start_min)
    if duration_min is not None:
        _validate_positive("duration_min", duration_min)
    rate = float(rate_mg_per_kg_per_h) * float(weight_kg) / 60.0
    return DoseEvent(time_min=float(start_min), kind="infusion", rate_mg_per_min=rate,
                     duration_min=None if duration_min is None else float(duration_min))


def schedule(*events: DoseEvent) -> DoseSchedule:
    """
    Collect events into a schedule sorted by time (boluses before infusions at equal times).
    """
    validate_schedule(DoseSchedule(events=tuple(events)))
    return DoseSchedule(events=tuple(sorted(events, key=lambda e: (e.time_min, e.kind))))


def validate_schedule(sched: DoseSchedule) -> None:
    """Raise InvalidDoseSchedule if any event is malformed."""
    for e in sched.events:
        if e.kind not in ("bolus", "infusion"):
            raise InvalidDoseSchedule(f"Unknown dose kind {e.kind!r}.")
        _validate_non_negative("time_min", e.time_min)
        if e.kind == "bolus":
            _validate_positive("amount_mg", e.amount_mg)
        else:
            _validate_positive("rate_mg_per_min", e.rate_mg_per_min)
            if e.duration_min is not None:
                _validate_positive("duration_min", e.duration_min)


def infusion_rate_at(sched: DoseSchedule, t: float) -> float:
    """Total infusion rate (mg/min) active at time t; infusions cover [start, end)."""
    return sum(e.rate_mg_per_min for e in sched.events
               if e.kind == "infusion" and e.time_min <= t < e.end_min)


def boluses_at(sched: DoseSchedule, t: float) -> float:
    """Total bolus amount (mg) given exactly at time t."""
    return sum(e.amount_mg for e in sched.events
               if e.kind == "bolus" and math.isclose(e.time_min, t, rel_tol=1e-12, abs_tol=1e-12))


def segment_boundaries(sched: DoseSchedule, t_start: float, t_end: float) -> list[float]:
    """
    Times in [t_start, t_end] where the right-hand side changes: bolus times,
    infusion starts and infusion ends. Always includes both ends.
    """
    boundaries: list[float] = [float(t_start), float(t_end)]
    for e in sched.events:
        for t in (e.time_min, e.end_min):
            if t_start < t < t_end:
                boundaries.append(float(t))
    # Unique, sorted; merge points closer than rounding noise
    out: list[float] = []
    for t in sorted(boundaries):
        if not out or not math.isclose(t, out[-1], rel_tol=1e-12, abs_tol=1e-12):
            out.append(t)
    out[-1] = float(t_end)
    return out


# --------------------------
# Small input validators
# --------------------------
def _validate_positive(name: str, x: float) -> None:
    if not (x > 0) or not math.isfinite(x):
        raise InvalidDoseSchedule(f"{name} must be > 0 and finite (got {x}).")

def _validate_non_negative(name: str, x: float) -> None:
    if not (x >= 0) or not math.isfinite(x):
        raise InvalidDoseSchedule(f"{name} must be >= 0 and finite (got {x}).")
