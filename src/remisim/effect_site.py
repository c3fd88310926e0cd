# src/remisim/effect_site.py
"""
Effect-site update over one interval (VHAC).

Solves dCe/dt = ke0 * (Cp(t) - Ce) over [0, dt] given Cp at both ends,
with one of three formulas:

  steady   |Cp1 - Cp0| negligible: exponential relaxation to Cp
  taylor   ke0 * dt tiny: second-order Taylor series, no exponentials
  linear   otherwise: exact solution for Cp varying linearly in time
"""
from __future__ import annotations

import math
from enum import Enum
from typing import Optional

from .config import EffectSiteSettings


class VHACRegime(str, Enum):
    STEADY = "steady"
    TAYLOR = "taylor"
    LINEAR = "linear"


def select_regime(cp0: float, cp1: float, ke0: float, dt: float,
                  settings: Optional[EffectSiteSettings] = None) -> VHACRegime:
    settings = settings or EffectSiteSettings()
    if abs(cp1 - cp0) < settings.negligible_cp_change:
        return VHACRegime.STEADY
    if ke0 * dt < settings.small_step_threshold:
        return VHACRegime.TAYLOR
    return VHACRegime.LINEAR


def relaxation_update(cp0: float, cp1: float, ce0: float, ke0: float, dt: float) -> float:
    """Ce relaxes toward the (constant) mean plasma concentration."""
    cp = 0.5 * (cp0 + cp1)
    return cp + (ce0 - cp) * math.exp(-ke0 * dt)


def taylor_update(cp0: float, cp1: float, ce0: float, ke0: float, dt: float) -> float:
    """
    Ce1 = Ce0 + dt Ce'(0) + dt^2/2 Ce''(0) with
    Ce' = ke0 (Cp0 - Ce0) and Ce'' = ke0 (slope - Ce').
    """
    slope = (cp1 - cp0) / dt
    d1 = ke0 * (cp0 - ce0)
    d2 = ke0 * (slope - d1)
    return ce0 + dt * d1 + 0.5 * dt * dt * d2


def linear_ramp_update(cp0: float, cp1: float, ce0: float, ke0: float, dt: float) -> float:
    """Exact Ce for Cp(t) = Cp0 + slope * t."""
    slope = (cp1 - cp0) / dt
    lag = slope / ke0
    return cp1 - lag + (ce0 - cp0 + lag) * math.exp(-ke0 * dt)


_UPDATES = {
    VHACRegime.STEADY: relaxation_update,
    VHACRegime.TAYLOR: taylor_update,
    VHACRegime.LINEAR: linear_ramp_update,
}


def update_effect_site(cp0: float, cp1: float, ce0: float, ke0: float, dt: float,
                       settings: Optional[EffectSiteSettings] = None) -> tuple[float, VHACRegime]:
    """
    Effect-site concentration at the end of an interval of length dt (min).

    Returns (ce1, regime). A zero-length interval returns ce0 unchanged.
    """
    if not (ke0 > 0):
        raise ValueError(f"ke0 must be > 0 (got {ke0}).")
    if dt < 0:
        raise ValueError(f"dt must be >= 0 (got {dt}).")
    if dt == 0:
        return ce0, VHACRegime.STEADY
    regime = select_regime(cp0, cp1, ke0, dt, settings)
    return _UPDATES[regime](cp0, cp1, ce0, ke0, dt), regime
