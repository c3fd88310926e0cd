# src/remisim/metrics.py
import numpy as np
from typing import Optional, Tuple

def cmax(C: np.ndarray) -> float:
    """Global maximum concentration (ug/mL)."""
    return float(np.max(C))

def tmax(t: np.ndarray, C: np.ndarray) -> float:
    """Time of maximum concentration (min)."""
    return float(t[int(np.argmax(C))])

def cmax_tmax(t: np.ndarray, C: np.ndarray, window_min: Optional[float] = None) -> Tuple[float, float]:
    """
    Return Cmax (ug/mL) and Tmax (min).
    window_min: only consider samples with t <= window_min (e.g. the induction phase).
    """
    if window_min is not None:
        mask = t <= window_min
        t, C = t[mask], C[mask]
    idx = int(np.argmax(C))
    return float(C[idx]), float(t[idx])

def auc_trapz(t: np.ndarray, C: np.ndarray) -> float:
    """Area Under the Curve (AUC) via trapezoidal rule (ug*min/mL)."""
    return float(np.trapezoid(C, t))

def first_local_peak(t: np.ndarray, C: np.ndarray) -> Tuple[float, float]:
    """
    First sample that is not exceeded by its successor, i.e. the first peak
    of the curve. Returns (C, t); for a monotone rising curve this is the last sample.
    """
    falling = np.nonzero(np.diff(C) < 0)[0]
    idx = int(falling[0]) if falling.size else len(C) - 1
    return float(C[idx]), float(t[idx])

def effect_lag(t: np.ndarray, cp: np.ndarray, ce: np.ndarray, window_min: Optional[float] = None) -> float:
    """
    Delay (min) between the plasma peak and the effect-site peak, both taken
    inside the window (whole series by default).
    """
    _, t_cp = cmax_tmax(t, cp, window_min)
    _, t_ce = cmax_tmax(t, ce, window_min)
    return t_ce - t_cp

def fixed_step_count(duration_min: float, step_s: float = 1.0) -> int:
    """Number of steps a fixed-step scheme needs to cover duration_min."""
    return int(np.ceil(duration_min * 60.0 / step_s))
