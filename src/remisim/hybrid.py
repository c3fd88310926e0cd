# src/remisim/hybrid.py
"""
Hybrid (eigenvalue) rate constants of the linear three-compartment system
and the tri-exponential plasma impulse response built from them.

The disposition rates are the roots of

    x^3 + c2 x^2 + c1 x + c0 = 0

with c2 = -(k10 + k12 + k13 + k21 + k31),
     c1 = k10 k21 + k10 k31 + k12 k31 + k13 k21 + k21 k31,
     c0 = -k10 k21 k31.

A mammillary system with positive rates always has three real positive
roots, so the trigonometric (Viete) form is used instead of an iterative
polynomial solver.
"""
from __future__ import annotations

import math

import numpy as np

from .errors import InvalidCompartmentModel
from .types import HybridCoefficients, PKParameters

# Relative slack on the discriminant before declaring complex roots
DISCRIMINANT_RTOL = 1e-10
# Roots closer than this (relative to the largest) make A, B, C undefined
ROOT_SEPARATION_RTOL = 1e-12


def characteristic_coefficients(k10: float, k12: float, k21: float, k13: float, k31: float) -> tuple[float, float, float]:
    """Return (c2, c1, c0) of the monic characteristic cubic."""
    c2 = -(k10 + k12 + k13 + k21 + k31)
    c1 = k10 * k21 + k10 * k31 + k12 * k31 + k13 * k21 + k21 * k31
    c0 = -(k10 * k21 * k31)
    return c2, c1, c0


def solve_cubic(c2: float, c1: float, c0: float) -> tuple[float, float, float]:
    """
    Real roots of x^3 + c2 x^2 + c1 x + c0 = 0, ascending.

    Raises InvalidCompartmentModel when the cubic has a complex pair.
    """
    shift = c2 / 3.0
    # Depressed cubic t^3 + p t + q = 0 with x = t - c2/3
    p = c1 - c2 * c2 / 3.0
    q = 2.0 * c2 ** 3 / 27.0 - c2 * c1 / 3.0 + c0

    disc = 4.0 * p ** 3 + 27.0 * q ** 2  # < 0: three distinct real roots
    scale = 4.0 * abs(p) ** 3 + 27.0 * q ** 2
    if disc > DISCRIMINANT_RTOL * scale:
        raise InvalidCompartmentModel(
            f"Characteristic cubic has complex roots (p={p:.6g}, q={q:.6g})."
        )
    if p == 0.0:
        # Triple root
        return (-shift, -shift, -shift)

    m = 2.0 * math.sqrt(-p / 3.0)
    arg = 3.0 * q / (p * m)
    theta = math.acos(min(1.0, max(-1.0, arg))) / 3.0
    roots = [m * math.cos(theta - 2.0 * math.pi * k / 3.0) - shift for k in range(3)]
    roots.sort()
    return roots[0], roots[1], roots[2]


def hybrid_coefficients(k10: float, k12: float, k21: float, k13: float, k31: float) -> HybridCoefficients:
    """
    Hybrid rates alpha <= beta <= gamma and the plasma coefficients A, B, C.

    A, B, C are the partial-fraction residues of the Laplace transform of
    a1(t) / V1 after a unit bolus, so A + B + C = 1:

        X_i = (k21 - l_i)(k31 - l_i) / prod_{j != i} (l_j - l_i)
    """
    rates = (k10, k12, k21, k13, k31)
    if not all(math.isfinite(k) and k > 0 for k in rates):
        raise InvalidCompartmentModel(f"Rate constants must be finite and > 0 (got {rates}).")

    lam = solve_cubic(*characteristic_coefficients(*rates))
    if lam[0] <= 0.0:
        raise InvalidCompartmentModel(f"Non-positive hybrid rate {lam[0]:.6g}.")
    if min(lam[1] - lam[0], lam[2] - lam[1]) <= ROOT_SEPARATION_RTOL * lam[2]:
        raise InvalidCompartmentModel(f"Coincident hybrid rates {lam}.")

    coeffs = []
    for i, li in enumerate(lam):
        denom = 1.0
        for j, lj in enumerate(lam):
            if j != i:
                denom *= lj - li
        coeffs.append((k21 - li) * (k31 - li) / denom)

    return HybridCoefficients(alpha=lam[0], beta=lam[1], gamma=lam[2],
                              A=coeffs[0], B=coeffs[1], C=coeffs[2])


def hybrid_from_parameters(pk: PKParameters) -> HybridCoefficients:
    return hybrid_coefficients(*pk.rate_constants)


def plasma_impulse_response(t, hybrid: HybridCoefficients) -> np.ndarray:
    """Cp(t) * V1 / dose for a bolus at t=0."""
    t = np.asarray(t, dtype=float)
    return (hybrid.A * np.exp(-hybrid.alpha * t)
            + hybrid.B * np.exp(-hybrid.beta * t)
            + hybrid.C * np.exp(-hybrid.gamma * t))


def plasma_concentration(t, hybrid: HybridCoefficients, dose_mg: float, V1: float) -> np.ndarray:
    """Closed-form plasma concentration (mg/L) after a single bolus at t=0."""
    return dose_mg / V1 * plasma_impulse_response(t, hybrid)


def effect_site_impulse_response(t, hybrid: HybridCoefficients, ke0: float) -> np.ndarray:
    """
    Ce(t) * V1 / dose for a bolus at t=0 with Ce(0) = 0.

        Ce = ke0 * sum X_i / (ke0 - l_i) * (e^{-l_i t} - e^{-ke0 t})

    The term with ke0 == l_i takes its limit ke0 * X_i * t * e^{-l_i t}.
    """
    t = np.asarray(t, dtype=float)
    out = np.zeros_like(t)
    for x, lam in zip(hybrid.coefficients, hybrid.rates):
        d = ke0 - lam
        if abs(d) < 1e-9 * max(ke0, lam):
            out = out + ke0 * x * t * np.exp(-lam * t)
        else:
            out = out + ke0 * x / d * (np.exp(-lam * t) - np.exp(-ke0 * t))
    return out
