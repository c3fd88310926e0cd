# src/remisim/solvers.py
"""
Integrator strategies.

Every strategy is constructed as

    Strategy(rhs, t0, y0, settings, *, t_crit=None, nonnegative=False)

and exposes `advance_to(t_out) -> ndarray` plus a `diagnostics` property.
A run picks its strategy once, by name or class, through
`resolve_integrator`.
"""
from __future__ import annotations

import math
from dataclasses import replace
from typing import Optional, Union

import numpy as np
from scipy.integrate import solve_ivp

from .config import IntegratorSettings, validate_integrator_settings
from .errors import (
    ConfigurationError,
    ExcessiveIntegrationWork,
    IntegrationStepTooSmall,
    NonFiniteSolution,
    TooManyConvergenceFailures,
    TooManyErrorTestFailures,
)
from .integrator import AdaptiveMultistepIntegrator
from .types import IntegratorDiagnostics


class ScipyLSODAIntegrator:
    """
    scipy's LSODA, restarted for every output interval.

    Useful as an independent cross-check of the multistep integrator.
    """

    name = "lsoda"

    def __init__(self, rhs, t0: float, y0, settings: Optional[IntegratorSettings] = None, *,
                 t_crit: Optional[float] = None, nonnegative: bool = False):
        self.settings = validate_integrator_settings(settings or IntegratorSettings())
        self.t_crit = t_crit
        self.nonnegative = nonnegative
        self._rhs = rhs
        self._t = float(t0)
        self._y = np.array(y0, dtype=float)
        self._diag = IntegratorDiagnostics(method="lsoda", order=0)

    @property
    def t(self) -> float:
        return self._t

    @property
    def diagnostics(self) -> IntegratorDiagnostics:
        return replace(self._diag)

    def advance_to(self, t_out: float) -> np.ndarray:
        t_out = float(t_out)
        if self.t_crit is not None and t_out > self.t_crit:
            raise ValueError(f"t_out {t_out} lies beyond t_crit {self.t_crit}.")
        if t_out < self._t:
            raise ValueError(f"t_out {t_out} lies before the current time {self._t}.")
        if t_out == self._t:
            return self._y.copy()

        sol = solve_ivp(self._rhs, t_span=(self._t, t_out), y0=self._y, method="LSODA",
                        rtol=self.settings.rtol, atol=self.settings.atol,
                        min_step=self.settings.hmin, max_step=self.settings.hmax)
        self._diag.rhs_evaluations += int(sol.nfev)
        self._diag.jacobian_evaluations += int(sol.njev)
        if not sol.success:
            raise _lsoda_error(sol.message)(f"LSODA failed at t={self._t}: {sol.message}", t=self._t)
        self._diag.accepted_steps += len(sol.t) - 1

        y = sol.y[:, -1]
        if self.nonnegative:
            negative = y < 0.0
            self._diag.clamped_components += int(negative.sum())
            y = np.where(negative, 0.0, y)
        self._t = t_out
        self._y = y
        return y.copy()


def _lsoda_error(message: str) -> type:
    """Error class for an LSODA status message."""
    text = (message or "").lower()
    if "excess work" in text:
        return ExcessiveIntegrationWork
    if "error test" in text:
        return TooManyErrorTestFailures
    if "convergence" in text:
        return TooManyConvergenceFailures
    # Step underflow, excess accuracy requested, zero error weight
    return IntegrationStepTooSmall


class FixedStepEulerIntegrator:
    """
    Explicit Euler with a fixed step (settings.euler_step_min).

    Degraded mode: no error control at all. Results are flagged through
    `diagnostics.degraded`.
    """

    name = "euler"

    def __init__(self, rhs, t0: float, y0, settings: Optional[IntegratorSettings] = None, *,
                 t_crit: Optional[float] = None, nonnegative: bool = False):
        self.settings = validate_integrator_settings(settings or IntegratorSettings())
        self.t_crit = t_crit
        self.nonnegative = nonnegative
        self._rhs = rhs
        self._t = float(t0)
        self._y = np.array(y0, dtype=float)
        self._diag = IntegratorDiagnostics(method="euler", order=1, degraded=True,
                                           step_size=self.settings.euler_step_min)

    @property
    def t(self) -> float:
        return self._t

    @property
    def diagnostics(self) -> IntegratorDiagnostics:
        return replace(self._diag)

    def advance_to(self, t_out: float) -> np.ndarray:
        t_out = float(t_out)
        if self.t_crit is not None and t_out > self.t_crit:
            raise ValueError(f"t_out {t_out} lies beyond t_crit {self.t_crit}.")
        if t_out < self._t:
            raise ValueError(f"t_out {t_out} lies before the current time {self._t}.")
        span = t_out - self._t
        if span == 0.0:
            return self._y.copy()

        # Equal steps no longer than the configured one
        n = max(1, math.ceil(span / self.settings.euler_step_min - 1e-9))
        h = span / n
        t, y = self._t, self._y
        for i in range(n):
            y = y + h * np.asarray(self._rhs(t, y), dtype=float)
            if not np.all(np.isfinite(y)):
                raise NonFiniteSolution(f"Fixed-step solution is no longer finite at t={t}.", t=t, h=h)
            if self.nonnegative:
                negative = y < 0.0
                if negative.any():
                    self._diag.clamped_components += int(negative.sum())
                    y = np.where(negative, 0.0, y)
            t = self._t + (i + 1) * h
        self._diag.accepted_steps += n
        self._diag.rhs_evaluations += n
        self._t = t_out
        self._y = y
        return y.copy()


INTEGRATORS = {
    "multistep": AdaptiveMultistepIntegrator,
    "lsoda": ScipyLSODAIntegrator,
    "euler": FixedStepEulerIntegrator,
}


def resolve_integrator(strategy: Union[str, type]) -> type:
    """Return the strategy class for a registered name, or the class itself."""
    if isinstance(strategy, str):
        try:
            return INTEGRATORS[strategy]
        except KeyError:
            raise ConfigurationError(
                f"Unknown integrator {strategy!r}; choose one of {sorted(INTEGRATORS)}."
            ) from None
    if isinstance(strategy, type) and callable(getattr(strategy, "advance_to", None)):
        return strategy
    raise ConfigurationError(f"Integrator strategy must be a name or a class (got {strategy!r}).")
