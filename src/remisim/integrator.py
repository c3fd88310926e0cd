# src/remisim/integrator.py
"""
Variable-order, variable-step multistep integrator with automatic switching
between Adams-Moulton (non-stiff, functional iteration) and BDF (stiff,
chord Newton iteration).

The solution history is kept as a Nordsieck array

    yh[j] = h^j / j! * y^(j)(tn),   j = 0..nq

so that prediction is a Pascal-triangle update, a change of step size is a
row scaling, and a change of method only truncates the order. Step and
order selection follow the LSODE policy; every threshold is a field of
`config.StepControl`.

One instance integrates one segment of a run, forward in time, and is
thrown away when the run is reset.
"""
from __future__ import annotations

import logging
import math
from dataclasses import replace
from typing import Callable, Optional

import numpy as np
from scipy.linalg import lu_factor, lu_solve

from .config import IntegratorSettings, validate_integrator_settings
from .errors import (
    ExcessiveIntegrationWork,
    IntegrationStepTooSmall,
    TooManyConvergenceFailures,
    TooManyErrorTestFailures,
)
from .types import IntegratorDiagnostics

logger = logging.getLogger(__name__)

RHS = Callable[[float, np.ndarray], np.ndarray]

UROUND = float(np.finfo(float).eps)
ADAMS_MAX_ORDER = 12
BDF_MAX_ORDER = 5


def _adams_tables(max_order: int):
    """
    Corrector coefficients el[0..q] and error constants (down, same, up)
    of the Adams-Moulton methods of order 1..max_order.
    """
    elco = {1: np.array([1.0, 1.0])}
    tesco = {q: [0.0, 0.0, 0.0] for q in range(1, max_order + 1)}
    tesco[1][1] = 2.0
    tesco[2][0] = 1.0

    # pc holds the coefficients of prod_{i=1}^{q-1} (x + i)
    pc = np.zeros(max_order + 1)
    pc[0] = 1.0
    rqfac = 1.0
    for nq in range(2, max_order + 1):
        rq1fac = rqfac
        rqfac = rqfac / nq
        nqm1 = nq - 1
        pc[nq - 1] = 0.0
        for i in range(nq, 1, -1):
            pc[i - 1] = pc[i - 2] + nqm1 * pc[i - 1]
        pc[0] = nqm1 * pc[0]

        # Integrals of p(x) and x p(x) over [-1, 0]
        pint = pc[0]
        xpin = pc[0] / 2.0
        tsign = 1.0
        for i in range(2, nq + 1):
            tsign = -tsign
            pint += tsign * pc[i - 1] / i
            xpin += tsign * pc[i - 1] / (i + 1)

        el = np.zeros(nq + 1)
        el[0] = pint * rq1fac
        el[1] = 1.0
        for i in range(2, nq + 1):
            el[i] = rq1fac * pc[i - 1] / i
        elco[nq] = el

        ragq = 1.0 / (rqfac * xpin)
        tesco[nq][1] = ragq
        if nq < max_order:
            tesco[nq + 1][0] = ragq * rqfac / (nq + 1)
        tesco[nq - 1][2] = ragq
    return elco, tesco


def _bdf_tables(max_order: int):
    """Same as `_adams_tables` for the backward differentiation formulas."""
    elco, tesco = {}, {}
    # pc holds the coefficients of prod_{i=1}^{q} (x + i)
    pc = np.zeros(max_order + 2)
    pc[0] = 1.0
    rq1fac = 1.0
    for nq in range(1, max_order + 1):
        pc[nq] = 0.0
        for i in range(nq + 1, 1, -1):
            pc[i - 1] = pc[i - 2] + nq * pc[i - 1]
        pc[0] = nq * pc[0]
        el = pc[: nq + 1] / pc[1]
        el[1] = 1.0
        elco[nq] = el
        tesco[nq] = [rq1fac, (nq + 1) / el[0], (nq + 2) / el[0]]
        rq1fac /= nq
    return elco, tesco


_TABLES = {
    "adams": (*_adams_tables(ADAMS_MAX_ORDER), ADAMS_MAX_ORDER),
    "bdf": (*_bdf_tables(BDF_MAX_ORDER), BDF_MAX_ORDER),
}


def _wrms(v: np.ndarray, weights: np.ndarray) -> float:
    """Weighted root-mean-square norm."""
    return math.sqrt(float(np.mean((v / weights) ** 2)))


def _growth(bias: float, dnorm: float, exponent: int) -> float:
    """Step ratio allowed by an error estimate, damped by `bias`."""
    return 1.0 / (bias * dnorm ** (1.0 / exponent) + bias * 1e-6)


class AdaptiveMultistepIntegrator:
    """
    Adams/BDF integrator with Nordsieck history and stiffness switching.

    rhs          : f(t, y) -> dy/dt
    t0, y0       : initial point
    settings     : tolerances, hmin/hmax and the StepControl policy
    t_crit       : the integrator never steps past this time (segment end)
    nonnegative  : clamp negative components to zero after every accepted step

    `advance_to(t)` integrates until the internal time reaches t and returns
    y(t) interpolated from the history array. Fatal failures raise an
    IntegrationError subclass.
    """

    name = "multistep"

    def __init__(self, rhs: RHS, t0: float, y0, settings: Optional[IntegratorSettings] = None, *,
                 t_crit: Optional[float] = None, nonnegative: bool = False):
        self.settings = validate_integrator_settings(settings or IntegratorSettings())
        self.control = self.settings.control
        self.rtol = float(self.settings.rtol)
        self.atol = float(self.settings.atol)
        # Weights of the local error test; tighter than the user tolerances
        self._rtol_local = self.rtol * self.control.local_error_fraction
        self._atol_local = self.atol * self.control.local_error_fraction
        self.hmin = float(self.settings.hmin)
        self.hmax = float(self.settings.hmax)
        self.t_crit = None if t_crit is None else float(t_crit)
        self.nonnegative = nonnegative

        y0 = np.array(y0, dtype=float)
        if y0.ndim != 1 or y0.size == 0:
            raise ValueError("y0 must be a non-empty 1-D array.")
        if self.t_crit is not None and self.t_crit < t0:
            raise ValueError(f"t_crit {self.t_crit} lies before t0 {t0}.")

        self._rhs = rhs
        self._n = y0.size
        self._diag = IntegratorDiagnostics(method="adams")
        self._yh = np.zeros((ADAMS_MAX_ORDER + 1, self._n))
        self._yh[0] = y0
        self._tn = float(t0)
        self._h = 0.0
        self._hu = 0.0
        self._started = False
        self._nst = 0
        self._nq = 1
        self._load_method("adams")
        self._set_order(1)
        self._ialth = 2
        self._rmax = self.control.first_step_max_growth
        self._crate = self.control.initial_convergence_rate
        self._saved_acor: Optional[np.ndarray] = None
        self._lu = None
        self._hel0_jac = 0.0
        self._nst_jac = 0
        self._force_jac = False
        self._jac_fresh = False
        self._stiffness = 0.0

    # ------------------------------------------------------------------
    # Public surface
    # ------------------------------------------------------------------
    @property
    def t(self) -> float:
        return self._tn

    @property
    def method(self) -> str:
        return self._method

    @property
    def order(self) -> int:
        return self._nq

    @property
    def stiffness(self) -> float:
        """Last h * ||J||_inf measured by the stiffness check."""
        return self._stiffness

    @property
    def diagnostics(self) -> IntegratorDiagnostics:
        return replace(self._diag, method=self._method, order=self._nq, step_size=self._h)

    def advance_to(self, t_out: float) -> np.ndarray:
        t_out = float(t_out)
        if self.t_crit is not None and t_out > self.t_crit:
            raise ValueError(f"t_out {t_out} lies beyond t_crit {self.t_crit}.")
        if not self._started:
            if t_out == self._tn:
                return self._output(self._yh[0])
            if t_out < self._tn:
                raise ValueError(f"t_out {t_out} lies before t0 {self._tn}.")
            self._start(t_out)
        elif t_out < self._tn - abs(self._hu) * (1.0 + 100.0 * UROUND):
            raise ValueError(f"t_out {t_out} lies before the last step [{self._tn - self._hu}, {self._tn}].")

        steps = 0
        while self._tn < t_out:
            if self.t_crit is not None:
                remaining = self.t_crit - self._tn
                if remaining <= 100.0 * UROUND * max(1.0, abs(self.t_crit)):
                    self._tn = self.t_crit
                    break
                if self._h > remaining:
                    self._scale_history(remaining / self._h)
            self._step()
            steps += 1
            if self._tn < t_out and steps >= self.control.max_steps_per_call:
                raise ExcessiveIntegrationWork(
                    f"{steps} steps taken without reaching t={t_out}.", t=self._tn, h=self._h
                )
        return self._output(self._interpolate(t_out))

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------
    def _f(self, t: float, y: np.ndarray) -> np.ndarray:
        self._diag.rhs_evaluations += 1
        return np.asarray(self._rhs(t, y), dtype=float)

    def _error_weights(self, y: np.ndarray) -> np.ndarray:
        return self._rtol_local * np.abs(y) + self._atol_local

    def _start(self, t_out: float) -> None:
        """Initial step size from the LSODE estimate, order 1 history."""
        y0 = self._yh[0]
        f0 = self._f(self._tn, y0)
        tdist = t_out - self._tn
        w0 = max(abs(self._tn), abs(t_out))
        if tdist < 2.0 * UROUND * w0:
            raise ValueError(f"t_out {t_out} is too close to t0 {self._tn}.")
        tol = min(max(self._rtol_local, 100.0 * UROUND), 1e-3)
        fnorm = _wrms(f0, self._error_weights(y0))
        h0 = 1.0 / math.sqrt(1.0 / (tol * w0 * w0) + tol * fnorm * fnorm)
        h0 = min(h0, tdist, self.hmax)
        h0 = max(h0, self.hmin)
        self._h = h0
        self._yh[1] = h0 * f0
        self._started = True

    def _load_method(self, method: str) -> None:
        self._method = method
        self._elco, self._tescos, self._maxord = _TABLES[method]

    def _set_order(self, q: int) -> None:
        if q < self._nq:
            self._yh[q + 1:] = 0.0
        self._nq = q
        self._el = self._elco[q]
        self._tesco = self._tescos[q]

    # ------------------------------------------------------------------
    # History array operations
    # ------------------------------------------------------------------
    def _predict(self) -> None:
        yh, nq = self._yh, self._nq
        for start in range(nq - 1, -1, -1):
            for j in range(start, nq):
                yh[j] += yh[j + 1]

    def _retract(self) -> None:
        yh, nq = self._yh, self._nq
        for start in range(nq - 1, -1, -1):
            for j in range(start, nq):
                yh[j] -= yh[j + 1]

    def _scale_history(self, r: float) -> None:
        self._yh[1: self._nq + 1] *= (r ** np.arange(1, self._nq + 1))[:, None]
        self._h *= r
        self._ialth = self._nq + 1

    def _rescale(self, rh: float) -> None:
        rh = max(rh, self.hmin / abs(self._h))
        rh = min(rh, self._rmax)
        rh = rh / max(1.0, abs(self._h) * rh / self.hmax)
        self._scale_history(rh)

    def _interpolate(self, t: float) -> np.ndarray:
        if not self._started or self._h == 0.0:
            return self._yh[0].copy()
        s = (t - self._tn) / self._h
        y = self._yh[self._nq].copy()
        for j in range(self._nq - 1, -1, -1):
            y = self._yh[j] + s * y
        return y

    def _output(self, y: np.ndarray) -> np.ndarray:
        if self.nonnegative:
            return np.maximum(y, 0.0)
        return np.array(y, copy=True)

    # ------------------------------------------------------------------
    # One step: predict, correct, error test, retry
    # ------------------------------------------------------------------
    def _step(self) -> None:
        ctl = self.control
        told = self._tn
        ncf = 0
        nef = 0
        ewt = self._error_weights(self._yh[0])
        self._jac_fresh = False

        while True:
            if told + self._h == told:
                raise IntegrationStepTooSmall(
                    f"Step size {self._h:.3e} no longer changes t={told}.", t=told, h=self._h
                )
            self._tn = told + self._h
            self._predict()
            acor, converged = self._correct(ewt)

            if not converged:
                self._tn = told
                self._retract()
                self._diag.rejected_steps += 1
                if self._method == "bdf" and not self._jac_fresh:
                    # Retry the same step with a fresh iteration matrix
                    self._force_jac = True
                    continue
                ncf += 1
                self._diag.convergence_failures += 1
                self._rmax = ctl.failure_max_growth
                if abs(self._h) <= self.hmin * 1.00001:
                    raise IntegrationStepTooSmall(
                        f"Corrector failed to converge with |h| = hmin at t={told}.", t=told, h=self._h
                    )
                if ncf >= ctl.max_convergence_failures:
                    raise TooManyConvergenceFailures(
                        f"Corrector failed to converge {ncf} times at t={told}.", t=told, h=self._h
                    )
                self._force_jac = self._method == "bdf"
                self._rescale(ctl.convergence_failure_shrink)
                continue

            dsm = _wrms(acor, ewt) / self._tesco[1]
            if dsm <= 1.0:
                self._accept(acor, dsm, ewt)
                return

            # Error test failed
            self._tn = told
            self._retract()
            nef += 1
            self._diag.rejected_steps += 1
            self._diag.error_test_failures += 1
            self._rmax = ctl.failure_max_growth
            if abs(self._h) <= self.hmin * 1.00001:
                raise IntegrationStepTooSmall(
                    f"Error test failed with |h| = hmin at t={told}.", t=told, h=self._h
                )
            if nef >= ctl.max_error_test_failures:
                raise TooManyErrorTestFailures(
                    f"Error test failed {nef} times at t={told}.", t=told, h=self._h
                )
            if nef < ctl.error_failures_before_restart:
                newq, rh = self._select_order(dsm, acor, ewt, allow_increase=False)
                rh = min(rh, ctl.error_failure_max_shrink)
                if nef >= 2:
                    rh = min(rh, ctl.repeated_failure_max_shrink)
                if newq != self._nq:
                    self._set_order(newq)
                self._rescale(rh)
            else:
                # Derivatives are unreliable: restart at order 1
                rh = max(ctl.restart_shrink, self.hmin / abs(self._h))
                self._h *= rh
                self._set_order(1)
                self._yh[1] = self._h * self._f(told, self._yh[0])
                self._ialth = 5
                self._saved_acor = None
                self._force_jac = self._method == "bdf"

    def _correct(self, ewt: np.ndarray):
        """
        Corrector iteration on the predicted history.

        Returns (acor, converged); on convergence yh[0] + el[0] * acor is the
        new solution.
        """
        ctl = self.control
        yh = self._yh
        h = self._h
        el0 = self._el[0]
        conit = 0.5 / (self._nq + 2)
        tesco2 = self._tesco[1]

        y = yh[0].copy()
        acor = np.zeros(self._n)
        f = self._f(self._tn, y)
        if self._method == "bdf" and self._jacobian_due():
            self._update_iteration_matrix(y, f)

        delp = 0.0
        for m in range(ctl.max_corrector_iterations):
            if self._method == "adams":
                resid = h * f - yh[1]
                delta = _wrms(resid - acor, ewt)
                acor = resid
            else:
                correction = lu_solve(self._lu, h * f - (yh[1] + acor))
                delta = _wrms(correction, ewt)
                acor = acor + correction
            y = yh[0] + el0 * acor

            if m > 0:
                self._crate = max(ctl.convergence_rate_floor * self._crate, delta / delp)
            dcon = delta * min(1.0, ctl.convergence_rate_boost * self._crate) / (tesco2 * conit)
            if dcon <= 1.0:
                return acor, True
            if m > 0 and delta > ctl.corrector_divergence_ratio * delp:
                break
            delp = delta
            if m + 1 < ctl.max_corrector_iterations:
                f = self._f(self._tn, y)
        return acor, False

    def _accept(self, acor: np.ndarray, dsm: float, ewt: np.ndarray) -> None:
        ctl = self.control
        nq = self._nq
        self._nst += 1
        self._diag.accepted_steps += 1
        self._hu = self._h
        self._yh[: nq + 1] += np.outer(self._el, acor)

        if self.t_crit is not None and abs(self._tn - self.t_crit) <= 100.0 * UROUND * max(1.0, abs(self.t_crit)):
            self._tn = self.t_crit
        if self.nonnegative:
            negative = self._yh[0] < 0.0
            if negative.any():
                self._diag.clamped_components += int(negative.sum())
                self._yh[0][negative] = 0.0

        self._ialth -= 1
        if self._ialth == 0:
            newq, rh = self._select_order(dsm, acor, ewt, allow_increase=True)
            if rh >= ctl.min_growth_to_change:
                if newq > nq:
                    self._yh[newq] = acor * (self._el[nq] / (nq + 1))
                self._set_order(newq)
                self._rescale(rh)
                self._rmax = ctl.max_growth
            else:
                self._ialth = 3
        elif self._ialth == 1 and nq < self._maxord:
            self._saved_acor = acor.copy()

        if self._nst % ctl.stiffness_check_interval == 0:
            self._check_stiffness()

    def _select_order(self, dsm: float, acor: np.ndarray, ewt: np.ndarray, allow_increase: bool):
        """Order (nq - 1, nq or nq + 1) allowing the largest next step, and that step ratio."""
        ctl = self.control
        nq = self._nq
        rhsm = _growth(ctl.same_order_bias, dsm, nq + 1)
        rhup = 0.0
        if allow_increase and nq < self._maxord and self._saved_acor is not None:
            dup = _wrms(acor - self._saved_acor, ewt) / self._tesco[2]
            rhup = _growth(ctl.order_up_bias, dup, nq + 2)
        rhdn = 0.0
        if nq > 1:
            ddn = _wrms(self._yh[nq], ewt) / self._tesco[0]
            rhdn = _growth(ctl.order_down_bias, ddn, nq)

        if rhsm >= rhup:
            if rhsm >= rhdn:
                return nq, rhsm
            return nq - 1, rhdn
        if rhup > rhdn:
            return nq + 1, rhup
        return nq - 1, rhdn

    # ------------------------------------------------------------------
    # Jacobian, iteration matrix, stiffness
    # ------------------------------------------------------------------
    def _jacobian(self, t: float, y: np.ndarray, f0: np.ndarray) -> np.ndarray:
        """Forward-difference Jacobian."""
        jac = np.empty((self._n, self._n))
        increments = math.sqrt(UROUND) * np.maximum(np.abs(y), self.atol / self.rtol)
        for j in range(self._n):
            yj = y.copy()
            yj[j] += increments[j]
            dj = yj[j] - y[j]
            jac[:, j] = (self._f(t, yj) - f0) / dj
        self._diag.jacobian_evaluations += 1
        return jac

    def _jacobian_due(self) -> bool:
        ctl = self.control
        if self._lu is None or self._force_jac:
            return True
        if self._nst - self._nst_jac >= ctl.jacobian_age_limit:
            return True
        return abs(self._h * self._el[0] / self._hel0_jac - 1.0) > ctl.jacobian_rc_tolerance

    def _update_iteration_matrix(self, y: np.ndarray, f: np.ndarray) -> None:
        """P = I - h el0 J at the predicted point."""
        jac = self._jacobian(self._tn, y, f)
        hel0 = self._h * self._el[0]
        self._lu = lu_factor(np.eye(self._n) - hel0 * jac)
        self._hel0_jac = hel0
        self._nst_jac = self._nst
        self._force_jac = False
        self._jac_fresh = True
        self._crate = self.control.initial_convergence_rate

    def _check_stiffness(self) -> None:
        ctl = self.control
        y = self._yh[0]
        jac = self._jacobian(self._tn, y, self._f(self._tn, y))
        self._stiffness = abs(self._h) * float(np.max(np.sum(np.abs(jac), axis=1)))
        if self._method == "adams" and self._stiffness > ctl.stiffness_upper:
            self._switch_method("bdf")
        elif self._method == "bdf" and self._stiffness < ctl.stiffness_lower:
            self._switch_method("adams")

    def _switch_method(self, method: str) -> None:
        previous = self._method
        self._load_method(method)
        self._set_order(min(self._nq, self._maxord))
        self._ialth = self._nq + 1
        self._saved_acor = None
        self._lu = None
        self._crate = self.control.initial_convergence_rate
        self._diag.method_switches += 1
        logger.debug("t=%.6g: %s -> %s (h*|J|=%.3g, order %d)",
                     self._tn, previous, method, self._stiffness, self._nq)
