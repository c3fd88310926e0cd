# src/remisim/simulate.py
"""
Tick-driven simulation of one patient.

The run is split into segments at every time the right-hand side changes
(bolus, infusion start or end). A fresh integrator is created for each
segment and never steps past its end; boluses are applied to a1 between
segments. Output is produced once per tick by interpolation.
"""
from __future__ import annotations

import logging
import math
import time
from collections import Counter
from dataclasses import dataclass, replace
from typing import Callable, Optional, Union

import numpy as np

from .config import IntegratorSettings, ModelConfig, default_config, validate_integrator_settings
from .dosing import boluses_at, infusion_rate_at, segment_boundaries, validate_schedule
from .effect_site import update_effect_site
from .errors import ConfigurationError, IntegrationError, RemisimError
from .hybrid import hybrid_from_parameters
from .ke0 import determine_ke0
from .models.three_compartment import make_rhs
from .parameters import derive_pk_parameters, validate_covariates
from .solvers import FixedStepEulerIntegrator, resolve_integrator
from .types import (
    DoseSchedule,
    EffectSiteMode,
    EngineFailure,
    HybridCoefficients,
    IntegratorDiagnostics,
    Ke0Result,
    PatientCovariates,
    PKParameters,
    SimulationOutcome,
    SimulationResult,
    SimulationState,
    TickRecord,
)

logger = logging.getLogger(__name__)

_COUNTERS = (
    "accepted_steps",
    "rejected_steps",
    "convergence_failures",
    "error_test_failures",
    "rhs_evaluations",
    "jacobian_evaluations",
    "method_switches",
    "clamped_components",
)


@dataclass(frozen=True)
class PatientModel:
    """Everything computed once per patient before integration starts."""
    covariates: PatientCovariates
    pk: PKParameters
    hybrid: HybridCoefficients
    ke0: Ke0Result


def prepare_patient(covariates: PatientCovariates, config: Optional[ModelConfig] = None) -> PatientModel:
    """
    Covariates -> PK parameters -> hybrid coefficients -> ke0.

    Raises InvalidCovariate or InvalidCompartmentModel. A missing numerical
    ke0 is not an error: the regression estimate is used and tagged.
    """
    config = config or default_config()
    pk = derive_pk_parameters(covariates, config)
    hybrid = hybrid_from_parameters(pk)
    ke0 = determine_ke0(covariates, hybrid, config.ke0)
    return PatientModel(covariates=covariates, pk=pk.with_ke0(ke0.value), hybrid=hybrid, ke0=ke0)


class SimulationRun:
    """
    One patient's run, advanced one tick at a time.

    patient            : PatientModel from `prepare_patient`
    dose_schedule      : DoseSchedule
    duration_min       : simulated horizon (min)
    tick_min           : output resolution (min)
    integrator         : strategy name ("multistep", "lsoda", "euler") or class
    settings           : IntegratorSettings (tolerances, step control)
    effect_site        : "ode" integrates ce as a fourth state;
                         "hybrid" updates ce with VHAC once per tick
    degraded_fallback  : switch to fixed-step Euler instead of failing
    config             : ModelConfig for the VHAC thresholds

    Steps are atomic: `step()` either returns the next TickRecord or raises.
    """

    def __init__(self, patient: PatientModel, dose_schedule: DoseSchedule, duration_min: float, *,
                 tick_min: float = 1.0 / 60.0, integrator: Union[str, type] = "multistep",
                 settings: Optional[IntegratorSettings] = None, effect_site: EffectSiteMode = "ode",
                 degraded_fallback: bool = False, config: Optional[ModelConfig] = None):
        if not (duration_min > 0) or not math.isfinite(duration_min):
            raise ConfigurationError(f"duration_min must be > 0 (got {duration_min}).")
        if not (tick_min > 0) or not math.isfinite(tick_min):
            raise ConfigurationError(f"tick_min must be > 0 (got {tick_min}).")
        if effect_site not in ("ode", "hybrid"):
            raise ConfigurationError(f"effect_site must be 'ode' or 'hybrid' (got {effect_site!r}).")
        validate_schedule(dose_schedule)

        self.config = config or default_config()
        self.patient = patient
        self.duration_min = float(duration_min)
        self.tick_min = float(tick_min)
        self.settings = validate_integrator_settings(settings or self.config.integrator)
        self.effect_site = effect_site
        self.degraded_fallback = degraded_fallback
        self._strategy = resolve_integrator(integrator)

        self._n_ticks = max(1, math.ceil(self.duration_min / self.tick_min - 1e-9))
        self._tick_index = 0
        self._t = 0.0
        self._y = np.zeros(4)
        self._integrator = None
        self._segment_end = 0.0
        self._rate = 0.0
        self._segments = 0
        self._degraded = False
        self._totals = Counter()
        self._vhac = Counter()

        self._set_schedule(dose_schedule)

    # ------------------------------------------------------------------
    @property
    def t(self) -> float:
        return self._t

    @property
    def finished(self) -> bool:
        return self._tick_index >= self._n_ticks

    @property
    def n_ticks(self) -> int:
        return self._n_ticks

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def state(self) -> SimulationState:
        return SimulationState.from_array(self._y)

    @property
    def diagnostics(self) -> IntegratorDiagnostics:
        """Counters summed over every integrator of this run, status of the active one."""
        d = self._integrator.diagnostics
        merged = {name: self._totals[name] + getattr(d, name) for name in _COUNTERS}
        return replace(d, degraded=self._degraded or d.degraded, **merged)

    def record(self) -> TickRecord:
        """Snapshot of the current time point."""
        d = self.diagnostics
        return TickRecord(t_min=self._t, state=self.state, cp=self._y[0] / self.patient.pk.V1,
                          accepted_steps=d.accepted_steps, rejected_steps=d.rejected_steps,
                          method=d.method, order=d.order)

    def step(self) -> TickRecord:
        """Advance one tick."""
        if self.finished:
            raise RuntimeError("Simulation already reached its duration.")
        target = (self._tick_index + 1) * self.tick_min
        if target >= self.duration_min - 1e-9 * self.duration_min:
            target = self.duration_min

        while self._segment_end < self.duration_min and target >= self._segment_end - self._tol(self._segment_end):
            boundary = self._segment_end
            self._advance(boundary)
            self._enter_boundary(boundary)
            if abs(target - boundary) <= self._tol(boundary):
                target = boundary
        self._advance(target)
        self._tick_index += 1
        return self.record()

    def update_schedule(self, dose_schedule: DoseSchedule) -> None:
        """
        Replace the dose schedule from the current time on.

        The integrator state is discarded and rebuilt from the current
        compartment state. Boluses of the new schedule at exactly the
        current time are given now.
        """
        validate_schedule(dose_schedule)
        self._set_schedule(dose_schedule)

    # ------------------------------------------------------------------
    def _tol(self, t: float) -> float:
        return 1e-9 * max(1.0, abs(t))

    def _set_schedule(self, dose_schedule: DoseSchedule) -> None:
        self._schedule = dose_schedule
        self._boundaries = segment_boundaries(dose_schedule, self._t, self.duration_min)
        self._enter_boundary(self._t)

    def _enter_boundary(self, tb: float) -> None:
        """Apply boluses at tb and open the segment starting there."""
        amount = boluses_at(self._schedule, tb)
        if amount:
            self._y[0] += amount
            logger.debug("t=%.4f min: bolus %.4g mg", tb, amount)
        later = [b for b in self._boundaries if b > tb + self._tol(tb)]
        seg_end = later[0] if later else self.duration_min
        self._rate = infusion_rate_at(self._schedule, tb)
        self._open_segment(tb, seg_end, self._strategy)

    def _open_segment(self, t0: float, t1: float, strategy) -> None:
        self._close_integrator()
        rhs = make_rhs(self.patient.pk, self._rate, effect_site=self.effect_site == "ode")
        y0 = self._y if self.effect_site == "ode" else self._y[:3]
        self._integrator = strategy(rhs, t0, y0, self.settings, t_crit=t1, nonnegative=True)
        self._segment_end = t1
        self._segments += 1

    def _close_integrator(self) -> None:
        if self._integrator is None:
            return
        d = self._integrator.diagnostics
        for name in _COUNTERS:
            self._totals[name] += getattr(d, name)
        self._integrator = None

    def _advance(self, t: float) -> None:
        if t <= self._t:
            return
        try:
            y = self._integrator.advance_to(t)
        except IntegrationError as exc:
            if not self.degraded_fallback or self._degraded:
                raise
            logger.warning("%s integrator failed at t=%.4f min (%s); continuing in degraded fixed-step mode",
                           self._integrator.diagnostics.method, self._t, exc)
            self._degraded = True
            self._strategy = FixedStepEulerIntegrator
            self._open_segment(self._t, self._segment_end, FixedStepEulerIntegrator)
            self._segments -= 1
            y = self._integrator.advance_to(t)

        if self.effect_site == "ode":
            self._y = np.array(y, dtype=float)
        else:
            pk = self.patient.pk
            cp0 = self._y[0] / pk.V1
            cp1 = y[0] / pk.V1
            ce, regime = update_effect_site(cp0, cp1, self._y[3], pk.ke0, t - self._t,
                                            self.config.effect_site)
            self._vhac[regime.value] += 1
            self._y = np.array([y[0], y[1], y[2], max(ce, 0.0)], dtype=float)
        self._t = t

    def collect(self, records: list[TickRecord]) -> SimulationResult:
        """Column-wise result from the records produced so far."""
        states = np.array([[r.state.a1, r.state.a2, r.state.a3, r.state.ce] for r in records], dtype=float)
        states = states.reshape(-1, 4)
        return SimulationResult(
            t_min=np.array([r.t_min for r in records], dtype=float),
            a1=states[:, 0],
            a2=states[:, 1],
            a3=states[:, 2],
            ce=states[:, 3],
            cp=np.array([r.cp for r in records], dtype=float),
            accepted_steps=np.array([r.accepted_steps for r in records], dtype=int),
            rejected_steps=np.array([r.rejected_steps for r in records], dtype=int),
            order=np.array([r.order for r in records], dtype=int),
            method=tuple(r.method for r in records),
            pk=self.patient.pk,
            hybrid=self.patient.hybrid,
            ke0=self.patient.ke0,
            diagnostics=self.diagnostics,
            degraded=self._degraded,
            segments=self._segments,
            vhac_regimes=dict(self._vhac),
        )


def run_simulation(covariates: PatientCovariates, dose_schedule: DoseSchedule, duration_min: float, *,
                   tick_s: float = 1.0, integrator: Union[str, type] = "multistep",
                   settings: Optional[IntegratorSettings] = None, effect_site: EffectSiteMode = "ode",
                   degraded_fallback: bool = False, should_cancel: Optional[Callable[[], bool]] = None,
                   timeout_s: Optional[float] = None, config: Optional[ModelConfig] = None) -> SimulationOutcome:
    """
    Simulate one patient and return a SimulationOutcome; engine errors come
    back as `outcome.failure`, never as exceptions.

    Parameters
    ----------
    covariates : PatientCovariates
    dose_schedule : DoseSchedule
    duration_min : float
        Simulated horizon in minutes.
    tick_s : float, default 1.0
        Output resolution in seconds.
    integrator : str or class, default "multistep"
        Integration strategy, resolved once.
    settings : IntegratorSettings, optional
        Tolerances and step control; the model configuration's by default.
    effect_site : "ode" or "hybrid"
    degraded_fallback : bool
        Continue with fixed-step Euler after a fatal integrator failure.
    should_cancel : callable, optional
        Polled between ticks; returning True stops the run.
    timeout_s : float, optional
        Wall-clock budget, checked between ticks.

    Returns
    -------
    SimulationOutcome
        `result` holds the per-tick output (partial if the run stopped early).
    """
    config = config or default_config()
    try:
        validate_covariates(covariates, config)
        validate_schedule(dose_schedule)
        patient = prepare_patient(covariates, config)
        run = SimulationRun(patient, dose_schedule, duration_min, tick_min=tick_s / 60.0,
                            integrator=integrator, settings=settings, effect_site=effect_site,
                            degraded_fallback=degraded_fallback, config=config)
    except RemisimError as exc:
        return SimulationOutcome(failure=EngineFailure(code=exc.code, message=str(exc)))

    records = [run.record()]
    deadline = None if timeout_s is None else time.monotonic() + timeout_s
    while not run.finished:
        if should_cancel is not None and should_cancel():
            logger.info("Run cancelled at t=%.4f min", run.t)
            return SimulationOutcome(result=run.collect(records), cancelled=True)
        if deadline is not None and time.monotonic() > deadline:
            logger.info("Run timed out at t=%.4f min", run.t)
            return SimulationOutcome(result=run.collect(records), cancelled=True,
                                     failure=EngineFailure(code="Timeout",
                                                           message=f"Wall-clock budget of {timeout_s} s exceeded."))
        try:
            records.append(run.step())
        except RemisimError as exc:
            logger.error("Run failed at t=%.4f min: %s", run.t, exc)
            return SimulationOutcome(result=run.collect(records),
                                     failure=EngineFailure(code=exc.code, message=str(exc)))
    return SimulationOutcome(result=run.collect(records))
