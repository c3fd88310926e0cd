# src/remisim/types.py
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Literal, Optional, Sequence

import numpy as np

# All time is kept in MINUTES internally, amounts in mg, volumes in L,
# concentrations in mg/L (== ug/mL).
Sex = Literal["male", "female"]
AsaClass = Literal["I-II", "III-IV"]
DoseKind = Literal["bolus", "infusion"]
Ke0Source = Literal["numerical", "regression"]
EffectSiteMode = Literal["ode", "hybrid"]


@dataclass(frozen=True)
class PatientCovariates:
    """
    Patient description used for one simulation run.

    age      : years
    weight   : total body weight, kg
    height   : cm
    sex      : "male" or "female"
    asa      : ASA physical status, "I-II" or "III-IV"
    """
    age: float
    weight: float
    height: float
    sex: Sex = "male"
    asa: AsaClass = "I-II"

    @property
    def sex_value(self) -> int:
        return 1 if self.sex == "female" else 0

    @property
    def asa_value(self) -> int:
        return 1 if self.asa == "III-IV" else 0

    @property
    def bmi(self) -> float:
        return self.weight / (self.height / 100.0) ** 2


@dataclass(frozen=True)
class PKParameters:
    """
    Three-compartment parameter set for one patient.

    Volumes in L, clearances in L/min, rate constants in 1/min.
    ke0 is None until the ke0 subsystem has produced a value.
    """
    V1: float
    V2: float
    V3: float
    CL: float
    Q2: float
    Q3: float
    k10: float
    k12: float
    k21: float
    k13: float
    k31: float
    ke0: Optional[float] = None

    def with_ke0(self, ke0: float) -> "PKParameters":
        return replace(self, ke0=float(ke0))

    @property
    def rate_constants(self) -> tuple[float, float, float, float, float]:
        return self.k10, self.k12, self.k21, self.k13, self.k31


@dataclass(frozen=True)
class HybridCoefficients:
    """
    Tri-exponential description of the plasma impulse response:

        Cp(t) = dose / V1 * (A e^{-alpha t} + B e^{-beta t} + C e^{-gamma t})

    with alpha <= beta <= gamma.
    """
    alpha: float
    beta: float
    gamma: float
    A: float
    B: float
    C: float

    @property
    def rates(self) -> np.ndarray:
        return np.array([self.alpha, self.beta, self.gamma])

    @property
    def coefficients(self) -> np.ndarray:
        return np.array([self.A, self.B, self.C])


@dataclass(frozen=True)
class Ke0Result:
    """
    Outcome of ke0 determination.

    value       : ke0 in use (1/min)
    source      : which path produced `value`
    numerical   : root-finder result, None when no root lies in the bracket
    regression  : regression estimate (always computed)
    converged   : True when the root finder converged
    iterations  : root-finder iterations (0 when it did not run)
    reason      : why the numerical path was not used, if it was not
    """
    value: float
    source: Ke0Source
    numerical: Optional[float]
    regression: float
    converged: bool
    iterations: int = 0
    reason: Optional[str] = None


@dataclass(frozen=True)
class DoseEvent:
    """
    A single dosing event.

    time_min          : when the event starts (minutes from t=0)
    kind              : "bolus" or "infusion"
    amount_mg         : bolus size (bolus only)
    rate_mg_per_min   : infusion rate (infusion only)
    duration_min      : infusion length; None runs to the end of the simulation
    """
    time_min: float
    kind: DoseKind
    amount_mg: float = 0.0
    rate_mg_per_min: float = 0.0
    duration_min: Optional[float] = None

    @property
    def end_min(self) -> float:
        if self.kind == "bolus":
            return self.time_min
        if self.duration_min is None:
            return float("inf")
        return self.time_min + self.duration_min


@dataclass(frozen=True)
class DoseSchedule:
    """
    A collection of DoseEvent objects. Order doesn't matter; builders sort by time.
    """
    events: Sequence[DoseEvent] = ()


@dataclass(frozen=True)
class SimulationState:
    """Compartment masses (mg) and effect-site concentration (ug/mL)."""
    a1: float
    a2: float
    a3: float
    ce: float

    def as_array(self) -> np.ndarray:
        return np.array([self.a1, self.a2, self.a3, self.ce], dtype=float)

    @classmethod
    def from_array(cls, y) -> "SimulationState":
        return cls(float(y[0]), float(y[1]), float(y[2]), float(y[3]))


@dataclass
class IntegratorDiagnostics:
    """Counters and current status reported by an integrator strategy."""
    method: str
    order: int = 1
    step_size: float = 0.0
    accepted_steps: int = 0
    rejected_steps: int = 0
    convergence_failures: int = 0
    error_test_failures: int = 0
    rhs_evaluations: int = 0
    jacobian_evaluations: int = 0
    method_switches: int = 0
    clamped_components: int = 0
    degraded: bool = False


@dataclass(frozen=True)
class TickRecord:
    """Output of one simulation tick."""
    t_min: float
    state: SimulationState
    cp: float
    accepted_steps: int
    rejected_steps: int
    method: str
    order: int


@dataclass(frozen=True)
class SimulationResult:
    """
    Per-tick output of a run, column-wise.

    t_min, a1, a2, a3, ce, cp, accepted_steps, rejected_steps, order : arrays, one entry per tick
    method          : active method name per tick
    pk              : PK parameters in use (ke0 included)
    hybrid          : hybrid coefficients of the patient
    ke0             : tagged ke0 result
    diagnostics     : cumulative integrator counters at the end of the run
    degraded        : True when the fixed-step fallback took over
    segments        : number of integration segments
    vhac_regimes    : counts per VHAC branch (hybrid effect-site mode only)
    """
    t_min: np.ndarray
    a1: np.ndarray
    a2: np.ndarray
    a3: np.ndarray
    ce: np.ndarray
    cp: np.ndarray
    accepted_steps: np.ndarray
    rejected_steps: np.ndarray
    order: np.ndarray
    method: tuple[str, ...]
    pk: PKParameters
    hybrid: HybridCoefficients
    ke0: Ke0Result
    diagnostics: IntegratorDiagnostics
    degraded: bool = False
    segments: int = 1
    vhac_regimes: dict[str, int] = field(default_factory=dict)


@dataclass(frozen=True)
class EngineFailure:
    """Discriminated error value returned at the engine boundary."""
    code: str
    message: str


@dataclass(frozen=True)
class SimulationOutcome:
    """
    Either a result or a failure. `result` may be a partial result when the
    run failed or was cancelled after some ticks were produced.
    """
    result: Optional[SimulationResult] = None
    failure: Optional[EngineFailure] = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.failure is None and not self.cancelled
