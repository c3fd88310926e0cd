# src/remisim/ke0.py
"""
ke0 determination.

Numerical path: find ke0 such that the effect-site response to a bolus
peaks exactly at the model's time to peak effect. Setting dCe/dt = 0 at
t_peak and dividing by ke0 gives

    f(k) = sum_i X_i / (k - l_i) * (k e^{-k tp} - l_i e^{-l_i tp}) = 0

which is solved with Brent's method inside a fixed bracket. Outside the
bracket there is no numerical answer; the regression estimate is used
instead and the result says so.
"""
from __future__ import annotations

import logging
import math
from typing import Optional

from scipy.optimize import root_scalar

from .config import Ke0Settings, default_config
from .errors import ConfigurationError, NoKe0SolutionInBracket
from .types import HybridCoefficients, Ke0Result, PatientCovariates

logger = logging.getLogger(__name__)

# Relative distance below which k - l_i is treated as zero in f(k)
_COINCIDENT_RTOL = 1e-9


def peak_condition(ke0: float, hybrid: HybridCoefficients, t_peak: float) -> float:
    """Time derivative of the normalized effect-site bolus response at t_peak, divided by ke0."""
    total = 0.0
    ek = math.exp(-ke0 * t_peak)
    for x, lam in zip(hybrid.coefficients, hybrid.rates):
        el = math.exp(-lam * t_peak)
        d = ke0 - lam
        if abs(d) < _COINCIDENT_RTOL * max(ke0, lam):
            total += x * (1.0 - lam * t_peak) * el
        else:
            total += x / d * (ke0 * ek - lam * el)
    return total


def solve_ke0(hybrid: HybridCoefficients, settings: Optional[Ke0Settings] = None) -> tuple[float, int]:
    """
    Root of `peak_condition` in settings.bracket.

    Returns:
        (ke0, iterations)

    Raises:
        NoKe0SolutionInBracket: no sign change across the bracket, or no convergence.
    """
    settings = settings or default_config().ke0
    lo, hi = settings.bracket
    tp = settings.t_peak_min

    def residual(k):
        return peak_condition(k, hybrid, tp)

    f_lo, f_hi = residual(lo), residual(hi)
    if f_lo == 0.0:
        return lo, 0
    if f_hi == 0.0:
        return hi, 0
    if not (math.isfinite(f_lo) and math.isfinite(f_hi)) or f_lo * f_hi > 0:
        raise NoKe0SolutionInBracket(
            f"Peak condition does not change sign on [{lo}, {hi}] "
            f"(f(lo)={f_lo:.3e}, f(hi)={f_hi:.3e}).",
            f_low=f_lo, f_high=f_hi,
        )

    try:
        sol = root_scalar(residual, bracket=[lo, hi], method="brentq",
                          xtol=settings.xtol, rtol=settings.rtol, maxiter=settings.max_iterations)
    except ValueError as exc:
        raise NoKe0SolutionInBracket(f"Bracketed search failed: {exc}", f_low=f_lo, f_high=f_hi) from exc
    if not sol.converged:
        raise NoKe0SolutionInBracket(
            f"Bracketed search did not converge in {settings.max_iterations} iterations ({sol.flag}).",
            f_low=f_lo, f_high=f_hi,
        )
    return float(sol.root), int(sol.iterations)


class RegressionKe0Estimator:
    """
    Closed-form ke0 estimate from covariates.

        log(ke0) = intercept + sum_k coefficient_k * prod(features_k)

    Available features:
      age_z, weight_z, height_z : (x - center) / scale
      sex                       : 0 male, 1 female
      asa                       : 0 I-II, 1 III-IV
      log_age_ratio             : log(age / age center)
      log_weight_ratio          : log(weight / weight center)
      gauss_age, gauss_weight, gauss_height : exp(-z**2 / 2) of the matching z

    The estimate is clamped into settings.band; this is the only place
    where ke0 is clamped.
    """

    def __init__(self, settings: Optional[Ke0Settings] = None):
        self.settings = settings or default_config().ke0
        needed = {f for term in self.settings.terms for f in term.features}
        for feat in needed:
            if feat not in _FEATURES:
                raise ConfigurationError(f"Unknown regression feature {feat!r}.")
            base = _FEATURES[feat]
            if base is not None and base not in self.settings.standardization:
                raise ConfigurationError(f"Feature {feat!r} needs standardization for {base!r}.")

    def features(self, cov: PatientCovariates) -> dict[str, float]:
        std = self.settings.standardization
        values = {"sex": float(cov.sex_value), "asa": float(cov.asa_value)}
        raw = {"age": cov.age, "weight": cov.weight, "height": cov.height}
        for name, s in std.items():
            if name in raw:
                z = (raw[name] - s.center) / s.scale
                values[f"{name}_z"] = z
                values[f"gauss_{name}"] = math.exp(-0.5 * z * z)
        if "age" in std:
            values["log_age_ratio"] = math.log(cov.age / std["age"].center)
        if "weight" in std:
            values["log_weight_ratio"] = math.log(cov.weight / std["weight"].center)
        return values

    def log_ke0(self, cov: PatientCovariates) -> float:
        feats = self.features(cov)
        total = self.settings.intercept
        for term in self.settings.terms:
            product = 1.0
            for name in term.features:
                product *= feats[name]
            total += term.coefficient * product
        return total

    def estimate(self, cov: PatientCovariates) -> float:
        lo, hi = self.settings.band
        raw = math.exp(self.log_ke0(cov))
        value = min(hi, max(lo, raw))
        if value != raw:
            logger.debug("Regression ke0 %.4g clamped to %.4g", raw, value)
        return value


# feature name -> covariate whose standardization it needs
_FEATURES = {
    "sex": None,
    "asa": None,
    "age_z": "age",
    "weight_z": "weight",
    "height_z": "height",
    "log_age_ratio": "age",
    "log_weight_ratio": "weight",
    "gauss_age": "age",
    "gauss_weight": "weight",
    "gauss_height": "height",
}


def determine_ke0(cov: PatientCovariates, hybrid: HybridCoefficients,
                  settings: Optional[Ke0Settings] = None) -> Ke0Result:
    """
    Compute both ke0 values and pick the one in use.

    The numerical root is preferred; the regression estimate is used when no
    root lies in the bracket. Both values are always reported.
    """
    settings = settings or default_config().ke0
    regression = RegressionKe0Estimator(settings).estimate(cov)
    try:
        value, iterations = solve_ke0(hybrid, settings)
    except NoKe0SolutionInBracket as exc:
        logger.warning("Numerical ke0 unavailable (%s); using regression estimate %.4f /min", exc, regression)
        return Ke0Result(value=regression, source="regression", numerical=None, regression=regression,
                         converged=False, iterations=0, reason=str(exc))
    logger.info("ke0 %.4f /min from numerical solver (%d iterations); regression estimate %.4f /min",
                value, iterations, regression)
    return Ke0Result(value=value, source="numerical", numerical=value, regression=regression,
                     converged=True, iterations=iterations)
