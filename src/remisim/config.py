# src/remisim/config.py
"""
Model constants and numerical policy, loaded from YAML.

The packaged default lives in `data/masui_2022.yaml`. Everything here is
frozen after loading and may be shared between independent runs.
"""
from __future__ import annotations

import math
from dataclasses import dataclass, fields, replace
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping, Optional, Union

import yaml

from .errors import ConfigurationError

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent / "data" / "masui_2022.yaml"
INTERACTION_KE0_TABLE_PATH = DEFAULT_CONFIG_PATH.with_name("masui_2022_ke0_interactions.yaml")


@dataclass(frozen=True)
class PKConstants:
    V1: float
    V2: float
    V3: float
    CL: float
    Q2: float
    Q3: float
    v3_age_exponent: float
    sex_on_cl: float
    asa_on_cl: float
    reference_weight_kg: float
    reference_age_yr: float
    volume_weight_exponent: float = 1.0
    clearance_weight_exponent: float = 1.0


@dataclass(frozen=True)
class CovariateBounds:
    max_age_yr: float = 120.0
    max_weight_kg: float = 300.0
    max_height_cm: float = 250.0


@dataclass(frozen=True)
class RegressionTerm:
    coefficient: float
    features: tuple[str, ...]


@dataclass(frozen=True)
class Standardization:
    center: float
    scale: float


@dataclass(frozen=True)
class Ke0Settings:
    """
    t_peak_min      : clinical time to peak effect (min)
    bracket         : ke0 search interval (1/min)
    xtol, rtol      : root tolerances on ke0
    max_iterations  : bound on root-finder iterations
    intercept, terms, standardization : regression table on log(ke0)
    band            : plausible ke0 range the regression estimate is clamped to
    """
    t_peak_min: float
    bracket: tuple[float, float]
    xtol: float
    rtol: float
    max_iterations: int
    intercept: float
    terms: tuple[RegressionTerm, ...]
    standardization: Mapping[str, Standardization]
    band: tuple[float, float]


@dataclass(frozen=True)
class EffectSiteSettings:
    negligible_cp_change: float = 1.0e-12
    small_step_threshold: float = 1.0e-3


@dataclass(frozen=True)
class StepControl:
    """
    Step, order and method-switch policy of the multistep integrator.

    Failure bounds and shrink factors apply to a single step attempt;
    the stiffness thresholds act on h * ||J||_inf. The local error test runs
    at `local_error_fraction` of the user tolerances so that the error
    accumulated over a run stays within rtol.
    """
    local_error_fraction: float = 0.005
    max_corrector_iterations: int = 3
    corrector_divergence_ratio: float = 2.0
    convergence_rate_floor: float = 0.2
    initial_convergence_rate: float = 0.7
    convergence_rate_boost: float = 1.5
    max_convergence_failures: int = 10
    max_error_test_failures: int = 10
    error_failures_before_restart: int = 3
    convergence_failure_shrink: float = 0.25
    error_failure_max_shrink: float = 0.5
    repeated_failure_max_shrink: float = 0.2
    restart_shrink: float = 0.1
    same_order_bias: float = 1.2
    order_down_bias: float = 1.3
    order_up_bias: float = 1.4
    min_growth_to_change: float = 1.1
    first_step_max_growth: float = 1.0e4
    max_growth: float = 10.0
    failure_max_growth: float = 2.0
    jacobian_age_limit: int = 20
    jacobian_rc_tolerance: float = 0.3
    stiffness_check_interval: int = 20
    stiffness_upper: float = 0.2
    stiffness_lower: float = 0.02
    max_steps_per_call: int = 100000


@dataclass(frozen=True)
class IntegratorSettings:
    rtol: float = 1.0e-8
    atol: float = 1.0e-12
    hmin: float = 0.0
    hmax: float = math.inf
    euler_step_min: float = 1.0 / 60.0
    control: StepControl = StepControl()


@dataclass(frozen=True)
class ModelConfig:
    name: str
    pk: PKConstants
    bounds: CovariateBounds
    ke0: Ke0Settings
    effect_site: EffectSiteSettings
    integrator: IntegratorSettings


def load_config(path: Optional[Union[str, Path]] = None) -> ModelConfig:
    """
    Load a model configuration file.

    Args:
        path: YAML file; None loads the packaged Masui 2022 configuration.

    Raises:
        ConfigurationError: missing file, missing keys or invalid values.
    """
    path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
    except OSError as exc:
        raise ConfigurationError(f"Cannot read configuration {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Configuration {path} must be a mapping.")
    return parse_config(raw)


@lru_cache(maxsize=1)
def default_config() -> ModelConfig:
    return load_config()


def parse_config(raw: Mapping[str, Any]) -> ModelConfig:
    pk_raw = _section(raw, "pk")
    theta = _section(pk_raw, "theta")
    pk = PKConstants(
        **{k: _positive(theta, k) for k in ("V1", "V2", "V3", "CL", "Q2", "Q3")},
        v3_age_exponent=_number(pk_raw, "v3_age_exponent"),
        sex_on_cl=_number(pk_raw, "sex_on_cl"),
        asa_on_cl=_number(pk_raw, "asa_on_cl"),
        reference_weight_kg=_positive(pk_raw, "reference_weight_kg"),
        reference_age_yr=_positive(pk_raw, "reference_age_yr"),
        volume_weight_exponent=_number(pk_raw, "volume_weight_exponent", 1.0),
        clearance_weight_exponent=_number(pk_raw, "clearance_weight_exponent", 1.0),
    )

    bounds = CovariateBounds(**_overrides(raw.get("covariate_bounds") or {}, CovariateBounds))

    ke0_raw = _section(raw, "ke0")
    ke0 = Ke0Settings(
        t_peak_min=_positive(ke0_raw, "t_peak_min"),
        bracket=_interval(ke0_raw, "bracket"),
        xtol=_positive(ke0_raw, "xtol"),
        rtol=_positive(ke0_raw, "rtol"),
        max_iterations=int(_positive(ke0_raw, "max_iterations")),
        **_regression_table(_section(ke0_raw, "regression")),
    )

    effect_site = EffectSiteSettings(**_overrides(raw.get("effect_site") or {}, EffectSiteSettings))

    integ_raw = dict(raw.get("integrator") or {})
    control = StepControl(**_overrides(integ_raw.pop("step_control", None) or {}, StepControl))
    if integ_raw.get("hmax") is None:
        integ_raw.pop("hmax", None)
    integrator = validate_integrator_settings(
        IntegratorSettings(control=control, **_overrides(integ_raw, IntegratorSettings))
    )

    return ModelConfig(name=str(raw.get("name", "unnamed")), pk=pk, bounds=bounds, ke0=ke0,
                       effect_site=effect_site, integrator=integrator)


def load_ke0_regression(path: Union[str, Path], config: ModelConfig) -> ModelConfig:
    """
    Copy of `config` with the ke0 regression table read from `path`.

    The file holds a single regression mapping (intercept, terms,
    standardization, band), as under `ke0.regression` in a full configuration.
    """
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = yaml.safe_load(fh)
    except OSError as exc:
        raise ConfigurationError(f"Cannot read regression table {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(raw, Mapping):
        raise ConfigurationError(f"Regression table {path} must be a mapping.")
    return replace(config, ke0=replace(config.ke0, **_regression_table(raw)))


def validate_integrator_settings(settings: IntegratorSettings) -> IntegratorSettings:
    """
    Check tolerances, step bounds and the switching thresholds.

    Used for the loaded configuration and again for every run, since callers
    may pass their own settings.

    Raises:
        ConfigurationError: on the first invalid value.
    """
    for name in ("rtol", "atol", "euler_step_min"):
        value = getattr(settings, name)
        if not (value > 0 and math.isfinite(value)):
            raise ConfigurationError(f"Integrator {name} must be finite and > 0 (got {value}).")
    if not (settings.hmin >= 0 and math.isfinite(settings.hmin)):
        raise ConfigurationError(f"Integrator hmin must be finite and >= 0 (got {settings.hmin}).")
    if not (settings.hmax > settings.hmin):
        raise ConfigurationError(f"Integrator hmax must exceed hmin (got {settings.hmax} <= {settings.hmin}).")
    control = settings.control
    if not (0 < control.local_error_fraction <= 1):
        raise ConfigurationError(
            f"local_error_fraction must lie in (0, 1] (got {control.local_error_fraction})."
        )
    if control.max_steps_per_call < 1:
        raise ConfigurationError(f"max_steps_per_call must be >= 1 (got {control.max_steps_per_call}).")
    if control.stiffness_lower >= control.stiffness_upper:
        raise ConfigurationError("stiffness_lower must be below stiffness_upper.")
    return settings


# --------------------------
# Small parsing helpers
# --------------------------
def _section(raw: Mapping[str, Any], key: str) -> Mapping[str, Any]:
    value = raw.get(key)
    if not isinstance(value, Mapping):
        raise ConfigurationError(f"Missing configuration section '{key}'.")
    return value

def _regression_table(reg: Mapping[str, Any]) -> dict[str, Any]:
    terms = []
    for entry in reg.get("terms") or ():
        feats = entry.get("features")
        if not feats:
            raise ConfigurationError("Every regression term needs a non-empty 'features' list.")
        terms.append(RegressionTerm(coefficient=_number(entry, "coefficient"),
                                    features=tuple(str(f) for f in feats)))
    standardization = {
        name: Standardization(center=_number(entry, "center"), scale=_positive(entry, "scale"))
        for name, entry in (reg.get("standardization") or {}).items()
    }
    return dict(intercept=_number(reg, "intercept"), terms=tuple(terms),
                standardization=standardization, band=_interval(reg, "band"))

def _number(raw: Mapping[str, Any], key: str, default: Optional[float] = None) -> float:
    value = raw.get(key, default)
    if value is None:
        raise ConfigurationError(f"Missing configuration value '{key}'.")
    try:
        value = float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"'{key}' must be a number (got {raw.get(key)!r}).") from exc
    if not math.isfinite(value):
        raise ConfigurationError(f"'{key}' must be finite (got {value}).")
    return value

def _positive(raw: Mapping[str, Any], key: str) -> float:
    value = _number(raw, key)
    if not (value > 0):
        raise ConfigurationError(f"'{key}' must be > 0 (got {value}).")
    return value

def _interval(raw: Mapping[str, Any], key: str) -> tuple[float, float]:
    value = raw.get(key)
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        raise ConfigurationError(f"'{key}' must be a two-element list.")
    lo, hi = float(value[0]), float(value[1])
    if not (0 < lo < hi):
        raise ConfigurationError(f"'{key}' must satisfy 0 < low < high (got {value}).")
    return lo, hi

def _overrides(raw: Mapping[str, Any], cls) -> dict[str, Any]:
    """Keep only keys `cls` knows, cast to the type of the field default."""
    known = {f.name: f for f in fields(cls)}
    unknown = set(raw) - set(known)
    if unknown:
        raise ConfigurationError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    out: dict[str, Any] = {}
    for key, value in raw.items():
        default = known[key].default
        cast = int if isinstance(default, int) and not isinstance(default, bool) else float
        try:
            out[key] = cast(value)
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"'{key}' must be a number (got {value!r}).") from exc
    return out
