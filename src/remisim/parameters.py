# src/remisim/parameters.py
"""
Covariate model: patient covariates -> volumes, clearances, rate constants.

    wr  = weight / reference weight
    V1  = th1 * wr^ev
    V2  = th2 * wr^ev
    V3  = th3 * wr^ev * (age / reference age)^th8
    CL  = th4 * wr^ec * exp(th9 * sex + th10 * asa)
    Q2  = th5 * wr^ec
    Q3  = th6 * wr^ec

with sex 0 = male / 1 = female and asa 0 = I-II / 1 = III-IV.
"""
from __future__ import annotations

import math
from typing import Optional

from .config import ModelConfig, default_config
from .errors import InvalidCovariate
from .types import PatientCovariates, PKParameters


def validate_covariates(cov: PatientCovariates, config: Optional[ModelConfig] = None) -> None:
    """Raise InvalidCovariate for anything outside the model's domain. Nothing is clamped."""
    bounds = (config or default_config()).bounds
    _validate_range("age", cov.age, bounds.max_age_yr)
    _validate_range("weight", cov.weight, bounds.max_weight_kg)
    _validate_range("height", cov.height, bounds.max_height_cm)
    if cov.sex not in ("male", "female"):
        raise InvalidCovariate(f"sex must be 'male' or 'female' (got {cov.sex!r}).")
    if cov.asa not in ("I-II", "III-IV"):
        raise InvalidCovariate(f"asa must be 'I-II' or 'III-IV' (got {cov.asa!r}).")


def derive_pk_parameters(cov: PatientCovariates, config: Optional[ModelConfig] = None) -> PKParameters:
    """
    Compute the three-compartment parameters of one patient (ke0 left unset).

    Pure function: identical covariates give identical parameters.
    """
    config = config or default_config()
    validate_covariates(cov, config)
    pk = config.pk

    wr = cov.weight / pk.reference_weight_kg
    vol_scale = wr ** pk.volume_weight_exponent
    cl_scale = wr ** pk.clearance_weight_exponent

    V1 = pk.V1 * vol_scale
    V2 = pk.V2 * vol_scale
    V3 = pk.V3 * vol_scale * (cov.age / pk.reference_age_yr) ** pk.v3_age_exponent
    CL = pk.CL * cl_scale * math.exp(pk.sex_on_cl * cov.sex_value + pk.asa_on_cl * cov.asa_value)
    Q2 = pk.Q2 * cl_scale
    Q3 = pk.Q3 * cl_scale

    return PKParameters(
        V1=V1, V2=V2, V3=V3, CL=CL, Q2=Q2, Q3=Q3,
        k10=CL / V1,
        k12=Q2 / V1,
        k21=Q2 / V2,
        k13=Q3 / V1,
        k31=Q3 / V3,
    )


def _validate_range(name: str, x: float, upper: float) -> None:
    try:
        value = float(x)
    except (TypeError, ValueError) as exc:
        raise InvalidCovariate(f"{name} must be a number (got {x!r}).") from exc
    if not math.isfinite(value) or not (0 < value <= upper):
        raise InvalidCovariate(f"{name} must be in (0, {upper}] (got {x}).")
