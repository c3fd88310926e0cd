import math

import pytest

from remisim.dosing import bolus, schedule
from remisim.errors import InvalidCovariate
from remisim.parameters import derive_pk_parameters, validate_covariates
from remisim.simulate import run_simulation
from remisim.types import PatientCovariates


def test_reference_patient_uses_typical_values(reference_pk):
    """
    At the reference weight and age, male, ASA I-II, every covariate factor is 1
    and the parameters are the population thetas.
    """
    pk = reference_pk
    assert pk.V1 == pytest.approx(3.57)
    assert pk.V2 == pytest.approx(11.3)
    assert pk.V3 == pytest.approx(27.2)
    assert pk.CL == pytest.approx(1.03)
    assert pk.Q2 == pytest.approx(1.10)
    assert pk.Q3 == pytest.approx(0.401)

    assert pk.k10 == pytest.approx(1.03 / 3.57)
    assert pk.k12 == pytest.approx(1.10 / 3.57)
    assert pk.k21 == pytest.approx(1.10 / 11.3)
    assert pk.k13 == pytest.approx(0.401 / 3.57)
    assert pk.k31 == pytest.approx(0.401 / 27.2)
    assert pk.ke0 is None


def test_derivation_is_idempotent(scenario_patient, config):
    """Same covariates, bit-identical parameters."""
    first = derive_pk_parameters(scenario_patient, config)
    second = derive_pk_parameters(scenario_patient, config)
    assert first == second
    assert first.rate_constants == second.rate_constants


def test_covariate_effects(config):
    """Weight scales everything linearly, age only V3, sex and ASA only CL."""
    base = derive_pk_parameters(PatientCovariates(54.0, 67.3, 165.0), config)

    heavy = derive_pk_parameters(PatientCovariates(54.0, 134.6, 165.0), config)
    assert heavy.V1 == pytest.approx(2 * base.V1)
    assert heavy.Q3 == pytest.approx(2 * base.Q3)
    assert heavy.k10 == pytest.approx(base.k10)

    old = derive_pk_parameters(PatientCovariates(108.0, 67.3, 165.0), config)
    assert old.V3 == pytest.approx(base.V3 * 2 ** 0.308)
    assert old.V1 == base.V1 and old.CL == base.CL

    female = derive_pk_parameters(PatientCovariates(54.0, 67.3, 165.0, sex="female"), config)
    assert female.CL == pytest.approx(base.CL * math.exp(0.146))

    asa = derive_pk_parameters(PatientCovariates(54.0, 67.3, 165.0, asa="III-IV"), config)
    assert asa.CL == pytest.approx(base.CL * math.exp(-0.184))
    assert asa.V2 == base.V2


@pytest.mark.parametrize("cov", [
    PatientCovariates(age=55.0, weight=-5.0, height=170.0),
    PatientCovariates(age=55.0, weight=70.0, height=0.0),
    PatientCovariates(age=float("nan"), weight=70.0, height=170.0),
    PatientCovariates(age=55.0, weight=900.0, height=170.0),
    PatientCovariates(age=55.0, weight=70.0, height=170.0, sex="x"),
    PatientCovariates(age=55.0, weight=70.0, height=170.0, asa="V"),
])
def test_invalid_covariates_are_rejected(cov, config):
    """Out-of-domain covariates raise instead of producing odd volumes."""
    with pytest.raises(InvalidCovariate):
        validate_covariates(cov, config)
    with pytest.raises(InvalidCovariate):
        derive_pk_parameters(cov, config)


def test_negative_weight_comes_back_as_failure():
    """At the engine boundary the error is a value, not an exception."""
    cov = PatientCovariates(age=55.0, weight=-5.0, height=170.0)
    outcome = run_simulation(cov, schedule(bolus(12.0)), 10.0)

    assert not outcome.ok
    assert outcome.result is None
    assert outcome.failure.code == "InvalidCovariate"
    assert "weight" in outcome.failure.message
