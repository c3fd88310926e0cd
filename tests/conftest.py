import pytest

from remisim.config import default_config
from remisim.hybrid import hybrid_from_parameters
from remisim.parameters import derive_pk_parameters
from remisim.types import PatientCovariates


@pytest.fixture
def config():
    """Packaged Masui 2022 configuration."""
    return default_config()


@pytest.fixture
def reference_patient():
    """The model's reference individual: 54 y, 67.3 kg, 165 cm, male, ASA I-II."""
    return PatientCovariates(age=54.0, weight=67.3, height=165.0, sex="male", asa="I-II")


@pytest.fixture
def scenario_patient():
    """55 y, 70 kg, 170 cm, male, ASA I-II."""
    return PatientCovariates(age=55.0, weight=70.0, height=170.0, sex="male", asa="I-II")


@pytest.fixture
def reference_pk(reference_patient, config):
    return derive_pk_parameters(reference_patient, config)


@pytest.fixture
def reference_hybrid(reference_pk):
    return hybrid_from_parameters(reference_pk)
