import math

import pytest
import yaml

from remisim.config import DEFAULT_CONFIG_PATH, default_config, load_config, load_ke0_regression
from remisim.errors import ConfigurationError


def test_packaged_configuration(config):
    """Masui 2022 constants and the integrator policy are loaded from YAML."""
    assert config.pk.V1 == 3.57
    assert config.pk.Q3 == 0.401
    assert config.pk.asa_on_cl == -0.184
    assert config.ke0.t_peak_min == 2.6
    assert config.ke0.bracket == (0.15, 0.26)
    assert config.ke0.band == (0.1, 0.8)
    assert math.exp(config.ke0.intercept) == pytest.approx(0.22)
    assert config.integrator.rtol == 1e-8
    assert config.integrator.atol == 1e-12
    assert math.isinf(config.integrator.hmax)
    assert config.integrator.control.stiffness_upper > config.integrator.control.stiffness_lower
    assert config.integrator.control.first_step_max_growth == 1e4
    assert config.integrator.control.local_error_fraction == 0.005
    assert isinstance(config.integrator.control.max_corrector_iterations, int)


def test_default_configuration_is_shared():
    assert default_config() is default_config()


def _write(tmp_path, raw):
    path = tmp_path / "model.yaml"
    path.write_text(yaml.safe_dump(raw), encoding="utf-8")
    return path


def _packaged():
    with open(DEFAULT_CONFIG_PATH, "r", encoding="utf-8") as fh:
        return yaml.safe_load(fh)


def test_overrides_from_file(tmp_path):
    raw = _packaged()
    raw["integrator"]["rtol"] = 1e-6
    raw["integrator"]["step_control"]["stiffness_check_interval"] = 10
    cfg = load_config(_write(tmp_path, raw))
    assert cfg.integrator.rtol == 1e-6
    assert cfg.integrator.control.stiffness_check_interval == 10


def test_missing_section(tmp_path):
    raw = _packaged()
    del raw["pk"]
    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path, raw))


def test_unknown_step_control_key(tmp_path):
    raw = _packaged()
    raw["integrator"]["step_control"]["safety"] = 0.9
    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path, raw))


def test_inverted_stiffness_thresholds(tmp_path):
    raw = _packaged()
    raw["integrator"]["step_control"]["stiffness_lower"] = 0.5
    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path, raw))


def test_bad_bracket(tmp_path):
    raw = _packaged()
    raw["ke0"]["bracket"] = [0.26, 0.15]
    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path, raw))


def test_unreadable_files(tmp_path):
    with pytest.raises(ConfigurationError):
        load_config(tmp_path / "missing.yaml")
    broken = tmp_path / "broken.yaml"
    broken.write_text("pk: [unclosed", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(broken)
    listing = tmp_path / "list.yaml"
    listing.write_text("- 1\n- 2\n", encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_config(listing)


@pytest.mark.parametrize("key, value", [("rtol", 0.0), ("atol", -1e-12), ("hmin", -0.5), ("euler_step_min", 0.0)])
def test_bad_integrator_values(tmp_path, key, value):
    raw = _packaged()
    raw["integrator"][key] = value
    with pytest.raises(ConfigurationError):
        load_config(_write(tmp_path, raw))


def test_regression_table_file(tmp_path, config):
    table = _packaged()["ke0"]["regression"]
    table["intercept"] = 0.0
    path = tmp_path / "table.yaml"
    path.write_text(yaml.safe_dump(table), encoding="utf-8")

    swapped = load_ke0_regression(path, config)
    assert swapped.ke0.intercept == 0.0
    assert swapped.ke0.terms == config.ke0.terms
    assert swapped.pk == config.pk
    assert config.ke0.intercept != 0.0

    with pytest.raises(ConfigurationError):
        load_ke0_regression(tmp_path / "missing.yaml", config)
    del table["band"]
    path.write_text(yaml.safe_dump(table), encoding="utf-8")
    with pytest.raises(ConfigurationError):
        load_ke0_regression(path, config)
