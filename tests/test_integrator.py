import math

import numpy as np
import pytest

from remisim.config import IntegratorSettings, StepControl
from remisim.errors import (
    ConfigurationError,
    ExcessiveIntegrationWork,
    IntegrationStepTooSmall,
    NonFiniteSolution,
    TooManyConvergenceFailures,
    TooManyErrorTestFailures,
)
from remisim.hybrid import plasma_concentration
from remisim.integrator import AdaptiveMultistepIntegrator, _adams_tables, _bdf_tables
from remisim.models.three_compartment import make_rhs
from remisim.solvers import (
    FixedStepEulerIntegrator,
    ScipyLSODAIntegrator,
    _lsoda_error,
    resolve_integrator,
)

TIGHT = IntegratorSettings(rtol=1e-8, atol=1e-12)


def test_method_coefficients():
    """Nordsieck corrector vectors of the low-order methods."""
    adams_el, adams_tesco = _adams_tables(12)
    assert np.allclose(adams_el[1], [1.0, 1.0])
    assert np.allclose(adams_el[2], [0.5, 1.0, 0.5])
    assert adams_el[3][0] == pytest.approx(5.0 / 12.0)
    assert adams_tesco[1][1] == pytest.approx(2.0)
    assert adams_tesco[2][1] == pytest.approx(12.0)

    bdf_el, bdf_tesco = _bdf_tables(5)
    assert np.allclose(bdf_el[1], [1.0, 1.0])
    assert np.allclose(bdf_el[2], [2.0 / 3.0, 1.0, 1.0 / 3.0])
    assert np.allclose(bdf_el[3], [6.0 / 11.0, 1.0, 6.0 / 11.0, 1.0 / 11.0])
    assert bdf_tesco[2][1] == pytest.approx(4.5)


def test_scalar_decay():
    """y' = -y against exp(-t) at every output time."""
    integ = AdaptiveMultistepIntegrator(lambda t, y: -y, 0.0, [1.0], TIGHT)
    for t in np.linspace(0.25, 10.0, 40):
        y = integ.advance_to(t)
        assert y[0] == pytest.approx(math.exp(-t), rel=5e-5)

    d = integ.diagnostics
    assert d.accepted_steps > 0
    assert d.rhs_evaluations > d.accepted_steps
    assert 1 <= d.order <= 12


def test_three_compartment_bolus_matches_closed_form(reference_pk, reference_hybrid):
    """
    Bolus, no infusion, no effect site: a1 / V1 follows the tri-exponential
    solution within the configured relative tolerance at every output time.
    """
    dose = 12.0
    rhs = make_rhs(reference_pk, 0.0, effect_site=False)
    integ = AdaptiveMultistepIntegrator(rhs, 0.0, [dose, 0.0, 0.0], TIGHT, nonnegative=True)
    times = np.arange(0.5, 240.0 + 1e-9, 0.5)
    cp = np.array([integ.advance_to(t)[0] / reference_pk.V1 for t in times])
    expected = plasma_concentration(times, reference_hybrid, dose, reference_pk.V1)

    rel = np.abs(cp - expected) / expected
    assert rel.max() <= TIGHT.rtol
    assert integ.diagnostics.accepted_steps < 1500


def test_stiff_problem_switches_to_bdf():
    """
    y' = -1000 (y - cos t) - sin t, y(0) = 1 has the smooth solution cos t
    and a fast mode at -1000: the integrator must move to BDF.
    """
    def rhs(t, y):
        return -1000.0 * (y - math.cos(t)) - math.sin(t)

    integ = AdaptiveMultistepIntegrator(rhs, 0.0, [1.0], IntegratorSettings(rtol=1e-6, atol=1e-9))
    for t in np.arange(1.0, 10.0 + 1e-9, 1.0):
        y = integ.advance_to(t)
        assert y[0] == pytest.approx(math.cos(t), abs=1e-4)

    d = integ.diagnostics
    assert integ.method == "bdf"
    assert d.method_switches >= 1
    assert d.jacobian_evaluations > 0
    assert integ.stiffness > 0.2
    # Explicit stability alone would need thousands of steps
    assert d.accepted_steps < 2000


def test_oscillator_returns_to_start():
    """One period of the harmonic oscillator."""
    def rhs(t, y):
        return np.array([y[1], -y[0]])

    integ = AdaptiveMultistepIntegrator(rhs, 0.0, [0.0, 1.0], TIGHT)
    y = integ.advance_to(2 * math.pi)
    assert np.allclose(y, [0.0, 1.0], atol=1e-5)


def test_convergence_failures_are_fatal():
    """An rhs that turns into NaN defeats every corrector retry."""
    def rhs(t, y):
        if t > 0.0:
            return np.full_like(y, np.nan)
        return -y

    integ = AdaptiveMultistepIntegrator(rhs, 0.0, [1.0], TIGHT)
    with pytest.raises(TooManyConvergenceFailures) as info:
        integ.advance_to(1.0)
    assert info.value.code == "TooManyConvergenceFailures"
    assert info.value.t == 0.0
    assert integ.diagnostics.convergence_failures == 10


def test_minimum_step_is_enforced():
    """With hmin far above the stable step the run stops instead of looping."""
    settings = IntegratorSettings(rtol=1e-8, atol=1e-12, hmin=0.01)
    integ = AdaptiveMultistepIntegrator(lambda t, y: -1000.0 * y, 0.0, [1.0], settings)
    with pytest.raises(IntegrationStepTooSmall):
        integ.advance_to(1.0)


def test_error_test_failures_are_fatal():
    """
    The derivative jumps from 0 to 1e8 just after t0, so the first step keeps
    failing its error test; with the order-1 restart pushed out of reach the
    failure bound is hit first.
    """
    control = StepControl(max_error_test_failures=3, error_failures_before_restart=10)
    settings = IntegratorSettings(rtol=1e-8, atol=1e-12, control=control)

    def rhs(t, y):
        return np.full_like(y, 1e8 if t > 0.0 else 0.0)

    integ = AdaptiveMultistepIntegrator(rhs, 0.0, [1.0], settings)
    with pytest.raises(TooManyErrorTestFailures) as info:
        integ.advance_to(1.0)
    assert info.value.code == "TooManyErrorTestFailures"
    assert info.value.t == 0.0
    d = integ.diagnostics
    assert d.error_test_failures == 3
    assert d.accepted_steps == 0


def test_step_budget_per_call_is_enforced():
    settings = IntegratorSettings(rtol=1e-8, atol=1e-12, control=StepControl(max_steps_per_call=5))
    integ = AdaptiveMultistepIntegrator(lambda t, y: -y, 0.0, [1.0], settings)
    with pytest.raises(ExcessiveIntegrationWork) as info:
        integ.advance_to(10.0)
    assert info.value.code == "ExcessiveIntegrationWork"
    assert 0.0 < info.value.t < 10.0
    assert integ.diagnostics.accepted_steps == 5


@pytest.mark.parametrize("settings", [
    IntegratorSettings(rtol=0.0),
    IntegratorSettings(atol=-1e-12),
    IntegratorSettings(hmin=-0.1),
    IntegratorSettings(hmin=1.0, hmax=0.5),
    IntegratorSettings(euler_step_min=0.0),
    IntegratorSettings(control=StepControl(local_error_fraction=0.0)),
    IntegratorSettings(control=StepControl(stiffness_lower=0.5)),
])
def test_invalid_settings_are_configuration_errors(settings):
    for strategy in (AdaptiveMultistepIntegrator, ScipyLSODAIntegrator, FixedStepEulerIntegrator):
        with pytest.raises(ConfigurationError):
            strategy(lambda t, y: -y, 0.0, [1.0], settings)


def test_never_steps_past_critical_time():
    """The rhs changes at t=1; the integrator stops exactly there."""
    def rhs(t, y):
        if t > 1.0 + 1e-12:
            return np.array([-5.0])
        return np.array([1.0])

    integ = AdaptiveMultistepIntegrator(rhs, 0.0, [0.0], TIGHT, t_crit=1.0)
    y = integ.advance_to(1.0)
    assert integ.t == 1.0
    assert y[0] == pytest.approx(1.0, rel=1e-9)
    with pytest.raises(ValueError):
        integ.advance_to(1.5)


def test_output_times_must_not_go_backwards():
    integ = AdaptiveMultistepIntegrator(lambda t, y: -y, 0.0, [1.0], TIGHT)
    integ.advance_to(5.0)
    with pytest.raises(ValueError):
        integ.advance_to(0.1)


def test_negative_excursions_are_clamped_and_counted():
    """y' = -1 drives y through zero; the nonnegative flag holds it at 0."""
    integ = AdaptiveMultistepIntegrator(lambda t, y: -np.ones_like(y), 0.0, [1.0], TIGHT, nonnegative=True)
    y = integ.advance_to(2.0)
    assert y[0] >= 0.0
    assert integ.diagnostics.clamped_components > 0


def test_lsoda_strategy_agrees_with_closed_form(reference_pk, reference_hybrid):
    rhs = make_rhs(reference_pk, 0.0, effect_site=False)
    integ = ScipyLSODAIntegrator(rhs, 0.0, [12.0, 0.0, 0.0], TIGHT)
    for t in (1.0, 10.0, 60.0):
        cp = integ.advance_to(t)[0] / reference_pk.V1
        assert cp == pytest.approx(plasma_concentration(t, reference_hybrid, 12.0, reference_pk.V1), rel=1e-5)
    assert integ.diagnostics.rhs_evaluations > 0


def test_fixed_step_euler_is_flagged_degraded():
    settings = IntegratorSettings(euler_step_min=1e-3)
    integ = FixedStepEulerIntegrator(lambda t, y: -y, 0.0, [1.0], settings)
    y = integ.advance_to(1.0)
    assert y[0] == pytest.approx(math.exp(-1.0), abs=1e-3)

    d = integ.diagnostics
    assert d.degraded
    assert d.method == "euler"
    assert d.accepted_steps == 1000


def test_strategy_resolution():
    assert resolve_integrator("multistep") is AdaptiveMultistepIntegrator
    assert resolve_integrator("lsoda") is ScipyLSODAIntegrator
    assert resolve_integrator(FixedStepEulerIntegrator) is FixedStepEulerIntegrator
    with pytest.raises(ConfigurationError):
        resolve_integrator("rk45")
    with pytest.raises(ConfigurationError):
        resolve_integrator(42)


def test_fixed_step_euler_rejects_non_finite_state():
    integ = FixedStepEulerIntegrator(lambda t, y: np.full_like(y, np.inf), 0.0, [1.0])
    with pytest.raises(NonFiniteSolution) as info:
        integ.advance_to(1.0)
    assert info.value.code == "NonFiniteSolution"


@pytest.mark.parametrize("message, error", [
    ("Excess work done on this call (perhaps wrong Dfun type).", ExcessiveIntegrationWork),
    ("Repeated error test failures (internal error).", TooManyErrorTestFailures),
    ("Repeated convergence failures (perhaps bad Jacobian or tolerances).", TooManyConvergenceFailures),
    ("Required step size is less than spacing between numbers.", IntegrationStepTooSmall),
])
def test_lsoda_failures_map_to_typed_errors(message, error):
    assert _lsoda_error(message) is error
