# src/remisim/errors.py
"""
Exception hierarchy of the engine.

RemisimError (base)
├── ConfigurationError
├── InvalidCovariate
├── InvalidDoseSchedule
├── InvalidCompartmentModel
├── NoKe0SolutionInBracket
└── IntegrationError
    ├── IntegrationStepTooSmall
    ├── TooManyConvergenceFailures
    ├── TooManyErrorTestFailures
    ├── ExcessiveIntegrationWork
    └── NonFiniteSolution

Components raise these; `simulate.run_simulation` turns them into an
`EngineFailure` carrying the class's `code`.
"""


class RemisimError(Exception):
    """Base exception for all engine errors."""
    code = "EngineError"


class ConfigurationError(RemisimError):
    """Malformed model configuration or unknown strategy name."""
    code = "ConfigurationError"


class InvalidCovariate(RemisimError):
    """
    Patient covariate outside its valid range.

    Examples:
        - non-positive or non-finite weight, height or age
        - unknown sex or ASA class
    """
    code = "InvalidCovariate"


class InvalidDoseSchedule(RemisimError):
    """Negative times, non-positive amounts or rates, bad infusion durations."""
    code = "InvalidDoseSchedule"


class InvalidCompartmentModel(RemisimError):
    """
    The rate constants do not describe a physical three-compartment system
    (complex or non-positive hybrid rates, coincident roots).
    """
    code = "InvalidCompartmentModel"


class NoKe0SolutionInBracket(RemisimError):
    """The peak-time condition has no sign change across the ke0 bracket."""
    code = "NoKe0SolutionInBracket"

    def __init__(self, message: str, f_low: float = float("nan"), f_high: float = float("nan")):
        super().__init__(message)
        self.f_low = f_low
        self.f_high = f_high


class IntegrationError(RemisimError):
    """Base class for fatal integrator failures."""
    code = "IntegrationFailure"

    def __init__(self, message: str, t: float = float("nan"), h: float = float("nan")):
        super().__init__(message)
        self.t = t
        self.h = h


class IntegrationStepTooSmall(IntegrationError):
    """Step size fell to hmin, or no longer changes t in floating point."""
    code = "IntegrationStepTooSmall"


class TooManyConvergenceFailures(IntegrationError):
    """Corrector failed to converge too many times on one step."""
    code = "TooManyConvergenceFailures"


class TooManyErrorTestFailures(IntegrationError):
    """Local error test failed too many times on one step."""
    code = "TooManyErrorTestFailures"


class ExcessiveIntegrationWork(IntegrationError):
    """Too many steps were needed to reach one output time."""
    code = "ExcessiveIntegrationWork"


class NonFiniteSolution(IntegrationError):
    """A fixed-step method produced inf or NaN; its step cannot be reduced."""
    code = "NonFiniteSolution"
