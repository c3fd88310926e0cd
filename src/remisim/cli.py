# src/remisim/cli.py
import argparse
import sys
from dataclasses import replace
from typing import List, Optional

from .config import default_config, load_config, load_ke0_regression
from .dosing import bolus, continuous_infusion, schedule
from .errors import RemisimError
from .log import setup_logging
from .metrics import cmax_tmax, first_local_peak, fixed_step_count
from .simulate import run_simulation
from .solvers import INTEGRATORS
from .types import PatientCovariates


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="remisim",
                                     description="Remimazolam plasma and effect-site simulation (Masui 2022)")
    parser.add_argument("--age", type=float, default=55.0, help="Age (years)")
    parser.add_argument("--weight", type=float, default=70.0, help="Total body weight (kg)")
    parser.add_argument("--height", type=float, default=170.0, help="Height (cm)")
    parser.add_argument("--sex", choices=["male", "female"], default="male", help="Sex")
    parser.add_argument("--asa", choices=["I-II", "III-IV"], default="I-II", help="ASA physical status")
    parser.add_argument("--bolus", type=float, default=12.0, help="Bolus at t=0 (mg); 0 for none")
    parser.add_argument("--infusion", type=float, default=1.0, help="Continuous infusion (mg/kg/h); 0 for none")
    parser.add_argument("--duration", type=float, default=240.0, help="Simulated time (min)")
    parser.add_argument("--tick", type=float, default=1.0, help="Output resolution (s)")
    parser.add_argument("--rtol", type=float, help="Relative tolerance (configuration default if omitted)")
    parser.add_argument("--atol", type=float, help="Absolute tolerance (configuration default if omitted)")
    parser.add_argument("--integrator", choices=sorted(INTEGRATORS), default="multistep", help="Integration strategy")
    parser.add_argument("--effect-site", choices=["ode", "hybrid"], default="ode", help="Effect-site handling")
    parser.add_argument("--degraded-fallback", action="store_true",
                        help="Continue with fixed-step Euler if the integrator fails")
    parser.add_argument("--report-every", type=float, default=300.0, help="Table row interval (s)")
    parser.add_argument("--config", type=str, help="Model configuration YAML")
    parser.add_argument("--ke0-table", type=str, help="Alternative ke0 regression table YAML")
    parser.add_argument("--log-level", default="WARNING", help="DEBUG, INFO, WARNING or ERROR")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = load_config(args.config) if args.config else default_config()
        if args.ke0_table:
            config = load_ke0_regression(args.ke0_table, config)
        events = []
        if args.bolus > 0:
            events.append(bolus(args.bolus))
        if args.infusion > 0:
            events.append(continuous_infusion(args.infusion, args.weight))
        dose_schedule = schedule(*events)
    except RemisimError as exc:
        print(f"error [{exc.code}]: {exc}", file=sys.stderr)
        return 1

    settings = config.integrator
    if args.rtol is not None:
        settings = replace(settings, rtol=args.rtol)
    if args.atol is not None:
        settings = replace(settings, atol=args.atol)

    patient = PatientCovariates(age=args.age, weight=args.weight, height=args.height, sex=args.sex, asa=args.asa)
    outcome = run_simulation(patient, dose_schedule, args.duration, tick_s=args.tick, integrator=args.integrator,
                             settings=settings, effect_site=args.effect_site,
                             degraded_fallback=args.degraded_fallback, config=config)
    if outcome.failure is not None and outcome.result is None:
        print(f"error [{outcome.failure.code}]: {outcome.failure.message}", file=sys.stderr)
        return 1

    res = outcome.result
    k = res.ke0
    numerical = f"{k.numerical:.4f}" if k.numerical is not None else "n/a"
    print(f"ke0 in use: {k.value:.4f} /min ({k.source}); numerical {numerical}, regression {k.regression:.4f}")
    print(f"hybrid rates: alpha={res.hybrid.alpha:.5f} beta={res.hybrid.beta:.5f} gamma={res.hybrid.gamma:.5f} /min")
    print()
    print(f"{'t (min)':>9} {'Cp (ug/mL)':>11} {'Ce (ug/mL)':>11}  method")
    every = max(1, int(round(args.report_every / args.tick)))
    for i in range(0, len(res.t_min), every):
        print(f"{res.t_min[i]:9.2f} {res.cp[i]:11.4f} {res.ce[i]:11.4f}  {res.method[i]}")

    cp_max, cp_t = cmax_tmax(res.t_min, res.cp)
    ce_peak, ce_t = first_local_peak(res.t_min, res.ce)
    d = res.diagnostics
    print()
    print(f"plasma peak {cp_max:.4f} ug/mL at {cp_t:.2f} min; first effect-site peak {ce_peak:.4f} ug/mL at {ce_t:.2f} min")
    print(f"steps accepted {d.accepted_steps}, rejected {d.rejected_steps}, method switches {d.method_switches}, "
          f"fixed 1 s steps would be {fixed_step_count(args.duration)}"
          + (" [DEGRADED]" if res.degraded else ""))

    if outcome.failure is not None:
        print(f"error [{outcome.failure.code}]: {outcome.failure.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
