# src/remisim/models/three_compartment.py
import numpy as np


def three_compartment_effect_site(t, y, pk, infusion_rate):
    """
    Mammillary three-compartment model with an effect-site compartment.
    Four states:
      y[0] = drug in central compartment (mg)
      y[1] = drug in fast peripheral compartment (mg)
      y[2] = drug in slow peripheral compartment (mg)
      y[3] = effect-site concentration (ug/mL)

    Parameters:
      t              : current time (min), unused (the system is autonomous)
      y              : current state vector [a1, a2, a3, ce]
      pk             : PKParameters with ke0 set
      infusion_rate  : zero-order input into the central compartment (mg/min)
    """
    a1, a2, a3, ce = y
    da1, da2, da3 = _mass_balance(a1, a2, a3, pk, infusion_rate)
    dce = pk.ke0 * (a1 / pk.V1 - ce)
    return np.array([da1, da2, da3, dce])


def three_compartment(t, y, pk, infusion_rate):
    """Same model without the effect site: y = [a1, a2, a3]."""
    a1, a2, a3 = y
    return np.array(_mass_balance(a1, a2, a3, pk, infusion_rate))


def _mass_balance(a1, a2, a3, pk, infusion_rate):
    da1 = infusion_rate - (pk.k10 + pk.k12 + pk.k13) * a1 + pk.k21 * a2 + pk.k31 * a3
    da2 = pk.k12 * a1 - pk.k21 * a2
    da3 = pk.k13 * a1 - pk.k31 * a3
    return da1, da2, da3


def make_rhs(pk, infusion_rate, effect_site=True):
    """Bind parameters and the segment's infusion rate into f(t, y)."""
    model = three_compartment_effect_site if effect_site else three_compartment

    def rhs(t, y):
        return model(t, y, pk, infusion_rate)

    return rhs
