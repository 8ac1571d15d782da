"""
COSMOLOGY ENGINE
================

Expansion history and epoch state machine.

The scale factor is a pure function of cosmic time:

    a(t) = max(a_inflation(t), a_friedmann(t))

a_friedmann comes from inverting t(a) = integral da / (a H(a)) with

    H(a) = H0 * sqrt(Omega_r a^-4 + Omega_m a^-3 + Omega_k a^-2 + Omega_Lambda a^(-3(1+w)))

tabulated once per parameter set on a log-spaced grid of a. Because a(t)
depends only on t, stepping forward and then backward by the same dt returns
exactly the same state, and jump_to_time(t) agrees with any sequence of
update() calls that lands on t.
"""

import math
from collections import deque
from dataclasses import dataclass, asdict, replace
from typing import Dict, Optional

import numpy as np
from scipy import integrate

from constants import (
    G_SI, C_LIGHT, MPC_TO_M, PLANCK_TEMPERATURE, T_CMB_0, RHO_CRIT_0, AGE_UNIVERSE_S,
)
from epochs import EPOCHS, FUTURE_SCENARIOS, Epoch, EpochTable
from sim_logging import get_logger
from validation import is_finite_scalar

logger = get_logger("Cosmology")


# =============================================================================
# PARAMETERS
# =============================================================================

@dataclass
class CosmologyParams:
    """Cosmological parameters (Planck 2018 defaults)."""
    name: str = "Default (Planck 2018)"
    H0: float = 67.4                # km/s/Mpc
    Omega_Lambda: float = 0.6889
    Omega_m: float = 0.3111
    Omega_b: float = 0.0486
    Omega_DM: float = 0.2625
    Omega_r: float = 9.24e-5
    Omega_k: float = 0.0
    w: float = -1.03                # dark energy equation of state
    n_s: float = 0.9665
    sigma_8: float = 0.8102

    def validate(self):
        """Raise ValueError for parameters the expansion history cannot use."""
        for key, value in asdict(self).items():
            if key != "name" and not is_finite_scalar(value):
                raise ValueError(f"cosmology parameter {key} must be finite, got {value}")
        if self.H0 <= 0:
            raise ValueError(f"H0 must be > 0, got {self.H0}")
        for key in ("Omega_m", "Omega_r", "Omega_b", "Omega_DM"):
            if getattr(self, key) < 0:
                raise ValueError(f"{key} must be >= 0, got {getattr(self, key)}")
        if self.Omega_m == 0 and self.Omega_r == 0:
            raise ValueError("need Omega_m > 0 or Omega_r > 0 for a hot big bang")

    @property
    def H0_SI(self) -> float:
        """H0 in 1/s"""
        return self.H0 * 1000 / MPC_TO_M


COSMOLOGY_PRESETS: Dict[str, CosmologyParams] = {
    "lambda_cdm": CosmologyParams(
        name="LCDM (Standard Model)", w=-1.0),
    "scdm": CosmologyParams(
        name="SCDM (Einstein-de Sitter)", H0=50.0, Omega_Lambda=0.0, Omega_m=1.0,
        Omega_b=0.05, Omega_DM=0.95, w=-1.0),
    "open_universe": CosmologyParams(
        name="Open Universe", Omega_Lambda=0.0, Omega_m=0.3, Omega_b=0.05,
        Omega_DM=0.25, Omega_k=0.7, w=-1.0),
    "closed_universe": CosmologyParams(
        name="Closed Universe", Omega_Lambda=0.0, Omega_m=2.0, Omega_b=0.1,
        Omega_DM=1.9, Omega_k=-1.0, w=-1.0),
    "phantom_energy": CosmologyParams(
        name="Phantom Energy", w=-1.5),
    "quintessence": CosmologyParams(
        name="Quintessence", w=-0.8),
}


@dataclass
class CosmologyState:
    """Snapshot returned by Cosmology.update() and get_state()."""
    time: float
    scale_factor: float
    redshift: float
    temperature: float
    hubble_rate: float              # km/s/Mpc
    epoch: Epoch
    next_epoch: Optional[Epoch]
    epoch_progress: float
    epoch_changed: bool
    expansion_state: str
    density: float                  # kg/m^3
    lookback_time: float            # s


# =============================================================================
# EXPANSION HISTORY
# =============================================================================

A_INITIAL = 1e-30
H_INFLATION = 5e33                  # 1/s
MAX_INFLATION_FACTOR = 1e6
INFLATION_END = 1e-32               # s
RADIATION_END = 4.7e10              # s

_TABLE_A_MIN = 1e-32
_TABLE_A_MAX = 1e4
_TABLE_SIZE = 4096
_MAX_EXPONENT = 690.0


class FriedmannTable:
    """Monotonic table t(a) for one parameter set, evaluated by log-log interpolation."""

    def __init__(self, params: CosmologyParams):
        self.params = params
        H0_si = params.H0_SI

        a = np.logspace(math.log10(_TABLE_A_MIN), math.log10(_TABLE_A_MAX), _TABLE_SIZE)
        E2 = self._E2(a)

        # Closed universes turn around where E^2 reaches zero; the table stops there
        positive = E2 > 0
        cut = len(a) if positive.all() else int(np.argmin(positive))
        if cut < 2:
            raise ValueError(f"no expanding phase for parameters {params.name!r}")
        self.turnaround = cut < len(a)
        a, E2 = a[:cut], E2[:cut]

        H = H0_si * np.sqrt(E2)
        ln_a = np.log(a)

        # Analytic start: radiation (t = a^2 / 2H0 sqrt(Omega_r)) or matter era
        if params.Omega_r > 0:
            t_start = a[0] ** 2 / (2 * H0_si * math.sqrt(params.Omega_r))
        else:
            t_start = 2 * a[0] ** 1.5 / (3 * H0_si * math.sqrt(params.Omega_m))

        # dt = da / (a H) = d(ln a) / H
        t = t_start + integrate.cumulative_trapezoid(1.0 / H, ln_a, initial=0.0)

        self.a = a
        self.t = t
        self.H = H
        self._log_a = np.log10(a)
        self._log_t = np.log10(t)

    def _E2(self, a):
        p = self.params
        return (p.Omega_r * a ** -4.0 + p.Omega_m * a ** -3.0 + p.Omega_k * a ** -2.0
                + p.Omega_Lambda * a ** (-3.0 * (1.0 + p.w)))

    @property
    def t_max(self) -> float:
        return float(self.t[-1])

    def scale_factor(self, time: float) -> float:
        if time <= self.t[0]:
            return float(self.a[0])
        if time <= self.t[-1]:
            return float(10 ** np.interp(math.log10(time), self._log_t, self._log_a))
        if self.turnaround:
            return float(self.a[-1])
        # Exponential extrapolation with the final Hubble rate
        exponent = min(float(self.H[-1]) * (time - self.t_max), _MAX_EXPONENT)
        return float(self.a[-1]) * math.exp(exponent)

    def time_at(self, scale_factor: float) -> float:
        """Inverse of scale_factor() inside the table."""
        log_a = math.log10(min(max(scale_factor, self.a[0]), self.a[-1]))
        return float(10 ** np.interp(log_a, self._log_a, self._log_t))


def inflation_scale_factor(time: float) -> float:
    """a_inflation(t) = 1e-30 * exp(min(H_inf t, ln 1e6))"""
    if time <= 0:
        return A_INITIAL
    return A_INITIAL * math.exp(min(H_INFLATION * time, math.log(MAX_INFLATION_FACTOR)))


# =============================================================================
# COSMOLOGY
# =============================================================================

class Cosmology:
    """
    Expansion model and epoch state machine.

    Read-only fields: time, scale_factor, redshift, temperature,
    current_epoch, next_epoch, epoch_progress, scale_history, temp_history.
    Mutate only through update(), jump_to_time(), jump_to_epoch(), reset()
    and set_parameters().
    """

    HISTORY_LENGTH = 100

    def __init__(self, params: CosmologyParams = None, epochs: EpochTable = EPOCHS):
        self.params = replace(params) if params is not None else CosmologyParams()
        self.params.validate()
        self.epochs = epochs
        self.t0 = AGE_UNIVERSE_S
        self._table = FriedmannTable(self.params)

        self.scale_history = deque([0.0] * self.HISTORY_LENGTH, maxlen=self.HISTORY_LENGTH)
        self.temp_history = deque([0.0] * self.HISTORY_LENGTH, maxlen=self.HISTORY_LENGTH)
        self._init_state()

    def _init_state(self):
        self.time = 0.0
        self.scale_factor = A_INITIAL
        self.redshift = 1.0 / A_INITIAL - 1.0
        self.temperature = self._temperature_for(A_INITIAL)
        self._epoch_index = 0
        self.current_epoch = self.epochs[0]
        self.next_epoch = self.epochs.next_after(0)
        self.epoch_progress = 0.0
        self.epoch_changed = False

    # -------------------------------------------------------------------------
    # Pure functions of parameters
    # -------------------------------------------------------------------------

    def scale_factor_at(self, time: float) -> float:
        """a(t), the single formula shared by update() and jump_to_time()."""
        return max(inflation_scale_factor(time), self._table.scale_factor(time))

    @staticmethod
    def _temperature_for(scale_factor: float) -> float:
        return min(PLANCK_TEMPERATURE, max(T_CMB_0, T_CMB_0 / scale_factor))

    def hubble_parameter(self, z: float) -> float:
        """
        H(z) in km/s/Mpc.

        H(z) = H0 * sqrt(Omega_m(1+z)^3 + Omega_r(1+z)^4 + Omega_k(1+z)^2
                         + Omega_Lambda (1+z)^(3(1+w)))
        """
        p = self.params
        if not is_finite_scalar(z) or z > 1e10:
            # Radiation-dominated stand-in for the extreme early universe
            return p.H0 * math.sqrt(p.Omega_r) * 1e10

        z1 = 1.0 + z
        try:
            dark_energy = p.Omega_Lambda * z1 ** (3 * (1 + p.w))
            E2 = p.Omega_m * z1 ** 3 + p.Omega_r * z1 ** 4 + p.Omega_k * z1 ** 2 + dark_energy
        except (OverflowError, ZeroDivisionError):
            return p.H0 * math.sqrt(p.Omega_r) * 1e8

        result = p.H0 * math.sqrt(max(0.0, E2))
        return result if is_finite_scalar(result) else p.H0 * 100

    def hubble_parameter_si(self, z: float) -> float:
        """H(z) in 1/s"""
        return self.hubble_parameter(z) * 1000 / MPC_TO_M

    def get_cmb_temperature(self, z: float) -> float:
        """T(z) = T0 (1 + z)"""
        return T_CMB_0 * (1 + z)

    def get_critical_density(self, z: float) -> float:
        """rho_crit = 3 H^2 / (8 pi G)"""
        H = self.hubble_parameter_si(z)
        return 3 * H * H / (8 * math.pi * G_SI)

    def get_matter_density(self, z: float) -> float:
        return self.params.Omega_m * RHO_CRIT_0 * (1 + z) ** 3

    def comoving_distance(self, z: float) -> float:
        """d_c = c * integral_0^z dz' / H(z'), in meters."""
        if z <= 0:
            return 0.0
        value, _ = integrate.quad(lambda zz: 1.0 / self.hubble_parameter_si(zz), 0.0, z, limit=200)
        return C_LIGHT * value

    def lookback_time(self, z: float) -> float:
        """t_L = integral_0^z dz' / ((1+z') H(z')), in seconds."""
        if z <= 0:
            return 0.0
        value, _ = integrate.quad(
            lambda zz: 1.0 / ((1 + zz) * self.hubble_parameter_si(zz)), 0.0, z, limit=200)
        return value

    def universe_age(self, z: float) -> float:
        return self.t0 - self.lookback_time(z)

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    def get_expansion_rate(self) -> float:
        """Current H in 1/s"""
        return self.hubble_parameter_si(min(self.redshift, 1e10))

    def get_expansion_state(self) -> str:
        if self.time < INFLATION_END:
            return "Inflation"
        if self.time < RADIATION_END:
            return "Radiation-dominated"
        if self.time < self.t0 * 0.7:
            return "Decelerating"
        return "Accelerating"

    def get_jeans_length(self) -> float:
        """Jeans length in meters for a sound speed of 5 km/s."""
        c_s = 5000.0
        rho = self.get_matter_density(min(self.redshift, 1000))
        if rho <= 0:
            return math.inf
        return math.sqrt(math.pi * c_s * c_s / (G_SI * rho))

    def update(self, dt: float, reversed: bool = False) -> CosmologyState:
        """
        Advance cosmic time by dt (backwards by |dt| when reversed).

        Time is clamped at 0. Scale factor, redshift, temperature and epoch are
        recomputed from the new time; an invalid candidate is logged and the
        previous state kept.
        """
        if not is_finite_scalar(dt):
            logger.warning(f"Ignoring non-finite cosmology step dt={dt}")
            return self.get_state(epoch_changed=False)

        step = -abs(dt) if reversed else dt
        return self._advance_to(max(0.0, self.time + step))

    def jump_to_time(self, time: float) -> CosmologyState:
        """Set time directly and recompute everything through update()'s formulas."""
        if not is_finite_scalar(time):
            logger.warning(f"Ignoring jump to non-finite time {time}")
            return self.get_state(epoch_changed=False)
        return self._advance_to(max(0.0, time))

    def jump_to_epoch(self, index: int) -> CosmologyState:
        """Jump to the start of the epoch at index; out-of-range indices are ignored."""
        if 0 <= index < len(self.epochs):
            return self.jump_to_time(self.epochs[index].time_start)
        logger.warning(f"Epoch index {index} out of range [0, {len(self.epochs)})")
        return self.get_state(epoch_changed=False)

    def _advance_to(self, time: float) -> CosmologyState:
        # Compute candidates first, commit only if valid
        a = self.scale_factor_at(time)
        if not (is_finite_scalar(a) and a > 0):
            logger.warning(f"Invalid scale factor a={a} at t={time:.3e} s, keeping previous state")
            return self.get_state(epoch_changed=False)

        z = 1.0 / a - 1.0
        T = self._temperature_for(a)
        if not (is_finite_scalar(z) and is_finite_scalar(T)):
            logger.warning(f"Invalid redshift/temperature at t={time:.3e} s, keeping previous state")
            return self.get_state(epoch_changed=False)

        index = self.epochs.index_at_time(time)
        epoch_changed = index != self._epoch_index

        self.time = time
        self.scale_factor = a
        self.redshift = z
        self.temperature = T
        self._epoch_index = index
        self.current_epoch = self.epochs[index]
        self.next_epoch = self.epochs.next_after(index)
        self.epoch_changed = epoch_changed

        duration = self.current_epoch.duration
        if math.isfinite(duration) and duration > 0:
            self.epoch_progress = min(1.0, max(0.0, (time - self.current_epoch.time_start) / duration))
        else:
            self.epoch_progress = 0.0

        self.scale_history.append(math.log10(max(A_INITIAL, a)))
        self.temp_history.append(math.log10(max(1.0, T)))

        if epoch_changed:
            logger.info("=" * 50)
            logger.info(f"EPOCH TRANSITION: {self.current_epoch.name}")
            logger.info(f"  t = {time:.3e} s, z = {z:.3e}, T = {T:.3e} K")
            logger.info("=" * 50)

        return self.get_state(epoch_changed=epoch_changed)

    def get_state(self, epoch_changed: bool = None) -> CosmologyState:
        return CosmologyState(
            time=self.time,
            scale_factor=self.scale_factor,
            redshift=self.redshift,
            temperature=self.temperature,
            hubble_rate=self.hubble_parameter(min(self.redshift, 1e6)),
            epoch=self.current_epoch,
            next_epoch=self.next_epoch,
            epoch_progress=self.epoch_progress,
            epoch_changed=self.epoch_changed if epoch_changed is None else epoch_changed,
            expansion_state=self.get_expansion_state(),
            density=self.get_matter_density(min(self.redshift, 1000)),
            lookback_time=self.t0 - self.time,
        )

    @property
    def epoch_index(self) -> int:
        return self._epoch_index

    def reset(self):
        self._init_state()
        self.scale_history.extend([0.0] * self.HISTORY_LENGTH)
        self.temp_history.extend([0.0] * self.HISTORY_LENGTH)

    def set_parameters(self, **kwargs) -> CosmologyParams:
        """
        Update cosmological parameters by name (H0, Omega_m, w, ...).

        The expansion table is rebuilt and the state recomputed at the current
        time. Unknown names or invalid values raise ValueError and leave the
        previous parameters in place.
        """
        unknown = set(kwargs) - set(asdict(self.params))
        if unknown:
            raise ValueError(f"unknown cosmology parameters: {sorted(unknown)}")

        params = replace(self.params, **kwargs)
        params.validate()
        table = FriedmannTable(params)

        self.params = params
        self._table = table
        logger.info(f"Cosmology parameters updated: {kwargs}")
        self._advance_to(self.time)
        return self.params

    def apply_preset(self, name: str) -> CosmologyParams:
        if name not in COSMOLOGY_PRESETS:
            raise ValueError(f"unknown preset {name!r}, expected one of {sorted(COSMOLOGY_PRESETS)}")
        fields = asdict(COSMOLOGY_PRESETS[name])
        return self.set_parameters(**fields)

    def apply_future_scenario(self, scenario_id: str) -> CosmologyParams:
        """Set the dark energy equation of state w from a FUTURE_SCENARIOS entry."""
        if scenario_id not in FUTURE_SCENARIOS:
            raise ValueError(f"unknown future scenario {scenario_id!r}, "
                             f"expected one of {sorted(FUTURE_SCENARIOS)}")
        scenario = FUTURE_SCENARIOS[scenario_id]
        logger.info(f"Future scenario: {scenario.name} (w = {scenario.w})")
        return self.set_parameters(w=scenario.w)
