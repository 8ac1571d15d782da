"""
Physical and simulation constants.
Planck 2018 cosmology, Planck units and unit conversions.
"""

# =============================================================================
# FUNDAMENTAL CONSTANTS (SI)
# =============================================================================

G_SI = 6.674e-11            # m^3 / (kg s^2)
C_LIGHT = 2.998e8           # m/s

# =============================================================================
# PLANCK UNITS
# =============================================================================

PLANCK_TEMPERATURE = 1.417e32   # K

# =============================================================================
# COSMOLOGICAL CONSTANTS
# =============================================================================

H0 = 67.4                   # km/s/Mpc
H0_SI = 2.18e-18            # 1/s
T_CMB_0 = 2.725             # K - CMB temperature today, also the temperature floor
RHO_CRIT_0 = 9.47e-27       # kg/m^3
AGE_UNIVERSE_GYR = 13.798

# =============================================================================
# UNIT CONVERSIONS
# =============================================================================

MPC_TO_M = 3.086e22
GYR_TO_S = 3.156e16
YR_TO_S = 3.156e7

AGE_UNIVERSE_S = AGE_UNIVERSE_GYR * GYR_TO_S

# =============================================================================
# SIMULATION DEFAULTS
# =============================================================================

DEFAULT_PARTICLE_COUNT = 3000
SOFTENING_LENGTH = 1.0
BARNES_HUT_THETA = 0.5
PERTURBATION_AMPLITUDE = 1e-5

# Matter-radiation equality (~50,000 years): gravity switches on after this
GRAVITY_START_TIME = 1.5e12  # s
