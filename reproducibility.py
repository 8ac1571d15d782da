"""
REPRODUCIBILITY HELPERS
=======================

Seeds, state hashes and deterministic hashing so that simulation runs can be
repeated bit-for-bit.

All stochastic terms in the physics engine (thermal heating) draw from one
explicitly seeded numpy Generator. Render jitter does not draw random numbers
at all: it is a pure hash of (particle index, frame) - see jitter_offsets().
"""

import sys
import hashlib
import platform
from dataclasses import dataclass
from typing import Callable, List, Sequence

import numpy as np
import scipy
import torch
from scipy import stats


@dataclass
class SoftwareManifest:
    """Library versions a run was produced with."""
    python: str
    torch: str
    numpy: str
    scipy: str
    platform: str

    def describe(self) -> str:
        return (f"Python {self.python}, PyTorch {self.torch}, NumPy {self.numpy}, "
                f"SciPy {self.scipy} ({self.platform})")


def get_software_manifest() -> SoftwareManifest:
    return SoftwareManifest(
        python=sys.version.split()[0],
        torch=torch.__version__,
        numpy=np.__version__,
        scipy=scipy.__version__,
        platform=platform.platform(),
    )


def set_all_seeds(seed: int):
    """Seed the global numpy and torch generators (particle setup in scripts)."""
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


def make_generator(seed: int = None) -> np.random.Generator:
    """Independent seeded generator, threaded explicitly through the engine."""
    return np.random.default_rng(seed)


def hash_particle_state(positions: np.ndarray, velocities: np.ndarray) -> str:
    """Create SHA256 hash of simulation state for verification."""
    pos_bytes = np.ascontiguousarray(positions, dtype=np.float64).tobytes()
    vel_bytes = np.ascontiguousarray(velocities, dtype=np.float64).tobytes()
    return hashlib.sha256(pos_bytes + vel_bytes).hexdigest()[:16]


# =============================================================================
# DETERMINISTIC HASHING
# =============================================================================

_GOLDEN_GAMMA = np.uint64(0x9E3779B97F4A7C15)
_MIX_1 = np.uint64(0xBF58476D1CE4E5B9)
_MIX_2 = np.uint64(0x94D049BB133111EB)


def splitmix64(values: np.ndarray) -> np.ndarray:
    """
    SplitMix64 finalizer applied element-wise.

    Maps each uint64 input to a well-mixed uint64 output. Arithmetic wraps
    modulo 2**64. The same input always gives the same output on every
    platform.
    """
    z = np.array(values, dtype=np.uint64, ndmin=1)
    with np.errstate(over="ignore"):
        z = z + _GOLDEN_GAMMA
        z = (z ^ (z >> np.uint64(30))) * _MIX_1
        z = (z ^ (z >> np.uint64(27))) * _MIX_2
    return z ^ (z >> np.uint64(31))


def jitter_offsets(indices: np.ndarray, frame: int, amplitude: float) -> np.ndarray:
    """
    Deterministic per-particle jitter for rendering.

    Behavior:
        seed_i = index_i * 1000 + frame // 10   (jitter pattern changes every 10 frames)
        h_i    = splitmix64(seed_i)
        u_ik   = ((h_i >> 21k) & (2**21 - 1)) / 2**21 - 0.5   for k = 0, 1, 2
        offset = u_i * amplitude * 0.5

    so every component lies in [-amplitude/4, amplitude/4). Amplitudes below
    0.01 give exactly zero offsets.

    Args:
        indices: (N,) particle indices
        frame: Frame counter
        amplitude: Epoch jitter amplitude

    Returns:
        (N, 3) offsets in simulation units
    """
    indices = np.array(indices, dtype=np.uint64, ndmin=1)
    if amplitude < 0.01:
        return np.zeros((len(indices), 3))

    with np.errstate(over="ignore"):
        seeds = indices * np.uint64(1000) + np.uint64(max(0, int(frame)) // 10)
    hashed = splitmix64(seeds)

    mask = np.uint64((1 << 21) - 1)
    components = [
        ((hashed >> np.uint64(21 * k)) & mask).astype(np.float64) / float(1 << 21) - 0.5
        for k in range(3)
    ]
    return np.stack(components, axis=1) * (amplitude * 0.5)


# =============================================================================
# SEED SWEEPS
# =============================================================================

@dataclass
class SeedSweep:
    """One scalar metric measured over several seeds, with a t-interval."""
    metric_name: str
    seeds: List[int]
    values: List[float]
    mean: float
    std: float
    ci_low: float
    ci_high: float
    confidence: float


def sweep_seeds(
    experiment_fn: Callable[[int], float],
    seeds: Sequence[int],
    metric_name: str = "metric",
    confidence: float = 0.95,
) -> SeedSweep:
    """
    Run experiment_fn(seed) once per seed and summarise the results.

    Global generators are reseeded before every run. The interval is the
    Student-t interval of the mean; a single seed gives a zero-width interval.
    """
    seeds = list(seeds)
    if not seeds:
        raise ValueError("sweep_seeds needs at least one seed")
    if not 0 < confidence < 1:
        raise ValueError(f"confidence must be in (0, 1), got {confidence}")

    values = []
    for seed in seeds:
        set_all_seeds(seed)
        values.append(float(experiment_fn(seed)))

    data = np.asarray(values)
    mean = float(data.mean())
    if len(data) > 1:
        std = float(data.std(ddof=1))
        sem = std / np.sqrt(len(data))
        low, high = stats.t.interval(confidence, len(data) - 1, loc=mean, scale=sem) if sem > 0 else (mean, mean)
    else:
        std = 0.0
        low = high = mean

    return SeedSweep(
        metric_name=metric_name,
        seeds=seeds,
        values=values,
        mean=mean,
        std=std,
        ci_low=float(low),
        ci_high=float(high),
        confidence=confidence,
    )


def format_sweep(sweep: SeedSweep, precision: int = 2) -> str:
    p = precision
    return (f"{sweep.mean:.{p}g} +/- {sweep.std:.{p}g} "
            f"({sweep.confidence:.0%} CI [{sweep.ci_low:.{p}g}, {sweep.ci_high:.{p}g}], n={len(sweep.values)})")
