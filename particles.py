"""
Particle storage and initial conditions.

ParticleStore is a structure-of-arrays container: one numpy array per
attribute, indexed by a stable integer particle id. The physics core mutates
these arrays in place but never allocates, resizes or compacts them.
"""

import math
from dataclasses import dataclass

import numpy as np

from constants import PLANCK_TEMPERATURE, T_CMB_0, PERTURBATION_AMPLITUDE


@dataclass
class ParticleStats:
    """Summary statistics, refreshed by ParticleStore.update_statistics()."""
    avg_temperature: float = PLANCK_TEMPERATURE
    min_temperature: float = PLANCK_TEMPERATURE
    max_temperature: float = PLANCK_TEMPERATURE
    total_mass: float = 0.0
    total_kinetic_energy: float = 0.0
    active_count: int = 0


class ParticleStore:
    """
    Fixed-capacity particle container.

    Attributes:
        positions: (N, 3) comoving positions
        velocities: (N, 3) velocities
        masses: (N,) masses, all > 0
        temperatures: (N,) temperatures in K
        ages: (N,) particle ages in simulated seconds
        active: (N,) boolean flags; inactive particles keep their slot
    """

    def __init__(self, count: int):
        if count < 0:
            raise ValueError(f"particle count must be >= 0, got {count}")

        self.count = count
        self.positions = np.zeros((count, 3), dtype=np.float64)
        self.velocities = np.zeros((count, 3), dtype=np.float64)
        self.masses = np.ones(count, dtype=np.float64)
        self.temperatures = np.full(count, PLANCK_TEMPERATURE, dtype=np.float64)
        self.ages = np.zeros(count, dtype=np.float64)
        self.active = np.ones(count, dtype=bool)

        # Written by the physics engine after each detection pass
        self.cluster_count = 0

        self.stats = ParticleStats()

    @classmethod
    def from_arrays(
        cls,
        positions: np.ndarray,
        velocities: np.ndarray = None,
        masses: np.ndarray = None,
        temperatures: np.ndarray = None,
    ) -> "ParticleStore":
        """Build a store from existing arrays (copied)."""
        positions = np.asarray(positions, dtype=np.float64)
        if positions.ndim != 2 or positions.shape[1] != 3:
            raise ValueError(f"positions must have shape (N, 3), got {positions.shape}")

        store = cls(len(positions))
        store.positions[:] = positions
        if velocities is not None:
            store.velocities[:] = np.asarray(velocities, dtype=np.float64)
        if masses is not None:
            masses = np.asarray(masses, dtype=np.float64)
            if np.any(masses <= 0):
                raise ValueError("particle masses must be > 0")
            store.masses[:] = masses
        if temperatures is not None:
            store.temperatures[:] = np.clip(temperatures, T_CMB_0, PLANCK_TEMPERATURE)

        store.update_statistics()
        return store

    def is_active(self, index: int) -> bool:
        return bool(self.active[index])

    @property
    def active_count(self) -> int:
        return int(self.active.sum())

    def active_indices(self) -> np.ndarray:
        return np.flatnonzero(self.active)

    def deactivate(self, index: int):
        """Retire a particle without moving any other particle's index."""
        self.active[index] = False

    def update_ages(self, dt: float):
        """Advance the age of every active particle."""
        self.ages[self.active] += dt

    def kinetic_energy(self) -> float:
        """Total kinetic energy of active particles: sum(0.5 * m * v^2)"""
        v_sq = (self.velocities[self.active] ** 2).sum(axis=-1)
        return float(0.5 * (self.masses[self.active] * v_sq).sum())

    def update_statistics(self) -> ParticleStats:
        """Recompute summary statistics over active particles."""
        mask = self.active
        n_active = int(mask.sum())
        if n_active == 0:
            self.stats = ParticleStats(active_count=0)
            return self.stats

        temps = self.temperatures[mask]
        self.stats = ParticleStats(
            avg_temperature=float(temps.mean()),
            min_temperature=float(temps.min()),
            max_temperature=float(temps.max()),
            total_mass=float(self.masses[mask].sum()),
            total_kinetic_energy=self.kinetic_energy(),
            active_count=n_active,
        )
        return self.stats


# =============================================================================
# INITIAL CONDITIONS
# =============================================================================

def _spherical_positions(n: int, radius: float, rng: np.random.Generator) -> np.ndarray:
    """Uniform distribution inside a sphere."""
    r = radius * np.cbrt(rng.random(n))
    theta = rng.random(n) * 2 * math.pi
    phi = np.arccos(2 * rng.random(n) - 1)

    positions = np.empty((n, 3))
    positions[:, 0] = r * np.sin(phi) * np.cos(theta)
    positions[:, 1] = r * np.sin(phi) * np.sin(theta)
    positions[:, 2] = r * np.cos(phi)
    return positions


def _grid_positions(n: int, radius: float) -> np.ndarray:
    """Regular cubic lattice spanning [-radius, radius)."""
    side = math.ceil(round(n ** (1 / 3), 9))
    spacing = (2 * radius) / side
    index = np.arange(n)

    positions = np.empty((n, 3))
    positions[:, 0] = (index % side) * spacing - radius
    positions[:, 1] = ((index // side) % side) * spacing - radius
    positions[:, 2] = (index // (side * side)) * spacing - radius
    return positions


def _gaussian_positions(n: int, radius: float, rng: np.random.Generator) -> np.ndarray:
    return rng.normal(0.0, radius / 3, size=(n, 3))


def _dual_cluster_positions(n: int, radius: float, rng: np.random.Generator) -> np.ndarray:
    """Two gaussian blobs offset along x, for collision setups."""
    positions = _gaussian_positions(n, radius / 2, rng)
    second = np.arange(n) >= n / 2
    positions[:, 0] += np.where(second, radius, -radius)
    return positions


DISTRIBUTIONS = ("spherical", "grid", "gaussian", "dual_cluster")


def create_universe(
    num_particles: int = 10000,
    radius: float = 50.0,
    distribution: str = "spherical",
    perturbation_amplitude: float = PERTURBATION_AMPLITUDE,
    hubble_velocity: float = 0.001,
    thermal_velocity: float = 0.1,
    rng: np.random.Generator = None,
) -> ParticleStore:
    """
    Create the initial particle distribution.

    Args:
        num_particles: Number of particles
        radius: Characteristic radius of the distribution
        distribution: One of DISTRIBUTIONS
        perturbation_amplitude: Primordial position perturbation (fraction of radius)
        hubble_velocity: Hubble-flow velocity per unit distance
        thermal_velocity: Width of the uniform thermal velocity component
        rng: Seeded generator (a fresh unseeded one if None)

    Returns:
        ParticleStore with every particle active at Planck temperature
    """
    if distribution not in DISTRIBUTIONS:
        raise ValueError(f"unknown distribution {distribution!r}, expected one of {DISTRIBUTIONS}")
    rng = rng if rng is not None else np.random.default_rng()
    n = num_particles

    if distribution == "grid":
        positions = _grid_positions(n, radius)
    elif distribution == "gaussian":
        positions = _gaussian_positions(n, radius, rng)
    elif distribution == "dual_cluster":
        positions = _dual_cluster_positions(n, radius, rng)
    else:
        positions = _spherical_positions(n, radius, rng)

    # Primordial perturbations
    positions += (rng.random((n, 3)) - 0.5) * perturbation_amplitude * radius

    # Hubble flow + thermal
    velocities = positions * hubble_velocity + (rng.random((n, 3)) - 0.5) * thermal_velocity

    # Power-law (Schechter-like) masses
    masses = 1e10 * np.power(rng.random(n) + 0.1, -2.3)

    temperatures = PLANCK_TEMPERATURE * (0.9 + rng.random(n) * 0.2)

    return ParticleStore.from_arrays(positions, velocities, masses, temperatures)


def create_test_cloud(
    num_particles: int = 100,
    radius: float = 10.0,
    mass_range: tuple = (1e9, 1e12),
    velocity_scale: float = 0.0,
    rng: np.random.Generator = None,
) -> ParticleStore:
    """
    Simple test cloud: uniform sphere with log-uniform masses.

    Velocities are isotropic gaussian with std velocity_scale (at rest by default).
    """
    rng = rng if rng is not None else np.random.default_rng()
    lo, hi = mass_range

    positions = _spherical_positions(num_particles, radius, rng)
    masses = np.exp(rng.uniform(math.log(lo), math.log(hi), num_particles))
    velocities = rng.normal(0.0, 1.0, size=(num_particles, 3)) * velocity_scale

    return ParticleStore.from_arrays(positions, velocities, masses)
