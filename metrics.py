"""
Metrics collection module.
Computes energy, momentum, velocity dispersion and reference forces.
"""

import torch
import numpy as np
from dataclasses import dataclass, field


@dataclass
class SimulationMetrics:
    """Container for all simulation metrics over time."""
    ticks: list[int] = field(default_factory=list)
    time: list[float] = field(default_factory=list)
    scale_factor: list[float] = field(default_factory=list)
    redshift: list[float] = field(default_factory=list)
    temperature: list[float] = field(default_factory=list)
    total_energy: list[float] = field(default_factory=list)
    kinetic_energy: list[float] = field(default_factory=list)
    potential_energy: list[float] = field(default_factory=list)
    virial_ratio: list[float] = field(default_factory=list)
    velocity_dispersion: list[float] = field(default_factory=list)
    momentum: list[float] = field(default_factory=list)
    cluster_count: list[int] = field(default_factory=list)
    filament_count: list[int] = field(default_factory=list)
    void_count: list[int] = field(default_factory=list)
    epoch: list[str] = field(default_factory=list)


def _tensor(values, dtype=torch.float64) -> torch.Tensor:
    return torch.as_tensor(np.asarray(values), dtype=dtype)


def _active(particles):
    """Positions, velocities and masses of active particles as float64 tensors."""
    mask = particles.active
    return (_tensor(particles.positions[mask]),
            _tensor(particles.velocities[mask]),
            _tensor(particles.masses[mask]))


def compute_kinetic_energy(velocities: torch.Tensor, masses: torch.Tensor) -> float:
    """Total kinetic energy: sum(0.5 * m * v^2)"""
    v_sq = (velocities ** 2).sum(dim=-1)
    return (0.5 * (masses * v_sq).sum()).item()


def compute_potential_energy(
    positions: torch.Tensor,
    masses: torch.Tensor,
    G: float,
    softening: float
) -> float:
    """
    Total gravitational potential energy.
    U = -G * sum_{i<j} m_i * m_j / sqrt(r_ij^2 + eps^2)
    """
    n = len(masses)
    if n < 2:
        return 0.0

    # Upper triangle only to avoid double counting
    i, j = torch.triu_indices(n, n, offset=1, device=positions.device)
    diff = positions[j] - positions[i]
    dist = torch.sqrt((diff ** 2).sum(dim=-1) + softening ** 2)

    pe = -G * (masses[i] * masses[j] / dist).sum()
    return pe.item()


def compute_center_of_mass(positions: torch.Tensor, masses: torch.Tensor) -> np.ndarray:
    total_mass = masses.sum()
    com = (positions * masses.unsqueeze(-1)).sum(dim=0) / total_mass
    return com.cpu().numpy()


def compute_total_momentum(velocities: torch.Tensor, masses: torch.Tensor) -> np.ndarray:
    return (velocities * masses.unsqueeze(-1)).sum(dim=0).cpu().numpy()


def compute_velocity_dispersion(velocities: torch.Tensor) -> float:
    """
    Compute velocity dispersion (standard deviation of speeds).

    Higher dispersion indicates the system is heating up.
    """
    if len(velocities) < 2:
        return 0.0
    v_mag = torch.sqrt((velocities ** 2).sum(dim=-1))
    return v_mag.std().item()


def direct_sum_forces(
    positions,
    masses,
    G: float,
    softening: float,
    min_dist_sq: float = 1e-10
) -> np.ndarray:
    """
    O(N^2) reference forces with the same law as the octree:

        F_ij = G * m_i * m_j / (r^2 + eps^2)    along d_ij / r

    Pairs closer than sqrt(min_dist_sq) (including i == j) are skipped.

    Returns:
        (N, 3) numpy array
    """
    pos = _tensor(positions)
    m = _tensor(masses)

    # diff[i, j] = pos[j] - pos[i] (vector from i to j)
    diff = pos.unsqueeze(0) - pos.unsqueeze(1)
    dist_sq = (diff ** 2).sum(dim=-1)

    keep = dist_sq >= min_dist_sq
    r = torch.sqrt(torch.where(keep, dist_sq, torch.ones_like(dist_sq)))
    scale = G * m.unsqueeze(1) * m.unsqueeze(0) / ((dist_sq + softening ** 2) * r)
    scale = torch.where(keep, scale, torch.zeros_like(scale))

    return (scale.unsqueeze(-1) * diff).sum(dim=1).cpu().numpy()


def collect_metrics(engine, particles, tick: int, metrics: SimulationMetrics):
    """
    Collect all metrics at current simulation state.

    Args:
        engine: PhysicsEngine instance
        particles: ParticleStore being simulated
        tick: Current tick number
        metrics: SimulationMetrics to update
    """
    _, vel, masses = _active(particles)
    energy = engine.calculate_energy(particles)
    cosmology = engine.cosmology
    stats = engine.cluster_detector.get_stats()

    metrics.ticks.append(tick)
    metrics.time.append(cosmology.time)
    metrics.scale_factor.append(cosmology.scale_factor)
    metrics.redshift.append(cosmology.redshift)
    metrics.temperature.append(cosmology.temperature)
    metrics.kinetic_energy.append(energy.kinetic)
    metrics.potential_energy.append(energy.potential)
    metrics.total_energy.append(energy.total)
    metrics.virial_ratio.append(energy.virial_ratio)
    metrics.velocity_dispersion.append(compute_velocity_dispersion(vel))
    metrics.momentum.append(float(np.linalg.norm(compute_total_momentum(vel, masses))))
    metrics.cluster_count.append(stats.cluster_count)
    metrics.filament_count.append(stats.filament_count)
    metrics.void_count.append(stats.void_count)
    metrics.epoch.append(cosmology.current_epoch.short_name)
