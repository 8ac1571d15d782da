"""
Physics engine.

Coordinates cosmic expansion, gravity, integration and thermal evolution
for one ParticleStore. Per tick, in this order:

    1. scaled_dt = dt * time_speed * (-1 if reversed else 1)
    2. cosmology.update(scaled_dt, reversed)
    3. expansion (forward only): x *= f, v /= f with f = 1 + clamp(H * k * dt, +-0.1)
    4. gravity once cosmic time has passed matter-radiation equality:
       Barnes-Hut for small N, a coarse torch grid approximation otherwise
    5. integration: x += clamp(v * dt * integration_scale, +-max_displacement)
    6. temperature: epoch cooling, plus heating near the center once gravity is on
    7. ages += scaled_dt
    8. every detection_interval ticks: cluster detection

Nothing in the tick raises on bad numbers. Non-finite values are skipped or
reset to zero at the post-expansion, post-force and post-integration
checkpoints.
"""

import time
from dataclasses import dataclass, asdict, replace
from typing import List, Optional

import numpy as np
import torch

from cluster_detector import ClusterDetector, DetectionStats, Structure
from constants import BARNES_HUT_THETA, GRAVITY_START_TIME, PLANCK_TEMPERATURE, SOFTENING_LENGTH, T_CMB_0
from cosmology import Cosmology, CosmologyParams, CosmologyState
from metrics import compute_kinetic_energy, compute_potential_energy, direct_sum_forces
from octree import Octree, TreeStats
from reproducibility import make_generator, jitter_offsets
from sim_logging import get_logger
from validation import clamp_components, finite_rows, is_finite_scalar, is_valid_factor, sanitize_rows

logger = get_logger("Physics")


@dataclass
class PhysicsConfig:
    """Physics engine configuration."""
    # Gravity
    G: float = 1e-4                         # scaled gravitational constant
    softening: float = SOFTENING_LENGTH
    theta: float = BARNES_HUT_THETA
    use_barnes_hut: bool = True
    use_grid_gravity: bool = True           # grid fallback above barnes_hut_max_particles
    barnes_hut_max_particles: int = 5000
    gravity_start_time: float = GRAVITY_START_TIME

    # Grid gravity fallback
    grid_size: int = 10
    grid_extent: float = 200.0              # cube side, centered on the origin
    grid_accumulate_stride: int = 10        # every Nth particle deposits mass
    grid_apply_stride: int = 100            # every Mth particle leads a block

    # Integration safety
    max_velocity_change: float = 100.0
    max_displacement: float = 50.0
    integration_scale: float = 0.01

    # Expansion
    enable_expansion: bool = True
    expansion_rate_scale: float = 1e-6
    max_expansion: float = 0.1

    # Thermal
    heating_radius: float = 30.0
    heating_amplitude: float = 500.0

    # Structure detection
    detection_interval: int = 60            # ticks, 0 disables
    cluster_grid_size: int = 30

    # Diagnostics
    energy_max_particles: int = 5000        # potential energy skipped above this

    seed: Optional[int] = 42
    device: str = "cpu"

    def validate(self):
        """Raise ValueError for configurations the engine cannot run."""
        if not (is_finite_scalar(self.G) and self.G >= 0):
            raise ValueError(f"G must be finite and >= 0, got {self.G}")
        if not (is_finite_scalar(self.softening) and self.softening > 0):
            raise ValueError(f"softening must be > 0, got {self.softening}")
        if not (is_finite_scalar(self.theta) and 0 <= self.theta <= 1):
            raise ValueError(f"theta must be in [0, 1], got {self.theta}")
        for key in ("grid_accumulate_stride", "grid_apply_stride", "grid_size", "cluster_grid_size"):
            if getattr(self, key) < 1:
                raise ValueError(f"{key} must be >= 1, got {getattr(self, key)}")
        for key in ("barnes_hut_max_particles", "detection_interval", "energy_max_particles"):
            if getattr(self, key) < 0:
                raise ValueError(f"{key} must be >= 0, got {getattr(self, key)}")
        for key in ("grid_extent", "max_velocity_change", "max_displacement", "heating_radius"):
            if not getattr(self, key) > 0:
                raise ValueError(f"{key} must be > 0, got {getattr(self, key)}")
        if not 0 < self.max_expansion < 1:
            raise ValueError(f"max_expansion must be in (0, 1), got {self.max_expansion}")


@dataclass
class TickResult:
    physics_time: float                     # ms
    cosmology_state: CosmologyState


@dataclass
class EnergyReport:
    kinetic: float
    potential: float
    total: float
    drift: float                            # % of initial total energy
    virial_ratio: float                     # 2T / |U|


@dataclass
class PhysicsState:
    physics_time: float
    gravity_time: float
    integration_time: float
    expansion_time: float
    kinetic_energy: float
    potential_energy: float
    total_energy: float
    energy_drift: float
    virial_ratio: float
    G: float
    theta: float
    softening: float
    use_barnes_hut: bool
    gravity_mode: str
    tick: int
    octree_stats: TreeStats
    cluster_stats: Optional[DetectionStats]


class PhysicsEngine:
    """
    Gravity + expansion + thermal pipeline over an explicitly owned ParticleStore.

    Args:
        config: PhysicsConfig (defaults if None)
        cosmology_params: CosmologyParams for the expansion model
    """

    def __init__(self, config: PhysicsConfig = None, cosmology_params: CosmologyParams = None):
        self.config = replace(config) if config is not None else PhysicsConfig()
        self.config.validate()
        self.device = torch.device(self.config.device)

        self.octree = Octree(theta=self.config.theta)
        self.cosmology = Cosmology(cosmology_params)
        self.cluster_detector = ClusterDetector(grid_size=self.config.cluster_grid_size)
        self.rng = make_generator(self.config.seed)

        self._init_diagnostics()

    def _init_diagnostics(self):
        # Timing (ms)
        self.physics_time = 0.0
        self.gravity_time = 0.0
        self.integration_time = 0.0
        self.expansion_time = 0.0

        # Energy tracking
        self.kinetic_energy = 0.0
        self.potential_energy = 0.0
        self.total_energy = 0.0
        self.energy_drift = 0.0
        self.virial_ratio = 0.0
        self.initial_energy = None

        self.tick = 0
        self.gravity_mode = "off"
        self.detected_clusters: List[Structure] = []
        self.cluster_stats: Optional[DetectionStats] = None

    # -------------------------------------------------------------------------
    # Tick
    # -------------------------------------------------------------------------

    def update(self, particles, dt: float, time_speed: float = 1.0, is_reversed: bool = False) -> TickResult:
        """
        Advance the simulation by one frame.

        Args:
            particles: ParticleStore, mutated in place
            dt: Frame time step
            time_speed: Cosmic seconds per unit of dt
            is_reversed: Play time backwards

        Returns:
            TickResult with the physics wall time (ms) and the cosmology snapshot
        """
        cfg = self.config
        start = time.perf_counter()

        direction = -1.0 if is_reversed else 1.0
        scaled_dt = dt * time_speed * direction
        frame_dt = dt * direction
        if not (is_finite_scalar(scaled_dt) and is_finite_scalar(frame_dt)):
            logger.warning(f"Ignoring non-finite tick step dt={dt}, time_speed={time_speed}")
            return TickResult(physics_time=0.0, cosmology_state=self.cosmology.get_state(epoch_changed=False))

        cosmology_state = self.cosmology.update(scaled_dt, is_reversed)

        if not is_reversed and cfg.enable_expansion:
            t = time.perf_counter()
            self.apply_expansion(particles, frame_dt)
            self.expansion_time = (time.perf_counter() - t) * 1000

        gravity_active = self.cosmology.time > cfg.gravity_start_time
        if gravity_active:
            t = time.perf_counter()
            self.apply_gravity(particles, frame_dt)
            self.gravity_time = (time.perf_counter() - t) * 1000
        else:
            self.gravity_mode = "off"

        t = time.perf_counter()
        self.integrate_motion(particles, frame_dt * cfg.integration_scale)
        self.integration_time = (time.perf_counter() - t) * 1000

        self.update_temperatures(particles, scaled_dt, gravity_active)
        particles.update_ages(scaled_dt)

        self.tick += 1
        if cfg.detection_interval and self.tick % cfg.detection_interval == 0:
            self.detect_clusters(particles)

        self.physics_time = (time.perf_counter() - start) * 1000
        logger.debug(f"tick {self.tick}: {self.physics_time:.2f} ms "
                     f"(gravity {self.gravity_time:.2f} [{self.gravity_mode}], "
                     f"integration {self.integration_time:.2f}, expansion {self.expansion_time:.2f})")

        return TickResult(physics_time=self.physics_time, cosmology_state=cosmology_state)

    # -------------------------------------------------------------------------
    # Expansion
    # -------------------------------------------------------------------------

    def expansion_factor(self, hubble_rate: float, dt: float) -> float:
        """f = 1 + clamp(H * expansion_rate_scale * dt, -max_expansion, max_expansion)"""
        cfg = self.config
        growth = hubble_rate * cfg.expansion_rate_scale * dt
        return 1.0 + float(np.clip(growth, -cfg.max_expansion, cfg.max_expansion))

    def apply_expansion(self, particles, dt: float, hubble_rate: float = None) -> Optional[float]:
        """
        Scale active positions by the expansion factor and divide velocities by it.

        Args:
            particles: ParticleStore
            dt: Frame time step
            hubble_rate: H in km/s/Mpc; the current cosmological rate if None

        Returns:
            The applied factor, or None if the step was skipped
        """
        if hubble_rate is None:
            hubble_rate = self.cosmology.hubble_parameter(min(self.cosmology.redshift, 1e10))

        factor = self.expansion_factor(hubble_rate, dt)
        if not is_valid_factor(factor):
            logger.warning(f"Invalid expansion factor {factor} (H={hubble_rate}, "
                           f"z={self.cosmology.redshift:.3e}), skipping expansion")
            return None

        active = particles.active
        particles.positions[active] *= factor
        particles.velocities[active] /= factor

        sanitize_rows(particles.positions, active)
        sanitize_rows(particles.velocities, active)
        return factor

    # -------------------------------------------------------------------------
    # Gravity
    # -------------------------------------------------------------------------

    def select_gravity_mode(self, particles) -> str:
        cfg = self.config
        if cfg.use_barnes_hut and (particles.count <= cfg.barnes_hut_max_particles or not cfg.use_grid_gravity):
            return "barnes_hut"
        if cfg.use_grid_gravity:
            return "grid"
        return "direct"

    def apply_gravity(self, particles, dt: float):
        self.gravity_mode = self.select_gravity_mode(particles)
        if self.gravity_mode == "barnes_hut":
            self.apply_barnes_hut_gravity(particles, dt)
        elif self.gravity_mode == "grid":
            self.apply_grid_gravity(particles, dt)
        else:
            self.apply_direct_gravity(particles, dt)

    def _apply_velocity_change(self, particles, dv: np.ndarray, rows: np.ndarray):
        """Clamp per component, drop non-finite rows, add to velocities of rows."""
        dv = clamp_components(dv, self.config.max_velocity_change)
        dv[~finite_rows(dv)] = 0.0
        particles.velocities[rows] += dv
        sanitize_rows(particles.velocities, particles.active)

    def apply_barnes_hut_gravity(self, particles, dt: float):
        cfg = self.config
        self.octree.build(particles)
        forces = self.octree.calculate_all_forces(particles, cfg.G, cfg.softening)

        rows = particles.active_indices()
        dv = forces[rows] / particles.masses[rows, None] * dt
        self._apply_velocity_change(particles, dv, rows)

    def apply_direct_gravity(self, particles, dt: float):
        """O(N^2) torch sum, used when both approximations are switched off."""
        cfg = self.config
        rows = np.flatnonzero(particles.active & finite_rows(particles.positions))
        if len(rows) == 0:
            return
        forces = direct_sum_forces(particles.positions[rows], particles.masses[rows], cfg.G, cfg.softening)
        dv = forces / particles.masses[rows, None] * dt
        self._apply_velocity_change(particles, dv, rows)

    def apply_grid_gravity(self, particles, dt: float):
        """
        Coarse grid approximation for large N.

        Every grid_accumulate_stride-th particle deposits mass (scaled by the
        stride) into a grid_size^3 grid spanning grid_extent around the origin.
        The acceleration from all occupied cells' centers of mass is evaluated
        for every grid_apply_stride-th active particle with a finite position
        and applied to the block of valid particles it leads.
        """
        cfg = self.config
        n = particles.count
        if n == 0:
            return

        size = cfg.grid_size
        cell_size = cfg.grid_extent / size
        half = cfg.grid_extent / 2
        eps_sq = cfg.softening ** 2

        sample = np.arange(0, n, cfg.grid_accumulate_stride)
        sample = sample[particles.active[sample] & finite_rows(particles.positions[sample])]

        pos = torch.as_tensor(particles.positions[sample], dtype=torch.float64, device=self.device)
        mass = torch.as_tensor(particles.masses[sample], dtype=torch.float64, device=self.device)
        mass = mass * cfg.grid_accumulate_stride

        cells = torch.floor((pos + half) / cell_size).long()
        inside = ((cells >= 0) & (cells < size)).all(dim=-1)
        cells, pos, mass = cells[inside], pos[inside], mass[inside]
        flat = cells[:, 0] + cells[:, 1] * size + cells[:, 2] * size * size

        grid_mass = torch.zeros(size ** 3, dtype=torch.float64, device=self.device)
        grid_moment = torch.zeros((size ** 3, 3), dtype=torch.float64, device=self.device)
        grid_mass.index_add_(0, flat, mass)
        grid_moment.index_add_(0, flat, pos * mass.unsqueeze(-1))

        occupied = grid_mass > 0
        if not occupied.any():
            return
        cell_mass = grid_mass[occupied]
        cell_com = grid_moment[occupied] / cell_mass.unsqueeze(-1)

        # Blocks are formed over valid rows only, so a corrupted or inactive
        # particle never leads a block
        rows = np.flatnonzero(particles.active & finite_rows(particles.positions))
        leaders = rows[::cfg.grid_apply_stride]
        leader_pos = torch.as_tensor(particles.positions[leaders], dtype=torch.float64, device=self.device)

        diff = cell_com.unsqueeze(0) - leader_pos.unsqueeze(1)          # (L, C, 3)
        dist_sq = (diff ** 2).sum(dim=-1) + eps_sq
        strength = cfg.G * cell_mass.unsqueeze(0) / (dist_sq * torch.sqrt(dist_sq))
        acc = (strength.unsqueeze(-1) * diff).sum(dim=1).cpu().numpy()  # (L, 3)

        # Each valid particle takes its block leader's acceleration
        dv = acc[np.arange(len(rows)) // cfg.grid_apply_stride] * dt
        self._apply_velocity_change(particles, dv, rows)

    # -------------------------------------------------------------------------
    # Integration and thermal
    # -------------------------------------------------------------------------

    def integrate_motion(self, particles, dt: float):
        active = particles.active
        sanitize_rows(particles.velocities, active)

        step = clamp_components(particles.velocities[active] * dt, self.config.max_displacement)
        particles.positions[active] += step

        sanitize_rows(particles.positions, active)

    def update_temperatures(self, particles, scaled_dt: float, gravity_active: bool):
        """
        T *= 1 - cooling_rate * f, f = scaled_dt / time clamped to [-1, 1].

        Once gravity is active, particles within heating_radius of the origin
        gain U(0, 1) * heating_amplitude * (1 - r / heating_radius) * |f|.
        """
        cfg = self.config
        now = self.cosmology.time
        if now > 0 and is_finite_scalar(scaled_dt):
            fraction = float(np.clip(scaled_dt / now, -1.0, 1.0))
        else:
            fraction = 1.0

        active = particles.active
        temps = particles.temperatures[active] * (1 - self.cosmology.current_epoch.cooling_rate * fraction)

        if gravity_active:
            r = np.linalg.norm(particles.positions[active], axis=1)
            heating = 1 - r / cfg.heating_radius
            noise = self.rng.random(len(temps))
            temps += np.where(r < cfg.heating_radius,
                              noise * cfg.heating_amplitude * heating * abs(fraction), 0.0)

        temps[~np.isfinite(temps)] = T_CMB_0
        particles.temperatures[active] = np.clip(temps, T_CMB_0, PLANCK_TEMPERATURE)

    # -------------------------------------------------------------------------
    # Diagnostics
    # -------------------------------------------------------------------------

    def calculate_energy(self, particles) -> EnergyReport:
        """Kinetic, potential (skipped for large N) and total energy, drift and virial ratio."""
        cfg = self.config
        mask = particles.active
        vel = torch.as_tensor(particles.velocities[mask], dtype=torch.float64, device=self.device)
        masses = torch.as_tensor(particles.masses[mask], dtype=torch.float64, device=self.device)

        ke = compute_kinetic_energy(vel, masses)
        if len(masses) <= cfg.energy_max_particles:
            pos = torch.as_tensor(particles.positions[mask], dtype=torch.float64, device=self.device)
            pe = compute_potential_energy(pos, masses, cfg.G, cfg.softening)
        else:
            pe = 0.0

        self.kinetic_energy = ke
        self.potential_energy = pe
        self.total_energy = ke + pe

        if self.initial_energy is None and ke > 0:
            self.initial_energy = self.total_energy
        if self.initial_energy:
            self.energy_drift = abs(self.total_energy - self.initial_energy) / abs(self.initial_energy) * 100
        if pe != 0:
            self.virial_ratio = 2 * ke / abs(pe)

        return EnergyReport(
            kinetic=ke,
            potential=pe,
            total=self.total_energy,
            drift=self.energy_drift,
            virial_ratio=self.virial_ratio,
        )

    def detect_clusters(self, particles) -> DetectionStats:
        self.cluster_stats = self.cluster_detector.detect(particles)
        self.detected_clusters = self.cluster_detector.get_structures()["clusters"]
        particles.cluster_count = self.cluster_stats.cluster_count
        return self.cluster_stats

    def get_clusters(self) -> List[Structure]:
        return self.detected_clusters

    def get_top_clusters(self, count: int = 10) -> List[Structure]:
        return self.cluster_detector.get_top_clusters(count)

    def get_jitter_offsets(self, particles, frame: int) -> np.ndarray:
        """Deterministic render jitter for the current epoch, (N, 3); zero for inactive particles."""
        offsets = np.zeros((particles.count, 3))
        rows = particles.active_indices()
        offsets[rows] = jitter_offsets(rows, frame, self.cosmology.current_epoch.particle_jitter)
        return offsets

    def set_parameters(self, G: float = None, softening: float = None, theta: float = None,
                       use_barnes_hut: bool = None):
        """Update runtime physics parameters. None leaves a value unchanged."""
        changes = {k: v for k, v in dict(G=G, softening=softening, theta=theta,
                                         use_barnes_hut=use_barnes_hut).items() if v is not None}
        if not changes:
            return
        config = replace(self.config, **changes)
        config.validate()
        self.config = config
        if theta is not None:
            self.octree.set_theta(theta)
        logger.info(f"Physics parameters updated: {changes}")

    @property
    def G(self) -> float:
        return self.config.G

    @property
    def softening(self) -> float:
        return self.config.softening

    @property
    def theta(self) -> float:
        return self.config.theta

    def get_state(self) -> PhysicsState:
        cfg = self.config
        return PhysicsState(
            physics_time=self.physics_time,
            gravity_time=self.gravity_time,
            integration_time=self.integration_time,
            expansion_time=self.expansion_time,
            kinetic_energy=self.kinetic_energy,
            potential_energy=self.potential_energy,
            total_energy=self.total_energy,
            energy_drift=self.energy_drift,
            virial_ratio=self.virial_ratio,
            G=cfg.G,
            theta=cfg.theta,
            softening=cfg.softening,
            use_barnes_hut=cfg.use_barnes_hut,
            gravity_mode=self.gravity_mode,
            tick=self.tick,
            octree_stats=self.octree.get_stats(),
            cluster_stats=self.cluster_stats,
        )

    def config_dict(self) -> dict:
        return asdict(self.config)

    def reset(self):
        """Back to t = 0 with fresh diagnostics and a reseeded generator."""
        self.cosmology.reset()
        self.rng = make_generator(self.config.seed)
        self._init_diagnostics()
