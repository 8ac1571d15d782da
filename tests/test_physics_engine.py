"""Physics engine tests.

These tests run on CPU and validate:
- Expansion factor clamping and the reversed-time skip.
- Momentum conservation of a gravitating pair (center of mass stays put).
- Recovery from non-finite state and untouched inactive particles.
- Seeded reproducibility and deterministic render jitter.
"""

from __future__ import annotations

import logging
import math

import numpy as np
import pytest

from constants import BARNES_HUT_THETA, GRAVITY_START_TIME, SOFTENING_LENGTH, T_CMB_0
from particles import ParticleStore, create_test_cloud
from physics_engine import PhysicsConfig, PhysicsEngine
from reproducibility import hash_particle_state


def _engine(**overrides) -> PhysicsEngine:
    return PhysicsEngine(PhysicsConfig(**overrides))


def _gravity_engine(**overrides) -> PhysicsEngine:
    """Expansion off, gravity on from the first tick, no periodic detection."""
    settings = dict(enable_expansion=False, detection_interval=0)
    settings.update(overrides)
    engine = _engine(**settings)
    engine.cosmology.jump_to_time(GRAVITY_START_TIME * 2)
    return engine


def _center_of_mass(particles: ParticleStore) -> np.ndarray:
    return (particles.positions * particles.masses[:, None]).sum(axis=0) / particles.masses.sum()


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

@pytest.mark.parametrize(
    "overrides",
    [
        dict(softening=0.0),
        dict(G=float("nan")),
        dict(theta=1.5),
        dict(grid_apply_stride=0),
        dict(detection_interval=-1),
        dict(max_displacement=0.0),
        dict(max_expansion=1.0),
    ],
)
def test_invalid_config_is_rejected(overrides) -> None:
    with pytest.raises(ValueError):
        _engine(**overrides)


def test_set_parameters() -> None:
    engine = _engine()
    engine.set_parameters(G=2e-4, theta=0.8)
    assert engine.G == 2e-4
    assert engine.theta == 0.8
    assert engine.octree.theta == 0.8
    assert engine.softening == 1.0

    with pytest.raises(ValueError):
        engine.set_parameters(softening=-1.0)
    assert engine.softening == 1.0

    engine.set_parameters()
    assert engine.config_dict()["G"] == 2e-4


def test_engine_keeps_its_own_config_copy() -> None:
    config = PhysicsConfig(G=5e-4)
    engine = PhysicsEngine(config)
    engine.set_parameters(G=1e-3)
    assert config.G == 5e-4


def test_defaults_come_from_constants() -> None:
    engine = _engine()
    assert engine.theta == BARNES_HUT_THETA
    assert engine.softening == SOFTENING_LENGTH
    assert engine.octree.theta == BARNES_HUT_THETA


# -----------------------------------------------------------------------------
# Expansion
# -----------------------------------------------------------------------------

def test_expansion_factor_is_clamped() -> None:
    engine = _engine()
    assert engine.expansion_factor(1e12, 1.0) == 1.1
    assert engine.expansion_factor(-1e12, 1.0) == 0.9
    assert engine.expansion_factor(1e3, 1.0) == pytest.approx(1.0 + 1e-3)


def test_apply_expansion_scales_positions_and_velocities() -> None:
    particles = create_test_cloud(20, velocity_scale=1.0, rng=np.random.default_rng(0))
    positions = particles.positions.copy()
    velocities = particles.velocities.copy()

    engine = _engine()
    factor = engine.apply_expansion(particles, dt=1.0, hubble_rate=1e12)

    assert factor == 1.1
    np.testing.assert_array_equal(particles.positions, positions * 1.1)
    np.testing.assert_array_equal(particles.velocities, velocities / 1.1)

    factor = engine.apply_expansion(particles, dt=1.0, hubble_rate=-1e12)
    assert factor == 0.9


def test_invalid_expansion_factor_is_skipped(caplog) -> None:
    caplog.set_level(logging.WARNING, logger="CosmoSim")
    particles = create_test_cloud(10, rng=np.random.default_rng(1))
    positions = particles.positions.copy()

    engine = _engine()
    assert engine.apply_expansion(particles, dt=1.0, hubble_rate=float("nan")) is None
    np.testing.assert_array_equal(particles.positions, positions)
    assert "Invalid expansion factor" in caplog.text


def test_expansion_only_runs_forward() -> None:
    engine = _engine(G=0.0)
    engine.cosmology.jump_to_time(1e16)
    particles = create_test_cloud(10, rng=np.random.default_rng(2))
    positions = particles.positions.copy()

    engine.update(particles, dt=1.0, time_speed=1e12, is_reversed=True)
    np.testing.assert_array_equal(particles.positions, positions)

    engine.update(particles, dt=1.0, time_speed=1e12)
    assert not np.array_equal(particles.positions, positions)
    ratio = particles.positions / positions
    assert np.allclose(ratio, ratio[0, 0])
    assert 1.0 < ratio[0, 0] <= 1.1


# -----------------------------------------------------------------------------
# Gravity
# -----------------------------------------------------------------------------

def test_gravity_mode_selection() -> None:
    particles = ParticleStore(50)
    assert _engine().select_gravity_mode(particles) == "barnes_hut"
    assert _engine(barnes_hut_max_particles=10).select_gravity_mode(particles) == "grid"
    assert _engine(barnes_hut_max_particles=10, use_grid_gravity=False).select_gravity_mode(particles) == "barnes_hut"
    assert _engine(use_barnes_hut=False).select_gravity_mode(particles) == "grid"
    assert _engine(use_barnes_hut=False, use_grid_gravity=False).select_gravity_mode(particles) == "direct"


def test_gravity_waits_for_matter_era() -> None:
    engine = _engine(enable_expansion=False)
    particles = create_test_cloud(10, rng=np.random.default_rng(3))

    engine.update(particles, dt=1.0, time_speed=1e6)
    assert engine.gravity_mode == "off"
    np.testing.assert_array_equal(particles.velocities, np.zeros((10, 3)))

    engine.cosmology.jump_to_time(GRAVITY_START_TIME)
    engine.update(particles, dt=1.0, time_speed=1e6)
    assert engine.gravity_mode == "barnes_hut"
    assert np.abs(particles.velocities).sum() > 0


def test_two_body_center_of_mass_is_fixed() -> None:
    positions = np.array([[-1.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
    velocities = np.array([[0.0, 0.03, 0.0], [0.0, -0.01, 0.0]])
    particles = ParticleStore.from_arrays(positions, velocities, masses=np.array([1.0, 3.0]))
    engine = _gravity_engine(G=1e-3, softening=0.1)

    start = _center_of_mass(particles)
    separation = float(np.linalg.norm(positions[1] - positions[0]))
    for _ in range(1000):
        engine.update(particles, dt=1.0)

    drift = float(np.linalg.norm(_center_of_mass(particles) - start))
    assert drift < 1e-4 * separation
    # The pair actually moved
    assert not np.allclose(particles.positions, positions)
    momentum = (particles.velocities * particles.masses[:, None]).sum(axis=0)
    np.testing.assert_allclose(momentum, np.zeros(3), atol=1e-12)


@pytest.mark.parametrize("mode", ["barnes_hut", "direct"])
def test_pair_attracts(mode) -> None:
    positions = np.array([[-5.0, 0.0, 0.0], [5.0, 0.0, 0.0]])
    particles = ParticleStore.from_arrays(positions, masses=np.array([2.0, 2.0]))
    overrides = dict(G=1.0, softening=0.1)
    if mode == "direct":
        overrides.update(use_barnes_hut=False, use_grid_gravity=False)
    engine = _gravity_engine(**overrides)

    engine.update(particles, dt=1.0)
    assert engine.gravity_mode == mode
    assert particles.velocities[0, 0] > 0
    assert particles.velocities[1, 0] < 0
    # dv = G m / (r^2 + eps^2) * dt
    assert particles.velocities[0, 0] == pytest.approx(2.0 / (100.0 + 0.01))


def test_velocity_change_is_clamped() -> None:
    positions = np.array([[-0.5, 0.0, 0.0], [0.5, 0.0, 0.0]])
    particles = ParticleStore.from_arrays(positions, masses=np.array([1e12, 1e12]))
    engine = _gravity_engine(G=1.0, softening=0.1)

    engine.update(particles, dt=1.0)
    assert particles.velocities[0, 0] == engine.config.max_velocity_change
    assert particles.velocities[1, 0] == -engine.config.max_velocity_change


def test_grid_gravity_pulls_blocks_together() -> None:
    # Two point-like clumps at the centers of grid cells 40 units apart
    positions = np.zeros((400, 3))
    positions[:200, 0] = -50.0
    positions[200:, 0] = 50.0
    particles = ParticleStore.from_arrays(positions, masses=np.full(400, 10.0))
    engine = _gravity_engine(G=1.0, use_barnes_hut=False, grid_accumulate_stride=1, grid_apply_stride=1)

    engine.update(particles, dt=1.0)
    assert engine.gravity_mode == "grid"
    assert np.isfinite(particles.velocities).all()
    # dv = G M / (d^2 + eps^2)^1.5 * d with M = 2000, d = 100
    expected = 2000.0 * 100.0 / (100.0 ** 2 + 1.0) ** 1.5
    np.testing.assert_allclose(particles.velocities[:200, 0], expected, rtol=1e-9)
    np.testing.assert_allclose(particles.velocities[200:, 0], -expected, rtol=1e-9)
    np.testing.assert_array_equal(particles.velocities[:, 1:], np.zeros((400, 2)))


def _two_clumps(per_clump: int = 100) -> ParticleStore:
    positions = np.zeros((2 * per_clump, 3))
    positions[:per_clump, 0] = -50.0
    positions[per_clump:, 0] = 50.0
    return ParticleStore.from_arrays(positions, masses=np.full(2 * per_clump, 10.0))


@pytest.mark.parametrize("corruption", ["nan", "inactive"])
def test_grid_gravity_blocks_skip_invalid_leader(corruption) -> None:
    particles = _two_clumps()
    if corruption == "nan":
        particles.positions[0] = np.nan
    else:
        particles.positions[0] = [1e3, 0.0, 0.0]
        particles.deactivate(0)
    engine = _gravity_engine(G=1.0, use_barnes_hut=False, grid_accumulate_stride=1, grid_apply_stride=100)

    engine.apply_grid_gravity(particles, dt=1.0)

    # The rest of the first block still falls toward the +x clump of 1000
    expected = 1000.0 * 100.0 / (100.0 ** 2 + 1.0) ** 1.5
    np.testing.assert_allclose(particles.velocities[1:100, 0], expected, rtol=1e-9)
    np.testing.assert_array_equal(particles.velocities[0], np.zeros(3))


def test_grid_gravity_default_strides() -> None:
    particles = create_test_cloud(1000, radius=50.0, mass_range=(1.0, 10.0), rng=np.random.default_rng(5))
    engine = _gravity_engine(G=1.0, barnes_hut_max_particles=100)

    engine.update(particles, dt=1.0)
    assert engine.gravity_mode == "grid"
    assert np.isfinite(particles.velocities).all()
    # Particles in one block of grid_apply_stride share their leader's velocity change
    np.testing.assert_array_equal(particles.velocities[0], particles.velocities[99])


# -----------------------------------------------------------------------------
# Robustness
# -----------------------------------------------------------------------------

def test_nonfinite_state_is_reset() -> None:
    particles = create_test_cloud(30, rng=np.random.default_rng(7))
    particles.positions[4] = np.nan
    particles.velocities[9] = [np.inf, 0.0, -np.inf]
    engine = _gravity_engine(G=1e-4)

    for _ in range(3):
        engine.update(particles, dt=1.0)

    assert np.isfinite(particles.positions).all()
    assert np.isfinite(particles.velocities).all()
    assert np.isfinite(particles.temperatures).all()


@pytest.mark.parametrize("dt, time_speed", [(float("nan"), 1.0), (1.0, float("inf")), (float("inf"), 1.0)])
def test_nonfinite_step_is_ignored(dt, time_speed, caplog) -> None:
    particles = create_test_cloud(30, velocity_scale=1.0, rng=np.random.default_rng(11))
    engine = _gravity_engine(G=1e-4)
    before = (particles.positions.copy(), particles.velocities.copy(), particles.ages.copy())
    cosmic_time = engine.cosmology.time

    caplog.set_level(logging.WARNING, logger="CosmoSim")
    result = engine.update(particles, dt=dt, time_speed=time_speed)

    assert "non-finite tick step" in caplog.text
    assert result.cosmology_state.time == cosmic_time
    assert engine.tick == 0
    np.testing.assert_array_equal(particles.positions, before[0])
    np.testing.assert_array_equal(particles.velocities, before[1])
    np.testing.assert_array_equal(particles.ages, before[2])


def test_inactive_particles_are_untouched() -> None:
    particles = create_test_cloud(30, velocity_scale=1.0, rng=np.random.default_rng(8))
    particles.deactivate(12)
    snapshot = (particles.positions[12].copy(), particles.velocities[12].copy(),
                particles.temperatures[12], particles.ages[12])
    engine = _engine(G=1e-4)
    engine.cosmology.jump_to_time(GRAVITY_START_TIME * 2)

    for _ in range(5):
        engine.update(particles, dt=1.0, time_speed=1e10)

    np.testing.assert_array_equal(particles.positions[12], snapshot[0])
    np.testing.assert_array_equal(particles.velocities[12], snapshot[1])
    assert particles.temperatures[12] == snapshot[2]
    assert particles.ages[12] == snapshot[3]


# -----------------------------------------------------------------------------
# Thermal and bookkeeping
# -----------------------------------------------------------------------------

def test_epoch_cooling() -> None:
    engine = _engine()
    engine.cosmology.jump_to_time(1e10)
    particles = create_test_cloud(10, rng=np.random.default_rng(9))
    particles.temperatures[:] = 1e6

    engine.update(particles, dt=1.0, time_speed=1e9)
    rate = engine.cosmology.current_epoch.cooling_rate
    fraction = 1e9 / 1.1e10
    np.testing.assert_allclose(particles.temperatures, 1e6 * (1 - rate * fraction), rtol=1e-12)


def test_temperatures_stay_in_physical_range() -> None:
    engine = _engine()
    particles = create_test_cloud(10, rng=np.random.default_rng(10))
    particles.temperatures[:] = 3.0
    engine.cosmology.jump_to_time(1e14)

    for _ in range(50):
        engine.update(particles, dt=1.0, time_speed=1e14)
    assert (particles.temperatures >= T_CMB_0).all()


def test_heating_near_center_once_gravity_is_on() -> None:
    positions = np.array([[0.0, 0.0, 0.0], [100.0, 0.0, 0.0]])
    particles = ParticleStore.from_arrays(positions, masses=np.array([1.0, 1.0]))
    particles.temperatures[:] = 1e3
    engine = _gravity_engine(G=0.0)

    engine.update(particles, dt=1.0, time_speed=1e12)
    rate = engine.cosmology.current_epoch.cooling_rate
    fraction = 1e12 / engine.cosmology.time
    cooled = 1e3 * (1 - rate * fraction)
    assert particles.temperatures[1] == pytest.approx(cooled)
    assert particles.temperatures[0] >= cooled


def test_ages_advance_by_scaled_dt() -> None:
    engine = _engine()
    particles = create_test_cloud(5, rng=np.random.default_rng(11))
    engine.update(particles, dt=0.5, time_speed=4.0)
    np.testing.assert_array_equal(particles.ages, np.full(5, 2.0))


def test_reverse_moves_cosmic_time_back() -> None:
    engine = _engine()
    engine.cosmology.jump_to_time(1e15)
    particles = create_test_cloud(5, rng=np.random.default_rng(12))

    result = engine.update(particles, dt=1.0, time_speed=1e14, is_reversed=True)
    assert result.cosmology_state.time == 9e14
    assert engine.cosmology.time == 9e14
    assert result.physics_time >= 0.0


def test_detection_interval() -> None:
    engine = _engine(detection_interval=5)
    particles = create_test_cloud(40, rng=np.random.default_rng(13))

    for _ in range(4):
        engine.update(particles, dt=1.0)
    assert engine.cluster_stats is None

    engine.update(particles, dt=1.0)
    assert engine.cluster_stats is not None
    assert engine.get_state().cluster_stats is engine.cluster_stats
    assert particles.cluster_count == engine.cluster_stats.cluster_count
    assert engine.get_clusters() == engine.cluster_detector.clusters


def test_energy_report() -> None:
    positions = np.array([[0.0, 0.0, 0.0], [3.0, 4.0, 0.0]])
    velocities = np.array([[1.0, 0.0, 0.0], [0.0, 2.0, 0.0]])
    particles = ParticleStore.from_arrays(positions, velocities, masses=np.array([2.0, 1.0]))
    engine = _engine(G=1.0, softening=1.0)

    report = engine.calculate_energy(particles)
    assert report.kinetic == pytest.approx(0.5 * 2.0 * 1.0 + 0.5 * 1.0 * 4.0)
    assert report.potential == pytest.approx(-2.0 / math.sqrt(26.0))
    assert report.total == pytest.approx(report.kinetic + report.potential)
    assert report.drift == 0.0
    assert report.virial_ratio == pytest.approx(2 * report.kinetic / abs(report.potential))

    particles.velocities *= 2.0
    report = engine.calculate_energy(particles)
    assert report.drift > 0


def test_potential_skipped_for_large_counts() -> None:
    particles = create_test_cloud(30, velocity_scale=1.0, rng=np.random.default_rng(14))
    engine = _engine(energy_max_particles=10)
    report = engine.calculate_energy(particles)
    assert report.potential == 0.0
    assert report.kinetic > 0


def test_reset() -> None:
    engine = _engine()
    particles = create_test_cloud(5, rng=np.random.default_rng(15))
    engine.update(particles, dt=1.0, time_speed=1e12)
    engine.reset()

    assert engine.tick == 0
    assert engine.cosmology.time == 0.0
    assert engine.get_state().gravity_mode == "off"


# -----------------------------------------------------------------------------
# Reproducibility
# -----------------------------------------------------------------------------

def _run(seed: int) -> tuple[str, np.ndarray]:
    particles = create_test_cloud(60, velocity_scale=1.0, rng=np.random.default_rng(16))
    particles.temperatures[:] = 1e3
    engine = _gravity_engine(seed=seed)
    for _ in range(20):
        engine.update(particles, dt=1.0, time_speed=1e10)
    return hash_particle_state(particles.positions, particles.velocities), particles.temperatures.copy()


def test_same_seed_reproduces_run() -> None:
    hash_a, temps_a = _run(42)
    hash_b, temps_b = _run(42)
    assert hash_a == hash_b
    np.testing.assert_array_equal(temps_a, temps_b)

    _, temps_c = _run(7)
    assert not np.array_equal(temps_a, temps_c)


def test_jitter_is_deterministic() -> None:
    engine = _engine()
    particles = create_test_cloud(20, rng=np.random.default_rng(17))
    particles.deactivate(3)
    amplitude = engine.cosmology.current_epoch.particle_jitter
    assert amplitude > 0

    first = engine.get_jitter_offsets(particles, frame=0)
    np.testing.assert_array_equal(first, engine.get_jitter_offsets(particles, frame=9))
    assert not np.array_equal(first, engine.get_jitter_offsets(particles, frame=10))
    np.testing.assert_array_equal(first[3], np.zeros(3))
    assert (np.abs(first) <= amplitude / 4).all()


def test_no_jitter_in_late_epochs() -> None:
    engine = _engine()
    engine.cosmology.jump_to_time(4.2e17)
    particles = create_test_cloud(10, rng=np.random.default_rng(18))
    np.testing.assert_array_equal(engine.get_jitter_offsets(particles, frame=3), np.zeros((10, 3)))
