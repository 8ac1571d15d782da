"""
Cosmic Evolution Simulator - Main Entry Point

Runs a particle universe through expansion, gravity and cooling, detects
large-scale structure along the way and plots the result.

Usage:
    python main.py --particles 3000 --ticks 1000
    python main.py --start-epoch first_galaxies --time-speed 1e13
    python main.py --quick  # Fast test with fewer particles
"""

import argparse
import logging
from pathlib import Path

import torch

from constants import BARNES_HUT_THETA, DEFAULT_PARTICLE_COUNT, SOFTENING_LENGTH
from cosmology import COSMOLOGY_PRESETS, CosmologyParams
from epochs import EPOCHS, FUTURE_SCENARIOS
from metrics import SimulationMetrics, collect_metrics
from particles import DISTRIBUTIONS, create_universe
from physics_engine import PhysicsConfig, PhysicsEngine
from reproducibility import get_software_manifest, hash_particle_state, make_generator, set_all_seeds
from sim_logging import setup_logging
from visualization import plot_full_report, print_summary


def parse_args():
    parser = argparse.ArgumentParser(
        description="Cosmic Evolution Simulator: Barnes-Hut gravity in an expanding universe",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python main.py --particles 3000 --ticks 1000
  python main.py --start-epoch cosmic_web --no-expansion
  python main.py --preset phantom_energy --time-speed 1e15
  python main.py --start-epoch present --future rip

Distributions:
  spherical     - Uniform sphere (default)
  grid          - Regular lattice
  gaussian      - Centrally concentrated
  dual_cluster  - Two blobs on a collision course
        """
    )

    parser.add_argument("--particles", "-n", type=int, default=DEFAULT_PARTICLE_COUNT,
                        help=f"Number of particles (default: {DEFAULT_PARTICLE_COUNT})")
    parser.add_argument("--ticks", "-t", type=int, default=1000,
                        help="Number of simulation ticks (default: 1000)")
    parser.add_argument("--dt", type=float, default=1 / 60,
                        help="Frame time step (default: 1/60)")
    parser.add_argument("--time-speed", type=float, default=1e13,
                        help="Cosmic seconds per unit of dt (default: 1e13)")
    parser.add_argument("--distribution", choices=DISTRIBUTIONS, default="spherical",
                        help="Initial particle distribution (default: spherical)")
    parser.add_argument("--radius", type=float, default=50.0,
                        help="Initial radius (default: 50)")
    parser.add_argument("--start-epoch", type=str, default="matter_radiation_equality",
                        help="Epoch id to start from (default: matter_radiation_equality)")
    parser.add_argument("--preset", choices=sorted(COSMOLOGY_PRESETS), default=None,
                        help="Cosmology preset (default: Planck 2018)")
    parser.add_argument("--future", choices=sorted(FUTURE_SCENARIOS), default=None,
                        help="Future scenario: sets the dark energy equation of state w")
    parser.add_argument("--G", type=float, default=1e-4,
                        help="Gravitational constant (default: 1e-4)")
    parser.add_argument("--theta", type=float, default=BARNES_HUT_THETA,
                        help=f"Barnes-Hut opening angle (default: {BARNES_HUT_THETA})")
    parser.add_argument("--softening", type=float, default=SOFTENING_LENGTH,
                        help=f"Softening length (default: {SOFTENING_LENGTH})")
    parser.add_argument("--no-expansion", action="store_true",
                        help="Disable cosmic expansion")
    parser.add_argument("--seed", type=int, default=42,
                        help="Random seed (default: 42)")
    parser.add_argument("--metrics-interval", type=int, default=10,
                        help="Ticks between metric samples (default: 10)")
    parser.add_argument("--output", "-o", type=str, default="output",
                        help="Output directory for plots (default: output)")
    parser.add_argument("--log-file", type=str, default=None,
                        help="Also log to this file")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Debug logging (per-tick timings)")
    parser.add_argument("--quick", action="store_true",
                        help="Quick test mode (500 particles, 300 ticks)")
    parser.add_argument("--no-show", action="store_true",
                        help="Don't display plots (just save them)")

    return parser.parse_args()


def main():
    args = parse_args()
    logger = setup_logging(args.log_file, logging.DEBUG if args.verbose else logging.INFO)

    # Quick mode overrides
    if args.quick:
        args.particles = 500
        args.ticks = 300
        print("Quick mode: 500 particles, 300 ticks")

    manifest = get_software_manifest()
    print(f"\n{manifest.describe()}")

    set_all_seeds(args.seed)
    device = torch.device("cuda" if torch.cuda.is_available() else "cpu")
    print(f"Device: {device}")

    cosmology_params = COSMOLOGY_PRESETS[args.preset] if args.preset else CosmologyParams()
    config = PhysicsConfig(
        G=args.G,
        theta=args.theta,
        softening=args.softening,
        enable_expansion=not args.no_expansion,
        seed=args.seed,
        device=str(device),
    )
    engine = PhysicsEngine(config, cosmology_params)

    start_index = EPOCHS.index_of(args.start_epoch)
    if start_index < 0:
        raise SystemExit(f"Unknown epoch {args.start_epoch!r}. Known: {', '.join(e.id for e in EPOCHS)}")
    engine.cosmology.jump_to_epoch(start_index)
    if args.future:
        engine.cosmology.apply_future_scenario(args.future)

    # Create initial universe
    print(f"\nCreating {args.distribution} universe with {args.particles} particles...")
    particles = create_universe(
        num_particles=args.particles,
        radius=args.radius,
        distribution=args.distribution,
        rng=make_generator(args.seed),
    )
    print(f"  Position range: [{particles.positions.min():.2f}, {particles.positions.max():.2f}]")
    print(f"  Total mass: {particles.stats.total_mass:.3e}")
    print(f"  State hash: {hash_particle_state(particles.positions, particles.velocities)}")

    print(f"\n{'=' * 50}")
    print(f"Running {args.ticks} ticks from {engine.cosmology.current_epoch.name}")
    print(f"{'=' * 50}")

    metrics = SimulationMetrics()
    collect_metrics(engine, particles, 0, metrics)

    for tick in range(1, args.ticks + 1):
        engine.update(particles, args.dt, args.time_speed)

        if tick % args.metrics_interval == 0 or tick == args.ticks:
            engine.detect_clusters(particles)
            collect_metrics(engine, particles, tick, metrics)

        if tick % 100 == 0:
            state = engine.get_state()
            print(f"  Tick {tick}: t={engine.cosmology.time:.3e} s, "
                  f"a={engine.cosmology.scale_factor:.3e}, "
                  f"E={state.total_energy:.4e}, gravity={state.gravity_mode}")

    particles.update_statistics()
    logger.info(f"Final state hash: {hash_particle_state(particles.positions, particles.velocities)}")

    top = engine.get_top_clusters(5)
    if top:
        print("\nDensest clusters:")
        for cluster in top:
            print(f"  {cluster.kind:<13} at ({cluster.position[0]:7.2f}, {cluster.position[1]:7.2f}, "
                  f"{cluster.position[2]:7.2f})  density {cluster.density:.3e}  "
                  f"({cluster.relative_density:.1f}x mean)")

    # Generate plots
    print(f"\n{'=' * 50}")
    print("Generating plots...")
    print(f"{'=' * 50}")

    output_dir = Path(args.output)
    plot_full_report(
        particles,
        metrics,
        engine.cluster_detector.get_structures(),
        save_dir=str(output_dir),
        show=not args.no_show
    )

    print_summary(metrics)
    print(f"\nPlots saved to: {output_dir.absolute()}")


if __name__ == "__main__":
    main()
