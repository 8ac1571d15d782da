"""
Visualization module.
Diagnostic plots of the cosmic history, energy and detected structure.
"""

import matplotlib.pyplot as plt
import numpy as np
from pathlib import Path

from metrics import SimulationMetrics


def plot_particle_snapshot(
    particles,
    structures: dict = None,
    save_path: str = None,
    title: str = "Particle Distribution"
):
    """
    Projected particle positions (x-y and x-z) colored by log temperature.

    Args:
        particles: ParticleStore
        structures: Optional ClusterDetector.get_structures() result; clusters are circled
        save_path: Optional path to save figure
        title: Plot title
    """
    pos = particles.positions[particles.active]
    temps = np.log10(np.maximum(particles.temperatures[particles.active], 1.0))

    fig, axes = plt.subplots(1, 2, figsize=(12, 6))

    for ax, (i, j, label) in zip(axes, [(0, 1, "X-Y"), (0, 2, "X-Z")]):
        ax.scatter(pos[:, i], pos[:, j], s=1, alpha=0.6, c=temps, cmap='inferno')
        ax.set_facecolor('black')
        ax.set_aspect('equal')
        ax.set_title(label, fontsize=12, color='white')
        ax.tick_params(colors='white')

        if structures:
            for cluster in structures.get("clusters", []):
                circle = plt.Circle(
                    (cluster.position[i], cluster.position[j]),
                    cluster.size,
                    fill=False,
                    color='cyan' if cluster.kind == "cluster" else 'magenta',
                    linewidth=1
                )
                ax.add_patch(circle)

        if len(pos):
            max_extent = max(np.abs(pos).max() * 1.1, 15)
            ax.set_xlim(-max_extent, max_extent)
            ax.set_ylim(-max_extent, max_extent)

    fig.patch.set_facecolor('#1a1a2e')
    plt.suptitle(title, fontsize=14, color='white', y=1.02)
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, facecolor='#1a1a2e', bbox_inches='tight')
        print(f"Saved particle snapshot to {save_path}")

    return fig


def plot_cosmic_history(
    metrics: SimulationMetrics,
    save_path: str = None,
    title: str = "Cosmic History"
):
    """Scale factor, redshift and background temperature against tick."""
    fig, axes = plt.subplots(1, 3, figsize=(16, 5))

    series = [
        (metrics.scale_factor, "Scale factor a"),
        (np.asarray(metrics.redshift) + 1, "1 + z"),
        (metrics.temperature, "Temperature (K)"),
    ]
    for ax, (values, label) in zip(axes, series):
        if len(values):
            ax.semilogy(metrics.ticks, values, '-', linewidth=2)
        ax.set_xlabel("Simulation Tick", fontsize=12)
        ax.set_ylabel(label, fontsize=12)
        ax.grid(True, alpha=0.3)

    # Mark epoch changes on the scale factor panel
    for k in range(1, len(metrics.epoch)):
        if metrics.epoch[k] != metrics.epoch[k - 1]:
            axes[0].axvline(metrics.ticks[k], color='gray', alpha=0.4, linestyle=':')
            axes[0].text(metrics.ticks[k], axes[0].get_ylim()[1], metrics.epoch[k],
                         rotation=90, fontsize=7, va='top')

    plt.suptitle(title, fontsize=14, y=1.02)
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"Saved cosmic history to {save_path}")

    return fig


def plot_energy_evolution(
    metrics_dict: dict[str, SimulationMetrics],
    save_path: str = None,
    title: str = "Energy Evolution"
):
    """
    Plot total energy and its drift over time for one or more runs.

    Args:
        metrics_dict: Dictionary mapping run label -> SimulationMetrics
        save_path: Optional path to save figure
        title: Plot title
    """
    fig, axes = plt.subplots(1, 2, figsize=(14, 5))

    colors = plt.cm.viridis(np.linspace(0.2, 0.9, len(metrics_dict)))

    # Left plot: kinetic and total energy
    ax1 = axes[0]
    for (label, metrics), color in zip(metrics_dict.items(), colors):
        if metrics.total_energy:
            ax1.plot(metrics.ticks, metrics.total_energy, '-', color=color,
                     label=f"{label} total", linewidth=2)
            ax1.plot(metrics.ticks, metrics.kinetic_energy, '--', color=color,
                     label=f"{label} kinetic", linewidth=1)

    ax1.set_xlabel("Simulation Tick", fontsize=12)
    ax1.set_ylabel("Energy", fontsize=12)
    ax1.set_title("Energy Over Time", fontsize=12)
    ax1.legend()
    ax1.grid(True, alpha=0.3)

    # Right plot: Energy relative to initial
    ax2 = axes[1]
    for (label, metrics), color in zip(metrics_dict.items(), colors):
        if metrics.total_energy:
            initial = metrics.total_energy[0]
            if abs(initial) > 1e-10:
                relative = [(e - initial) / abs(initial) * 100 for e in metrics.total_energy]
                ax2.plot(metrics.ticks, relative, '-', color=color, label=label, linewidth=2)

    ax2.set_xlabel("Simulation Tick", fontsize=12)
    ax2.set_ylabel("Energy Change (%)", fontsize=12)
    ax2.set_title("Energy Drift (% of initial)", fontsize=12)
    ax2.legend()
    ax2.grid(True, alpha=0.3)
    ax2.axhline(y=0, color='red', linestyle='--', alpha=0.5)

    plt.suptitle(title, fontsize=14, y=1.02)
    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"Saved energy evolution to {save_path}")

    return fig


def plot_structure_counts(
    metrics: SimulationMetrics,
    save_path: str = None,
    title: str = "Large-Scale Structure"
):
    """Cluster, filament and void counts against tick."""
    fig, ax = plt.subplots(figsize=(10, 6))

    ax.plot(metrics.ticks, metrics.cluster_count, '-', label="clusters", linewidth=2)
    ax.plot(metrics.ticks, metrics.filament_count, '-', label="filaments", linewidth=2)
    ax.plot(metrics.ticks, metrics.void_count, '-', label="voids", linewidth=2)

    ax.set_xlabel("Simulation Tick", fontsize=12)
    ax.set_ylabel("Count", fontsize=12)
    ax.set_title(title, fontsize=14)
    ax.legend()
    ax.grid(True, alpha=0.3)

    plt.tight_layout()

    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"Saved structure counts to {save_path}")

    return fig


def plot_full_report(
    particles,
    metrics: SimulationMetrics,
    structures: dict = None,
    save_dir: str = "output",
    show: bool = True
):
    """
    Generate all plots and save them.

    Args:
        particles: Final ParticleStore
        metrics: Metrics collected during the run
        structures: Final ClusterDetector.get_structures()
        save_dir: Directory to save plots
        show: Whether to display plots
    """
    save_path = Path(save_dir)
    save_path.mkdir(parents=True, exist_ok=True)

    figs = [
        plot_particle_snapshot(particles, structures, save_path=str(save_path / "particles.png")),
        plot_cosmic_history(metrics, save_path=str(save_path / "cosmic_history.png")),
        plot_energy_evolution({"run": metrics}, save_path=str(save_path / "energy_evolution.png")),
        plot_structure_counts(metrics, save_path=str(save_path / "structure_counts.png")),
    ]

    if show:
        plt.show()

    return figs


def print_summary(metrics: SimulationMetrics):
    """Print text summary of results."""
    print("\n" + "=" * 60)
    print("SIMULATION RESULTS SUMMARY")
    print("=" * 60)

    if not metrics.ticks:
        print("  (no samples)")
        return

    print(f"  Ticks: {metrics.ticks[-1]}")
    print(f"  Cosmic time: {metrics.time[-1]:.3e} s")
    print(f"  Scale factor: {metrics.scale_factor[-1]:.3e} (z = {metrics.redshift[-1]:.3e})")
    print(f"  Temperature: {metrics.temperature[-1]:.3e} K")
    print(f"  Epoch: {metrics.epoch[-1]}")

    if metrics.total_energy:
        initial_e = metrics.total_energy[0]
        final_e = metrics.total_energy[-1]
        drift = (final_e - initial_e) / abs(initial_e) * 100 if abs(initial_e) > 1e-10 else 0
        print(f"  Energy drift: {drift:+.2f}%")
        print(f"  Final virial ratio: {metrics.virial_ratio[-1]:.3f}")

    if metrics.velocity_dispersion:
        initial_d = metrics.velocity_dispersion[0]
        final_d = metrics.velocity_dispersion[-1]
        change = (final_d - initial_d) / initial_d * 100 if initial_d > 0 else 0
        print(f"  Velocity dispersion change: {change:+.2f}%")

    print(f"  Structures: {metrics.cluster_count[-1]} clusters, "
          f"{metrics.filament_count[-1]} filaments, {metrics.void_count[-1]} voids")

    print("\n" + "=" * 60)
