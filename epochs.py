"""
Cosmic epoch timeline.

Each Epoch is a frozen record; EPOCHS is the validated, contiguous timeline
from t = 0 to +inf, so exactly one epoch is current at any time t >= 0.
"""

import bisect
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence

from constants import PLANCK_TEMPERATURE, T_CMB_0, YR_TO_S


@dataclass(frozen=True)
class Epoch:
    """One era of cosmic history."""
    id: str
    name: str
    short_name: str
    time_start: float           # s
    time_end: float             # s (exclusive)
    temperature: float          # K, representative
    cooling_rate: float = 0.0005
    particle_jitter: float = 0.0
    description: str = ""

    @property
    def duration(self) -> float:
        return self.time_end - self.time_start

    def contains(self, time: float) -> bool:
        return self.time_start <= time < self.time_end


class EpochTable:
    """
    Ordered, validated epoch sequence.

    Raises ValueError unless the epochs are non-empty, start at t = 0, are
    contiguous (end[i] == start[i+1]), strictly increasing and end at +inf.
    """

    def __init__(self, epochs: Sequence[Epoch]):
        epochs = list(epochs)
        if not epochs:
            raise ValueError("epoch table must not be empty")
        if epochs[0].time_start != 0:
            raise ValueError(f"first epoch must start at t=0, got {epochs[0].time_start}")

        for i, epoch in enumerate(epochs):
            if not epoch.time_start < epoch.time_end:
                raise ValueError(f"epoch {epoch.id!r} has non-increasing bounds "
                                 f"[{epoch.time_start}, {epoch.time_end})")
            if i + 1 < len(epochs) and epoch.time_end != epochs[i + 1].time_start:
                raise ValueError(f"gap or overlap between {epoch.id!r} (end {epoch.time_end}) "
                                 f"and {epochs[i + 1].id!r} (start {epochs[i + 1].time_start})")

        if not math.isinf(epochs[-1].time_end):
            raise ValueError(f"last epoch must end at +inf, got {epochs[-1].time_end}")

        ids = [e.id for e in epochs]
        if len(set(ids)) != len(ids):
            raise ValueError("epoch ids must be unique")

        self._epochs = tuple(epochs)
        self._starts = [e.time_start for e in epochs]
        self._by_id = {e.id: i for i, e in enumerate(epochs)}

    def __len__(self):
        return len(self._epochs)

    def __iter__(self):
        return iter(self._epochs)

    def __getitem__(self, index) -> Epoch:
        return self._epochs[index]

    @property
    def starts(self) -> List[float]:
        return list(self._starts)

    def index_at_time(self, time: float) -> int:
        """Index of the epoch containing time (binary search over starts)."""
        if not time > 0:
            return 0
        return bisect.bisect_right(self._starts, time) - 1

    def at_time(self, time: float) -> Epoch:
        return self._epochs[self.index_at_time(time)]

    def index_of(self, epoch_id: str) -> int:
        return self._by_id.get(epoch_id, -1)

    def by_id(self, epoch_id: str) -> Optional[Epoch]:
        index = self._by_id.get(epoch_id)
        return None if index is None else self._epochs[index]

    def by_index(self, index: int) -> Epoch:
        """Epoch at index, clamped into range."""
        return self._epochs[max(0, min(index, len(self._epochs) - 1))]

    def next_after(self, index: int) -> Optional[Epoch]:
        if index + 1 < len(self._epochs):
            return self._epochs[index + 1]
        return None


# =============================================================================
# TIMELINE
# =============================================================================

_HOT = 0.01         # Planck, GUT and inflation cool fastest
_PLASMA = 0.005     # QGP through nucleosynthesis
_DARK = 0.001       # dark ages

EPOCHS = EpochTable([
    Epoch("planck", "Planck Epoch", "Planck", 0, 1e-43, PLANCK_TEMPERATURE,
          _HOT, 2.0, "Quantum gravity era; all four forces unified."),
    Epoch("gut", "Grand Unification Epoch", "GUT", 1e-43, 1e-36, 1e28,
          _HOT, 0.95, "Gravity has separated; strong and electroweak forces still unified."),
    Epoch("inflation_begin", "Inflation Begins", "Inf-Start", 1e-36, 1e-35, 1e27,
          _HOT, 0.9, "The inflaton field drives exponential expansion."),
    Epoch("inflation_peak", "Exponential Expansion", "Inf-Peak", 1e-35, 1e-33, 1e27,
          _HOT, 0.85, "Quantum fluctuations are stretched to cosmic scales."),
    Epoch("reheating", "Reheating", "Reheat", 1e-33, 1e-32, 1e27,
          _HOT, 0.8, "The inflaton decays into a hot soup of particles."),
    Epoch("electroweak", "Electroweak Epoch", "EW", 1e-32, 1e-12, 1e15,
          particle_jitter=0.75, description="Electromagnetic and weak forces separate."),
    Epoch("qgp_hot", "Hot Quark-Gluon Plasma", "QGP-Hot", 1e-12, 1e-6, 1e13,
          _PLASMA, 0.8, "Free quarks and gluons."),
    Epoch("qgp_cooling", "Cooling Quark-Gluon Plasma", "QGP-Cool", 1e-6, 1e-4, 1e12,
          _PLASMA, 0.7, "The plasma approaches the QCD transition."),
    Epoch("hadronization", "Hadronization", "Hadron", 1e-4, 1, 1e12,
          _PLASMA, 0.6, "Quarks bind into protons and neutrons."),
    Epoch("lepton", "Lepton Epoch", "Lepton", 1, 10, 1e11,
          _PLASMA, 0.55, "Electron-positron annihilation; neutrinos decouple."),
    Epoch("nucleosynthesis_deuterium", "Deuterium Bottleneck", "BBN-D", 10, 180, 1e9,
          _PLASMA, 0.5, "Deuterium survives photodisintegration."),
    Epoch("nucleosynthesis_helium", "Helium-4 Synthesis", "BBN-He", 180, 240, 9e8,
          _PLASMA, 0.45, "About a quarter of baryonic mass fuses into helium-4."),
    Epoch("nucleosynthesis_lithium", "Lithium Formation", "BBN-Li", 240, 1200, 3e8,
          _PLASMA, 0.4, "Trace lithium forms; primordial abundances freeze."),
    Epoch("photon_epoch", "Photon Epoch", "Photon", 1200, 1.577e12, 1e6,
          particle_jitter=0.35, description="Radiation dominates an opaque plasma."),
    Epoch("matter_radiation_equality", "Matter-Radiation Equality", "Equality", 1.577e12, 3.154e12, 9000,
          particle_jitter=0.3, description="Matter overtakes radiation; perturbations begin to grow."),
    Epoch("recombination_begin", "Recombination Begins", "Recomb-Start", 3.154e12, 1.167e13, 4000,
          particle_jitter=0.25, description="Electrons bind to nuclei."),
    Epoch("last_scattering", "Last Scattering Surface", "CMB", 1.167e13, 1.325e13, 3000,
          particle_jitter=0.2, description="Photons decouple; the CMB is released."),
    Epoch("dark_ages_early", "Early Dark Ages", "Dark-Early", 1.325e13, 3.154e14, 60,
          _DARK, 0.15, "No stars yet; neutral hydrogen fills space."),
    Epoch("gravitational_collapse", "Gravitational Collapse", "Collapse", 3.154e14, 6.307e15, 30,
          _DARK, 0.1, "Dark matter halos grow and gas falls into them."),
    Epoch("first_stars", "First Star Formation", "PopIII", 6.307e15, 9.461e15, 20,
          particle_jitter=0.08, description="Population III stars ignite."),
    Epoch("first_supernovae", "First Supernovae", "SN-I", 9.461e15, 1.261e16, 15,
          particle_jitter=0.06, description="The first heavy elements are dispersed."),
    Epoch("reionization_begin", "Reionization Begins", "Reion-Start", 1.261e16, 1.892e16, 12,
          particle_jitter=0.05, description="UV light ionizes the intergalactic medium."),
    Epoch("reionization_complete", "Reionization Complete", "Reion-End", 1.892e16, 2.366e16, 10,
          particle_jitter=0.04, description="The intergalactic medium is fully ionized."),
    Epoch("protogalaxies", "Protogalaxy Formation", "ProtoGal", 2.366e16, 3.154e16, 8,
          particle_jitter=0.03, description="Gas-rich clumps merge rapidly."),
    Epoch("first_galaxies", "First Galaxies", "Gal-I", 3.154e16, 9.461e16, 5,
          particle_jitter=0.01, description="Recognizable galaxies and quasars."),
    Epoch("major_mergers", "Major Mergers Era", "Mergers", 9.461e16, 1.577e17, 3.5,
          description="Frequent galaxy collisions build ellipticals."),
    Epoch("cosmic_web", "Cosmic Web Emerges", "Web", 1.577e17, 2.208e17, 3.2,
          description="Clusters, filaments and voids."),
    Epoch("galaxy_clusters", "Galaxy Clusters", "Clusters", 2.208e17, 2.839e17, 2.9,
          description="The largest bound structures assemble."),
    Epoch("superclusters", "Superclusters", "SuperC", 2.839e17, 3.154e17, 2.8,
          description="Unbound complexes of clusters."),
    Epoch("peak_star_formation", "Peak Star Formation", "Peak-SF", 3.154e17, 3.470e17, 2.75,
          description="Cosmic noon."),
    Epoch("decline_star_formation", "Star Formation Decline", "SF-Decline", 3.470e17, 4.103e17, 2.73,
          description="Galaxies run out of cold gas; dark energy takes over."),
    Epoch("present", "Present Day", "Now", 4.103e17, 4.354e17, T_CMB_0,
          description="Dark energy dominated, accelerating expansion."),
    Epoch("near_future", "Near Future", "Future", 4.354e17, math.inf, 1.5,
          description="Distant galaxies recede beyond the horizon."),
])


def get_epoch_at_time(time: float) -> Epoch:
    return EPOCHS.at_time(time)


def get_epoch_by_id(epoch_id: str) -> Optional[Epoch]:
    return EPOCHS.by_id(epoch_id)


def get_epoch_by_index(index: int) -> Epoch:
    return EPOCHS.by_index(index)


def get_next_epoch(time: float) -> Optional[Epoch]:
    return EPOCHS.next_after(EPOCHS.index_at_time(time))


# =============================================================================
# FUTURE SCENARIOS
# =============================================================================

@dataclass(frozen=True)
class FutureScenario:
    id: str
    name: str
    w: float                    # dark energy equation of state
    end_time: float             # s, inf for open-ended
    description: str = ""


FUTURE_SCENARIOS = {
    "freeze": FutureScenario("freeze", "Big Freeze", -1.0, math.inf,
                             "Eternal expansion ending in heat death."),
    "rip": FutureScenario("rip", "Big Rip", -1.5, 22e9 * YR_TO_S,
                          "Phantom energy tears structures apart in finite time."),
    "crunch": FutureScenario("crunch", "Big Crunch", -0.5, 48e9 * YR_TO_S,
                             "Expansion reverses and the universe recollapses."),
    "bounce": FutureScenario("bounce", "Big Bounce", -0.5, math.inf,
                             "Cyclic contraction and re-expansion."),
}
