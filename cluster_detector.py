"""
Large-scale structure detection.

Bins particle mass into a cubic density grid and classifies cells relative
to the mean density of occupied cells:

    void          <= 0.2 x mean   (occupied cells only)
    filament      >= 1.5 x mean
    cluster       >= 3.0 x mean
    supercluster  >= 5.0 x mean

Thresholds are inclusive. Neighbouring cluster cells are merged into one
structure with a density-weighted centroid.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional

import numpy as np

from sim_logging import get_logger
from validation import finite_rows

logger = get_logger("Clusters")


def _scan_cells(mask: np.ndarray) -> np.ndarray:
    """Cells of mask as (x, y, z) rows in flat-index order x + y*n + z*n^2 (x fastest).

    Cluster merging is greedy, so seeds must come in this order.
    """
    return np.argwhere(mask.transpose(2, 1, 0))[:, ::-1]


@dataclass
class DensityThresholds:
    void: float = 0.2
    filament: float = 1.5
    cluster: float = 3.0
    supercluster: float = 5.0


@dataclass
class Structure:
    """One detected structure, in world coordinates."""
    kind: str                       # "supercluster", "cluster", "filament" or "void"
    position: np.ndarray
    density: float
    relative_density: float
    size: float = 0.0               # clusters only
    cell_count: int = 1
    distance: Optional[float] = None


@dataclass
class DetectionStats:
    cluster_count: int = 0
    filament_count: int = 0
    void_count: int = 0
    mean_density: float = 0.0
    max_density: float = 0.0
    clustering_factor: float = 0.0  # max / mean


class ClusterDetector:
    """
    Grid-based density classifier.

    The grid is rebuilt on every detect() call; only the statistics and the
    structure lists survive until the next call.
    """

    def __init__(self, grid_size: int = 50, thresholds: DensityThresholds = None):
        if grid_size < 1:
            raise ValueError(f"grid_size must be >= 1, got {grid_size}")
        self.grid_size = grid_size
        self.thresholds = thresholds or DensityThresholds()

        self.grid: Optional[np.ndarray] = None
        self.cell_size = 0.0
        self.origin = np.zeros(3)

        self.clusters: List[Structure] = []
        self.filaments: List[Structure] = []
        self.voids: List[Structure] = []
        self.stats = DetectionStats()

    # -------------------------------------------------------------------------
    # Grid
    # -------------------------------------------------------------------------

    def _init_grid(self, lo: np.ndarray, hi: np.ndarray):
        span = float((hi - lo).max())
        if span <= 0:
            span = 1.0
        self.cell_size = span / self.grid_size
        self.origin = lo.copy()
        self.grid = np.zeros((self.grid_size,) * 3, dtype=np.float64)

    def cell_of(self, positions: np.ndarray) -> np.ndarray:
        """(N, 3) integer cell coordinates, clamped to the grid."""
        cells = np.floor((np.atleast_2d(positions) - self.origin) / self.cell_size)
        return np.clip(cells, 0, self.grid_size - 1).astype(np.int64)

    def cell_to_world(self, cells: np.ndarray) -> np.ndarray:
        """World position of cell centers."""
        return self.origin + (np.asarray(cells) + 0.5) * self.cell_size

    # -------------------------------------------------------------------------
    # Detection
    # -------------------------------------------------------------------------

    def detect(self, particles) -> DetectionStats:
        """Rebuild the density grid from active particles and classify every cell."""
        valid = particles.active & finite_rows(particles.positions)
        pos = particles.positions[valid]
        masses = particles.masses[valid]

        self.clusters, self.filaments, self.voids = [], [], []
        if len(pos) == 0:
            self.grid = None
            self.stats = DetectionStats()
            return self.stats

        lo, hi = pos.min(axis=0), pos.max(axis=0)
        padding = float((hi - lo).max()) * 0.1
        self._init_grid(lo - padding, hi + padding)

        cells = self.cell_of(pos)
        np.add.at(self.grid, (cells[:, 0], cells[:, 1], cells[:, 2]), masses)

        occupied = self.grid > 0
        n_occupied = int(occupied.sum())
        mean_density = float(self.grid[occupied].sum() / n_occupied) if n_occupied else 0.0
        max_density = float(self.grid.max())

        if mean_density > 0:
            relative = self.grid / mean_density
        else:
            relative = np.zeros_like(self.grid)

        t = self.thresholds
        supercluster = relative >= t.supercluster
        cluster = (relative >= t.cluster) & ~supercluster
        filament = (relative >= t.filament) & (relative < t.cluster)
        void = occupied & (relative <= t.void)

        cluster_cells = [
            self._structure("supercluster" if supercluster[tuple(c)] else "cluster", c, relative, self.cell_size)
            for c in _scan_cells(supercluster | cluster)
        ]

        self.filaments = [self._structure("filament", c, relative) for c in _scan_cells(filament)]
        self.voids = [self._structure("void", c, relative) for c in _scan_cells(void)]
        self.clusters = self._merge_clusters(cluster_cells)

        self.stats = DetectionStats(
            cluster_count=len(self.clusters),
            filament_count=len(self.filaments),
            void_count=len(self.voids),
            mean_density=mean_density,
            max_density=max_density,
            clustering_factor=max_density / mean_density if mean_density > 0 else 0.0,
        )
        logger.debug(f"Detected {self.stats.cluster_count} clusters, "
                     f"{self.stats.filament_count} filaments, {self.stats.void_count} voids")
        return self.stats

    def _structure(self, kind: str, cell: np.ndarray, relative: np.ndarray, size: float = 0.0) -> Structure:
        x, y, z = (int(v) for v in cell)
        return Structure(
            kind=kind,
            position=self.cell_to_world(cell),
            density=float(self.grid[x, y, z]),
            relative_density=float(relative[x, y, z]),
            size=size,
        )

    def _merge_clusters(self, cells: List[Structure]) -> List[Structure]:
        """Merge cluster cells within 2 cell sizes of a seed cell."""
        merge_distance = self.cell_size * 2
        merged = []
        used = np.zeros(len(cells), dtype=bool)
        positions = np.array([c.position for c in cells]).reshape(-1, 3)

        for i, seed in enumerate(cells):
            if used[i]:
                continue
            used[i] = True

            dist = np.linalg.norm(positions - seed.position, axis=1)
            group = np.flatnonzero(~used & (dist < merge_distance))
            used[group] = True
            members = [i] + group.tolist()

            weights = np.array([cells[k].density for k in members])
            total = float(weights.sum())
            centroid = (positions[members] * weights[:, None]).sum(axis=0) / total

            merged.append(Structure(
                kind=seed.kind,
                position=centroid,
                density=total,
                relative_density=seed.relative_density,
                size=self.cell_size * np.cbrt(len(members)),
                cell_count=len(members),
            ))
        return merged

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_density_at(self, position) -> float:
        if self.grid is None:
            return 0.0
        x, y, z = self.cell_of(np.asarray(position, dtype=np.float64))[0]
        return float(self.grid[x, y, z])

    def get_relative_density_at(self, position) -> float:
        if self.grid is None or self.stats.mean_density == 0:
            return 0.0
        return self.get_density_at(position) / self.stats.mean_density

    def find_nearest_cluster(self, position) -> Optional[Structure]:
        """Nearest merged cluster, with its distance filled in, or None."""
        if not self.clusters:
            return None
        position = np.asarray(position, dtype=np.float64)
        dist = [float(np.linalg.norm(position - c.position)) for c in self.clusters]
        k = int(np.argmin(dist))
        nearest = self.clusters[k]
        return Structure(
            kind=nearest.kind,
            position=nearest.position.copy(),
            density=nearest.density,
            relative_density=nearest.relative_density,
            size=nearest.size,
            cell_count=nearest.cell_count,
            distance=dist[k],
        )

    def get_top_clusters(self, count: int = 10) -> List[Structure]:
        return sorted(self.clusters, key=lambda c: c.density, reverse=True)[:count]

    def get_structures(self) -> Dict[str, List[Structure]]:
        return {
            "clusters": self.clusters,
            "filaments": self.filaments,
            "voids": self.voids,
        }

    def get_stats(self) -> DetectionStats:
        return DetectionStats(**vars(self.stats))
