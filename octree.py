"""
Barnes-Hut octree for O(N log N) gravity.

Nodes live in an arena of parallel numpy arrays addressed by integer index.
The arena is reset (node_count = 0) rather than freed on every build and
grows by doubling when a build needs more nodes than it holds.

Build is level-synchronous: all particles of a level are pushed one level
down at once, splitting every cell that still holds more than one particle
until max_depth. Mass and center of mass are then summed bottom-up, so every
internal node's aggregates are exactly the mass-weighted sum of its
children.

Force law (same as metrics.direct_sum_forces):

    F = G * m1 * m2 / (r^2 + eps^2)    along d / r

An internal node with size / distance < theta acts as a single
pseudo-particle at its center of mass; leaves are summed particle by
particle with the target itself excluded.
"""

import time
from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from constants import BARNES_HUT_THETA
from sim_logging import get_logger
from validation import finite_rows

logger = get_logger("Octree")

# Separation below which a pair is treated as self-interaction and skipped
MIN_DIST_SQ = 1e-10

# Octant o has offsets (o & 1, (o >> 1) & 1, (o >> 2) & 1) along x, y, z
_OCTANT_OFFSETS = np.array([[o & 1, (o >> 1) & 1, (o >> 2) & 1] for o in range(8)], dtype=np.float64)


@dataclass
class TreeNode:
    """Read-only view of one arena node."""
    index: int
    lo: np.ndarray                  # min corner
    size: float                     # cube side length
    mass: float
    center_of_mass: np.ndarray
    children: List[int]             # 8 entries, -1 = empty octant
    parent: int
    depth: int
    members: np.ndarray             # particle indices (leaves only)

    @property
    def is_leaf(self) -> bool:
        return len(self.members) > 0


@dataclass
class TreeStats:
    node_count: int
    max_depth: int
    build_time: float               # ms
    theta: float


class Octree:
    """
    Barnes-Hut octree over a ParticleStore.

    Args:
        theta: Opening angle, clamped to [0, 1]
        max_depth: Subdivision limit; leaves at this depth may hold several particles
        padding: Margin added around the particle bounds
        initial_capacity: Initial arena size in nodes
    """

    def __init__(self, theta: float = BARNES_HUT_THETA, max_depth: int = 20, padding: float = 1.0,
                 initial_capacity: int = 1024):
        if max_depth < 0:
            raise ValueError(f"max_depth must be >= 0, got {max_depth}")
        self.theta = BARNES_HUT_THETA
        self.set_theta(theta)
        self.max_depth = max_depth
        self.padding = padding

        self.node_count = 0
        self.max_depth_reached = 0
        self.build_time = 0.0
        self._capacity = 0
        self._allocate(max(1, initial_capacity))

        self.leaf_members = np.empty(0, dtype=np.int64)

    # -------------------------------------------------------------------------
    # Arena
    # -------------------------------------------------------------------------

    def _allocate(self, capacity: int):
        keep = self.node_count

        def grow(old, shape, dtype, fill):
            new = np.full(shape, fill, dtype=dtype)
            if old is not None and keep:
                new[:keep] = old[:keep]
            return new

        self.lo = grow(getattr(self, "lo", None), (capacity, 3), np.float64, 0.0)
        self.size = grow(getattr(self, "size", None), capacity, np.float64, 0.0)
        self.mass = grow(getattr(self, "mass", None), capacity, np.float64, 0.0)
        self.com = grow(getattr(self, "com", None), (capacity, 3), np.float64, 0.0)
        self.children = grow(getattr(self, "children", None), (capacity, 8), np.int64, -1)
        self.parent = grow(getattr(self, "parent", None), capacity, np.int64, -1)
        self.depth = grow(getattr(self, "depth", None), capacity, np.int64, 0)
        self.leaf_start = grow(getattr(self, "leaf_start", None), capacity, np.int64, 0)
        self.leaf_count = grow(getattr(self, "leaf_count", None), capacity, np.int64, 0)
        self._capacity = capacity

    def _new_nodes(self, n: int) -> np.ndarray:
        needed = self.node_count + n
        if needed > self._capacity:
            self._allocate(max(2 * self._capacity, needed))
        ids = np.arange(self.node_count, needed)
        self.children[ids] = -1
        self.leaf_start[ids] = 0
        self.leaf_count[ids] = 0
        self.mass[ids] = 0.0
        self.com[ids] = 0.0
        self.node_count = needed
        return ids

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def root(self) -> Optional[int]:
        return 0 if self.node_count else None

    # -------------------------------------------------------------------------
    # Build
    # -------------------------------------------------------------------------

    def build(self, particles):
        """Rebuild the tree from all active particles with finite positions."""
        start = time.perf_counter()
        self.node_count = 0
        self.max_depth_reached = 0
        self.leaf_members = np.empty(0, dtype=np.int64)

        valid = particles.active & finite_rows(particles.positions)
        indices = np.flatnonzero(valid)
        if len(indices) == 0:
            self.build_time = (time.perf_counter() - start) * 1000
            return

        pos = particles.positions[indices]
        masses = particles.masses[indices]

        # Cubic root cell around the bounds
        lo, hi = pos.min(axis=0), pos.max(axis=0)
        side = float((hi - lo).max()) + 2 * self.padding
        root = self._new_nodes(1)[0]
        self.lo[root] = (lo + hi) / 2 - side / 2
        self.size[root] = side
        self.depth[root] = 0
        self.parent[root] = -1

        node_of = np.zeros(len(indices), dtype=np.int64)
        pending = np.arange(len(indices))
        depth = 0

        while len(pending) and depth < self.max_depth:
            _, inverse, counts = np.unique(node_of[pending], return_inverse=True, return_counts=True)
            moving = pending[counts[inverse] > 1]
            if len(moving) == 0:
                break

            parents = node_of[moving]
            center = self.lo[parents] + self.size[parents, None] / 2
            p = pos[moving]
            octant = ((p[:, 0] >= center[:, 0]).astype(np.int64)
                      | ((p[:, 1] >= center[:, 1]).astype(np.int64) << 1)
                      | ((p[:, 2] >= center[:, 2]).astype(np.int64) << 2))

            keys, key_inverse = np.unique(parents * 8 + octant, return_inverse=True)
            new_ids = self._new_nodes(len(keys))
            key_parent = keys // 8
            key_octant = keys % 8

            half = self.size[key_parent] / 2
            self.children[key_parent, key_octant] = new_ids
            self.lo[new_ids] = self.lo[key_parent] + _OCTANT_OFFSETS[key_octant] * half[:, None]
            self.size[new_ids] = half
            self.parent[new_ids] = key_parent
            self.depth[new_ids] = depth + 1

            node_of[moving] = new_ids[key_inverse]
            pending = moving
            depth += 1

        self.max_depth_reached = depth

        # Leaves: every particle's final node, as CSR over the sorted members
        order = np.argsort(node_of, kind="stable")
        self.leaf_members = indices[order]
        leaves, first, counts = np.unique(node_of[order], return_index=True, return_counts=True)
        self.leaf_start[leaves] = first
        self.leaf_count[leaves] = counts

        self._aggregate(node_of, pos, masses)
        self.build_time = (time.perf_counter() - start) * 1000

    def _aggregate(self, node_of: np.ndarray, pos: np.ndarray, masses: np.ndarray):
        """Bottom-up mass and center of mass."""
        n = self.node_count
        mass = np.bincount(node_of, weights=masses, minlength=n)
        weighted = np.stack([np.bincount(node_of, weights=masses * pos[:, k], minlength=n)
                             for k in range(3)], axis=1)

        depth = self.depth[:n]
        parent = self.parent[:n]
        for d in range(self.max_depth_reached, 0, -1):
            level = np.flatnonzero(depth == d)
            np.add.at(mass, parent[level], mass[level])
            np.add.at(weighted, parent[level], weighted[level])

        self.mass[:n] = mass
        nonzero = mass > 0
        self.com[:n][nonzero] = weighted[nonzero] / mass[nonzero, None]

    # -------------------------------------------------------------------------
    # Forces
    # -------------------------------------------------------------------------

    def calculate_force(self, index: int, particles, G: float, softening_sq: float) -> np.ndarray:
        """Force on one particle, (3,) array. Zero for inactive or non-finite particles."""
        forces = self._forces(np.array([index], dtype=np.int64), particles, G, softening_sq)
        return forces[0]

    def calculate_all_forces(self, particles, G: float, softening: float) -> np.ndarray:
        """
        Forces on every particle, (N, 3) array.

        Runs the same traversal as calculate_force() for all active particles
        at once. Inactive particles get zero force.
        """
        forces = np.zeros((particles.count, 3))
        targets = particles.active_indices()
        if len(targets):
            forces[targets] = self._forces(targets, particles, G, softening * softening)
        return forces

    def _forces(self, targets: np.ndarray, particles, G: float, softening_sq: float) -> np.ndarray:
        n_targets = len(targets)
        result = np.zeros((n_targets, 3))
        if self.node_count == 0 or n_targets == 0:
            return result

        tpos = particles.positions[targets]
        tmass = particles.masses[targets]
        usable = particles.active[targets] & finite_rows(tpos)
        theta_sq = self.theta * self.theta

        # Frontier of (target, node) pairs still to be visited
        pair_target = np.flatnonzero(usable)
        pair_node = np.zeros(len(pair_target), dtype=np.int64)

        while len(pair_target):
            d = self.com[pair_node] - tpos[pair_target]
            dist_sq = (d * d).sum(axis=1)
            leaf = self.leaf_count[pair_node] > 0
            accept = ~leaf & (self.size[pair_node] ** 2 < theta_sq * dist_sq)

            # Accepted internal nodes act as pseudo-particles
            if accept.any():
                self._accumulate(result, pair_target[accept], d[accept], dist_sq[accept],
                                 G * tmass[pair_target[accept]] * self.mass[pair_node[accept]],
                                 softening_sq)

            # Leaves: direct sum over members
            if leaf.any():
                leaf_targets = pair_target[leaf]
                leaf_nodes = pair_node[leaf]
                counts = self.leaf_count[leaf_nodes]
                rep_targets = np.repeat(leaf_targets, counts)
                starts = np.repeat(self.leaf_start[leaf_nodes], counts)
                offsets = np.arange(len(rep_targets)) - np.repeat(np.cumsum(counts) - counts, counts)
                members = self.leaf_members[starts + offsets]

                dm = particles.positions[members] - tpos[rep_targets]
                dm_sq = (dm * dm).sum(axis=1)
                keep = dm_sq >= MIN_DIST_SQ
                if keep.any():
                    self._accumulate(result, rep_targets[keep], dm[keep], dm_sq[keep],
                                     G * tmass[rep_targets[keep]] * particles.masses[members[keep]],
                                     softening_sq)

            # Everything else opens into its non-empty children
            open_ = ~leaf & ~accept
            if not open_.any():
                break
            child = self.children[pair_node[open_]]
            present = child >= 0
            pair_target = np.repeat(pair_target[open_], present.sum(axis=1))
            pair_node = child[present]

        # Discard non-finite results
        result[~finite_rows(result)] = 0.0
        return result

    @staticmethod
    def _accumulate(result, target_rows, d, dist_sq, gmm, softening_sq):
        """result[t] += G m1 m2 / (r^2 + eps^2) * d / r"""
        r = np.sqrt(dist_sq)
        with np.errstate(divide="ignore", invalid="ignore"):
            scale = gmm / ((dist_sq + softening_sq) * r)
        contrib = d * scale[:, None]
        n = len(result)
        for k in range(3):
            result[:, k] += np.bincount(target_rows, weights=contrib[:, k], minlength=n)

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def node(self, index: int) -> TreeNode:
        if not 0 <= index < self.node_count:
            raise IndexError(f"node {index} out of range [0, {self.node_count})")
        start, count = self.leaf_start[index], self.leaf_count[index]
        return TreeNode(
            index=index,
            lo=self.lo[index].copy(),
            size=float(self.size[index]),
            mass=float(self.mass[index]),
            center_of_mass=self.com[index].copy(),
            children=self.children[index].tolist(),
            parent=int(self.parent[index]),
            depth=int(self.depth[index]),
            members=self.leaf_members[start:start + count].copy(),
        )

    def get_stats(self) -> TreeStats:
        return TreeStats(
            node_count=self.node_count,
            max_depth=self.max_depth_reached,
            build_time=self.build_time,
            theta=self.theta,
        )

    def set_theta(self, theta: float):
        """Update the opening angle, clamped to [0, 1]."""
        self.theta = max(0.0, min(1.0, float(theta)))
