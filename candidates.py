"""
candidates.py - Plane hypothesis generation by seeded local fits and region growing
"""

from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

import numpy as np
from scipy.sparse.csgraph import connected_components

from energy import EnergyModel
from logger import Logger
from primitives import PlaneParam, fit_plane_lstsq, make_plane
from spatial import edges_to_csr

LOG = Logger.get_logger("candidates")


@dataclass
class CandidateStats:
    """Bookkeeping of one generation run."""
    proposals: int = 0
    accepted: int = 0
    rejected_degenerate: int = 0
    rejected_small: int = 0
    rejected_redundant: int = 0
    uncovered_fraction: float = 1.0
    stop_reason: str = ""


def fit_local_plane(
    points: np.ndarray,
    normals: np.ndarray,
    knn: np.ndarray,
    seed: int,
    *,
    n_constraints: int = 3,
    cos_threshold: float = 0.0,
) -> Optional[Tuple[np.ndarray, float, np.ndarray]]:
    """
    Fit a plane to a seed and its nearest normal-compatible neighbors.

    Args:
        points: (N, 3) points
        normals: (N, 3) unit normals
        knn: (N, k) neighbor indices, nearest first
        seed: seed point index
        n_constraints: number of points in the sample (seed included)
        cos_threshold: min |cos| between a neighbor normal and the seed normal

    Returns:
        (normal, offset, sample indices) or None for too few or collinear points
    """
    seed = int(seed)
    nbrs = knn[seed]
    compatible = np.abs(normals[nbrs] @ normals[seed]) >= cos_threshold
    chosen = nbrs[compatible][: max(int(n_constraints) - 1, 0)]
    sample = np.concatenate([[seed], chosen]).astype(int)
    if sample.size < 3:
        return None
    fit = fit_plane_lstsq(points[sample])
    if fit is None:
        return None
    normal, offset = fit
    return normal, offset, sample


def _compatible_mask(
    points: np.ndarray,
    normals: np.ndarray,
    normal: np.ndarray,
    offset: float,
    scale: float,
    cos_threshold: float,
) -> np.ndarray:
    near = np.abs(points @ normal + offset) <= scale
    aligned = np.abs(normals @ normal) >= cos_threshold
    return near & aligned


def _seed_component(
    edges: np.ndarray,
    compatible: np.ndarray,
    sample: np.ndarray,
) -> np.ndarray:
    """Indices of the compatible connected component holding most of the sample."""
    comp_idx = np.flatnonzero(compatible)
    anchors = sample[compatible[sample]]
    if anchors.size == 0:
        return np.empty((0,), dtype=int)

    local = np.full(compatible.shape[0], -1, dtype=int)
    local[comp_idx] = np.arange(comp_idx.size)
    if edges.size:
        keep = compatible[edges[:, 0]] & compatible[edges[:, 1]]
        sub_edges = local[edges[keep]]
    else:
        sub_edges = np.empty((0, 2), dtype=int)
    adjacency = edges_to_csr(sub_edges, comp_idx.size)
    _, comp_labels = connected_components(adjacency, directed=False)

    anchor_labels = comp_labels[local[anchors]]
    values, counts = np.unique(anchor_labels, return_counts=True)
    sizes = np.bincount(comp_labels)[values]
    # Most sample points first, then the larger component.
    best = values[np.lexsort((-sizes, -counts))[0]]
    return comp_idx[comp_labels == best]


def grow_plane_region(
    points: np.ndarray,
    normals: np.ndarray,
    energy_model: EnergyModel,
    normal: np.ndarray,
    offset: float,
    sample: np.ndarray,
    *,
    cos_threshold: float = 0.0,
    grow_iters: int = 4,
) -> Optional[Tuple[np.ndarray, float, np.ndarray]]:
    """
    Grow a local plane fit into a connected planar region.

    The region is the neighbor-graph component of points within the inlier
    scale and the normal gate that contains the seed sample. The plane is
    refitted on the region and the region regrown until it stops changing.

    Returns:
        (normal, offset, region indices) or None if the sample is incompatible
    """
    edges = energy_model.graph.edges
    scale = energy_model.scale
    region = np.empty((0,), dtype=int)

    for _ in range(max(1, int(grow_iters))):
        compatible = _compatible_mask(points, normals, normal, offset, scale, cos_threshold)
        grown = _seed_component(edges, compatible, sample)
        if grown.size < 3:
            break
        if grown.size == region.size and np.array_equal(grown, region):
            break
        region = grown
        fit = energy_model.fit_plane(points[region], normals[region])
        if fit is None:
            break
        normal, offset, _ = fit

    if region.size == 0:
        return None
    return normal, offset, region


def generate_candidates(
    points: np.ndarray,
    normals: np.ndarray,
    energy_model: EnergyModel,
    *,
    residuals: np.ndarray,
    rng: np.random.Generator,
    covered: Optional[np.ndarray] = None,
    n_constraints: int = 3,
    min_support: int = 50,
    normal_threshold_deg: float = 30.0,
    proposal_ratio: float = 0.01,
    min_proposals: int = 20,
    min_uncovered_fraction: float = 0.05,
    max_failures: int = 25,
    grow_iters: int = 4,
    start_id: int = 0,
    tried: Optional[Set[int]] = None,
) -> Tuple[List[PlaneParam], CandidateStats]:
    """
    Propose plane hypotheses covering the points not yet covered.

    Seeds are drawn at random from uncovered points, preferring locally planar
    ones. A hypothesis is accepted when its grown region has at least
    min_support points and at least min_support // 2 of them were uncovered.
    Labels are not touched.

    Args:
        points: (N, 3) points
        normals: (N, 3) unit normals
        energy_model: supplies the neighbor graph, inlier scale and plane fit
        residuals: (N,) local plane residuals used to rank seeds
        rng: random generator (seeded by the caller)
        covered: (N,) bool mask of points already explained (default: none)
        start_id: first model id to assign
        tried: seed indices already used; updated in place

    Returns:
        (list of PlaneParam with inlier_indices set to the grown region, CandidateStats)
    """
    n = len(points)
    stats = CandidateStats()
    covered = np.zeros(n, dtype=bool) if covered is None else np.asarray(covered, dtype=bool).copy()
    tried = set() if tried is None else tried
    if n == 0:
        stats.uncovered_fraction = 0.0
        stats.stop_reason = "empty"
        return [], stats

    knn = energy_model.graph.knn
    cos_threshold = float(np.cos(np.radians(normal_threshold_deg)))
    planar = np.asarray(residuals, dtype=float) <= energy_model.scale
    budget = max(int(min_proposals), int(np.ceil(proposal_ratio * n)))
    redundant_gain = max(1, int(min_support) // 2)

    planes: List[PlaneParam] = []
    next_id = int(start_id)
    failures = 0
    stop_reason = "budget"

    while stats.proposals < budget:
        uncovered = ~covered
        if uncovered.sum() <= min_uncovered_fraction * n:
            stop_reason = "covered"
            break
        if failures >= max_failures:
            stop_reason = "max_failures"
            break

        available = uncovered.copy()
        if tried:
            available[np.fromiter(tried, dtype=int)] = False
        pool = np.flatnonzero(available & planar)
        if pool.size == 0:
            pool = np.flatnonzero(available)
        if pool.size == 0:
            stop_reason = "no_seeds"
            break

        seed = int(rng.choice(pool))
        tried.add(seed)
        stats.proposals += 1

        local = fit_local_plane(
            points, normals, knn, seed,
            n_constraints=n_constraints, cos_threshold=cos_threshold,
        )
        grown = None
        if local is not None:
            normal, offset, sample = local
            grown = grow_plane_region(
                points, normals, energy_model, normal, offset, sample,
                cos_threshold=cos_threshold, grow_iters=grow_iters,
            )
        if grown is None:
            stats.rejected_degenerate += 1
            failures += 1
            continue

        normal, offset, region = grown
        if region.size < min_support:
            stats.rejected_small += 1
            failures += 1
            continue
        gain = int(np.count_nonzero(~covered[region]))
        if gain < redundant_gain:
            stats.rejected_redundant += 1
            failures += 1
            continue

        plane = make_plane(next_id, normal, offset, points, inlier_indices=region)
        planes.append(plane)
        covered[region] = True
        next_id += 1
        failures = 0
        stats.accepted += 1
        LOG.debug(
            f"  Candidate {plane.model_id}: {region.size} points "
            f"(+{gain} new), normal={np.round(normal, 3).tolist()}"
        )

    stats.uncovered_fraction = float(np.count_nonzero(~covered)) / n
    stats.stop_reason = stop_reason
    LOG.info(
        f"Generated {stats.accepted} candidates from {stats.proposals} proposals "
        f"(uncovered {stats.uncovered_fraction:.1%}, stop: {stop_reason})"
    )
    return planes, stats
