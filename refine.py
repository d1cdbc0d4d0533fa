"""
refine.py - Refit, prune and merge plane models against the current labeling

Every change here is kept only if the global energy does not increase.
"""

from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Tuple

import numpy as np

from energy import EnergyModel
from logger import Logger
from primitives import OUTLIER, PlaneParam, make_plane, plane_angle_deg

LOG = Logger.get_logger("refine")

ROBUST_REFIT_ITERS = 3


def refine_plane(
    points: np.ndarray,
    normals: np.ndarray,
    indices: np.ndarray,
    energy_model: EnergyModel,
    *,
    model_id: int = 0,
    robust_iters: int = ROBUST_REFIT_ITERS,
) -> Optional[PlaneParam]:
    """
    Re-estimate one plane from its inliers by Cauchy-reweighted least squares.

    Starts from the uniform fit and is deterministic, so refitting on the same
    inlier set returns the same plane. Returns None for fewer than 3 or
    collinear inliers.
    """
    indices = np.asarray(indices, dtype=int)
    if indices.size < 3:
        return None
    fit = energy_model.fit_plane(points[indices], normals[indices], robust_iters=robust_iters)
    if fit is None:
        return None
    normal, offset, _ = fit
    return make_plane(model_id, normal, offset, points, inlier_indices=indices)


def _support(labels: np.ndarray) -> Dict[int, np.ndarray]:
    """Inlier indices per model id."""
    order = np.argsort(labels, kind="stable")
    sorted_labels = labels[order]
    ids, starts = np.unique(sorted_labels, return_index=True)
    bounds = np.append(starts, len(labels))
    support = {}
    for i, model_id in enumerate(ids):
        if model_id == OUTLIER:
            continue
        support[int(model_id)] = order[bounds[i]:bounds[i + 1]]
    return support


def refit_models(
    points: np.ndarray,
    normals: np.ndarray,
    pool: Dict[int, PlaneParam],
    labels: np.ndarray,
    costs: Dict[int, np.ndarray],
    energy_model: EnergyModel,
    *,
    n_jobs: int = 1,
) -> int:
    """
    Refit every model with support from its current inliers.

    A refit whose data cost over the inliers is higher than before is discarded.
    Updates pool and costs in place; returns the number of models changed.
    """
    support = _support(labels)
    model_ids = [mid for mid in support if mid in pool]

    def refit_one(model_id: int) -> Tuple[int, Optional[PlaneParam], Optional[np.ndarray]]:
        plane = refine_plane(points, normals, support[model_id], energy_model, model_id=model_id)
        if plane is None:
            return model_id, None, None
        return model_id, plane, energy_model.cost(points, normals, plane)

    if n_jobs > 1 and len(model_ids) > 1:
        with ThreadPoolExecutor(max_workers=int(n_jobs)) as ex:
            results = list(ex.map(refit_one, model_ids))
    else:
        results = [refit_one(mid) for mid in model_ids]

    changed = 0
    for model_id, plane, cost in results:
        if plane is None:
            continue
        inliers = support[model_id]
        before = float(costs[model_id][inliers].sum())
        after = float(cost[inliers].sum())
        if after <= before:
            pool[model_id] = plane
            costs[model_id] = cost
            changed += 1
    return changed


def prune_models(
    pool: Dict[int, PlaneParam],
    labels: np.ndarray,
    costs: Dict[int, np.ndarray],
    min_support: int,
) -> List[int]:
    """Remove models with fewer than min_support inliers; their points become outliers."""
    ids, counts = np.unique(labels[labels != OUTLIER], return_counts=True)
    counts_by_id = dict(zip(ids.tolist(), counts.tolist()))
    removed = [mid for mid in pool if counts_by_id.get(mid, 0) < min_support]
    if removed:
        labels[np.isin(labels, removed)] = OUTLIER
        for mid in removed:
            del pool[mid]
            costs.pop(mid, None)
    return removed


def _adjacent_pairs(labels: np.ndarray, edges: np.ndarray) -> np.ndarray:
    """Unique (a, b), a < b, of model ids whose supports share a graph edge."""
    if edges.size == 0:
        return np.empty((0, 2), dtype=int)
    la = labels[edges[:, 0]]
    lb = labels[edges[:, 1]]
    mask = (la != lb) & (la != OUTLIER) & (lb != OUTLIER)
    if not np.any(mask):
        return np.empty((0, 2), dtype=int)
    pairs = np.column_stack([np.minimum(la[mask], lb[mask]), np.maximum(la[mask], lb[mask])])
    return np.unique(pairs, axis=0)


def merge_models(
    points: np.ndarray,
    normals: np.ndarray,
    pool: Dict[int, PlaneParam],
    labels: np.ndarray,
    costs: Dict[int, np.ndarray],
    energy_model: EnergyModel,
    *,
    merge_angle_deg: float = 10.0,
    merge_distance_factor: float = 2.0,
) -> List[Tuple[int, int]]:
    """
    Merge adjacent, near-coplanar models.

    Two models are candidates when their normals differ by at most
    merge_angle_deg, each support centroid lies within
    merge_distance_factor * scale of the other plane, and at least one graph
    edge connects their supports. The model with more inliers (then the lower
    id) survives and is refitted on the union. A merge that raises the energy
    is reverted.

    Returns:
        list of (surviving id, absorbed id)
    """
    pairs = _adjacent_pairs(labels, energy_model.graph.edges)
    if pairs.size == 0:
        return []

    support = _support(labels)
    max_dist = merge_distance_factor * energy_model.scale
    energy = energy_model.total(labels, costs)
    alias: Dict[int, int] = {}
    merged: List[Tuple[int, int]] = []

    def resolve(mid: int) -> int:
        while mid in alias:
            mid = alias[mid]
        return mid

    candidates = []
    for a, b in pairs.tolist():
        if a in pool and b in pool:
            candidates.append((plane_angle_deg(pool[a].normal, pool[b].normal), a, b))
    candidates.sort()

    for _, a, b in candidates:
        a, b = resolve(a), resolve(b)
        if a == b or a not in support or b not in support:
            continue
        plane_a, plane_b = pool[a], pool[b]
        if plane_angle_deg(plane_a.normal, plane_b.normal) > merge_angle_deg:
            continue
        centroid_a = points[support[a]].mean(axis=0)
        centroid_b = points[support[b]].mean(axis=0)
        if abs(plane_a.distances(centroid_b[None, :])[0]) > max_dist:
            continue
        if abs(plane_b.distances(centroid_a[None, :])[0]) > max_dist:
            continue

        size_a, size_b = support[a].size, support[b].size
        keep, drop = (a, b) if (size_a, -a) >= (size_b, -b) else (b, a)
        union = np.concatenate([support[keep], support[drop]])
        plane = refine_plane(points, normals, union, energy_model, model_id=keep)
        if plane is None:
            continue

        trial_labels = labels.copy()
        trial_labels[support[drop]] = keep
        trial_costs = dict(costs)
        trial_costs[keep] = energy_model.cost(points, normals, plane)
        del trial_costs[drop]
        trial_energy = energy_model.total(trial_labels, trial_costs)
        if trial_energy > energy:
            LOG.debug(f"  Merge {drop} -> {keep} rejected ({trial_energy:.4f} > {energy:.4f})")
            continue

        labels[:] = trial_labels
        costs.clear()
        costs.update(trial_costs)
        pool[keep] = plane
        del pool[drop]
        support[keep] = np.sort(union)
        del support[drop]
        alias[drop] = keep
        energy = trial_energy
        merged.append((keep, drop))
        LOG.debug(f"  Merged model {drop} into {keep} ({union.size} points)")

    return merged


def attach_support(
    points: np.ndarray,
    pool: Dict[int, PlaneParam],
    labels: np.ndarray,
) -> None:
    """Refresh inlier_indices, inlier_count and rms of every plane from labels."""
    support = _support(labels)
    for mid, plane in list(pool.items()):
        indices = support.get(mid, np.empty((0,), dtype=int))
        pool[mid] = make_plane(mid, plane.normal, plane.offset, points, inlier_indices=indices)
