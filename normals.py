"""
normals.py - Per-point normal estimation by weighted PCA
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from logger import Logger
from primitives import cauchy_weights
from spatial import SpatialIndex, index_points, query_neighbors

LOG = Logger.get_logger("normals")

_DEFAULT_NORMAL = np.array([0.0, 0.0, 1.0])


@dataclass
class NormalEstimate:
    """Unit normals and local plane residuals, index-aligned with the points."""
    normals: np.ndarray     # (N, 3)
    residuals: np.ndarray   # (N,) local noise: RMS plane distance of the unweighted fit, per degree of freedom


def _batched_weighted_pca(
    neighborhoods: np.ndarray,
    weights: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Weighted PCA over a batch of neighborhoods.

    Args:
        neighborhoods: (N, k, 3) points
        weights: (N, k) non-negative weights

    Returns:
        (normals (N, 3), centroids (N, 3), smallest eigenvalues (N,))
    """
    total = weights.sum(axis=1)
    safe_total = np.where(total > 0, total, 1.0)
    centroids = np.einsum("nk,nkd->nd", weights, neighborhoods) / safe_total[:, None]
    centered = neighborhoods - centroids[:, None, :]
    cov = np.einsum("nk,nki,nkj->nij", weights, centered, centered) / safe_total[:, None, None]

    eigvals, eigvecs = np.linalg.eigh(cov)
    normals = eigvecs[:, :, 0]
    smallest = np.clip(eigvals[:, 0], 0.0, None)

    # Zero-weight neighborhoods get a default normal.
    empty = total <= 0
    if np.any(empty):
        normals[empty] = _DEFAULT_NORMAL
        smallest[empty] = 0.0
    return normals, centroids, smallest


def estimate_normals(
    index: SpatialIndex,
    k: int,
    *,
    robust_iters: int = 2,
    orientation_aware: bool = False,
    neighbors: Optional[np.ndarray] = None,
    points: Optional[np.ndarray] = None,
) -> NormalEstimate:
    """
    Estimate a unit normal per point by weighted PCA over its k nearest neighbors.

    The first pass uses uniform weights; each robust iteration re-weights the
    neighbors by their distance to the current local plane, so points across a
    sharp edge stop pulling the normal. Normal orientation is arbitrary.

    Args:
        index: spatial index over the point set
        k: neighborhood size (the point itself is included)
        robust_iters: number of re-weighting passes
        orientation_aware: re-estimate each normal from the neighbors whose normal
            points into the same half-space
        neighbors: precomputed (N, k) neighbor indices (excluding self), optional
        points: the indexed points as an (N, 3) array, if already materialized

    Returns:
        NormalEstimate
    """
    n = index.size()
    if n == 0:
        return NormalEstimate(normals=np.empty((0, 3)), residuals=np.empty((0,)))

    if points is None:
        points = index_points(index)

    if neighbors is None:
        _, neighbors = query_neighbors(index, max(int(k) - 1, 0), points=points)
    hood = np.column_stack([np.arange(n), neighbors]).astype(int)
    if hood.shape[1] < 3:
        LOG.warning(f"Only {hood.shape[1]} points per neighborhood; using default normals")
        return NormalEstimate(
            normals=np.tile(_DEFAULT_NORMAL, (n, 1)),
            residuals=np.zeros(n, dtype=float),
        )

    neighborhoods = points[hood]
    weights = np.ones(hood.shape, dtype=float)
    normals, centroids, smallest = _batched_weighted_pca(neighborhoods, weights)
    # The unweighted fit spends 3 of the k residual degrees of freedom.
    size = hood.shape[1]
    dof = size / (size - 3) if size > 3 else 1.0
    noise = np.sqrt(smallest * dof)

    for _ in range(int(max(0, robust_iters))):
        residuals = np.einsum("nkd,nd->nk", neighborhoods - centroids[:, None, :], normals)
        weights = cauchy_weights(residuals, axis=1)
        normals, centroids, _ = _batched_weighted_pca(neighborhoods, weights)

    if orientation_aware:
        same_side = np.einsum("nkd,nd->nk", normals[hood], normals) >= 0.0
        refined, _, _ = _batched_weighted_pca(
            neighborhoods, weights * same_side
        )
        flip = np.einsum("nd,nd->n", refined, normals) < 0
        refined[flip] *= -1.0
        normals = refined

    norms = np.linalg.norm(normals, axis=1, keepdims=True)
    normals = normals / np.where(norms > 1e-12, norms, 1.0)
    LOG.debug(f"Estimated {n} normals (k={hood.shape[1]}, robust_iters={robust_iters})")
    return NormalEstimate(normals=normals, residuals=noise)
