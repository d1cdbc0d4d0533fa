"""
energy.py - Global labeling energy: data, smoothness, outlier and model-count terms

E(L) = sum_p D(p, L_p) + outlier_penalty * #outliers
       + smoothness_weight * sum_{(p,q)} w_pq [L_p != L_q]
       + model_cost * #models with non-empty support
"""

from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple

import numpy as np

from primitives import OUTLIER, PlaneParam, cauchy_weights, plane_distances, weighted_plane_fit
from spatial import NeighborGraph

DataCost = Callable[[np.ndarray, np.ndarray, PlaneParam, float, float], np.ndarray]
EdgeWeights = Callable[[NeighborGraph], np.ndarray]


# =============================================================================
# Data cost strategies
# =============================================================================

def _normal_disagreement(normals: np.ndarray, plane: PlaneParam) -> np.ndarray:
    """1 - cos^2 of the angle between point normals and the plane normal (0..1)."""
    cos = normals @ plane.normal
    return 1.0 - np.clip(cos * cos, 0.0, 1.0)


def quadratic_cost(
    points: np.ndarray,
    normals: np.ndarray,
    plane: PlaneParam,
    scale: float,
    angle_weight: float,
) -> np.ndarray:
    """(d / scale)^2 + angle_weight * sin^2(angle)."""
    d = (points @ plane.normal + plane.offset) / scale
    return d * d + angle_weight * _normal_disagreement(normals, plane)


def linear_cost(
    points: np.ndarray,
    normals: np.ndarray,
    plane: PlaneParam,
    scale: float,
    angle_weight: float,
) -> np.ndarray:
    """|d| / scale + angle_weight * sin^2(angle)."""
    d = np.abs(points @ plane.normal + plane.offset) / scale
    return d + angle_weight * _normal_disagreement(normals, plane)


DATA_COSTS: Dict[str, DataCost] = {
    "quadratic": quadratic_cost,
    "linear": linear_cost,
}


# =============================================================================
# Smoothness (edge weight) strategies
# =============================================================================

def potts_weights(graph: NeighborGraph) -> np.ndarray:
    """Constant weight per edge."""
    return np.ones(graph.num_edges, dtype=float)


def gaussian_weights(graph: NeighborGraph) -> np.ndarray:
    """Weight decaying with edge length, equal to 1 at the median edge length."""
    if graph.num_edges == 0:
        return np.empty((0,), dtype=float)
    sigma = float(np.median(graph.lengths))
    if not np.isfinite(sigma) or sigma <= 0:
        return np.ones(graph.num_edges, dtype=float)
    ratio = graph.lengths / sigma
    return np.exp(-0.5 * (ratio * ratio - 1.0))


SMOOTHNESS: Dict[str, EdgeWeights] = {
    "potts": potts_weights,
    "gaussian": gaussian_weights,
}


# =============================================================================
# Energy model
# =============================================================================

@dataclass
class EnergyBreakdown:
    """Terms of the global energy for one labeling."""
    data: float
    smoothness: float
    outlier: float
    model: float
    active_models: int = 0

    @property
    def total(self) -> float:
        return self.data + self.smoothness + self.outlier + self.model


def estimate_inlier_scale(
    residuals: np.ndarray,
    nn_distances: np.ndarray,
    *,
    k_sigma: float = 3.0,
    floor_ratio: float = 0.1,
) -> float:
    """
    Inlier distance scale from local plane residuals.

    k_sigma times the median local residual, floored at floor_ratio times the
    median nearest-neighbor distance so noise-free data keeps a usable band.
    """
    residuals = np.asarray(residuals, dtype=float)
    nn_distances = np.asarray(nn_distances, dtype=float)
    noise = float(np.median(residuals)) if residuals.size else 0.0
    spacing = float(np.median(nn_distances)) if nn_distances.size else 0.0
    scale = max(k_sigma * noise, floor_ratio * spacing)
    if not np.isfinite(scale) or scale <= 0:
        scale = 1e-6
    return scale


class EnergyModel:
    """Evaluates data costs and the total energy of a labeling."""

    def __init__(
        self,
        graph: NeighborGraph,
        *,
        scale: float,
        outlier_penalty: float,
        smoothness_weight: float,
        model_cost: float,
        angle_weight: float = 0.5,
        data_cost: str = "quadratic",
        smoothness: str = "potts",
    ):
        self.graph = graph
        self.scale = float(scale)
        self.outlier_penalty = float(outlier_penalty)
        self.smoothness_weight = float(smoothness_weight)
        self.model_cost = float(model_cost)
        self.angle_weight = float(angle_weight)
        self.data_cost_name = data_cost
        self.data_cost = DATA_COSTS[data_cost]
        self.edge_weights = self.smoothness_weight * SMOOTHNESS[smoothness](graph)
        self.weighted_degree = graph.degree(self.edge_weights)

    def cost(self, points: np.ndarray, normals: np.ndarray, plane: PlaneParam) -> np.ndarray:
        """Data cost of assigning every point to plane."""
        return self.data_cost(points, normals, plane, self.scale, self.angle_weight)

    def unary(self, labels: np.ndarray, costs: Mapping[int, np.ndarray]) -> np.ndarray:
        """Per-point data or outlier cost under labels."""
        unary = np.full(len(labels), self.outlier_penalty, dtype=float)
        for model_id in np.unique(labels):
            if model_id == OUTLIER:
                continue
            mask = labels == model_id
            unary[mask] = costs[int(model_id)][mask]
        return unary

    def smoothness_cost(self, labels: np.ndarray) -> float:
        if self.graph.num_edges == 0:
            return 0.0
        cut = labels[self.graph.edges[:, 0]] != labels[self.graph.edges[:, 1]]
        return float(self.edge_weights[cut].sum())

    def evaluate(self, labels: np.ndarray, costs: Mapping[int, np.ndarray]) -> EnergyBreakdown:
        """Full energy breakdown of a labeling."""
        labels = np.asarray(labels, dtype=int)
        outlier_mask = labels == OUTLIER
        unary = self.unary(labels, costs)
        active = np.unique(labels[~outlier_mask])
        return EnergyBreakdown(
            data=float(unary[~outlier_mask].sum()),
            smoothness=self.smoothness_cost(labels),
            outlier=float(unary[outlier_mask].sum()),
            model=self.model_cost * len(active),
            active_models=int(len(active)),
        )

    def total(self, labels: np.ndarray, costs: Mapping[int, np.ndarray]) -> float:
        return self.evaluate(labels, costs).total

    def fit_plane(
        self,
        points: np.ndarray,
        normals: Optional[np.ndarray] = None,
        *,
        robust_iters: int = 0,
    ) -> Optional[Tuple[np.ndarray, float, np.ndarray]]:
        """
        Weighted least-squares plane over a fixed inlier set.

        The first pass uses uniform weights and minimizes the quadratic data
        cost exactly. Each robust iteration re-weights the points with Cauchy
        weights on their distance to the current plane, the same scheme the
        normal estimator uses; a degenerate re-weighted fit keeps the previous one.
        """
        normal_weight = self.angle_weight if normals is not None else 0.0
        fit = weighted_plane_fit(points, normals=normals, normal_weight=normal_weight, scale=self.scale)
        for _ in range(int(max(0, robust_iters))):
            if fit is None:
                break
            residuals = plane_distances(points, fit[0], fit[1])
            weights = cauchy_weights(residuals, floor=1e-3 * self.scale)
            refit = weighted_plane_fit(
                points, weights, normals=normals, normal_weight=normal_weight, scale=self.scale
            )
            if refit is None:
                break
            fit = refit
        return fit
