"""
primitives.py - Plane primitive record and plane fitting functions
"""

from dataclasses import dataclass
from typing import Optional, Tuple
import numpy as np


# Label value for points that belong to no plane.
OUTLIER = -1

# Point sets whose second singular value is below this fraction of the first
# are treated as collinear by every plane fitter.
MIN_SPREAD_RATIO = 1e-3


@dataclass
class PlaneParam:
    """Parameters for a fitted plane model (normal . x + offset = 0)."""
    model_id: int
    normal: np.ndarray        # (nx, ny, nz), unit length
    offset: float
    point: np.ndarray         # (px, py, pz) - support centroid projected on the plane
    inlier_count: int = 0
    inlier_indices: Optional[np.ndarray] = None
    rms: float = 0.0

    def distances(self, points: np.ndarray) -> np.ndarray:
        """Signed distances of points to the plane."""
        return plane_distances(points, self.normal, self.offset)

    def coefficients(self) -> np.ndarray:
        """(a, b, c, d) with a*x + b*y + c*z + d = 0."""
        return np.append(self.normal, self.offset)


def _orient_direction(vec: np.ndarray) -> np.ndarray:
    """Return vec or -vec so that its dominant component is positive."""
    vec = np.asarray(vec, dtype=float)
    if vec.shape != (3,):
        vec = vec.reshape(3)
    dominant = int(np.argmax(np.abs(vec)))
    return vec if vec[dominant] >= 0 else -vec


def plane_from_normal_point(normal: np.ndarray, point: np.ndarray) -> Optional[Tuple[np.ndarray, float]]:
    """Normalize and orient a normal, and compute the offset through point."""
    normal = np.asarray(normal, dtype=float).reshape(-1)
    point = np.asarray(point, dtype=float).reshape(-1)
    if normal.size != 3 or point.size != 3:
        return None
    norm = np.linalg.norm(normal)
    if not np.isfinite(norm) or norm < 1e-12:
        return None
    normal = _orient_direction(normal / norm)
    return normal, float(-(normal @ point))


def _is_degenerate(spread: np.ndarray) -> bool:
    """True when descending singular values describe a point, a line or nothing."""
    return spread.size < 2 or spread[0] < 1e-12 or spread[1] / spread[0] < MIN_SPREAD_RATIO


def cauchy_weights(residuals: np.ndarray, *, axis: int = -1, floor: float = 1e-12) -> np.ndarray:
    """Robust weights 1 / (1 + (r / s)^2) with the MAD scale s taken along axis."""
    abs_r = np.abs(residuals)
    scale = 1.4826 * np.median(abs_r, axis=axis, keepdims=True)
    scale = np.where(scale > floor, scale, floor)
    return 1.0 / (1.0 + (abs_r / scale) ** 2)


def plane_distances(points: np.ndarray, normal: np.ndarray, offset: float) -> np.ndarray:
    """Signed point-to-plane distances."""
    pts = np.asarray(points, dtype=float)
    return pts @ np.asarray(normal, dtype=float) + float(offset)


def weighted_plane_fit(
    points: np.ndarray,
    weights: Optional[np.ndarray] = None,
    *,
    normals: Optional[np.ndarray] = None,
    normal_weight: float = 0.0,
    scale: float = 1.0,
) -> Optional[Tuple[np.ndarray, float, np.ndarray]]:
    """
    Fit a plane by weighted PCA.

    Minimizes sum_i w_i * ((n . (x_i - c)) / scale)^2 - normal_weight * sum_i w_i * (n . n_i)^2
    over unit normals n, with c the weighted centroid. With normal_weight=0 this is the
    classic weighted least-squares plane.

    Args:
        points: (N, 3) array of 3D points
        weights: (N,) non-negative weights (uniform if None)
        normals: (N, 3) point normals used by the agreement term (optional)
        normal_weight: weight of the normal agreement term
        scale: distance unit of the residual term

    Returns:
        (normal, offset, centroid) or None if the fit is degenerate
    """
    pts = np.asarray(points, dtype=float)
    if pts.ndim != 2 or pts.shape[1] != 3 or len(pts) < 3:
        return None
    if weights is None:
        w = np.ones(len(pts), dtype=float)
    else:
        w = np.asarray(weights, dtype=float).reshape(-1)
        if w.size != len(pts):
            return None
        w = np.where(np.isfinite(w) & (w > 0), w, 0.0)
    total = float(w.sum())
    if total <= 0 or int(np.count_nonzero(w)) < 3:
        return None

    centroid = (w[:, None] * pts).sum(axis=0) / total
    centered = pts - centroid
    cov = (w[:, None] * centered).T @ centered / total
    if not np.all(np.isfinite(cov)):
        return None

    # Collinear or coincident points do not define a plane.
    if _is_degenerate(np.sqrt(np.clip(np.linalg.eigvalsh(cov)[::-1], 0.0, None))):
        return None

    matrix = cov / (float(scale) * float(scale))
    if normals is not None and normal_weight > 0:
        nrm = np.asarray(normals, dtype=float)
        if nrm.shape == pts.shape:
            matrix = matrix - float(normal_weight) * ((w[:, None] * nrm).T @ nrm) / total

    try:
        _, vecs = np.linalg.eigh(matrix)
    except np.linalg.LinAlgError:
        return None
    oriented = plane_from_normal_point(vecs[:, 0], centroid)
    if oriented is None:
        return None
    normal, offset = oriented
    return normal, offset, centroid


def fit_plane_lstsq(points: np.ndarray) -> Optional[Tuple[np.ndarray, float]]:
    """Fit a plane to points using least squares (SVD)."""
    pts = np.asarray(points, dtype=float)
    if pts.ndim != 2 or pts.shape[1] != 3 or len(pts) < 3:
        return None
    if not np.all(np.isfinite(pts)):
        return None
    centroid = pts.mean(axis=0)
    centered = pts - centroid
    _, s, vh = np.linalg.svd(centered, full_matrices=False)
    if _is_degenerate(s):
        return None
    return plane_from_normal_point(vh[-1], centroid)


def make_plane(
    model_id: int,
    normal: np.ndarray,
    offset: float,
    points: np.ndarray,
    inlier_indices: Optional[np.ndarray] = None,
) -> PlaneParam:
    """Build a PlaneParam; the representative point is the support centroid on the plane."""
    normal = np.asarray(normal, dtype=float)
    pts = np.asarray(points, dtype=float)
    if inlier_indices is not None:
        inlier_indices = np.asarray(inlier_indices, dtype=int)
        support = pts[inlier_indices]
    else:
        support = pts
    if len(support) > 0:
        centroid = support.mean(axis=0)
        residuals = support @ normal + offset
        rms = float(np.sqrt(np.mean(residuals * residuals)))
    else:
        centroid = -offset * normal
        rms = 0.0
    point_on_plane = centroid - (normal @ centroid + offset) * normal
    return PlaneParam(
        model_id=int(model_id),
        normal=normal,
        offset=float(offset),
        point=point_on_plane,
        inlier_count=int(len(support)),
        inlier_indices=inlier_indices,
        rms=rms,
    )


def plane_angle_deg(normal_a: np.ndarray, normal_b: np.ndarray) -> float:
    """Unsigned angle between two plane normals in degrees (0..90)."""
    a = np.asarray(normal_a, dtype=float)
    b = np.asarray(normal_b, dtype=float)
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom < 1e-12:
        return 90.0
    cos = float(np.clip(abs(a @ b) / denom, 0.0, 1.0))
    return float(np.degrees(np.arccos(cos)))


def compute_plane_residual_stats(
    points: np.ndarray,
    plane_normal: np.ndarray,
    plane_offset: float,
) -> Tuple[float, float, float]:
    """Compute plane residual median/MAD/RMS."""
    pts = np.asarray(points, dtype=float)
    plane_normal = np.asarray(plane_normal, dtype=float).reshape(-1)
    if pts.ndim != 2 or pts.shape[1] != 3 or plane_normal.size != 3:
        return 0.0, 0.0, 0.0
    norm = np.linalg.norm(plane_normal)
    if not np.isfinite(norm) or norm < 1e-12:
        return 0.0, 0.0, 0.0
    residuals = np.abs(pts @ plane_normal + float(plane_offset)) / norm
    if residuals.size == 0:
        return 0.0, 0.0, 0.0
    median = float(np.median(residuals))
    mad = float(np.median(np.abs(residuals - median)))
    rms = float(np.sqrt(np.mean(residuals * residuals)))
    return median, mad, rms
