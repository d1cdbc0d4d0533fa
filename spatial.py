"""
spatial.py - Spatial index and neighbor graph over a point set
"""

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

import numpy as np
from scipy.sparse import coo_matrix, csr_matrix
from scipy.spatial import cKDTree

from logger import Logger

LOG = Logger.get_logger("spatial")


class SpatialIndex(Protocol):
    """What the extractor needs from a point set with nearest-neighbor search."""

    def size(self) -> int: ...

    def point_at(self, i: int) -> np.ndarray: ...

    def k_nearest_neighbors(self, query: np.ndarray, k: int) -> np.ndarray: ...


class KDTreeIndex:
    """k-NN index over an (N, 3) point array backed by scipy's cKDTree."""

    def __init__(self, points: np.ndarray, *, workers: int = 1):
        self.points = np.asarray(points, dtype=float)
        if self.points.ndim != 2 or self.points.shape[1] != 3:
            raise ValueError(f"Invalid points shape {self.points.shape}, expected (N, 3)")
        self.workers = int(workers)
        self._tree = cKDTree(self.points) if len(self.points) > 0 else None

    def size(self) -> int:
        return int(len(self.points))

    def point_at(self, i: int) -> np.ndarray:
        return self.points[int(i)]

    def k_nearest_neighbors(self, query: np.ndarray, k: int) -> np.ndarray:
        """Indices of the k points closest to query, nearest first."""
        if self._tree is None or k <= 0:
            return np.empty((0,), dtype=int)
        k = int(min(k, self.size()))
        _, idx = self._tree.query(np.asarray(query, dtype=float).reshape(3), k=k)
        return np.atleast_1d(np.asarray(idx, dtype=int))

    def query_all(self, k: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        k nearest neighbors of every indexed point, excluding the point itself.

        k is clamped to N - 1. Returns (distances, indices), both (N, k), nearest first.
        """
        n = self.size()
        k = int(min(max(k, 0), max(n - 1, 0)))
        if self._tree is None or k == 0:
            return np.empty((n, 0), dtype=float), np.empty((n, 0), dtype=int)

        dist, idx = self._tree.query(self.points, k=k + 1, workers=self.workers)
        dist = np.asarray(dist, dtype=float).reshape(n, k + 1)
        idx = np.asarray(idx, dtype=int).reshape(n, k + 1)

        # Drop the query point itself. With duplicate points it is not always
        # in column 0, so drop it wherever it appears, else the farthest column.
        is_self = idx == np.arange(n)[:, None]
        has_self = is_self.any(axis=1)
        drop = np.where(has_self, np.argmax(is_self, axis=1), k)
        keep = np.ones_like(idx, dtype=bool)
        keep[np.arange(n), drop] = False
        return dist[keep].reshape(n, k), idx[keep].reshape(n, k)


def index_points(index: SpatialIndex) -> np.ndarray:
    """(N, 3) array of the indexed points."""
    points = getattr(index, "points", None)
    if points is None:
        points = [index.point_at(i) for i in range(index.size())]
    return np.asarray(points, dtype=float).reshape(-1, 3)


def query_neighbors(
    index: SpatialIndex,
    k: int,
    *,
    points: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    k nearest neighbors of every point, excluding itself, as (distances, indices).

    Uses the index's batched query_all when it has one, else one
    k_nearest_neighbors call per point. points, when given, is the already
    materialized point array of the index.
    """
    if hasattr(index, "query_all"):
        return index.query_all(k)

    n = index.size()
    k = int(min(max(k, 0), max(n - 1, 0)))
    if k == 0:
        return np.empty((n, 0), dtype=float), np.empty((n, 0), dtype=int)
    if points is None:
        points = index_points(index)
    idx = np.empty((n, k), dtype=int)
    for i in range(n):
        found = np.asarray(index.k_nearest_neighbors(points[i], k + 1), dtype=int)
        found = found[found != i][:k]
        if found.size < k:
            raise ValueError(f"Spatial index returned {found.size} neighbors for point {i}, expected {k}")
        idx[i] = found
    dist = np.linalg.norm(points[idx] - points[:, None, :], axis=2)
    return dist, idx


@dataclass
class NeighborGraph:
    """Undirected k-NN adjacency over point indices."""
    knn: np.ndarray           # (N, k) neighbor indices, nearest first
    knn_dist: np.ndarray      # (N, k) neighbor distances
    edges: np.ndarray         # (E, 2) unique pairs with i < j
    lengths: np.ndarray       # (E,) edge lengths
    _csr: Optional[csr_matrix] = None

    @property
    def num_points(self) -> int:
        return int(self.knn.shape[0])

    @property
    def num_edges(self) -> int:
        return int(self.edges.shape[0])

    @property
    def k(self) -> int:
        return int(self.knn.shape[1])

    def adjacency(self) -> csr_matrix:
        """Symmetric CSR adjacency (cached)."""
        if self._csr is None:
            self._csr = edges_to_csr(self.edges, self.num_points)
        return self._csr

    def degree(self, weights: Optional[np.ndarray] = None) -> np.ndarray:
        """Per-point (weighted) degree."""
        w = np.ones(self.num_edges, dtype=float) if weights is None else np.asarray(weights, dtype=float)
        deg = np.zeros(self.num_points, dtype=float)
        if self.num_edges:
            np.add.at(deg, self.edges[:, 0], w)
            np.add.at(deg, self.edges[:, 1], w)
        return deg

    def nearest_distances(self) -> np.ndarray:
        """Distance from each point to its nearest neighbor."""
        if self.knn_dist.shape[1] == 0:
            return np.zeros(self.num_points, dtype=float)
        return self.knn_dist[:, 0]


def edges_to_csr(edges: np.ndarray, n: int, mask: Optional[np.ndarray] = None) -> csr_matrix:
    """Symmetric CSR matrix from undirected edges, optionally restricted by an edge mask."""
    edges = np.asarray(edges, dtype=int).reshape(-1, 2)
    if mask is not None:
        edges = edges[mask]
    rows = np.concatenate([edges[:, 0], edges[:, 1]])
    cols = np.concatenate([edges[:, 1], edges[:, 0]])
    data = np.ones(len(rows), dtype=np.int8)
    return coo_matrix((data, (rows, cols)), shape=(n, n)).tocsr()


def build_neighbor_graph(
    index: SpatialIndex,
    k: int,
    *,
    points: Optional[np.ndarray] = None,
) -> NeighborGraph:
    """
    Build the symmetric k-NN neighbor graph.

    Args:
        index: spatial index over the point set
        k: neighbors per point (>= 1), clamped to the point count - 1
        points: the indexed points as an (N, 3) array, if already materialized

    Returns:
        NeighborGraph with deduplicated undirected edges
    """
    if int(k) < 1:
        raise ValueError(f"k must be >= 1, got {k}")
    knn_dist, knn = query_neighbors(index, int(k), points=points)
    n = index.size()

    if knn.size == 0:
        return NeighborGraph(
            knn=knn,
            knn_dist=knn_dist,
            edges=np.empty((0, 2), dtype=int),
            lengths=np.empty((0,), dtype=float),
        )

    src = np.repeat(np.arange(n), knn.shape[1])
    dst = knn.reshape(-1)
    dist = knn_dist.reshape(-1)
    lo = np.minimum(src, dst)
    hi = np.maximum(src, dst)
    valid = lo != hi
    pairs = np.column_stack([lo[valid], hi[valid]])
    pairs, first = np.unique(pairs, axis=0, return_index=True)
    lengths = dist[valid][first]

    LOG.debug(f"Neighbor graph: {n} points, k={knn.shape[1]}, {len(pairs)} edges")
    return NeighborGraph(knn=knn, knn_dist=knn_dist, edges=pairs, lengths=lengths)
