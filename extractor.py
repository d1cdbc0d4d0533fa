"""
extractor.py - Generate / label / refine loop producing the final planes and labels

    init -> generate -> label -> refine -> (label | generate | stop)

All mutable state of a run lives in an ExtractionSession owned by the caller,
so each phase can be driven and inspected on its own.
"""

from dataclasses import dataclass, field
from time import perf_counter
from typing import Dict, List, Optional, Set, Union

import numpy as np

from candidates import CandidateStats, generate_candidates
from config import ExtractionConfig, InvalidConfiguration
from energy import EnergyModel, estimate_inlier_scale
from labeling import ORACLES, LabelingStats, optimize_labels
from logger import Logger
from normals import estimate_normals
from primitives import OUTLIER, PlaneParam
from refine import attach_support, merge_models, prune_models, refit_models
from spatial import KDTreeIndex, NeighborGraph, SpatialIndex, build_neighbor_graph, index_points

LOG = Logger.get_logger("extractor")

STATUS_OK = "ok"
STATUS_EMPTY_INPUT = "empty_input"
STATUS_NO_PLANE = "no_plane_found"
STATUS_NOT_CONVERGED = "not_converged"


@dataclass
class ExtractionResult:
    """Final planes and per-point labels of one extraction run."""
    planes: List[PlaneParam]
    labels: np.ndarray
    success: bool
    status: str
    message: str
    converged: bool = False
    iterations: int = 0
    energy: float = 0.0
    energy_history: List[float] = field(default_factory=list)
    scale: float = 0.0
    candidate_count: int = 0
    elapsed_s: float = 0.0

    @property
    def plane_count(self) -> int:
        return len(self.planes)

    @property
    def outlier_count(self) -> int:
        return int(np.count_nonzero(self.labels == OUTLIER))


@dataclass
class RefineStats:
    refitted: int
    pruned: List[int]
    merged: List[tuple]


@dataclass
class ExtractionSession:
    """State of one extraction run, passed through every phase."""
    points: np.ndarray
    normals: np.ndarray
    residuals: np.ndarray
    config: ExtractionConfig
    graph: NeighborGraph
    energy_model: EnergyModel
    labels: np.ndarray
    rng: np.random.Generator
    pool: Dict[int, PlaneParam] = field(default_factory=dict)
    costs: Dict[int, np.ndarray] = field(default_factory=dict)
    history: List[float] = field(default_factory=list)
    state: str = "init"
    next_model_id: int = 0
    tried_seeds: Set[int] = field(default_factory=set)
    iterations: int = 0
    candidate_count: int = 0
    regenerations: int = 0
    converged: bool = False

    @property
    def energy(self) -> float:
        return self.history[-1] if self.history else float("nan")

    def record_energy(self) -> float:
        value = self.energy_model.total(self.labels, self.costs)
        self.history.append(value)
        return value


def _is_index(points) -> bool:
    return hasattr(points, "size") and hasattr(points, "point_at")


def _as_points(points: Union[np.ndarray, SpatialIndex]) -> np.ndarray:
    if _is_index(points):
        return index_points(points)
    pts = np.asarray(points, dtype=float)
    if pts.size == 0:
        return np.empty((0, 3), dtype=float)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise InvalidConfiguration(f"Invalid points shape {pts.shape}, expected (N, 3)")
    return pts


def _check_normals(normals: np.ndarray, n: int) -> np.ndarray:
    normals = np.asarray(normals, dtype=float)
    if normals.shape != (n, 3):
        raise InvalidConfiguration(f"Invalid normals shape {normals.shape}, expected ({n}, 3)")
    if not np.all(np.isfinite(normals)):
        raise InvalidConfiguration("Normals contain non-finite values")
    norms = np.linalg.norm(normals, axis=1)
    if np.any(norms < 1e-12):
        raise InvalidConfiguration("Normals contain zero-length vectors")
    return normals / norms[:, None]


def initialize_session(
    points: Union[np.ndarray, SpatialIndex],
    normals: Optional[np.ndarray] = None,
    config: Optional[ExtractionConfig] = None,
) -> ExtractionSession:
    """
    Validate the configuration and inputs, then build the neighbor graph,
    normals, inlier scale and energy model.

    Raises:
        InvalidConfiguration: bad parameters, malformed or non-finite input
    """
    config = (config or ExtractionConfig()).validate()
    given_index = points if _is_index(points) else None
    pts = _as_points(points)
    if not np.all(np.isfinite(pts)):
        raise InvalidConfiguration("Points contain non-finite values (NaN/Inf)")
    n = len(pts)
    if normals is not None:
        normals = _check_normals(normals, n)

    index = given_index if given_index is not None else KDTreeIndex(pts, workers=config.n_jobs)
    graph = build_neighbor_graph(index, config.k_neighbors, points=pts)

    normal_k = config.effective_normal_k
    neighbors = graph.knn[:, : normal_k - 1] if normal_k - 1 <= graph.k else None
    estimate = estimate_normals(index, normal_k, neighbors=neighbors, points=pts)
    if normals is None:
        normals = estimate.normals

    if config.distance_threshold is not None:
        scale = float(config.distance_threshold)
    else:
        scale = estimate_inlier_scale(estimate.residuals, graph.nearest_distances())

    energy_model = EnergyModel(
        graph,
        scale=scale,
        outlier_penalty=config.outlier_penalty,
        smoothness_weight=config.smoothness_weight,
        model_cost=config.effective_model_cost,
        angle_weight=config.angle_weight,
        data_cost=config.data_cost,
        smoothness=config.smoothness,
    )
    session = ExtractionSession(
        points=pts,
        normals=normals,
        residuals=estimate.residuals,
        config=config,
        graph=graph,
        energy_model=energy_model,
        labels=np.full(n, OUTLIER, dtype=int),
        rng=np.random.default_rng(config.random_seed),
    )
    session.record_energy()
    session.state = "generate"
    LOG.debug(f"Session: {n} points, {graph.num_edges} edges, scale={scale:.5f}")
    return session


def run_generate(session: ExtractionSession) -> CandidateStats:
    """Add candidates covering the points that are currently outliers."""
    cfg = session.config
    planes, stats = generate_candidates(
        session.points,
        session.normals,
        session.energy_model,
        residuals=session.residuals,
        rng=session.rng,
        covered=session.labels != OUTLIER,
        n_constraints=cfg.n_constraints,
        min_support=cfg.min_support_points,
        normal_threshold_deg=cfg.normal_threshold_deg,
        proposal_ratio=cfg.proposal_ratio,
        min_proposals=cfg.min_proposals,
        min_uncovered_fraction=cfg.min_uncovered_fraction,
        max_failures=cfg.max_failures,
        grow_iters=cfg.grow_iters,
        start_id=session.next_model_id,
        tried=session.tried_seeds,
    )
    for plane in planes:
        session.pool[plane.model_id] = plane
        session.costs[plane.model_id] = session.energy_model.cost(
            session.points, session.normals, plane
        )
        session.next_model_id = max(session.next_model_id, plane.model_id + 1)
    session.candidate_count += len(planes)
    if planes:
        session.state = "label"
    elif (
        stats.stop_reason in ("budget", "max_failures")
        and session.regenerations < cfg.regeneration_retries
    ):
        # Retry with a fresh proposal budget; tried seeds are not drawn again.
        session.regenerations += 1
        LOG.info(
            f"No candidates accepted ({stats.stop_reason}); "
            f"retry {session.regenerations}/{cfg.regeneration_retries}"
        )
        session.state = "generate"
    else:
        session.state = "stop"
    return stats


def run_label(session: ExtractionSession) -> LabelingStats:
    """Relabel all points against the current pool."""
    cfg = session.config
    stats = optimize_labels(
        session.labels,
        sorted(session.pool),
        session.costs,
        session.energy_model,
        oracle=ORACLES[cfg.oracle],
        min_support=cfg.min_support_points,
        max_passes=cfg.max_label_passes,
    )
    session.record_energy()
    session.state = "refine"
    return stats


def run_refine(session: ExtractionSession) -> RefineStats:
    """Refit, prune and merge models, then record the energy."""
    cfg = session.config
    refitted = refit_models(
        session.points, session.normals, session.pool, session.labels,
        session.costs, session.energy_model, n_jobs=cfg.n_jobs,
    )
    pruned = prune_models(session.pool, session.labels, session.costs, cfg.min_support_points)
    merged = merge_models(
        session.points, session.normals, session.pool, session.labels,
        session.costs, session.energy_model,
        merge_angle_deg=cfg.merge_angle_deg,
        merge_distance_factor=cfg.merge_distance_factor,
    )
    session.record_energy()
    session.state = "label"
    return RefineStats(refitted=refitted, pruned=pruned, merged=merged)


def _after_iteration(session: ExtractionSession, start_energy: float) -> None:
    """Pick the next state from the energy drop of the last label/refine iteration."""
    cfg = session.config
    drop = (start_energy - session.energy) / max(abs(start_energy), 1e-12)
    if drop <= cfg.energy_tol:
        session.converged = True
        outliers = int(np.count_nonzero(session.labels == OUTLIER))
        if session.regenerations < cfg.regeneration_retries and outliers >= cfg.min_support_points:
            session.regenerations += 1
            LOG.info(f"Converged; regenerating from {outliers} outlier points")
            session.state = "generate"
        else:
            session.state = "stop"
    elif session.iterations >= cfg.max_iterations:
        session.state = "stop"
    else:
        session.state = "label"


def _finish(session: ExtractionSession, time_start: float) -> ExtractionResult:
    attach_support(session.points, session.pool, session.labels)
    planes = [session.pool[mid] for mid in sorted(session.pool)]
    elapsed = perf_counter() - time_start
    common = dict(
        labels=session.labels,
        iterations=session.iterations,
        energy=session.energy,
        energy_history=list(session.history),
        scale=session.energy_model.scale,
        candidate_count=session.candidate_count,
        elapsed_s=elapsed,
    )

    if not planes:
        session.labels[:] = OUTLIER
        message = f"No plane with >= {session.config.min_support_points} points found"
        LOG.warning(message)
        return ExtractionResult(
            planes=[], success=False, status=STATUS_NO_PLANE, message=message,
            converged=session.converged, **common,
        )

    outliers = int(np.count_nonzero(session.labels == OUTLIER))
    message = f"Extracted {len(planes)} planes, {outliers} outliers in {session.iterations} iterations"
    if session.converged:
        status = STATUS_OK
    else:
        status = STATUS_NOT_CONVERGED
        LOG.warning(f"Not converged after {session.iterations} iterations; returning best result")
    LOG.info(f"{message} ({elapsed:.2f}s)")
    return ExtractionResult(
        planes=planes, success=True, status=status, message=message,
        converged=session.converged, **common,
    )


def extract_planes(
    points: Union[np.ndarray, SpatialIndex],
    normals: Optional[np.ndarray] = None,
    config: Optional[ExtractionConfig] = None,
) -> ExtractionResult:
    """
    Extract planes from a point cloud and label every point.

    Args:
        points: (N, 3) array or a spatial index over the points
        normals: (N, 3) unit normals (estimated by weighted PCA if None)
        config: ExtractionConfig (defaults if None)

    Returns:
        ExtractionResult with planes, labels (model id or OUTLIER per point) and status

    Raises:
        InvalidConfiguration: bad parameters or malformed input
    """
    time_start = perf_counter()
    config = (config or ExtractionConfig()).validate()
    count = points.size() if _is_index(points) else len(_as_points(points))
    if count == 0:
        LOG.warning("Empty input point set")
        return ExtractionResult(
            planes=[],
            labels=np.empty((0,), dtype=int),
            success=False,
            status=STATUS_EMPTY_INPUT,
            message="Empty input point set",
        )

    session = initialize_session(points, normals, config)
    LOG.info(
        f"Extracting planes from {len(session.points)} points "
        f"(k={config.k_neighbors}, min_support={config.min_support_points}, "
        f"scale={session.energy_model.scale:.4f})"
    )

    start_energy = session.energy
    while session.state != "stop":
        if session.state == "generate":
            stats = run_generate(session)
            if session.state == "stop":
                LOG.debug(f"  No new candidates ({stats.stop_reason})")
        elif session.state == "label":
            start_energy = session.energy
            session.converged = False
            stats = run_label(session)
            LOG.debug(
                f"  Iteration {session.iterations + 1}: labels energy={stats.energy:.4f} "
                f"({stats.accepted_moves} moves, {stats.passes} passes)"
            )
        elif session.state == "refine":
            refine_stats = run_refine(session)
            session.iterations += 1
            LOG.debug(
                f"  Iteration {session.iterations}: refit {refine_stats.refitted}, "
                f"pruned {len(refine_stats.pruned)}, merged {len(refine_stats.merged)}, "
                f"energy={session.energy:.4f}, models={len(session.pool)}"
            )
            _after_iteration(session, start_energy)
        else:
            raise RuntimeError(f"Unknown session state {session.state!r}")

    return _finish(session, time_start)
