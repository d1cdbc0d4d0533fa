"""Tests for model refit, pruning and merging."""

import numpy as np

from energy import EnergyModel
from primitives import OUTLIER, make_plane, plane_angle_deg
from refine import attach_support, merge_models, prune_models, refine_plane, refit_models
from spatial import KDTreeIndex, build_neighbor_graph


def _make_horizontal_plane_points(
    *,
    z: float,
    x_range: tuple,
    y_range: tuple,
    n: int,
    noise_std: float,
    rng: np.random.Generator,
) -> np.ndarray:
    """Generate points on a horizontal plane."""
    x = rng.uniform(x_range[0], x_range[1], size=n)
    y = rng.uniform(y_range[0], y_range[1], size=n)
    z_vals = np.full(n, z, dtype=float) + rng.normal(scale=noise_std, size=n)
    return np.column_stack([x, y, z_vals])


def _setup(points, *, scale=0.01, model_cost=5.0):
    normals = np.tile([0.0, 0.0, 1.0], (len(points), 1))
    graph = build_neighbor_graph(KDTreeIndex(points), 8)
    model = EnergyModel(
        graph, scale=scale, outlier_penalty=1.0, smoothness_weight=0.1, model_cost=model_cost
    )
    return normals, model


def _costs(points, normals, model, pool):
    return {mid: model.cost(points, normals, plane) for mid, plane in pool.items()}


def test_refine_plane_is_idempotent():
    rng = np.random.default_rng(40)
    points = _make_horizontal_plane_points(
        z=0.3, x_range=(0, 1), y_range=(0, 1), n=500, noise_std=0.003, rng=rng
    )
    normals, model = _setup(points)
    indices = np.arange(500)

    first = refine_plane(points, normals, indices, model, model_id=3)
    second = refine_plane(points, normals, indices, model, model_id=3)

    assert first is not None and second is not None
    assert first.model_id == 3
    assert first.inlier_count == 500
    assert np.allclose(first.normal, second.normal, atol=1e-12)
    assert np.isclose(first.offset, second.offset, atol=1e-12)
    assert abs(first.offset + 0.3) < 0.005


def test_refine_plane_resists_gross_inliers():
    rng = np.random.default_rng(44)
    plane = _make_horizontal_plane_points(
        z=0.0, x_range=(0, 1), y_range=(0, 1), n=500, noise_std=0.002, rng=rng
    )
    gross = _make_horizontal_plane_points(
        z=0.5, x_range=(0, 1), y_range=(0, 1), n=25, noise_std=0.0, rng=rng
    )
    points = np.vstack([plane, gross])
    normals, model = _setup(points)
    indices = np.arange(len(points))

    plain = refine_plane(points, normals, indices, model, robust_iters=0)
    robust = refine_plane(points, normals, indices, model)

    assert plain is not None and robust is not None
    assert abs(plain.offset) > 0.015
    assert abs(robust.offset) < 0.002
    assert plane_angle_deg(robust.normal, [0, 0, 1]) < 0.5


def test_refine_plane_degenerate():
    points = np.column_stack([np.linspace(0, 1, 20), np.zeros(20), np.zeros(20)])
    normals, model = _setup(points)
    assert refine_plane(points, normals, np.arange(20), model) is None
    assert refine_plane(points, normals, np.arange(2), model) is None


def test_refit_models_improves_tilted_plane():
    rng = np.random.default_rng(41)
    points = _make_horizontal_plane_points(
        z=0.0, x_range=(0, 1), y_range=(0, 1), n=400, noise_std=0.002, rng=rng
    )
    normals, model = _setup(points)
    tilted = np.array([0.02, 0.0, 1.0])
    pool = {0: make_plane(0, tilted / np.linalg.norm(tilted), 0.004, points)}
    costs = _costs(points, normals, model, pool)
    labels = np.zeros(400, dtype=int)
    before = model.total(labels, costs)

    changed = refit_models(points, normals, pool, labels, costs, model, n_jobs=2)

    assert changed == 1
    assert plane_angle_deg(pool[0].normal, [0, 0, 1]) < 0.5
    assert model.total(labels, costs) <= before
    assert np.allclose(costs[0], model.cost(points, normals, pool[0]))


def test_prune_models_removes_small_and_empty():
    points = np.zeros((10, 3))
    pool = {
        0: make_plane(0, np.array([0.0, 0.0, 1.0]), 0.0, points),
        1: make_plane(1, np.array([0.0, 0.0, 1.0]), 1.0, points),
        2: make_plane(2, np.array([0.0, 0.0, 1.0]), 2.0, points),
    }
    costs = {mid: np.zeros(10) for mid in pool}
    labels = np.array([0, 0, 0, 0, 0, 0, 1, 1, OUTLIER, OUTLIER])

    removed = prune_models(pool, labels, costs, min_support=5)

    assert sorted(removed) == [1, 2]
    assert list(pool) == [0]
    assert list(costs) == [0]
    assert labels.tolist() == [0, 0, 0, 0, 0, 0, OUTLIER, OUTLIER, OUTLIER, OUTLIER]


def test_merge_models_joins_adjacent_coplanar_pieces():
    rng = np.random.default_rng(42)
    points = _make_horizontal_plane_points(
        z=0.0, x_range=(0, 2), y_range=(0, 1), n=1000, noise_std=0.001, rng=rng
    )
    normals, model = _setup(points)
    left = points[:, 0] < 1.0
    labels = np.where(left, 4, 9)
    pool = {
        4: make_plane(4, np.array([0.0, 0.0, 1.0]), 0.0, points),
        9: make_plane(9, np.array([0.0, 0.002, 1.0]) / np.linalg.norm([0.0, 0.002, 1.0]), 0.0, points),
    }
    costs = _costs(points, normals, model, pool)
    before = model.total(labels, costs)

    merged = merge_models(points, normals, pool, labels, costs, model)

    survivor = 4 if np.count_nonzero(left) >= np.count_nonzero(~left) else 9
    assert merged == [(survivor, 13 - survivor)]
    assert list(pool) == [survivor]
    assert np.all(labels == survivor)
    assert model.total(labels, costs) <= before


def test_merge_models_keeps_parallel_offset_planes():
    rng = np.random.default_rng(43)
    lower = _make_horizontal_plane_points(
        z=0.0, x_range=(0, 1), y_range=(0, 1), n=500, noise_std=0.0, rng=rng
    )
    upper = _make_horizontal_plane_points(
        z=0.03, x_range=(0, 1), y_range=(0, 1), n=500, noise_std=0.0, rng=rng
    )
    points = np.vstack([lower, upper])
    normals, model = _setup(points, scale=0.005)
    labels = np.repeat([0, 1], 500)
    pool = {
        0: make_plane(0, np.array([0.0, 0.0, 1.0]), 0.0, points),
        1: make_plane(1, np.array([0.0, 0.0, 1.0]), -0.03, points),
    }
    costs = _costs(points, normals, model, pool)

    merged = merge_models(points, normals, pool, labels, costs, model)

    assert merged == []
    assert sorted(pool) == [0, 1]
    assert np.array_equal(labels, np.repeat([0, 1], 500))


def test_attach_support_updates_counts():
    points = np.array([[0.0, 0.0, 0.1], [1.0, 0.0, -0.1], [0.0, 1.0, 0.0], [9.0, 9.0, 9.0]])
    pool = {5: make_plane(5, np.array([0.0, 0.0, 1.0]), 0.0, points)}
    labels = np.array([5, 5, 5, OUTLIER])

    attach_support(points, pool, labels)

    assert pool[5].inlier_count == 3
    assert pool[5].inlier_indices.tolist() == [0, 1, 2]
    assert np.isclose(pool[5].rms, np.sqrt(0.02 / 3))
