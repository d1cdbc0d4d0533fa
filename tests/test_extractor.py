"""End-to-end tests for the plane extraction loop."""

import numpy as np
import pytest

from config import ExtractionConfig, InvalidConfiguration
from extractor import (
    extract_planes,
    initialize_session,
    run_generate,
    run_label,
    run_refine,
)
from primitives import OUTLIER, plane_angle_deg
from refine import refine_plane
from spatial import KDTreeIndex

NOISE_STD = 0.005

SCENARIO_CONFIG = ExtractionConfig(
    k_neighbors=15,
    min_support_points=50,
    n_constraints=3,
    outlier_penalty=1.0,
)


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


def _make_uniform_outliers(n: int, low: tuple, high: tuple, rng: np.random.Generator) -> np.ndarray:
    return rng.uniform(low, high, size=(n, 3))


def _assert_result_invariants(result, min_support):
    """Label validity, support invariant and monotone energy history."""
    plane_ids = {p.model_id for p in result.planes}
    assert set(np.unique(result.labels).tolist()) <= plane_ids | {OUTLIER}
    for plane in result.planes:
        count = int(np.count_nonzero(result.labels == plane.model_id))
        assert count == plane.inlier_count
        assert count >= min_support
        assert np.isclose(np.linalg.norm(plane.normal), 1.0)
    history = np.asarray(result.energy_history)
    assert np.all(np.diff(history) <= 1e-9 * np.maximum(1.0, np.abs(history[:-1])))


@pytest.fixture(scope="module", params=[100, 1])
def scenario_a_points(request):
    rng = np.random.default_rng(request.param)
    return _make_horizontal_plane_points(
        z=0.0, x_range=(0, 10), y_range=(0, 10), n=10_000, noise_std=NOISE_STD, rng=rng
    )


@pytest.fixture(scope="module")
def scenario_a_result(scenario_a_points):
    return extract_planes(scenario_a_points, config=SCENARIO_CONFIG)


def test_scenario_single_noisy_plane(scenario_a_points, scenario_a_result):
    result = scenario_a_result

    assert result.success
    assert result.status == "ok"
    assert result.converged
    assert result.plane_count == 1
    plane = result.planes[0]
    assert plane.inlier_count >= 0.95 * len(scenario_a_points)
    assert plane_angle_deg(plane.normal, [0, 0, 1]) < 0.5
    assert abs(plane.offset) < 0.01
    assert plane.rms <= 1.5 * NOISE_STD
    _assert_result_invariants(result, SCENARIO_CONFIG.min_support_points)


def test_scenario_two_orthogonal_patches():
    rng = np.random.default_rng(101)
    floor = np.column_stack([rng.uniform(0, 1, 5000), rng.uniform(0, 1, 5000), np.zeros(5000)])
    wall = np.column_stack([np.zeros(5000), rng.uniform(0, 1, 5000), rng.uniform(0, 1, 5000)])
    points = np.vstack([floor, wall])
    truth = np.repeat([0, 1], 5000)

    result = extract_planes(points, config=SCENARIO_CONFIG)

    assert result.success
    assert result.plane_count == 2
    agreement = 0
    for plane in result.planes:
        members = truth[result.labels == plane.model_id]
        agreement += int(np.bincount(members, minlength=2).max())
    assert agreement >= 0.99 * len(points)
    normals = sorted(
        (plane_angle_deg(p.normal, [0, 0, 1]) for p in result.planes)
    )
    assert normals[0] < 1.0 and normals[1] > 89.0
    _assert_result_invariants(result, SCENARIO_CONFIG.min_support_points)


def test_scenario_plane_with_uniform_outliers(scenario_a_points):
    rng = np.random.default_rng(102)
    outliers = _make_uniform_outliers(3000, (0, 0, -1), (10, 10, 1), rng)
    points = np.vstack([scenario_a_points, outliers])

    result = extract_planes(points, config=SCENARIO_CONFIG)

    assert result.success
    assert result.plane_count == 1
    outlier_labels = result.labels[len(scenario_a_points):]
    assert np.count_nonzero(outlier_labels == OUTLIER) >= 0.9 * len(outliers)
    plane_labels = result.labels[: len(scenario_a_points)]
    assert np.count_nonzero(plane_labels == result.planes[0].model_id) >= 0.95 * len(scenario_a_points)
    _assert_result_invariants(result, SCENARIO_CONFIG.min_support_points)


@pytest.mark.parametrize("k", [10, 20, 30])
def test_plane_count_stable_across_k(scenario_a_points, scenario_a_result, k):
    result = extract_planes(scenario_a_points, config=SCENARIO_CONFIG.replace(k_neighbors=k))
    assert result.plane_count == scenario_a_result.plane_count == 1


def test_outlier_penalty_monotonicity():
    rng = np.random.default_rng(103)
    plane = _make_horizontal_plane_points(
        z=0.0, x_range=(0, 4), y_range=(0, 4), n=1600, noise_std=0.01, rng=rng
    )
    outliers = _make_uniform_outliers(400, (0, 0, -0.5), (4, 4, 0.5), rng)
    points = np.vstack([plane, outliers])

    assigned = []
    for penalty in (0.25, 1.0, 4.0):
        result = extract_planes(points, config=SCENARIO_CONFIG.replace(outlier_penalty=penalty))
        assigned.append(int(np.count_nonzero(result.labels != OUTLIER)))

    tolerance = 0.01 * len(points)
    assert all(b >= a - tolerance for a, b in zip(assigned, assigned[1:]))
    assert assigned[-1] > assigned[0]


def test_phases_drive_state_machine_and_refit_is_idempotent():
    rng = np.random.default_rng(104)
    lower = _make_horizontal_plane_points(
        z=0.0, x_range=(0, 3), y_range=(0, 3), n=1500, noise_std=0.005, rng=rng
    )
    upper = _make_horizontal_plane_points(
        z=1.0, x_range=(0, 3), y_range=(0, 3), n=1500, noise_std=0.005, rng=rng
    )
    points = np.vstack([lower, upper])
    session = initialize_session(points, config=SCENARIO_CONFIG)

    assert session.state == "generate"
    assert np.all(session.labels == OUTLIER)
    assert session.history == [pytest.approx(3000.0)]

    run_generate(session)
    assert session.state == "label"
    assert session.pool
    assert np.all(session.labels == OUTLIER)

    for _ in range(10):
        start = session.energy
        run_label(session)
        assert session.state == "refine"
        run_refine(session)
        assert session.state == "label"
        if start - session.energy <= 1e-9 * abs(start):
            break

    assert np.all(np.diff(session.history) <= 1e-9 * np.abs(session.history[:-1]))
    assert len(session.pool) == 2

    # Refining the converged models again changes nothing.
    planes = {mid: (p.normal.copy(), p.offset) for mid, p in session.pool.items()}
    labels = session.labels.copy()
    energy = session.energy
    stats = run_refine(session)
    assert stats.pruned == [] and stats.merged == []
    assert np.array_equal(session.labels, labels)
    assert session.energy == pytest.approx(energy, rel=1e-12)
    for model_id, (normal, offset) in planes.items():
        assert np.array_equal(session.pool[model_id].normal, normal)
        assert session.pool[model_id].offset == offset

    for model_id in session.pool:
        inliers = np.flatnonzero(session.labels == model_id)
        first = refine_plane(session.points, session.normals, inliers, session.energy_model)
        second = refine_plane(session.points, session.normals, inliers, session.energy_model)
        assert np.array_equal(first.normal, second.normal)
        assert first.offset == second.offset


def test_accepts_spatial_index_and_given_normals():
    rng = np.random.default_rng(105)
    points = _make_horizontal_plane_points(
        z=2.0, x_range=(0, 3), y_range=(0, 3), n=1200, noise_std=0.003, rng=rng
    )
    normals = np.tile([0.0, 0.0, 2.0], (len(points), 1))

    result = extract_planes(KDTreeIndex(points), normals, SCENARIO_CONFIG)

    assert result.success
    assert result.plane_count == 1
    assert result.planes[0].offset == pytest.approx(-2.0, abs=0.01)


def test_icm_oracle_end_to_end():
    rng = np.random.default_rng(106)
    points = _make_horizontal_plane_points(
        z=0.0, x_range=(0, 3), y_range=(0, 3), n=900, noise_std=0.003, rng=rng
    )

    result = extract_planes(points, config=SCENARIO_CONFIG.replace(oracle="icm"))

    assert result.success
    assert result.plane_count == 1
    assert result.planes[0].inlier_count >= 0.95 * len(points)


def test_iteration_cap_reports_not_converged():
    rng = np.random.default_rng(107)
    points = _make_horizontal_plane_points(
        z=0.0, x_range=(0, 3), y_range=(0, 3), n=1200, noise_std=0.003, rng=rng
    )

    result = extract_planes(points, config=SCENARIO_CONFIG.replace(max_iterations=1))

    assert result.status == "not_converged"
    assert result.success
    assert not result.converged
    assert result.iterations == 1
    assert result.plane_count >= 1
    _assert_result_invariants(result, SCENARIO_CONFIG.min_support_points)


def test_empty_input():
    result = extract_planes(np.empty((0, 3)))

    assert result.status == "empty_input"
    assert not result.success
    assert result.planes == []
    assert result.labels.shape == (0,)


def test_no_plane_found_in_scattered_points():
    rng = np.random.default_rng(108)
    points = rng.uniform(0, 1, size=(300, 3))

    result = extract_planes(points, config=SCENARIO_CONFIG.replace(max_failures=5))

    assert result.status == "no_plane_found"
    assert not result.success
    assert result.planes == []
    assert np.all(result.labels == OUTLIER)
    assert result.outlier_count == 300


def test_fewer_points_than_support():
    points = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [1.0, 1.0, 0.0]])
    result = extract_planes(points, config=SCENARIO_CONFIG)
    assert result.status == "no_plane_found"
    assert np.all(result.labels == OUTLIER)


@pytest.mark.parametrize(
    "overrides",
    [{"k_neighbors": 0}, {"min_support_points": 0}, {"n_constraints": 2}, {"outlier_penalty": -1.0}],
)
def test_invalid_configuration_rejected_before_work(overrides):
    with pytest.raises(InvalidConfiguration):
        extract_planes(np.zeros((0, 3)), config=ExtractionConfig(**overrides))


def test_malformed_inputs_rejected():
    points = np.random.default_rng(109).uniform(size=(50, 3))
    with pytest.raises(InvalidConfiguration):
        extract_planes(points[:, :2])
    bad = points.copy()
    bad[3, 1] = np.nan
    with pytest.raises(InvalidConfiguration):
        extract_planes(bad)
    with pytest.raises(InvalidConfiguration):
        extract_planes(points, normals=np.ones((49, 3)))
    with pytest.raises(InvalidConfiguration):
        extract_planes(points, normals=np.zeros((50, 3)))


def test_generation_retries_before_reporting_no_plane():
    points = np.random.default_rng(110).uniform(0, 1, size=(300, 3))
    config = SCENARIO_CONFIG.replace(max_failures=2, regeneration_retries=3)
    session = initialize_session(points, config=config)

    run_generate(session)
    assert session.state == "generate"
    assert session.regenerations == 1
    assert len(session.tried_seeds) == 2

    calls = 1
    while session.state == "generate":
        run_generate(session)
        calls += 1
    assert session.state == "stop"
    assert calls == 4
    assert session.regenerations == 3
    assert len(session.tried_seeds) == 8

    result = extract_planes(points, config=config)
    assert result.status == "no_plane_found"
    assert np.all(result.labels == OUTLIER)


def test_tight_proposal_budget_recovers_through_retries():
    rng = np.random.default_rng(111)
    plane = _make_horizontal_plane_points(
        z=0.0, x_range=(0, 3), y_range=(0, 3), n=1500, noise_std=0.003, rng=rng
    )
    outliers = _make_uniform_outliers(300, (0, 0, -1), (3, 3, 1), rng)
    points = np.vstack([plane, outliers])
    config = SCENARIO_CONFIG.replace(
        min_proposals=1, proposal_ratio=0.0, max_failures=1, regeneration_retries=40
    )

    result = extract_planes(points, config=config)

    assert result.success
    assert result.plane_count == 1
    assert result.planes[0].inlier_count >= 0.9 * len(plane)


class _CountingIndex:
    """Spatial index with only the basic queries; counts point lookups."""

    def __init__(self, points):
        self._points = np.asarray(points, dtype=float)
        self.lookups = 0

    def size(self):
        return len(self._points)

    def point_at(self, i):
        self.lookups += 1
        return self._points[i]

    def k_nearest_neighbors(self, query, k):
        d = np.linalg.norm(self._points - np.asarray(query, dtype=float), axis=1)
        return np.argsort(d, kind="stable")[:k]


def test_basic_spatial_index_points_read_once():
    rng = np.random.default_rng(112)
    points = _make_horizontal_plane_points(
        z=0.0, x_range=(0, 2), y_range=(0, 2), n=400, noise_std=0.002, rng=rng
    )
    index = _CountingIndex(points)

    result = extract_planes(index, config=SCENARIO_CONFIG)

    assert index.lookups == len(points)
    assert result.success
    assert result.plane_count == 1
