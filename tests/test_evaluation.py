"""
Unit tests for evaluation of active THB-spline functions.
"""

import pytest
import numpy as np
from numpy.testing import assert_allclose, assert_array_equal

from watfTHB.discretization.knot_vector import make_open_knot_vector
from watfTHB.errors import AccessError
from watfTHB.geometry.evaluator import INACTIVE
from watfTHB.geometry.thb import THBSplineBasis


def grid_points(n=9):
    """Points of a uniform n x n grid on the unit square, shape (2, n*n)."""
    x, y = np.meshgrid(np.linspace(0.0, 1.0, n), np.linspace(0.0, 1.0, n), indexing='ij')
    return np.vstack([x.ravel(), y.ravel()])


@pytest.fixture
def thb_3d():
    """Trilinear basis with one octant refined."""
    kv = make_open_knot_vector(n_basis=3, degree=1, domain=(0.0, 1.0))
    return THBSplineBasis.from_knot_vectors(kv, kv, kv, boxes=[(1, (0, 0, 0), (2, 2, 2))])


class TestPartitionOfUnity:
    """Active functions sum to one everywhere in the domain."""

    def test_1d(self, thb_1d, tolerance):
        values = thb_1d.evaluate(np.linspace(0.0, 4.0, 41))
        assert_allclose(values.sum(axis=0), 1.0, atol=tolerance)

    def test_1d_two_levels(self, tolerance):
        kv = make_open_knot_vector(n_basis=10, degree=2, domain=(0.0, 8.0))
        thb = THBSplineBasis.from_knot_vectors(kv, boxes=[(1, [4], [12]), (2, [8], [16])])

        values = thb.evaluate(np.linspace(0.0, 8.0, 65))

        assert_allclose(values.sum(axis=0), 1.0, atol=tolerance)

    @pytest.mark.parametrize("fast", [True, False])
    def test_2d_three_levels(self, thb_2d_three_levels, fast, tolerance):
        values = thb_2d_three_levels.evaluate(grid_points(17), fast=fast)
        assert_allclose(values.sum(axis=0), 1.0, atol=tolerance)

    def test_2d_gradient_sums_to_zero(self, thb_2d_three_levels):
        """Derivatives of the partition of unity vanish."""
        points = grid_points(7)
        values = thb_2d_three_levels.evaluate(points, order=1)

        per_component = values.reshape(-1, 2, points.shape[1]).sum(axis=0)

        assert_allclose(per_component, 0.0, atol=1e-10)

    def test_3d(self, thb_3d, tolerance):
        rng = np.random.default_rng(0)
        points = rng.uniform(0.0, 1.0, size=(3, 20))

        assert thb_3d.n_levels == 2
        assert_allclose(thb_3d.evaluate(points).sum(axis=0), 1.0, atol=tolerance)


class TestActiveFunctions:
    """Layout of the active id matrix."""

    def test_sorted_and_padded(self, thb_2d_three_levels):
        """Columns list ascending ids, padded with INACTIVE."""
        points = grid_points(9)
        ids = thb_2d_three_levels.active_functions(points)
        counts = thb_2d_three_levels.active_counts(points)

        assert ids.shape == (counts.max(), points.shape[1])
        for k in range(points.shape[1]):
            column = ids[:counts[k], k]
            assert np.all(np.diff(column) > 0)
            assert np.all(ids[counts[k]:, k] == INACTIVE)
        assert counts.min() < counts.max()

    def test_unrefined_count(self, quadratic_basis_2d):
        """Without refinement every point sees (p+1)^2 functions."""
        thb = THBSplineBasis(quadratic_basis_2d)

        assert_array_equal(thb.active_counts(grid_points(5)), 9)

    def test_padded_values_are_zero(self, thb_2d_three_levels):
        points = grid_points(9)
        counts = thb_2d_three_levels.active_counts(points)
        values = thb_2d_three_levels.evaluate(points, order=2)

        for k in range(points.shape[1]):
            assert np.all(values[counts[k] * 3:, k] == 0.0)

    def test_rows_follow_ids(self, thb_2d_three_levels, tolerance):
        """Row block k holds the function listed in row k of the id matrix."""
        points = grid_points(5)
        ids = thb_2d_three_levels.active_functions(points)
        values = thb_2d_three_levels.evaluate(points, order=1)

        for k in range(points.shape[1]):
            for row, idx in enumerate(ids[:, k]):
                if idx == INACTIVE:
                    break
                single = thb_2d_three_levels.eval_single(int(idx), points[:, [k]], order=1)
                assert_allclose(values[2 * row:2 * row + 2, k], single[:, 0], atol=tolerance)

    def test_active_levels_at(self, thb_2d_three_levels):
        """Near the centre all three levels contribute; in a corner only level 0."""
        assert thb_2d_three_levels.active_levels_at([0.5, 0.5]) == [0, 1, 2]
        assert thb_2d_three_levels.active_levels_at([0.05, 0.05]) == [0]


class TestEvaluationPaths:
    """Generic and fast paths agree bit for bit."""

    @pytest.mark.parametrize("order", [0, 1, 2])
    def test_fast_equals_generic(self, thb_2d_three_levels, order):
        points = grid_points(11)
        fast = thb_2d_three_levels.evaluate(points, order, fast=True)
        generic = thb_2d_three_levels.evaluate(points, order, fast=False)

        assert_array_equal(fast, generic)

    def test_deterministic(self, thb_2d_three_levels):
        points = grid_points(11)

        assert_array_equal(thb_2d_three_levels.active_functions(points),
                           thb_2d_three_levels.active_functions(points))
        assert_array_equal(thb_2d_three_levels.evaluate(points, 1),
                           thb_2d_three_levels.evaluate(points, 1))

    def test_output_shape(self, thb_2d_three_levels):
        """Each function occupies n_components consecutive rows."""
        points = grid_points(3)
        n_active = thb_2d_three_levels.active_counts(points).max()

        assert thb_2d_three_levels.evaluate(points, 0).shape == (n_active, 9)
        assert thb_2d_three_levels.evaluate(points, 1).shape == (2 * n_active, 9)
        assert thb_2d_three_levels.evaluate(points, 2).shape == (3 * n_active, 9)


class TestDerivatives:
    """Derivatives against central finite differences."""

    def test_first_derivatives(self, thb_2d_three_levels, loose_tolerance):
        thb = thb_2d_three_levels
        point = np.array([[0.41], [0.37]])
        h = 1e-6
        for idx in thb.active_functions(point)[:, 0]:
            grad = thb.eval_single(int(idx), point, order=1)[:, 0]
            for d in range(2):
                step = np.zeros((2, 1))
                step[d] = h
                fd = (thb.eval_single(int(idx), point + step)[0, 0]
                      - thb.eval_single(int(idx), point - step)[0, 0]) / (2 * h)
                assert abs(grad[d] - fd) < loose_tolerance

    def test_second_derivatives(self, thb_2d_three_levels):
        """Rows are d2/dx2, d2/dy2, d2/dxdy."""
        thb = thb_2d_three_levels
        point = np.array([[0.41], [0.37]])
        h = 1e-5
        for idx in thb.active_functions(point)[:, 0]:
            second = thb.eval_single(int(idx), point, order=2)[:, 0]
            fd = []
            for d in range(2):
                step = np.zeros((2, 1))
                step[d] = h
                fd.append((thb.eval_single(int(idx), point + step, order=1)[:, 0]
                           - thb.eval_single(int(idx), point - step, order=1)[:, 0]) / (2 * h))
            assert_allclose(second, [fd[0][0], fd[1][1], fd[1][0]], atol=1e-4)


class TestEvaluationErrors:
    """Invalid input to evaluation."""

    def test_point_outside_domain(self, thb_2d_three_levels):
        with pytest.raises(AccessError):
            thb_2d_three_levels.evaluate([[1.5], [0.5]])
        with pytest.raises(AccessError):
            thb_2d_three_levels.active_functions([[0.5], [-0.1]])
        with pytest.raises(AccessError):
            thb_2d_three_levels.eval_single(0, [[0.5], [2.0]])

    def test_unknown_id(self, thb_2d_three_levels):
        with pytest.raises(AccessError):
            thb_2d_three_levels.eval_single(thb_2d_three_levels.size(), [[0.5], [0.5]])

    def test_invalid_order(self, thb_2d_three_levels):
        with pytest.raises(ValueError):
            thb_2d_three_levels.evaluate([[0.5], [0.5]], order=3)

    def test_wrong_point_shape(self, thb_2d_three_levels):
        with pytest.raises(ValueError):
            thb_2d_three_levels.evaluate(np.zeros((3, 4)))
