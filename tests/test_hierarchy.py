"""
Unit tests for the level hierarchy: refinement rules, active sets and ids.
"""

import pytest
import numpy as np
from numpy.testing import assert_array_equal

from watfTHB.errors import AccessError, StructuralError
from watfTHB.geometry.bspline import TensorProductBasis
from watfTHB.geometry.hierarchy import LevelHierarchy, apply_box, block_reduce, upsample
from watfTHB.geometry.truncation import TruncationEngine


@pytest.fixture
def hierarchy_1d(cubic_kv):
    return LevelHierarchy(TensorProductBasis.from_knot_vectors(cubic_kv))


class TestLevelMapHelpers:
    """Tests for level map utilities."""

    def test_block_reduce(self):
        """Minimum and maximum over aligned 2x2 blocks."""
        level_map = np.array([[0, 1, 2, 2],
                              [1, 1, 2, 2],
                              [0, 0, 0, 0],
                              [0, 0, 0, 1]])

        assert_array_equal(block_reduce(level_map, 2, np.minimum), [[0, 2], [0, 0]])
        assert_array_equal(block_reduce(level_map, 2, np.maximum), [[1, 2], [0, 1]])

    def test_upsample(self):
        """Every cell becomes a 2x2 block."""
        assert_array_equal(upsample(np.array([[0, 1]])), [[0, 0, 1, 1], [0, 0, 1, 1]])

    def test_apply_box_does_not_modify_input(self):
        """The input map is left untouched."""
        level_map = np.zeros(4, dtype=int)

        new_map, n_levels = apply_box(level_map, 1, (4,), (1, [2], [6]))

        assert_array_equal(level_map, [0, 0, 0, 0])
        assert_array_equal(new_map, [0, 0, 1, 1, 1, 1, 0, 0])
        assert n_levels == 2


class TestRefinement:
    """Tests for refinement requests."""

    def test_unrefined(self, hierarchy_1d):
        """A fresh hierarchy is the level 0 tensor basis."""
        assert hierarchy_1d.n_levels == 1
        assert hierarchy_1d.max_level == 0
        assert hierarchy_1d.size() == 7
        assert_array_equal(hierarchy_1d.active_flat_indices(0), np.arange(7))

    def test_refine_one_level(self, hierarchy_1d):
        """Refining [1, 3] to level 1 activates one cubic function."""
        hierarchy_1d.refine([2], [6], level=1)

        assert hierarchy_1d.max_level == 1
        assert_array_equal(hierarchy_1d.level_map, [0, 0, 1, 1, 1, 1, 0, 0])
        assert_array_equal(hierarchy_1d.active_flat_indices(0), np.arange(7))
        assert_array_equal(hierarchy_1d.active_flat_indices(1), [5])
        assert hierarchy_1d.size() == 8

    def test_refine_too_small_for_degree(self, hierarchy_1d):
        """A single coarse cell cannot hold a level 1 cubic function."""
        hierarchy_1d.refine([4], [6], level=1)

        assert hierarchy_1d.n_active(1) == 0
        assert hierarchy_1d.size() == 7

    def test_two_level_jump_rejected(self, hierarchy_1d):
        """Skipping a level raises and leaves the mesh unchanged."""
        with pytest.raises(StructuralError):
            hierarchy_1d.refine([4], [8], level=2)

        assert hierarchy_1d.n_levels == 1
        assert hierarchy_1d.generation == 0

    def test_two_level_jump_rejected_2d(self, quadratic_basis_2d):
        """The level jump rule in 2D, also for an already refined box."""
        hierarchy = LevelHierarchy(quadratic_basis_2d)
        hierarchy.refine((2, 2), (6, 6), level=1)

        with pytest.raises(StructuralError):
            hierarchy.refine((0, 0), (16, 16), level=2)
        with pytest.raises(StructuralError):
            hierarchy.refine((2, 2), (4, 4), level=1)
        assert hierarchy.n_levels == 2

    def test_box_outside_domain(self, hierarchy_1d):
        """Boxes must lie inside the level grid and be non-empty."""
        with pytest.raises(StructuralError):
            hierarchy_1d.refine([6], [10], level=1)
        with pytest.raises(StructuralError):
            hierarchy_1d.refine([3], [3], level=1)

    def test_refine_boxes_all_or_nothing(self, hierarchy_1d):
        """A failing box cancels the boxes before it."""
        with pytest.raises(StructuralError):
            hierarchy_1d.refine_boxes([(1, [2], [6]), (3, [0], [4])])

        assert hierarchy_1d.n_levels == 1
        assert_array_equal(hierarchy_1d.level_map, np.zeros(4))

    def test_successive_levels(self, hierarchy_1d):
        """Later boxes see the effect of earlier ones."""
        hierarchy_1d.refine_boxes([(1, [2], [6]), (2, [5], [11])])

        expected = np.zeros(16, dtype=int)
        expected[4:12] = 1
        expected[5:11] = 2
        assert hierarchy_1d.n_levels == 3
        assert_array_equal(hierarchy_1d.level_map, expected)

    def test_level_map_read_only(self, hierarchy_1d):
        with pytest.raises(ValueError):
            hierarchy_1d.level_map[0] = 1

    def test_generation_bumped(self, hierarchy_1d):
        hierarchy_1d.refine([2], [6], level=1)
        assert hierarchy_1d.generation == 1


class TestLevelMapConstruction:
    """Tests for building a hierarchy from a level map."""

    def test_from_level_map(self, cubic_kv):
        """Same structure as the equivalent refinement."""
        basis = TensorProductBasis.from_knot_vectors(cubic_kv)
        hierarchy = LevelHierarchy(basis, level_map=[0, 0, 1, 1, 1, 1, 0, 0])

        assert hierarchy.n_levels == 2
        assert_array_equal(hierarchy.active_flat_indices(1), [5])

    def test_misaligned_map(self, cubic_kv):
        """A level 0 cell must cover two finest cells."""
        basis = TensorProductBasis.from_knot_vectors(cubic_kv)
        with pytest.raises(StructuralError):
            LevelHierarchy(basis, level_map=[0, 1, 1, 1, 1, 1, 1, 1])

    def test_wrong_shape(self, cubic_kv):
        basis = TensorProductBasis.from_knot_vectors(cubic_kv)
        with pytest.raises(StructuralError):
            LevelHierarchy(basis, level_map=np.zeros(6, dtype=int))


class TestGlobalIds:
    """Tests for level-major global ids."""

    def test_id_mapping(self, hierarchy_1d):
        """Level 0 ids first, then level 1."""
        hierarchy_1d.refine([2], [6], level=1)

        assert hierarchy_1d.level_of(6) == 0
        assert hierarchy_1d.level_of(7) == 1
        assert hierarchy_1d.flat_tensor_index_of(7) == 5
        assert hierarchy_1d.index_of(1, 5) == 7
        assert hierarchy_1d.index_of(0, 3) == 3

    def test_invalid_ids(self, hierarchy_1d):
        """Unknown ids and inactive functions raise AccessError."""
        hierarchy_1d.refine([2], [6], level=1)

        with pytest.raises(AccessError):
            hierarchy_1d.level_of(8)
        with pytest.raises(AccessError):
            hierarchy_1d.level_of(-1)
        with pytest.raises(AccessError):
            hierarchy_1d.index_of(1, 4)


class TestPointQueries:
    """Tests for point and box queries."""

    def test_active_levels_at(self, hierarchy_1d):
        hierarchy_1d.refine([2], [6], level=1)

        assert hierarchy_1d.active_levels_at([2.0]) == [0, 1]
        assert hierarchy_1d.active_levels_at([0.5]) == [0]
        assert hierarchy_1d.leaf_level_at([3.0]) == 0
        assert hierarchy_1d.leaf_level_at([2.9]) == 1

    def test_active_at(self, hierarchy_1d):
        """Only active functions of the level are returned."""
        hierarchy_1d.refine([2], [6], level=1)

        flat, ids = hierarchy_1d.active_at([2.0], 1)

        assert_array_equal(flat, [5])
        assert_array_equal(ids, [7])

    def test_finest_level_in_box(self, hierarchy_1d):
        hierarchy_1d.refine([2], [6], level=1)

        assert hierarchy_1d.finest_level_in_box([0], [4], 0) == 1
        assert hierarchy_1d.finest_level_in_box([3], [4], 0) == 0

    def test_point_outside_domain(self, hierarchy_1d):
        with pytest.raises(AccessError):
            hierarchy_1d.leaf_level_at([4.5])

    def test_engine_goes_stale(self, hierarchy_1d):
        """Refinement invalidates a built truncation cache."""
        engine = TruncationEngine(hierarchy_1d)
        engine.rebuild()
        assert not engine.is_stale

        hierarchy_1d.refine([2], [6], level=1)

        assert engine.is_stale
        with pytest.raises(RuntimeError):
            engine.num_truncated()
