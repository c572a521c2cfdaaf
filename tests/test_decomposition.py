"""
Unit tests for the decomposition of 2D hierarchical meshes into regions.
"""

import logging

import pytest
import numpy as np
from numpy.testing import assert_array_equal

from watfTHB.discretization.decomposition import (
    decompose_level_map, split_cycles, signed_area, trace_loops
)
from watfTHB.errors import NumericalDegeneracy, StructuralError
from watfTHB.geometry.thb import THBSplineBasis


def inside(polyline, x, y):
    """Crossing-number test of a point against a closed polyline."""
    crossings = 0
    for x0, y0, x1, y1 in polyline:
        if (y0 > y) != (y1 > y):
            x_cross = x0 + (y - y0) * (x1 - x0) / (y1 - y0)
            if x < x_cross:
                crossings += 1
    return crossings % 2 == 1


def rasterize(decomposition, shape):
    """Level and number of covering regions of every cell."""
    levels = np.full(shape, -1)
    hits = np.zeros(shape, dtype=int)
    for level, _, polylines in decomposition.regions():
        outer, holes = polylines[0], polylines[1:]
        for i in range(shape[0]):
            for j in range(shape[1]):
                x, y = i + 0.5, j + 0.5
                if inside(outer, x, y) and not any(inside(h, x, y) for h in holes):
                    levels[i, j] = level
                    hits[i, j] += 1
    return levels, hits


class TestBoxWithHole:
    """A level 1 box [2,6]x[2,6] inside a level 0 domain [0,8]x[0,8]."""

    @pytest.fixture
    def decomposition(self, quadratic_basis_2d):
        thb = THBSplineBasis(quadratic_basis_2d, boxes=[(1, (2, 2), (6, 6))])
        return thb.decompose_domain()

    def test_region_count(self, decomposition):
        assert decomposition.n_regions == 2
        assert decomposition.boxes == [[(0, 0, 8, 8)], [(2, 2, 6, 6)]]

    def test_level_1_region(self, decomposition):
        """The refined box is one counter-clockwise square."""
        assert decomposition.trim_curves[1] == [[
            [(2, 2, 6, 2), (6, 2, 6, 6), (6, 6, 2, 6), (2, 6, 2, 2)]
        ]]

    def test_level_0_region_with_hole(self, decomposition):
        """The coarse region is the domain with a clockwise hole."""
        outer, hole = decomposition.trim_curves[0][0]

        assert outer == [(0, 0, 8, 0), (8, 0, 8, 8), (8, 8, 0, 8), (0, 8, 0, 0)]
        assert hole == [(2, 2, 2, 6), (2, 6, 6, 6), (6, 6, 6, 2), (6, 2, 2, 2)]

    def test_connected_components(self, quadratic_basis_2d):
        thb = THBSplineBasis(quadratic_basis_2d, boxes=[(1, (2, 2), (6, 6))])
        components = thb.connected_components()

        assert [level for level, _ in components] == [0, 1]
        assert len(components[0][1]) == 2


class TestCoverage:
    """The regions tile the finest grid exactly once."""

    def test_three_levels(self, thb_2d_three_levels):
        decomposition = thb_2d_three_levels.decompose_domain()
        level_map = thb_2d_three_levels.level_map

        levels, hits = rasterize(decomposition, level_map.shape)

        assert_array_equal(hits, 1)
        assert_array_equal(levels, level_map)

    def test_diagonal_cells(self):
        """Cells touching at a corner are separate regions."""
        level_map = np.array([[1, 0], [0, 1]])
        decomposition = decompose_level_map(level_map)

        assert decomposition.boxes[1] == [(0, 0, 1, 1), (1, 1, 2, 2)]
        assert len(decomposition.boxes[0]) == 2
        levels, hits = rasterize(decomposition, level_map.shape)
        assert_array_equal(hits, 1)
        assert_array_equal(levels, level_map)


class TestBoundaryTracing:
    """Tests for loop tracing and splitting at repeated vertices."""

    def test_loop_orientation(self):
        """Outer loops are counter-clockwise, holes clockwise."""
        mask = np.ones((3, 3), dtype=bool)
        mask[1, 1] = False

        loops = trace_loops(mask)

        assert len(loops) == 2
        assert signed_area(loops[0]) == 9.0
        assert signed_area(loops[1]) == -1.0

    def test_hole_touching_notch(self):
        """A boundary touching itself once is split into outer and hole."""
        level_map = np.zeros((3, 3), dtype=int)
        level_map[1, 1] = 1
        level_map[2, 2] = 1

        outer, hole = decompose_level_map(level_map).trim_curves[0][0]

        assert outer == [(0, 0, 3, 0), (3, 0, 3, 2), (3, 2, 2, 2),
                         (2, 2, 2, 3), (2, 3, 0, 3), (0, 3, 0, 0)]
        assert hole == [(1, 1, 1, 2), (1, 2, 2, 2), (2, 2, 2, 1), (2, 1, 1, 1)]

    def test_repeated_touching_warns(self, caplog):
        """Two touch points are both split; the ambiguity is logged."""
        level_map = np.zeros((4, 4), dtype=int)
        for k in range(1, 4):
            level_map[k, k] = 1

        with caplog.at_level(logging.WARNING):
            polylines = decompose_level_map(level_map).trim_curves[0][0]

        assert "touched itself 2 times" in caplog.text
        assert polylines == [
            [(0, 0, 4, 0), (4, 0, 4, 3), (4, 3, 3, 3), (3, 3, 3, 4), (3, 4, 0, 4), (0, 4, 0, 0)],
            [(1, 1, 1, 2), (1, 2, 2, 2), (2, 2, 2, 1), (2, 1, 1, 1)],
            [(2, 2, 2, 3), (2, 3, 3, 3), (3, 3, 3, 2), (3, 2, 2, 2)],
        ]


class TestSplitCycles:
    """Tests for splitting closed polylines."""

    def test_figure_eight(self):
        """The first repeated vertex splits the polyline in two squares."""
        polyline = [(0, 0, 1, 0), (1, 0, 1, 1), (1, 1, 2, 1), (2, 1, 2, 2),
                    (2, 2, 1, 2), (1, 2, 1, 1), (1, 1, 0, 1), (0, 1, 0, 0)]

        parts = split_cycles(polyline)

        assert parts == [
            [(1, 1, 2, 1), (2, 1, 2, 2), (2, 2, 1, 2), (1, 2, 1, 1)],
            [(0, 0, 1, 0), (1, 0, 1, 1), (1, 1, 0, 1), (0, 1, 0, 0)],
        ]

    def test_simple_polyline_unchanged(self):
        square = [(0, 0, 1, 0), (1, 0, 1, 1), (1, 1, 0, 1), (0, 1, 0, 0)]
        assert split_cycles(square) == [square]

    def test_open_polyline(self):
        with pytest.raises(NumericalDegeneracy):
            split_cycles([(0, 0, 1, 0), (1, 0, 1, 1)])

    def test_zero_area_polyline(self):
        with pytest.raises(NumericalDegeneracy):
            split_cycles([(0, 0, 1, 0), (1, 0, 0, 0)])


class TestDecompositionErrors:
    """Invalid input to the decomposition."""

    def test_uncovered_cells(self):
        with pytest.raises(StructuralError):
            decompose_level_map(np.array([[0, -1], [0, 0]]))

    def test_not_2d(self, thb_1d):
        with pytest.raises(ValueError):
            decompose_level_map(np.zeros(4, dtype=int))
        with pytest.raises(ValueError):
            thb_1d.decompose_domain()
