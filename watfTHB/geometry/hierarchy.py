"""
Level hierarchy of tensor-product B-spline bases.

Level l+1 is the dyadic refinement of level l. The adaptive mesh is kept
as a level map: an integer array over the elements of the finest level,
holding for every finest cell the level of the leaf cell that contains
it. Every cell therefore belongs to exactly one level.

With Omega^l the union of cells of level >= l, a level-l B-spline is
active when its support lies in Omega^l but not in Omega^{l+1}; that is,
when the minimum leaf level over its support equals l.

Refinement boxes are (level, low, high) tuples of half-open element
ranges [low, high) in the element grid of that level. A box may only
raise cells whose coarsest current level is exactly level - 1.

Created: 2025-02-03
Author: Wataru Fukuda
"""

from __future__ import annotations

import logging
import numpy as np
from typing import List, Optional, Sequence, Tuple

from .bspline import TensorProductBasis
from ..errors import AccessError, StructuralError

logger = logging.getLogger(__name__)

Box = Tuple[int, Sequence[int], Sequence[int]]


def block_reduce(level_map: np.ndarray, factor: int, ufunc) -> np.ndarray:
    """
    Reduce a finest-grid array onto a coarser grid.

    Every coarse cell covers factor**d finest cells; ufunc (np.minimum,
    np.maximum, ...) is applied over each block.
    """
    if factor == 1:
        return level_map.copy()
    shape = []
    for n in level_map.shape:
        shape.extend((n // factor, factor))
    blocks = level_map.reshape(shape)
    return ufunc.reduce(blocks, axis=tuple(range(1, 2 * level_map.ndim, 2)))


def upsample(level_map: np.ndarray, factor: int = 2) -> np.ndarray:
    """Repeat every cell factor times along every axis."""
    result = level_map
    for axis in range(level_map.ndim):
        result = np.repeat(result, factor, axis=axis)
    return result


def _normalize_box(box: Box, n_dim: int) -> Tuple[int, Tuple[int, ...], Tuple[int, ...]]:
    level, low, high = box
    low = tuple(int(v) for v in np.atleast_1d(low))
    high = tuple(int(v) for v in np.atleast_1d(high))
    if len(low) != n_dim or len(high) != n_dim:
        raise StructuralError(f"Box {box} does not have {n_dim} coordinates per corner")
    return int(level), low, high


def apply_box(level_map: np.ndarray, n_levels: int, n_elem0: Sequence[int],
              box: Box) -> Tuple[np.ndarray, int]:
    """
    Apply one refinement box to a level map without touching any basis.

    Parameters:
        level_map: Current map over the finest elements (not modified)
        n_levels: Number of levels the map currently resolves
        n_elem0: Number of level 0 elements per direction
        box: (level, low, high) in the element grid of level

    Returns:
        (new_level_map, new_n_levels)

    Raises:
        StructuralError: box empty or outside the domain, or level is not
            exactly one finer than the coarsest level under the box
    """
    level, low, high = _normalize_box(box, level_map.ndim)
    finest = n_levels - 1

    if level < 1 or level > finest + 1:
        raise StructuralError(
            f"Cannot refine to level {level}: levels 1..{finest + 1} are reachable"
        )
    n_elem = [n * 2 ** level for n in n_elem0]
    for lo, hi, n in zip(low, high, n_elem):
        if lo < 0 or hi > n or lo >= hi:
            raise StructuralError(
                f"Box {low}-{high} lies outside the level {level} domain {tuple(n_elem)}"
            )

    if level <= finest:
        scale = 2 ** (finest - level)
        region = tuple(slice(lo * scale, hi * scale) for lo, hi in zip(low, high))
    else:
        region = tuple(slice(lo // 2, -(-hi // 2)) for lo, hi in zip(low, high))

    coarsest = int(level_map[region].min())
    if coarsest != level - 1:
        raise StructuralError(
            f"Box {low}-{high} at level {level} covers cells of level {coarsest}; "
            f"only cells of level {level - 1} can be refined to level {level}"
        )

    if level > finest:
        new_map = upsample(level_map)
        region = tuple(slice(lo, hi) for lo, hi in zip(low, high))
        n_levels += 1
    else:
        new_map = level_map.copy()
    new_map[region] = np.maximum(new_map[region], level)
    return new_map, n_levels


def check_level_map(level_map: np.ndarray, n_levels: int) -> None:
    """
    Check that a level map describes a valid dyadic leaf partition.

    A cell of level l must fill a whole level l cell of the finest grid,
    i.e. values are constant on aligned blocks of 2**(L - l) cells.
    """
    finest = n_levels - 1
    if level_map.min() < 0 or level_map.max() > finest:
        raise StructuralError(
            f"Level map values must lie in 0..{finest}, got "
            f"{level_map.min()}..{level_map.max()}"
        )
    for level in range(n_levels):
        factor = 2 ** (finest - level)
        mask = (level_map == level).astype(np.int8)
        if not np.array_equal(block_reduce(mask, factor, np.maximum),
                              block_reduce(mask, factor, np.minimum)):
            raise StructuralError(
                f"Cells of level {level} are not aligned with the level {level} grid"
            )


class LevelHierarchy:
    """
    Nested tensor-product bases with the adaptive mesh on top of them.

    The hierarchy owns one TensorProductBasis per level and the level
    map. It is the single writer of the mesh: refine and refine_boxes
    either apply completely or raise without any change.

    Attributes:
        bases: Tensor-product basis per level (level 0 first)
        refinement_matrices: Per level l < L, the per-direction matrices
            mapping level l coefficients to level l+1 coefficients
    """

    def __init__(self, basis: TensorProductBasis,
                 level_map: Optional[np.ndarray] = None,
                 n_levels: Optional[int] = None):
        """
        Initialize a hierarchy.

        Parameters:
            basis: Level 0 tensor-product basis
            level_map: Optional map over the finest elements; defaults to
                the unrefined mesh
            n_levels: Number of levels the map resolves (inferred from the
                map shape when omitted)
        """
        self.bases: List[TensorProductBasis] = [basis]
        self.refinement_matrices: List[List[np.ndarray]] = []
        self._n_elem0 = basis.n_elements_per_dir
        # Bumped on every committed refinement; caches compare against it
        self.generation = 0

        if level_map is None:
            self._level_map = np.zeros(self._n_elem0, dtype=int)
        else:
            level_map = np.asarray(level_map, dtype=int)
            if n_levels is None:
                ratio = level_map.shape[0] // self._n_elem0[0]
                n_levels = int(round(np.log2(ratio))) + 1 if ratio > 0 else 0
            expected = tuple(n * 2 ** (n_levels - 1) for n in self._n_elem0)
            if n_levels < 1 or level_map.shape != expected:
                raise StructuralError(
                    f"Level map shape {level_map.shape} does not match a dyadic "
                    f"refinement of {self._n_elem0}"
                )
            check_level_map(level_map, n_levels)
            self._extend_bases(n_levels)
            self._level_map = level_map.copy()

        self._update_structure()

    # ------------------------------------------------------------------
    # Basic properties
    # ------------------------------------------------------------------

    @property
    def n_dim(self) -> int:
        return self.bases[0].n_dim

    @property
    def n_levels(self) -> int:
        """Number of levels present."""
        return len(self.bases)

    @property
    def max_level(self) -> int:
        """Deepest level present (0-based)."""
        return self.n_levels - 1

    @property
    def level_map(self) -> np.ndarray:
        """Leaf level of every finest-grid element (read-only view)."""
        view = self._level_map.view()
        view.flags.writeable = False
        return view

    def n_elements_per_dir(self, level: int) -> Tuple[int, ...]:
        return tuple(n * 2 ** level for n in self._n_elem0)

    def get_basis(self, level: int) -> TensorProductBasis:
        return self.bases[level]

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------

    def refine(self, low: Sequence[int], high: Sequence[int], level: int) -> None:
        """
        Mark an element box active at a level.

        Parameters:
            low, high: Half-open element index range in the level grid
            level: Target level, exactly one finer than the coarsest
                level currently under the box

        Raises:
            StructuralError: invalid level jump or box outside the domain
        """
        self.refine_boxes([(level, low, high)])

    def refine_boxes(self, boxes: Sequence[Box]) -> None:
        """
        Apply an ordered sequence of (level, low, high) boxes.

        Later boxes see the effect of earlier ones, so a multi-level
        refinement can be given one level at a time. Either all boxes are
        applied or none is.
        """
        level_map, n_levels = self._level_map, self.n_levels
        for box in boxes:
            level_map, n_levels = apply_box(level_map, n_levels, self._n_elem0, box)

        self._extend_bases(n_levels)
        self._level_map = level_map
        self.generation += 1
        self._update_structure()
        logger.debug("Applied %d refinement box(es); levels present: %d",
                     len(boxes), self.n_levels)

    def _extend_bases(self, n_levels: int) -> None:
        while len(self.bases) < n_levels:
            fine, matrices = self.bases[-1].refine_dyadic()
            self.bases.append(fine)
            self.refinement_matrices.append(matrices)

    # ------------------------------------------------------------------
    # Active sets
    # ------------------------------------------------------------------

    def _update_structure(self) -> None:
        """Recompute cell extrema, support minima and active sets per level."""
        finest = self.max_level
        self._cell_min = []
        self._cell_max = []
        self._support_min = []
        self._support_min_flat = []
        self._active_flat = []
        for level, basis in enumerate(self.bases):
            factor = 2 ** (finest - level)
            cell_min = block_reduce(self._level_map, factor, np.minimum)
            self._cell_min.append(cell_min)
            self._cell_max.append(block_reduce(self._level_map, factor, np.maximum))

            support_min = cell_min
            for d, b in enumerate(basis.bases):
                kv = b.knot_vector
                parts = []
                for i in range(kv.n_basis):
                    first, end = kv.support_elements(i)
                    part = np.take(support_min, range(first, end), axis=d)
                    parts.append(part.min(axis=d))
                support_min = np.stack(parts, axis=d)
            self._support_min.append(support_min)
            support_flat = np.ravel(support_min, order='F')
            self._support_min_flat.append(support_flat)
            self._active_flat.append(np.flatnonzero(support_flat == level))

        self._offsets = np.concatenate(
            [[0], np.cumsum([len(a) for a in self._active_flat])]
        ).astype(int)

    def size(self) -> int:
        """Total number of active basis functions."""
        return int(self._offsets[-1])

    def n_active(self, level: int) -> int:
        return len(self._active_flat[level])

    def active_flat_indices(self, level: int) -> np.ndarray:
        """Sorted flat tensor indices of the active functions of a level."""
        return self._active_flat[level].copy()

    def covered(self, level: int, flat_indices: np.ndarray) -> np.ndarray:
        """
        Whether level functions have their support inside Omega^level.

        Parameters:
            level: Level of the functions
            flat_indices: Flat tensor indices at that level

        Returns:
            Boolean array, True where the support lies in cells of
            level >= level
        """
        return self._support_min_flat[level][flat_indices] >= level

    def cell_max(self, level: int) -> np.ndarray:
        """Deepest leaf level inside every element of a level grid."""
        return self._cell_max[level]

    def finest_level_in_box(self, low: Sequence[int], high: Sequence[int],
                            level: int) -> int:
        """Deepest level touching an element box given in a level grid."""
        region = tuple(slice(lo, hi) for lo, hi in zip(low, high))
        cells = self._cell_max[level][region]
        if cells.size == 0:
            raise AccessError(f"Empty box {low}-{high} at level {level}")
        return int(cells.max())

    # ------------------------------------------------------------------
    # Global ids
    # ------------------------------------------------------------------

    def _check_id(self, idx: int) -> int:
        if not 0 <= idx < self.size():
            raise AccessError(f"Basis function id {idx} out of range 0..{self.size() - 1}")
        return int(idx)

    def level_of(self, idx: int) -> int:
        """Native level of a global function id."""
        idx = self._check_id(idx)
        return int(np.searchsorted(self._offsets, idx, side='right') - 1)

    def flat_tensor_index_of(self, idx: int) -> int:
        """Flat tensor index, at its native level, of a global function id."""
        level = self.level_of(idx)
        return int(self._active_flat[level][idx - self._offsets[level]])

    def index_of(self, level: int, flat_idx: int) -> int:
        """Global id of an active level function given by its flat index."""
        active = self._active_flat[level]
        pos = int(np.searchsorted(active, flat_idx))
        if pos == len(active) or active[pos] != flat_idx:
            raise AccessError(f"Function {flat_idx} of level {level} is not active")
        return int(self._offsets[level] + pos)

    # ------------------------------------------------------------------
    # Point queries
    # ------------------------------------------------------------------

    def check_point(self, point: Sequence[float]) -> None:
        if len(point) != self.n_dim or not self.bases[0].contains(point):
            raise AccessError(
                f"Point {tuple(point)} outside the parametric domain {self.bases[0].domain}"
            )

    def leaf_level_at(self, point: Sequence[float]) -> int:
        """Level of the leaf cell containing a point."""
        self.check_point(point)
        finest = self.bases[-1]
        cell = tuple(b.knot_vector.find_element(x) for b, x in zip(finest.bases, point))
        return int(self._level_map[cell])

    def active_at(self, point: Sequence[float], level: int) -> Tuple[np.ndarray, np.ndarray]:
        """
        Active functions of one level whose support contains a point.

        Returns:
            (flat_indices, global_ids), both sorted ascending
        """
        flat = np.sort(self.bases[level].active(point))
        flat = flat[self._support_min_flat[level][flat] == level]
        ids = self._offsets[level] + np.searchsorted(self._active_flat[level], flat)
        return flat, ids

    def active_levels_at(self, point: Sequence[float]) -> List[int]:
        """
        Native levels having an active function that can be non-zero at a point.

        Only levels up to the leaf level of the point qualify: a function
        of a finer level has its support inside cells finer than the
        point's leaf.
        """
        leaf = self.leaf_level_at(point)
        return [level for level in range(leaf + 1)
                if len(self.active_at(point, level)[0]) > 0]
