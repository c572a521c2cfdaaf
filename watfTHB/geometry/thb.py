"""
THB-spline basis (Truncated Hierarchical B-splines).

THBSplineBasis is the public entry point. It composes

1. a LevelHierarchy: nested tensor-product bases and the level map,
2. a TruncationEngine: the cached presentation of every active function,
3. the evaluator functions and the 2D domain decomposition.

Refinement is all-or-nothing. The new mesh and its truncation cache are
built on the side and replace the current ones only when both succeed,
so a failing request leaves the basis untouched.

Example:
    kv = KnotVector(np.array([0, 0, 0, 0, 1, 2, 3, 4, 4, 4, 4.]), degree=3)
    thb = THBSplineBasis.from_knot_vectors(kv)
    thb.refine_parametric([2.0], [3.0], level=1)
    values = thb.evaluate(np.linspace(0, 4, 9))

Created: 2025-02-03
Author: Wataru Fukuda
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy import sparse
from typing import Iterator, List, Optional, Sequence, Tuple, Union

from .bspline import ConstantBasis, TensorProductBasis
from .hierarchy import Box, LevelHierarchy
from .truncation import Presentation, Truncated, TruncationEngine
from . import evaluator
from ..discretization.knot_vector import KnotVector
from ..discretization.decomposition import DomainDecomposition, Polyline, decompose_level_map
from ..errors import AccessError, StructuralError


@dataclass
class BSplinePatch:
    """
    Tensor B-spline piece of a THB function over one single-level box.

    The patch reproduces the THB function on the cells of the box whose
    leaf level equals level. Its knot vectors are the level knots of the
    functions meeting the box, so they are not clamped in general.

    Attributes:
        level: Level of the region
        low, high: Corners of the box in finest-level element indices
        basis: Tensor-product basis of the patch
        coefs: Array (n_basis_total,) or (n_basis_total, n_components)
        trim_curves: Outer polyline and holes of the region, if known
    """
    level: int
    low: Tuple[int, ...]
    high: Tuple[int, ...]
    basis: TensorProductBasis
    coefs: np.ndarray
    trim_curves: Optional[List[Polyline]] = None

    def evaluate(self, points) -> np.ndarray:
        """
        Values of the patch spline.

        Parameters:
            points: Array (n_dim, n_points)

        Returns:
            Array (n_points,) or (n_points, n_components)
        """
        pts = np.asarray(points, dtype=np.float64).reshape(self.basis.n_dim, -1)
        values = []
        for k in range(pts.shape[1]):
            idx, basis_values = self.basis.eval(pts[:, k])
            values.append(basis_values[0] @ self.coefs[idx])
        return np.array(values)


class THBSplineBasis:
    """
    Truncated hierarchical B-spline basis of any dimension.

    Attributes:
        fast: Default evaluation path for evaluate()
    """

    def __init__(self, basis: TensorProductBasis,
                 boxes: Optional[Sequence[Box]] = None,
                 level_map: Optional[np.ndarray] = None,
                 n_levels: Optional[int] = None,
                 fast: bool = True):
        """
        Initialize a THB-spline basis.

        Parameters:
            basis: Level 0 tensor-product basis
            boxes: Optional (level, low, high) refinement boxes applied in order
            level_map: Optional leaf level per finest element to start from
            n_levels: Number of levels resolved by level_map
            fast: Use the level-caching evaluation path by default
        """
        self.fast = fast
        hierarchy = LevelHierarchy(basis, level_map=level_map, n_levels=n_levels)
        if boxes:
            hierarchy.refine_boxes(boxes)
        self._commit(hierarchy)

    @classmethod
    def from_knot_vectors(cls, *knot_vectors: KnotVector,
                          boxes: Optional[Sequence[Box]] = None,
                          fast: bool = True) -> 'THBSplineBasis':
        """Build a basis from one level 0 knot vector per direction."""
        return cls(TensorProductBasis.from_knot_vectors(*knot_vectors),
                   boxes=boxes, fast=fast)

    def _commit(self, hierarchy: LevelHierarchy) -> None:
        engine = TruncationEngine(hierarchy)
        engine.rebuild()
        self._hierarchy = hierarchy
        self._engine = engine

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def hierarchy(self) -> LevelHierarchy:
        return self._hierarchy

    @property
    def engine(self) -> TruncationEngine:
        return self._engine

    @property
    def n_dim(self) -> int:
        return self._hierarchy.n_dim

    @property
    def n_levels(self) -> int:
        return self._hierarchy.n_levels

    @property
    def degrees(self) -> Tuple[int, ...]:
        return self._hierarchy.get_basis(0).degrees

    @property
    def domain(self) -> Tuple[Tuple[float, float], ...]:
        return self._hierarchy.get_basis(0).domain

    @property
    def level_map(self) -> np.ndarray:
        return self._hierarchy.level_map

    def max_level(self) -> int:
        """Deepest level present."""
        return self._hierarchy.max_level

    def size(self) -> int:
        """Number of active basis functions."""
        return self._hierarchy.size()

    def __repr__(self) -> str:
        return (f"THBSplineBasis(n_dim={self.n_dim}, degrees={self.degrees}, "
                f"levels={self.n_levels}, size={self.size()})")

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------

    def refine(self, low: Sequence[int], high: Sequence[int], level: int) -> None:
        """
        Refine an element box to a level.

        Parameters:
            low, high: Half-open element range [low, high) in the grid of level
            level: Target level, one finer than the coarsest level under the box

        Raises:
            StructuralError: invalid level jump or box outside the domain
        """
        self.refine_boxes([(level, low, high)])

    def refine_boxes(self, boxes: Sequence[Box]) -> None:
        """Apply (level, low, high) boxes in order; all of them or none."""
        current = self._hierarchy
        hierarchy = LevelHierarchy(current.get_basis(0), level_map=current.level_map,
                                   n_levels=current.n_levels)
        hierarchy.refine_boxes(boxes)
        self._commit(hierarchy)

    def refine_parametric(self, lower: Sequence[float], upper: Sequence[float],
                          level: int) -> None:
        """
        Refine a parametric box, snapped outward to the element grid of level.

        Parameters:
            lower, upper: Corners of the box in parameter space
            level: Target level
        """
        lower = np.atleast_1d(np.asarray(lower, dtype=np.float64))
        upper = np.atleast_1d(np.asarray(upper, dtype=np.float64))
        if len(lower) != self.n_dim or len(upper) != self.n_dim:
            raise StructuralError(
                f"Parametric box needs {self.n_dim} coordinates per corner"
            )

        basis = self._basis_at(level)
        low, high = [], []
        for kv, a, b in zip(basis.knot_vectors, lower, upper):
            start, end = kv.domain
            if a < start or b > end or a >= b:
                raise StructuralError(
                    f"Parametric box [{a}, {b}] is empty or outside {kv.domain}"
                )
            knots = kv.unique_knots
            lo = int(np.searchsorted(knots, a, side='right')) - 1
            hi = int(np.searchsorted(knots, b, side='left'))
            lo = min(max(lo, 0), kv.n_elements - 1)
            low.append(lo)
            high.append(max(hi, lo + 1))
        self.refine(low, high, level)

    def _basis_at(self, level: int) -> TensorProductBasis:
        """Tensor basis of a level, built on the fly one level past the deepest."""
        if level < 0:
            raise StructuralError(f"Negative level {level}")
        h = self._hierarchy
        if level <= h.max_level:
            return h.get_basis(level)
        basis = h.get_basis(h.max_level)
        for _ in range(level - h.max_level):
            basis, _ = basis.refine_dyadic()
        return basis

    # ------------------------------------------------------------------
    # Structure queries
    # ------------------------------------------------------------------

    def active_levels_at(self, point: Sequence[float]) -> List[int]:
        """Native levels with an active function whose support contains the point."""
        return self._hierarchy.active_levels_at(
            np.atleast_1d(np.asarray(point, dtype=np.float64)))

    def finest_level_in_box(self, low: Sequence[int], high: Sequence[int],
                            level: int) -> int:
        """Deepest level touching an element box of a level grid."""
        return self._hierarchy.finest_level_in_box(low, high, level)

    def level_of(self, idx: int) -> int:
        return self._hierarchy.level_of(idx)

    def flat_tensor_index_of(self, idx: int) -> int:
        return self._hierarchy.flat_tensor_index_of(idx)

    def index_of(self, level: int, flat_idx: int) -> int:
        return self._hierarchy.index_of(level, flat_idx)

    def support(self, idx: int) -> Tuple[Tuple[int, int], ...]:
        """Element range (first, end) per direction at the native level of idx."""
        level = self.level_of(idx)
        return self._hierarchy.get_basis(level).support(self.flat_tensor_index_of(idx))

    # ------------------------------------------------------------------
    # Truncation
    # ------------------------------------------------------------------

    def num_truncated(self) -> int:
        return self._engine.num_truncated()

    def is_truncated(self, idx: int) -> bool:
        return self._engine.is_truncated(idx)

    def presentation(self, idx: int) -> Presentation:
        return self._engine.presentation(idx)

    def get_coefs(self, idx: int) -> sparse.csc_matrix:
        """
        Coefficients of a truncated function over its presentation level.

        Raises:
            AccessError: the function is not truncated
        """
        return self._engine.get_coefs(idx)

    def truncated_items(self) -> Iterator[Tuple[int, Truncated]]:
        return self._engine.items()

    def transfer_matrix(self, level: Optional[int] = None) -> sparse.csr_matrix:
        return self._engine.transfer_matrix(level)

    def global_refinement(self, coefs: np.ndarray,
                          level: Optional[int] = None) -> np.ndarray:
        """
        Express THB coefficients as tensor B-spline coefficients of one level.

        Parameters:
            coefs: Array (size,) or (size, n_components), one row per active function
            level: Target level, defaults to the deepest level present

        Returns:
            Coefficients over the flat tensor indices of the target level
        """
        return self.transfer_matrix(level) @ self._check_coefs(coefs)

    def _check_coefs(self, coefs: np.ndarray) -> np.ndarray:
        coefs = np.asarray(coefs, dtype=np.float64)
        if coefs.shape[0] != self.size():
            raise ValueError(
                f"Expected {self.size()} coefficient rows, got {coefs.shape[0]}"
            )
        return coefs

    def _level_coefs(self, coefs: np.ndarray, level: int) -> np.ndarray:
        """THB coefficients as tensor coefficients of a level, exact on its leaf cells."""
        return self._engine.restricted_transfer_matrix(level) @ self._check_coefs(coefs)

    def _patch(self, box: Sequence[int], level: int, tensor_coefs: np.ndarray,
               trim_curves: Optional[List[Polyline]] = None) -> BSplinePatch:
        h = self._hierarchy
        d = self.n_dim
        if len(box) != 2 * d:
            raise StructuralError(f"Box needs {2 * d} indices, got {len(box)}")
        low, high = tuple(int(v) for v in box[:d]), tuple(int(v) for v in box[d:])
        factor = 2 ** (h.max_level - level)

        basis = h.get_basis(level)
        knot_vectors = []
        ranges = []
        for kv, lo, hi, n_cells in zip(basis.knot_vectors, low, high, h.level_map.shape):
            if not 0 <= lo < hi <= n_cells or lo % factor or hi % factor:
                raise StructuralError(
                    f"Box {box} is empty, outside the domain or not aligned to level {level}"
                )
            first = int(kv.active_basis_indices(lo // factor)[0])
            last = int(kv.active_basis_indices(hi // factor - 1)[-1])
            knot_vectors.append(KnotVector(kv.knots[first:last + kv.degree + 2], kv.degree))
            ranges.append(np.arange(first, last + 1))

        grids = np.meshgrid(*ranges, indexing='ij')
        flat = np.ravel_multi_index(tuple(grids), basis.n_basis_per_dir, order='F')
        return BSplinePatch(level=level, low=low, high=high,
                            basis=TensorProductBasis.from_knot_vectors(*knot_vectors),
                            coefs=tensor_coefs[np.ravel(flat, order='F')],
                            trim_curves=trim_curves)

    def bspline_patch(self, box: Sequence[int], level: int,
                      coefs: np.ndarray) -> BSplinePatch:
        """
        Tensor B-spline patch of a THB function over a box of one level.

        Parameters:
            box: (low..., high...) in finest-level element indices, aligned
                to the element grid of level (decomposition box format)
            level: Level of the patch
            coefs: Array (size,) or (size, n_components) of THB coefficients

        Returns:
            BSplinePatch exact on the leaf cells of level inside the box

        Raises:
            StructuralError: level not present, or box empty, outside the
                domain or not aligned
        """
        if not 0 <= level <= self.max_level():
            raise StructuralError(f"Level {level} not in 0..{self.max_level()}")
        return self._patch(box, level, self._level_coefs(coefs, level))

    def bspline_patches(self, coefs: np.ndarray) -> List[BSplinePatch]:
        """
        One B-spline patch per region of the domain decomposition.

        Together with their trim curves the patches represent the THB
        function exactly. Only defined for bivariate bases.
        """
        decomposition = self.decompose_domain()
        level_coefs = {}
        patches = []
        for level, box, polylines in decomposition.regions():
            if level not in level_coefs:
                level_coefs[level] = self._level_coefs(coefs, level)
            patches.append(self._patch(box, level, level_coefs[level], polylines))
        return patches

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    def active_functions(self, points) -> np.ndarray:
        """
        Active function ids per point.

        Returns:
            Array (max_active, n_points), short columns padded with
            evaluator.INACTIVE
        """
        return evaluator.active_matrix(self._hierarchy, points)[0]

    def active_counts(self, points) -> np.ndarray:
        """Number of active functions at every point."""
        return evaluator.active_matrix(self._hierarchy, points)[1]

    def evaluate(self, points, order: int = 0, fast: Optional[bool] = None) -> np.ndarray:
        """
        Values (order 0) or derivatives (order 1, 2) of the active functions.

        Parameters:
            points: Array (n_dim, n_points)
            order: Derivative order
            fast: Override the default evaluation path

        Returns:
            Array (max_active * n_components, n_points), rows aligned with
            active_functions(points)
        """
        use_fast = self.fast if fast is None else fast
        if use_fast:
            return evaluator.evaluate_fast(self._hierarchy, self._engine, points, order)
        return evaluator.evaluate_generic(self._hierarchy, self._engine, points, order)

    def eval_single(self, idx: int, points, order: int = 0) -> np.ndarray:
        """Values or derivatives of one function, shape (n_components, n_points)."""
        return evaluator.evaluate_single(self._hierarchy, self._engine, idx, points, order)

    # ------------------------------------------------------------------
    # Domain decomposition
    # ------------------------------------------------------------------

    def decompose_domain(self) -> DomainDecomposition:
        """
        Bounding boxes and boundary polylines of every single-level region.

        Only defined for bivariate bases. Coordinates are vertex indices of
        the finest level present.
        """
        if self.n_dim != 2:
            raise ValueError(f"Domain decomposition needs a 2D basis, got {self.n_dim}D")
        return decompose_level_map(self._hierarchy.level_map, self._hierarchy.n_levels)

    def connected_components(self) -> List[Tuple[int, List[Polyline]]]:
        """(level, [outer, holes...]) of every connected single-level region."""
        return [(level, polylines)
                for level, _, polylines in self.decompose_domain().regions()]

    # ------------------------------------------------------------------
    # Codimension reduction
    # ------------------------------------------------------------------

    def basis_slice(self, direction: int,
                    parameter: float) -> Union['THBSplineBasis', ConstantBasis]:
        """
        Restriction of the basis to the hyperplane x_direction = parameter.

        Returns:
            THBSplineBasis of one dimension less, or ConstantBasis for a
            univariate basis
        """
        h = self._hierarchy
        basis0 = h.get_basis(0)
        reduced = basis0.slice(direction)
        if isinstance(reduced, ConstantBasis):
            return reduced

        kv = h.get_basis(h.max_level).knot_vectors[direction]
        start, end = kv.domain
        if not start <= parameter <= end:
            raise AccessError(f"Parameter {parameter} outside {kv.domain}")
        cell = kv.find_element(parameter)
        level_map = np.take(h.level_map, cell, axis=direction)
        return THBSplineBasis(reduced, level_map=level_map,
                              n_levels=h.n_levels, fast=self.fast)

    def boundary_basis(self, side: int) -> Union['THBSplineBasis', ConstantBasis]:
        """
        Basis on one side of the parametric box.

        Sides are numbered 1..2*n_dim: 1 and 2 are the start and end of
        direction 0, 3 and 4 of direction 1, and so on.
        """
        if not 1 <= side <= 2 * self.n_dim:
            raise ValueError(f"Side {side} out of range 1..{2 * self.n_dim}")
        direction = (side - 1) // 2
        start, end = self.domain[direction]
        return self.basis_slice(direction, start if side % 2 == 1 else end)
