"""
Truncation of hierarchical B-splines.

A level-k function N that overlaps a finer refined region is replaced by
its truncation. Starting from N itself, repeat for m = k+1, k+2, ...:

1. Refine the current coefficient vector from level m-1 to level m by
   exact knot insertion (the dyadic refinement matrices).
2. Zero every coefficient whose level-m B-spline has its support inside
   Omega^m (the cells of level >= m).

The walk stops once the remaining non-zero support no longer touches
Omega^{m+1}. The coefficients after the last step that zeroed something
form the presentation of the function; a function that never lost a
coefficient stays native.

Each presentation is either

- Native(level): evaluate the level tensor B-spline directly, or
- Truncated(level, indices, values): a sparse vector over the flat
  tensor indices of the presentation level.

Reference:
- Giannelli, Juettler, Speleers, "THB-splines: The truncated basis for
  hierarchical splines", CAGD 29 (2012)

Created: 2025-02-03
Author: Wataru Fukuda
"""

from __future__ import annotations

import logging
import numpy as np
from scipy import sparse
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union
from dataclasses import dataclass

from .hierarchy import LevelHierarchy
from ..errors import AccessError, StructuralError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Native:
    """Function evaluated directly with the tensor basis of its level."""
    level: int


@dataclass(frozen=True, eq=False)
class Truncated:
    """
    Sparse presentation of a truncated function.

    Attributes:
        level: Presentation level
        indices: Sorted flat tensor indices at the presentation level
        values: Coefficients matching indices
        size: Number of tensor functions at the presentation level
    """
    level: int
    indices: np.ndarray
    values: np.ndarray
    size: int

    def combine(self, flat: np.ndarray, basis_values: np.ndarray) -> np.ndarray:
        """
        Apply the coefficients to evaluated presentation-level functions.

        Parameters:
            flat: Flat indices of the evaluated functions
            basis_values: Array (n_components, len(flat))

        Returns:
            Array (n_components,) of the truncated function
        """
        pos = np.searchsorted(self.indices, flat)
        pos = np.minimum(pos, len(self.indices) - 1)
        hit = self.indices[pos] == flat
        return basis_values[:, hit] @ self.values[pos[hit]]

    def as_sparse(self) -> sparse.csc_matrix:
        """Coefficients as a (size, 1) sparse column vector."""
        cols = np.zeros(len(self.indices), dtype=int)
        return sparse.csc_matrix((self.values, (self.indices, cols)),
                                 shape=(self.size, 1))


Presentation = Union[Native, Truncated]


def _window_flat(low: Sequence[int], shape: Sequence[int],
                 n_basis: Sequence[int]) -> np.ndarray:
    """Flat indices of a tensor index window, laid out with the window shape."""
    ranges = [np.arange(lo, lo + n) for lo, n in zip(low, shape)]
    grids = np.meshgrid(*ranges, indexing='ij')
    return np.ravel_multi_index(tuple(grids), tuple(n_basis), order='F')


def _trim(low: List[int], coefs: np.ndarray) -> Tuple[List[int], np.ndarray]:
    """Drop all-zero borders of a coefficient window."""
    region = []
    new_low = []
    for d in range(coefs.ndim):
        other = tuple(a for a in range(coefs.ndim) if a != d)
        nonzero = np.flatnonzero(np.any(coefs != 0, axis=other))
        region.append(slice(nonzero[0], nonzero[-1] + 1))
        new_low.append(low[d] + int(nonzero[0]))
    return new_low, coefs[tuple(region)]


class TruncationEngine:
    """
    Owned cache of the presentations of all active functions.

    The cache is built from a LevelHierarchy and is read-only afterwards.
    Any refinement of the hierarchy makes it stale; rebuild() recomputes
    it from scratch.
    """

    def __init__(self, hierarchy: LevelHierarchy):
        self.hierarchy = hierarchy
        self._presentations: Dict[int, Truncated] = {}
        self._generation: Optional[int] = None

    @property
    def is_stale(self) -> bool:
        return self._generation != self.hierarchy.generation

    def invalidate(self) -> None:
        """Drop all presentations."""
        self._presentations = {}
        self._generation = None

    def rebuild(self) -> None:
        """Recompute the presentation of every active function."""
        h = self.hierarchy
        presentations = {}
        for level in range(h.max_level):
            for flat in h.active_flat_indices(level):
                truncated = self._truncate(level, int(flat))
                if truncated is not None:
                    presentations[h.index_of(level, int(flat))] = truncated

        self._presentations = presentations
        self._generation = h.generation
        logger.debug(
            "Truncation rebuilt: %d active functions on %d level(s), %d truncated",
            h.size(), h.n_levels, len(presentations)
        )

    def _require_current(self) -> None:
        if self.is_stale:
            raise RuntimeError("Truncation cache is stale. Call rebuild() first.")

    # ------------------------------------------------------------------
    # Algorithm
    # ------------------------------------------------------------------

    def _touches_finer(self, level: int, low: List[int], coefs: np.ndarray) -> bool:
        """True if the support of the coefficient window reaches cells finer than level."""
        basis = self.hierarchy.get_basis(level)
        region = []
        for d, b in enumerate(basis.bases):
            kv = b.knot_vector
            first, _ = kv.support_elements(low[d])
            _, end = kv.support_elements(low[d] + coefs.shape[d] - 1)
            region.append(slice(first, end))
        return int(self.hierarchy.cell_max(level)[tuple(region)].max()) > level

    def _refine_window(self, level: int, low: List[int],
                       coefs: np.ndarray) -> Tuple[List[int], np.ndarray]:
        """Express a level coefficient window at level + 1 by knot insertion."""
        matrices = self.hierarchy.refinement_matrices[level]
        new_low = []
        for d, T in enumerate(matrices):
            sub = T[:, low[d]:low[d] + coefs.shape[d]]
            rows = np.flatnonzero(np.any(sub != 0, axis=1))
            r0, r1 = int(rows[0]), int(rows[-1]) + 1
            coefs = np.moveaxis(np.tensordot(sub[r0:r1], coefs, axes=([1], [d])), 0, d)
            new_low.append(r0)
        return new_low, coefs

    def _truncate(self, level: int, flat: int,
                  stop: Optional[int] = None) -> Optional[Truncated]:
        """
        Truncate one active function of a level.

        Parameters:
            level: Native level of the function
            flat: Flat tensor index at that level
            stop: Last level the walk may reach, defaults to the deepest

        Returns:
            Truncated presentation, or None when nothing was removed
        """
        h = self.hierarchy
        low = list(h.get_basis(level).flat_to_tensor(flat))
        coefs = np.ones((1,) * h.n_dim)
        result = None

        last = h.max_level if stop is None else min(stop, h.max_level)
        m = level
        while m < last and self._touches_finer(m, low, coefs):
            low, coefs = self._refine_window(m, low, coefs)
            m += 1
            n_basis = h.get_basis(m).n_basis_per_dir
            covered = h.covered(m, _window_flat(low, coefs.shape, n_basis))
            remove = covered & (coefs != 0)
            if remove.any():
                coefs = np.where(remove, 0.0, coefs)
                if not np.any(coefs):
                    raise StructuralError(
                        f"Truncation removed every coefficient of function {flat} "
                        f"of level {level} at level {m}"
                    )
                low, coefs = _trim(low, coefs)
                result = (m, low, coefs)
            else:
                low, coefs = _trim(low, coefs)

        if result is None:
            return None

        m, low, coefs = result
        basis = h.get_basis(m)
        window = _window_flat(low, coefs.shape, basis.n_basis_per_dir)
        keep = coefs != 0
        indices = window[keep]
        order = np.argsort(indices)
        return Truncated(level=m, indices=indices[order], values=coefs[keep][order],
                         size=basis.n_basis_total)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def num_truncated(self) -> int:
        """Number of truncated functions."""
        self._require_current()
        return len(self._presentations)

    def is_truncated(self, idx: int) -> bool:
        self._require_current()
        self.hierarchy.level_of(idx)
        return idx in self._presentations

    def presentation(self, idx: int) -> Presentation:
        """Native or Truncated presentation of a global function id."""
        self._require_current()
        truncated = self._presentations.get(idx)
        if truncated is not None:
            return truncated
        return Native(self.hierarchy.level_of(idx))

    def get_coefs(self, idx: int) -> sparse.csc_matrix:
        """
        Sparse coefficients of a truncated function.

        Raises:
            AccessError: the function is not truncated
        """
        if not self.is_truncated(idx):
            raise AccessError(
                f"Basis function {idx} has no sparse representation. It is not truncated."
            )
        return self._presentations[idx].as_sparse()

    def items(self) -> Iterator[Tuple[int, Truncated]]:
        """(id, Truncated) pairs in ascending id order."""
        self._require_current()
        for idx in sorted(self._presentations):
            yield idx, self._presentations[idx]

    # ------------------------------------------------------------------
    # Transfer to a single tensor level
    # ------------------------------------------------------------------

    def transfer_matrix(self, level: Optional[int] = None) -> sparse.csr_matrix:
        """
        Matrix expressing every active function in the tensor basis of a level.

        Parameters:
            level: Target level, at least the deepest level present
                (defaults to it)

        Returns:
            Sparse matrix (n_tensor_functions(level), n_active); column j
            holds the coefficients of function j
        """
        self._require_current()
        h = self.hierarchy
        if level is None:
            level = h.max_level
        if level < h.max_level:
            raise ValueError(
                f"Transfer level {level} is coarser than the deepest level {h.max_level}"
            )
        return self._assemble(level, [(idx, self.presentation(idx)) for idx in range(h.size())])

    def restricted_transfer_matrix(self, level: int) -> sparse.csr_matrix:
        """
        Transfer to any level, exact on the cells of leaf level <= level.

        Functions of a native level above level vanish on those cells and
        get empty columns. The others are truncated with the walk stopped
        at level, which drops only finer functions that vanish there too.

        Parameters:
            level: Target level, 0 .. deepest level present

        Returns:
            Sparse matrix (n_tensor_functions(level), n_active)
        """
        self._require_current()
        h = self.hierarchy
        if level >= h.max_level:
            return self.transfer_matrix(level)
        if level < 0:
            raise ValueError(f"Negative transfer level {level}")

        items = []
        for idx in range(h.size()):
            native = h.level_of(idx)
            if native > level:
                continue
            pres = self.presentation(idx)
            if pres.level > level:
                truncated = self._truncate(native, h.flat_tensor_index_of(idx), stop=level)
                pres = Native(native) if truncated is None else truncated
            items.append((idx, pres))
        return self._assemble(level, items)

    def _assemble(self, level: int,
                  items: Sequence[Tuple[int, Presentation]]) -> sparse.csr_matrix:
        """Prolong (id, presentation) pairs of levels <= level to level."""
        h = self.hierarchy
        bases = list(h.bases)
        matrices = list(h.refinement_matrices)
        while len(bases) <= level:
            fine, extra = bases[-1].refine_dyadic()
            bases.append(fine)
            matrices.append(extra)

        rows: List[List[int]] = [[] for _ in range(level + 1)]
        cols: List[List[int]] = [[] for _ in range(level + 1)]
        vals: List[List[float]] = [[] for _ in range(level + 1)]
        for idx, pres in items:
            if isinstance(pres, Truncated):
                rows[pres.level].extend(pres.indices)
                vals[pres.level].extend(pres.values)
                cols[pres.level].extend([idx] * len(pres.indices))
            else:
                rows[pres.level].append(h.flat_tensor_index_of(idx))
                vals[pres.level].append(1.0)
                cols[pres.level].append(idx)

        def block(m):
            return sparse.csr_matrix((vals[m], (rows[m], cols[m])),
                                     shape=(bases[m].n_basis_total, h.size()))

        result = block(0)
        for m in range(level):
            P = sparse.csr_matrix(matrices[m][0])
            for T in matrices[m][1:]:
                # First direction runs fastest in the flat index
                P = sparse.kron(sparse.csr_matrix(T), P, format='csr')
            result = P @ result + block(m + 1)
        return sparse.csr_matrix(result)
