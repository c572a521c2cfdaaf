"""
B-spline basis function evaluation.

B-splines are piecewise polynomial functions defined by:
1. A knot vector (non-decreasing sequence of parametric values)
2. A polynomial degree p

The i-th B-spline basis function of degree p is defined recursively:

    N_{i,0}(xi) = 1 if xi_i <= xi < xi_{i+1}, else 0

    N_{i,p}(xi) = (xi - xi_i)/(xi_{i+p} - xi_i) * N_{i,p-1}(xi)
                + (xi_{i+p+1} - xi)/(xi_{i+p+1} - xi_{i+1}) * N_{i+1,p-1}(xi)

Properties:
- Partition of unity: sum of all basis functions = 1
- Non-negativity: N_{i,p}(xi) >= 0
- Local support: N_{i,p} is non-zero only on [xi_i, xi_{i+p+1})
- Smoothness: C^{p-k} at a knot of multiplicity k

Tensor-product bases are built from 1D evaluations. Flat indices run
with the first parametric direction fastest:

    flat = i_0 + n_0 * (i_1 + n_1 * (i_2 + ...))

Every level of a hierarchical basis is one TensorProductBasis; the
hierarchy only relies on the small capability set exposed here
(evaluate at a point, active indices at a point, dyadic refinement
of coefficients, removal of a direction).
"""

import numpy as np
from typing import List, Optional, Sequence, Tuple, Union

from ..discretization.knot_vector import KnotVector, refine_knot_vector_dyadic


def eval_basis_1d(kv: KnotVector, xi: float,
                  span: Optional[int] = None) -> np.ndarray:
    """
    Evaluate all non-zero B-spline basis functions at a parameter value.

    Uses the Cox-de Boor algorithm optimized for evaluating only
    the p+1 non-zero basis functions at a given parameter value.

    Parameters:
        kv: Knot vector
        xi: Parameter value
        span: Optional pre-computed span index

    Returns:
        Array of shape (p+1,) containing N_{span-p,p}(xi) to N_{span,p}(xi)
    """
    p = kv.degree
    knots = kv.knots

    if span is None:
        span = kv.find_span(xi)

    N = np.zeros(p + 1)
    N[0] = 1.0

    left = np.zeros(p + 1)
    right = np.zeros(p + 1)

    for j in range(1, p + 1):
        left[j] = xi - knots[span + 1 - j]
        right[j] = knots[span + j] - xi

        saved = 0.0
        for r in range(j):
            temp = N[r] / (right[r + 1] + left[j - r])
            N[r] = saved + right[r + 1] * temp
            saved = left[j - r] * temp
        N[j] = saved

    return N


def eval_basis_ders_1d(kv: KnotVector, xi: float, n_ders: int,
                       span: Optional[int] = None) -> np.ndarray:
    """
    Evaluate B-spline basis functions and derivatives at a parameter value.

    Uses the algorithm from Piegl & Tiller "The NURBS Book" (Algorithm A2.3).
    Derivatives of order higher than the degree are identically zero and
    are returned as zero rows.

    Parameters:
        kv: Knot vector
        xi: Parameter value
        n_ders: Number of derivatives to compute (0 = just values)
        span: Optional pre-computed span index

    Returns:
        Array of shape (n_ders+1, p+1) where result[k, j] is the k-th derivative
        of the j-th non-zero basis function (N_{span-p+j, p})
    """
    p = kv.degree
    knots = kv.knots

    if span is None:
        span = kv.find_span(xi)

    ders = np.zeros((n_ders + 1, p + 1))
    n_ders = min(n_ders, p)

    # ndu[j][r] = N_{span-p+r, j} or knot differences
    ndu = np.zeros((p + 1, p + 1))
    ndu[0, 0] = 1.0

    left = np.zeros(p + 1)
    right = np.zeros(p + 1)

    for j in range(1, p + 1):
        left[j] = xi - knots[span + 1 - j]
        right[j] = knots[span + j] - xi

        saved = 0.0
        for r in range(j):
            # Upper triangle: knot differences
            ndu[j, r] = right[r + 1] + left[j - r]
            temp = ndu[r, j - 1] / ndu[j, r]

            # Lower triangle: basis functions
            ndu[r, j] = saved + right[r + 1] * temp
            saved = left[j - r] * temp

        ndu[j, j] = saved

    for j in range(p + 1):
        ders[0, j] = ndu[j, p]

    a = np.zeros((2, p + 1))

    for r in range(p + 1):
        s1, s2 = 0, 1
        a[0, 0] = 1.0

        for k in range(1, n_ders + 1):
            d = 0.0
            rk = r - k
            pk = p - k

            if r >= k:
                a[s2, 0] = a[s1, 0] / ndu[pk + 1, rk]
                d = a[s2, 0] * ndu[rk, pk]

            j1 = 1 if rk >= -1 else -rk
            j2 = k - 1 if r - 1 <= pk else p - r

            for j in range(j1, j2 + 1):
                a[s2, j] = (a[s1, j] - a[s1, j - 1]) / ndu[pk + 1, rk + j]
                d += a[s2, j] * ndu[rk + j, pk]

            if r <= pk:
                a[s2, k] = -a[s1, k - 1] / ndu[pk + 1, r]
                d += a[s2, k] * ndu[r, pk]

            ders[k, r] = d
            s1, s2 = s2, s1

    # Multiply by factorial factors
    r = p
    for k in range(1, n_ders + 1):
        for j in range(p + 1):
            ders[k, j] *= r
        r *= (p - k)

    return ders


def derivative_orders(n_dim: int, order: int) -> List[Tuple[int, ...]]:
    """
    Partial derivative multi-indices produced for a derivative order.

    Order 0 gives the values, order 1 the gradient (one row per direction)
    and order 2 the pure second derivatives followed by the mixed ones
    (i < j) in lexicographic order, d(d+1)/2 rows in total.
    """
    if order == 0:
        return [(0,) * n_dim]
    if order == 1:
        return [tuple(1 if k == i else 0 for k in range(n_dim))
                for i in range(n_dim)]
    if order == 2:
        pure = [tuple(2 if k == i else 0 for k in range(n_dim))
                for i in range(n_dim)]
        mixed = [tuple(1 if k in (i, j) else 0 for k in range(n_dim))
                 for i in range(n_dim) for j in range(i + 1, n_dim)]
        return pure + mixed
    raise ValueError(f"Derivative order must be 0, 1 or 2, got {order}")


def _outer_flat(vectors: Sequence[np.ndarray]) -> np.ndarray:
    """Tensor product of 1D arrays, flattened with the first index fastest."""
    result = vectors[0]
    for v in vectors[1:]:
        result = np.multiply.outer(result, v)
    return np.ravel(result, order='F')


class BSplineBasis:
    """
    Encapsulates a univariate B-spline basis.

    This class bundles a knot vector with methods for basis evaluation,
    providing a cleaner interface for higher-level code.

    Attributes:
        knot_vector: The underlying KnotVector
        degree: Polynomial degree
        n_basis: Number of basis functions
    """

    def __init__(self, knot_vector: KnotVector):
        self.knot_vector = knot_vector

    @property
    def degree(self) -> int:
        return self.knot_vector.degree

    @property
    def n_basis(self) -> int:
        return self.knot_vector.n_basis

    @property
    def n_elements(self) -> int:
        return self.knot_vector.n_elements

    def eval_ders(self, xi: float, n_ders: int,
                  span: Optional[int] = None) -> np.ndarray:
        """Evaluate basis functions and derivatives at xi."""
        return eval_basis_ders_1d(self.knot_vector, xi, n_ders, span)

    def refine_dyadic(self) -> Tuple['BSplineBasis', np.ndarray]:
        """Dyadically refined basis and its (n_fine, n_coarse) refinement matrix."""
        kv_fine, T = refine_knot_vector_dyadic(self.knot_vector)
        return BSplineBasis(kv_fine), T


class ConstantBasis:
    """
    The single constant function 1 on a point.

    Result of removing the only direction of a univariate basis.
    """

    n_dim = 0

    @property
    def n_basis_total(self) -> int:
        return 1

    def size(self) -> int:
        return 1

    def eval(self, point=(), order: int = 0) -> Tuple[np.ndarray, np.ndarray]:
        """Evaluate the constant function (derivatives are not defined in 0D)."""
        if order != 0:
            raise ValueError("A constant basis only provides values")
        return np.array([0]), np.ones((1, 1))


class TensorProductBasis:
    """
    Tensor-product B-spline basis for any number of dimensions.

    For 2D: N_{i,j}(xi, eta) = N_i(xi) * N_j(eta)
    For 3D: N_{i,j,k}(xi, eta, zeta) = N_i(xi) * N_j(eta) * N_k(zeta)

    Each direction may carry its own degree and knot vector.
    """

    def __init__(self, bases: Tuple[BSplineBasis, ...]):
        """
        Initialize a tensor-product basis.

        Parameters:
            bases: Tuple of BSplineBasis objects, one per parametric direction
        """
        if len(bases) == 0:
            raise ValueError("A tensor-product basis needs at least one direction")
        self.bases = tuple(bases)
        self.n_dim = len(self.bases)

    @classmethod
    def from_knot_vectors(cls, *knot_vectors: KnotVector) -> 'TensorProductBasis':
        """Build a tensor-product basis from one knot vector per direction."""
        return cls(tuple(BSplineBasis(kv) for kv in knot_vectors))

    @property
    def knot_vectors(self) -> Tuple[KnotVector, ...]:
        return tuple(b.knot_vector for b in self.bases)

    @property
    def degrees(self) -> Tuple[int, ...]:
        """Polynomial degrees in each direction."""
        return tuple(b.degree for b in self.bases)

    @property
    def n_basis_per_dir(self) -> Tuple[int, ...]:
        """Number of basis functions in each direction."""
        return tuple(b.n_basis for b in self.bases)

    @property
    def n_basis_total(self) -> int:
        """Total number of tensor-product basis functions."""
        result = 1
        for b in self.bases:
            result *= b.n_basis
        return result

    @property
    def n_elements_per_dir(self) -> Tuple[int, ...]:
        """Number of elements in each direction."""
        return tuple(b.n_elements for b in self.bases)

    @property
    def domain(self) -> Tuple[Tuple[float, float], ...]:
        """Parametric domain, one (start, end) pair per direction."""
        return tuple(b.knot_vector.domain for b in self.bases)

    def size(self) -> int:
        return self.n_basis_total

    def contains(self, point: Sequence[float]) -> bool:
        """True if the point lies in the closed parametric domain."""
        return all(a <= x <= b for x, (a, b) in zip(point, self.domain))

    def _spans(self, point: Sequence[float]) -> List[int]:
        return [b.knot_vector.find_span(x) for b, x in zip(self.bases, point)]

    def _local_flat_indices(self, spans: Sequence[int]) -> np.ndarray:
        local = [np.arange(s - b.degree, s + 1) for s, b in zip(spans, self.bases)]
        grids = np.meshgrid(*local, indexing='ij')
        flat = np.ravel_multi_index(tuple(grids), self.n_basis_per_dir, order='F')
        return np.ravel(flat, order='F')

    def active(self, point: Sequence[float]) -> np.ndarray:
        """
        Flat indices of the basis functions whose support contains the point.

        The order matches the columns returned by eval.
        """
        return self._local_flat_indices(self._spans(point))

    def eval(self, point: Sequence[float],
             order: int = 0) -> Tuple[np.ndarray, np.ndarray]:
        """
        Evaluate tensor-product basis (or its derivatives) at a parameter point.

        Parameters:
            point: Parameter values, one per direction
            order: 0 for values, 1 for gradients, 2 for second derivatives

        Returns:
            (indices, values) where indices holds the flat indices of the
            prod(p+1) local functions and values has shape (n_components,
            n_local); see derivative_orders for the component layout.
        """
        multi = derivative_orders(self.n_dim, order)
        spans = self._spans(point)
        ders_1d = [
            b.eval_ders(x, order, span)
            for b, x, span in zip(self.bases, point, spans)
        ]
        values = np.empty((len(multi), int(np.prod([b.degree + 1 for b in self.bases]))))
        for row, ks in enumerate(multi):
            values[row] = _outer_flat([ders_1d[d][k] for d, k in enumerate(ks)])
        return self._local_flat_indices(spans), values

    def flat_to_tensor(self, flat_idx: int) -> Tuple[int, ...]:
        """Convert a flat index to tensor indices, one per direction."""
        return tuple(int(i) for i in np.unravel_index(flat_idx, self.n_basis_per_dir, order='F'))

    def tensor_to_flat(self, tensor_idx: Sequence[int]) -> int:
        """Convert tensor indices to a flat index."""
        return int(np.ravel_multi_index(tuple(tensor_idx), self.n_basis_per_dir, order='F'))

    def support(self, flat_idx: int) -> Tuple[Tuple[int, int], ...]:
        """Element index range (first, end) per direction of a function's support."""
        return tuple(
            b.knot_vector.support_elements(i)
            for b, i in zip(self.bases, self.flat_to_tensor(flat_idx))
        )

    def refine_dyadic(self) -> Tuple['TensorProductBasis', List[np.ndarray]]:
        """
        Dyadically refined basis (every element halved in every direction).

        Returns:
            (fine_basis, matrices) with one (n_fine, n_coarse) refinement
            matrix per direction
        """
        refined = [b.refine_dyadic() for b in self.bases]
        return (TensorProductBasis(tuple(r[0] for r in refined)),
                [r[1] for r in refined])

    def slice(self, direction: int) -> Union['TensorProductBasis', ConstantBasis]:
        """Basis of one dimension less, obtained by removing a direction."""
        if not 0 <= direction < self.n_dim:
            raise ValueError(f"Direction {direction} out of range for {self.n_dim}D basis")
        if self.n_dim == 1:
            return ConstantBasis()
        return TensorProductBasis(self.bases[:direction] + self.bases[direction + 1:])
