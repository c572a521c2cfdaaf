"""
Knot vector utilities for hierarchical B-splines.

A knot vector is a non-decreasing sequence of real numbers that defines
the parametric domain and basis function support for B-splines.

Mathematical background:
- Open knot vectors have p+1 repeated knots at each end (interpolatory at boundaries)
- The number of basis functions n = len(knots) - p - 1
- Knot spans (elements) are unique intervals [xi_i, xi_{i+1}] where xi_i < xi_{i+1}
- Dyadic refinement halves every element; the levels of a hierarchy are
  obtained by repeated dyadic refinement of the level 0 knot vector
"""

import numpy as np
from typing import List, Tuple
from dataclasses import dataclass


@dataclass
class KnotVector:
    """
    Represents a univariate knot vector.

    Attributes:
        knots: The knot values (non-decreasing sequence)
        degree: Polynomial degree p

    Properties computed:
        n_basis: Number of basis functions
        n_elements: Number of non-zero measure knot spans
        elements: List of (start, end) parametric coordinates for each element
    """
    knots: np.ndarray
    degree: int

    def __post_init__(self):
        self.knots = np.asarray(self.knots, dtype=np.float64)
        self._validate()
        self._compute_elements()

    def _validate(self):
        """Validate knot vector properties."""
        if self.degree < 0:
            raise ValueError(f"Degree must be non-negative, got {self.degree}.")
        if len(self.knots) < 2 * (self.degree + 1):
            raise ValueError(
                f"Knot vector too short for degree {self.degree}. "
                f"Need at least {2 * (self.degree + 1)} knots, got {len(self.knots)}."
            )
        # Check non-decreasing
        if not np.all(np.diff(self.knots) >= 0):
            raise ValueError("Knot vector must be non-decreasing.")
        if self.knots[self.degree] >= self.knots[-self.degree - 1]:
            raise ValueError("Knot vector has an empty parametric domain.")

    def _compute_elements(self):
        """
        Compute unique knot spans (elements).

        Only the breakpoints inside the parametric domain
        [knots[p], knots[n]] delimit elements.
        """
        p = self.degree
        inner = self.knots[p:self.n_basis + 1]
        self._unique_knots = np.unique(inner)
        self._elements = [
            (self._unique_knots[e], self._unique_knots[e + 1])
            for e in range(len(self._unique_knots) - 1)
        ]
        # Span index of each element: last occurrence of its start knot
        self._element_spans = np.searchsorted(
            self.knots, self._unique_knots[:-1], side='right') - 1

    @property
    def n_basis(self) -> int:
        """Number of basis functions."""
        return len(self.knots) - self.degree - 1

    @property
    def n_elements(self) -> int:
        """Number of non-zero measure knot spans (elements)."""
        return len(self._elements)

    @property
    def elements(self) -> List[Tuple[float, float]]:
        """List of element intervals as (xi_start, xi_end) tuples."""
        return self._elements.copy()

    @property
    def unique_knots(self) -> np.ndarray:
        """Unique knot values (breakpoints)."""
        return self._unique_knots.copy()

    @property
    def domain(self) -> Tuple[float, float]:
        """Parametric domain (first unique knot, last unique knot)."""
        return (self._unique_knots[0], self._unique_knots[-1])

    def find_span(self, xi: float) -> int:
        """
        Find the knot span index containing parameter value xi.

        For xi in [xi_i, xi_{i+1}), returns i.
        Uses the convention that the last span is closed: [xi_{n-1}, xi_n].

        Parameters:
            xi: Parameter value

        Returns:
            Span index i such that xi in [xi_i, xi_{i+1})
        """
        n = self.n_basis
        p = self.degree

        # Handle boundary cases
        if xi >= self.knots[n]:
            return n - 1
        if xi <= self.knots[p]:
            return p

        # Binary search
        low = p
        high = n
        mid = (low + high) // 2

        while xi < self.knots[mid] or xi >= self.knots[mid + 1]:
            if xi < self.knots[mid]:
                high = mid
            else:
                low = mid
            mid = (low + high) // 2

        return mid

    def find_element(self, xi: float) -> int:
        """
        Find which element contains parameter value xi.

        Uses half-open interval convention [xi_start, xi_end) for interior
        boundaries. The last element includes its right boundary.

        Parameters:
            xi: Parameter value

        Returns:
            Element index (0-based)
        """
        a, b = self.domain
        if xi < a or xi > b:
            raise ValueError(f"Parameter {xi} outside domain {self.domain}")
        e = int(np.searchsorted(self._unique_knots, xi, side='right')) - 1
        return min(e, self.n_elements - 1)

    def element_to_span(self, element_idx: int) -> int:
        """Convert element index to knot span index."""
        return int(self._element_spans[element_idx])

    def active_basis_indices(self, element_idx: int) -> np.ndarray:
        """
        Get indices of basis functions active on a given element.

        For a degree p, exactly p+1 basis functions are non-zero on each element.
        """
        span = self.element_to_span(element_idx)
        return np.arange(span - self.degree, span + 1)

    def support_elements(self, basis_idx: int) -> Tuple[int, int]:
        """
        Element range covered by the support of a basis function.

        Parameters:
            basis_idx: Basis function index

        Returns:
            (first, end) so that elements first..end-1 form the support
        """
        p = self.degree
        lo = self.knots[basis_idx]
        hi = self.knots[basis_idx + p + 1]
        first = int(np.searchsorted(self._unique_knots, lo, side='left'))
        end = int(np.searchsorted(self._unique_knots, hi, side='left'))
        first = min(first, self.n_elements - 1)
        end = min(end, self.n_elements)
        return first, max(end, first + 1)


def make_open_knot_vector(n_basis: int, degree: int,
                          domain: Tuple[float, float] = (0.0, 1.0)) -> KnotVector:
    """
    Create an open (clamped) uniform knot vector.

    Open knot vectors have the first and last knot repeated p+1 times,
    ensuring the basis interpolates the first and last control points.

    Parameters:
        n_basis: Number of basis functions desired
        degree: Polynomial degree p
        domain: Parametric domain (start, end)

    Returns:
        KnotVector with uniform internal knots
    """
    p = degree
    n = n_basis
    n_knots = n + p + 1
    n_internal = n_knots - 2 * (p + 1)

    if n_internal < 0:
        raise ValueError(
            f"Cannot create knot vector: n_basis={n_basis} too small for degree={degree}"
        )

    a, b = domain

    knots = [a] * (p + 1)
    if n_internal > 0:
        internal = np.linspace(a, b, n_internal + 2)[1:-1]
        knots.extend(internal)
    knots.extend([b] * (p + 1))

    return KnotVector(np.array(knots), degree)


def compute_knot_insertion_matrix(kv: KnotVector, xi: float) -> Tuple[KnotVector, np.ndarray]:
    """
    Compute the knot insertion matrix for inserting a single knot.

    When a knot is inserted, coefficients are updated by a linear transformation:
        c_new = A @ c_old

    Parameters:
        kv: Original knot vector
        xi: Knot value to insert

    Returns:
        Tuple of (new_knot_vector, insertion_matrix A)
        A has shape (n_new, n_old) where n_new = n_old + 1
    """
    p = kv.degree
    knots = kv.knots
    n_old = kv.n_basis

    k = kv.find_span(xi)

    new_knots = np.zeros(len(knots) + 1)
    new_knots[:k + 1] = knots[:k + 1]
    new_knots[k + 1] = xi
    new_knots[k + 2:] = knots[k + 1:]

    n_new = n_old + 1
    A = np.zeros((n_new, n_old))

    for i in range(n_new):
        if i <= k - p:
            A[i, i] = 1.0
        elif i >= k + 1:
            A[i, i - 1] = 1.0
        else:
            # alpha_i = (xi - knots[i]) / (knots[i+p] - knots[i])
            denom = knots[i + p] - knots[i]
            if abs(denom) > 1e-14:
                alpha = (xi - knots[i]) / denom
            else:
                alpha = 0.0
            A[i, i - 1] = 1.0 - alpha
            A[i, i] = alpha

    return KnotVector(new_knots, p), A


def refine_knot_vector_dyadic(kv: KnotVector) -> Tuple[KnotVector, np.ndarray]:
    """
    Refine a knot vector by inserting midpoints of all non-zero spans (dyadic refinement).

    This is the refinement between successive levels of a hierarchy.

    Parameters:
        kv: Original knot vector

    Returns:
        Tuple of (refined_knot_vector, refinement_matrix)
        The refinement_matrix T has shape (n_fine, n_coarse) and satisfies
        c_fine = T @ c_coarse, equivalently N_coarse = T.T @ N_fine.
    """
    midpoints = sorted(0.5 * (xi_start + xi_end) for xi_start, xi_end in kv.elements)

    current_kv = kv
    A_total = np.eye(kv.n_basis)

    for xi in midpoints:
        new_kv, A = compute_knot_insertion_matrix(current_kv, xi)
        A_total = A @ A_total
        current_kv = new_kv

    return current_kv, A_total
