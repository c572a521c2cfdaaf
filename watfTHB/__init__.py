"""
THB - Truncated Hierarchical B-spline Library

Adaptive spline bases built from nested, dyadically refined
tensor-product B-spline levels, with truncation of the coarse functions
that overlap finer refined regions.

Key modules:
- geometry: B-spline bases, level hierarchy, truncation, evaluation
- discretization: Knot vectors, domain decomposition into single-level regions

Quick start (1D):
    import numpy as np
    from watfTHB.discretization.knot_vector import KnotVector
    from watfTHB.geometry.thb import THBSplineBasis

    kv = KnotVector(np.array([0, 0, 0, 0, 1, 2, 3, 4, 4, 4, 4.]), degree=3)
    thb = THBSplineBasis.from_knot_vectors(kv)
    thb.refine_parametric([2.0], [3.0], level=1)
    print(thb.num_truncated())

Quick start (2D):
    from watfTHB.discretization.knot_vector import make_open_knot_vector
    from watfTHB.geometry.thb import THBSplineBasis

    kv = make_open_knot_vector(n_basis=6, degree=2, domain=(0.0, 1.0))
    thb = THBSplineBasis.from_knot_vectors(kv, kv, boxes=[(1, (2, 2), (6, 6))])

    ids = thb.active_functions([[0.5], [0.5]])
    values = thb.evaluate([[0.5], [0.5]], order=1)
    regions = thb.decompose_domain()
"""

__version__ = "0.1.0"
__author__ = "Wataru Fukuda"

# Core imports for convenience
from .errors import AccessError, NumericalDegeneracy, StructuralError
from .discretization.knot_vector import KnotVector, make_open_knot_vector
from .discretization.decomposition import DomainDecomposition, decompose_level_map, split_cycles
from .geometry.bspline import BSplineBasis, ConstantBasis, TensorProductBasis
from .geometry.thb import BSplinePatch, THBSplineBasis
