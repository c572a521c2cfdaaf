"""
Discretization module for THB-splines.

Provides:
- KnotVector: Knot vector representation and dyadic refinement
- DomainDecomposition: Single-level regions of a 2D hierarchical mesh
"""

from .knot_vector import KnotVector, make_open_knot_vector
from .decomposition import DomainDecomposition, decompose_level_map, split_cycles
