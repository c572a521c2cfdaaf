"""
Geometry module for hierarchical spline bases.
"""

from .bspline import BSplineBasis, ConstantBasis, TensorProductBasis
from .hierarchy import LevelHierarchy
from .truncation import Native, Truncated, TruncationEngine
from .thb import BSplinePatch, THBSplineBasis
