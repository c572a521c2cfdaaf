"""
Pytest configuration and shared fixtures for THB-spline tests.
"""

import pytest
import numpy as np
import sys
from pathlib import Path

# Add the parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from watfTHB.discretization.knot_vector import KnotVector, make_open_knot_vector
from watfTHB.geometry.bspline import TensorProductBasis
from watfTHB.geometry.thb import THBSplineBasis


@pytest.fixture
def tolerance():
    """Default tolerance for floating point comparisons."""
    return 1e-12


@pytest.fixture
def loose_tolerance():
    """Looser tolerance for finite difference checks."""
    return 1e-6


@pytest.fixture
def cubic_kv():
    """Cubic knot vector [0,0,0,0,1,2,3,4,4,4,4] (7 functions, 4 elements)."""
    return KnotVector(np.array([0, 0, 0, 0, 1, 2, 3, 4, 4, 4, 4], dtype=float), degree=3)


@pytest.fixture
def quadratic_basis_2d():
    """Biquadratic tensor basis with 4x4 elements on the unit square."""
    kv = make_open_knot_vector(n_basis=6, degree=2, domain=(0.0, 1.0))
    return TensorProductBasis.from_knot_vectors(kv, kv)


@pytest.fixture
def thb_1d(cubic_kv):
    """Cubic 1D THB basis refined once over [2, 3]."""
    thb = THBSplineBasis.from_knot_vectors(cubic_kv)
    thb.refine_parametric([2.0], [3.0], level=1)
    return thb


@pytest.fixture
def thb_2d_three_levels(quadratic_basis_2d):
    """Biquadratic basis with a level 1 box and a nested level 2 box."""
    return THBSplineBasis(quadratic_basis_2d, boxes=[
        (1, (2, 2), (6, 6)),
        (2, (6, 6), (10, 10)),
    ])
