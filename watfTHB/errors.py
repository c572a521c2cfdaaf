"""
Exceptions raised by the hierarchical spline core.

Three failure kinds are distinguished:

- StructuralError: the refinement structure is inconsistent (wrong level
  jump, box outside the domain, lost coverage after truncation, uncovered
  cells before decomposition).
- AccessError: the caller asked for something that does not exist
  (coefficients of a non-truncated function, an unknown function id,
  a point outside the parametric domain).
- NumericalDegeneracy: a traced boundary polyline could not be turned
  into simple closed curves.

All of them are raised synchronously by the operation that detects them;
nothing is retried internally.
"""


class StructuralError(ValueError):
    """Invalid refinement request or inconsistent level structure."""


class AccessError(IndexError):
    """Caller precondition violation on a query."""


class NumericalDegeneracy(ValueError):
    """A boundary polyline failed to decompose into simple cycles."""
