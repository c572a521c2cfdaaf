"""
Evaluation of active THB basis functions at points.

Points are given column-wise: an array of shape (n_dim, n_points). For
every point the active functions are listed by ascending global id. The
results follow the same layout:

- active ids: (max_active, n_points), padded with INACTIVE
- values: (max_active * n_components, n_points), padded with zeros;
  rows k*n_components .. (k+1)*n_components - 1 belong to the k-th
  function of the column

Two strategies are available. The generic path evaluates the tensor
basis of the relevant level separately for every function. The fast path
evaluates each level touched at a point once and shares the result
between all functions presented at that level. Both go through the same
per-function arithmetic and return identical arrays.
"""

import numpy as np
from typing import Dict, Sequence, Tuple

from .bspline import derivative_orders
from .hierarchy import LevelHierarchy
from .truncation import Native, Presentation, TruncationEngine

INACTIVE = -1

LevelEval = Tuple[np.ndarray, np.ndarray]


def as_points(points, n_dim: int) -> np.ndarray:
    """
    Normalize point input to a float array of shape (n_dim, n_points).

    A 1D array is read as a list of parameters for univariate bases and
    as a single point otherwise.
    """
    pts = np.asarray(points, dtype=np.float64)
    if pts.ndim == 0:
        pts = pts.reshape(1, 1)
    elif pts.ndim == 1:
        pts = pts.reshape(1, -1) if n_dim == 1 else pts.reshape(-1, 1)
    if pts.ndim != 2 or pts.shape[0] != n_dim:
        raise ValueError(
            f"Points must have shape ({n_dim}, n_points), got {np.shape(points)}"
        )
    return pts


def active_ids_at(hierarchy: LevelHierarchy, point: Sequence[float]) -> np.ndarray:
    """Global ids of the active functions whose support contains a point."""
    leaf = hierarchy.leaf_level_at(point)
    ids = [hierarchy.active_at(point, level)[1] for level in range(leaf + 1)]
    return np.concatenate(ids).astype(int)


def active_matrix(hierarchy: LevelHierarchy, points) -> Tuple[np.ndarray, np.ndarray]:
    """
    Active function ids for every point.

    Returns:
        (ids, counts): ids has shape (max_active, n_points) padded with
        INACTIVE, counts holds the number of active functions per point
    """
    pts = as_points(points, hierarchy.n_dim)
    per_point = [active_ids_at(hierarchy, pts[:, k]) for k in range(pts.shape[1])]
    counts = np.array([len(ids) for ids in per_point], dtype=int)
    result = np.full((counts.max(initial=0), pts.shape[1]), INACTIVE, dtype=int)
    for k, ids in enumerate(per_point):
        result[:len(ids), k] = ids
    return result, counts


def function_values(hierarchy: LevelHierarchy, idx: int, pres: Presentation,
                    level_eval: LevelEval) -> np.ndarray:
    """
    Values of one function from an evaluation of its presentation level.

    Parameters:
        idx: Global id of the function
        pres: Its presentation
        level_eval: (flat indices, values) of the presentation-level tensor
            basis at the point

    Returns:
        Array (n_components,)
    """
    flat, values = level_eval
    if isinstance(pres, Native):
        local = np.flatnonzero(flat == hierarchy.flat_tensor_index_of(idx))
        if len(local) == 0:
            return np.zeros(values.shape[0])
        return values[:, local[0]]
    return pres.combine(flat, values)


def _evaluate(hierarchy: LevelHierarchy, engine: TruncationEngine, points,
              order: int, cached: bool) -> np.ndarray:
    n_comp = len(derivative_orders(hierarchy.n_dim, order))
    pts = as_points(points, hierarchy.n_dim)
    per_point = [active_ids_at(hierarchy, pts[:, k]) for k in range(pts.shape[1])]
    max_active = max((len(ids) for ids in per_point), default=0)
    result = np.zeros((max_active * n_comp, pts.shape[1]))

    for k, ids in enumerate(per_point):
        point = pts[:, k]
        # Per-point scratch: level -> (flat indices, values)
        cache: Dict[int, LevelEval] = {}
        for row, idx in enumerate(ids):
            pres = engine.presentation(int(idx))
            if cached:
                if pres.level not in cache:
                    cache[pres.level] = hierarchy.get_basis(pres.level).eval(point, order)
                level_eval = cache[pres.level]
            else:
                level_eval = hierarchy.get_basis(pres.level).eval(point, order)
            result[row * n_comp:(row + 1) * n_comp, k] = function_values(
                hierarchy, int(idx), pres, level_eval)
    return result


def evaluate_generic(hierarchy: LevelHierarchy, engine: TruncationEngine,
                     points, order: int = 0) -> np.ndarray:
    """Evaluate all active functions, one tensor evaluation per function."""
    return _evaluate(hierarchy, engine, points, order, cached=False)


def evaluate_fast(hierarchy: LevelHierarchy, engine: TruncationEngine,
                  points, order: int = 0) -> np.ndarray:
    """Evaluate all active functions, one tensor evaluation per level and point."""
    return _evaluate(hierarchy, engine, points, order, cached=True)


def evaluate_single(hierarchy: LevelHierarchy, engine: TruncationEngine, idx: int,
                    points, order: int = 0) -> np.ndarray:
    """
    Evaluate one function at all points, including points outside its support.

    Returns:
        Array (n_components, n_points)
    """
    pres = engine.presentation(idx)
    n_comp = len(derivative_orders(hierarchy.n_dim, order))
    pts = as_points(points, hierarchy.n_dim)
    basis = hierarchy.get_basis(pres.level)
    result = np.zeros((n_comp, pts.shape[1]))
    for k in range(pts.shape[1]):
        hierarchy.check_point(pts[:, k])
        result[:, k] = function_values(hierarchy, idx, pres, basis.eval(pts[:, k], order))
    return result

