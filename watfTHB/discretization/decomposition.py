"""
Decomposition of a 2D hierarchical mesh into single-level regions.

The input is a level map: the leaf level of every element of the finest
grid, indexed [i, j] with i along the first parametric direction. Every
connected set of equal-level cells (4-connectivity) becomes one region,
described by

- its axis-aligned bounding box (low_x, low_y, upp_x, upp_y), and
- its boundary: an outer polyline followed by hole polylines.

Coordinates are vertex indices of the finest grid, so a 4x4 element grid
has vertices 0..4 in each direction. A polyline is a list of segments
(x0, y0, x1, y1), each ending where the next one starts. Outer curves
run counter-clockwise and holes clockwise, so the region is always on
the left.

Boundary tracing walks unit edges and may pass twice through a vertex
where two parts of the boundary touch diagonally. Such a walk is split
at the first vertex met twice into two closed loops, repeatedly, until
every loop is simple.
"""

import logging
import numpy as np
from scipy import ndimage
from typing import Dict, List, Optional, Sequence, Tuple
from dataclasses import dataclass, field

from ..errors import NumericalDegeneracy, StructuralError

logger = logging.getLogger(__name__)

Vertex = Tuple[int, int]
Segment = Tuple[int, int, int, int]
Polyline = List[Segment]


@dataclass
class DomainDecomposition:
    """
    Single-level regions of a hierarchical mesh.

    Attributes:
        boxes: boxes[level][k] is the bounding box of the k-th region of level
        trim_curves: trim_curves[level][k] is the list of polylines of that
            region, outer curve first
    """
    boxes: List[List[Tuple[int, int, int, int]]] = field(default_factory=list)
    trim_curves: List[List[List[Polyline]]] = field(default_factory=list)

    @property
    def n_regions(self) -> int:
        return sum(len(regions) for regions in self.boxes)

    def regions(self):
        """Iterate over (level, bounding box, polylines) of every region."""
        for level, (boxes, curves) in enumerate(zip(self.boxes, self.trim_curves)):
            for box, polylines in zip(boxes, curves):
                yield level, box, polylines


def _boundary_edges(mask: np.ndarray) -> List[Tuple[Vertex, Vertex]]:
    """Directed unit edges with the masked cells on their left."""
    padded = np.pad(mask, 1)
    inner = padded[1:-1, 1:-1]
    edges = []
    # (neighbour offset, edge start, edge end) relative to cell (i, j)
    sides = [
        ((0, -1), (0, 0), (1, 0)),   # bottom, running +x
        ((1, 0), (1, 0), (1, 1)),    # right, running +y
        ((0, 1), (1, 1), (0, 1)),    # top, running -x
        ((-1, 0), (0, 1), (0, 0)),   # left, running -y
    ]
    nx, ny = mask.shape
    for (di, dj), (si, sj), (ei, ej) in sides:
        neighbour = padded[1 + di:1 + di + nx, 1 + dj:1 + dj + ny]
        for i, j in zip(*np.nonzero(inner & ~neighbour)):
            edges.append(((int(i) + si, int(j) + sj), (int(i) + ei, int(j) + ej)))
    return edges


def trace_loops(mask: np.ndarray) -> List[List[Vertex]]:
    """
    Chain the boundary edges of a cell mask into closed vertex loops.

    Each loop lists its vertices once; the closing edge runs from the last
    vertex back to the first. A loop may visit a vertex twice where the
    boundary touches itself.

    Raises:
        NumericalDegeneracy: the edges cannot be chained into closed loops
    """
    outgoing: Dict[Vertex, List[Vertex]] = {}
    for start, end in sorted(_boundary_edges(mask.astype(bool))):
        outgoing.setdefault(start, []).append(end)

    loops = []
    while outgoing:
        start = min(outgoing)
        loop = [start]
        current = start
        while current in outgoing:
            targets = outgoing[current]
            nxt = targets.pop(0)
            if not targets:
                del outgoing[current]
            current = nxt
            loop.append(current)
        if current != start:
            raise NumericalDegeneracy(
                f"Boundary walk from {start} stopped at {current} without closing"
            )
        loops.append(loop[:-1])
    return loops


def _split_once(loop: List[Vertex]) -> List[List[Vertex]]:
    seen: Dict[Vertex, int] = {}
    for j, v in enumerate(loop):
        if v in seen:
            i = seen[v]
            return [loop[i:j], loop[:i] + loop[j:]]
        seen[v] = j
    return [loop]


def split_vertex_loop(loop: List[Vertex]) -> List[List[Vertex]]:
    """
    Split a closed vertex loop into simple loops.

    The loop is cut at the first vertex met twice: the vertices between
    the two visits form one loop and the remaining ones the other. Both
    parts are split again until no vertex repeats.
    """
    pending = [list(loop)]
    simple = []
    n_splits = 0
    while pending:
        current = pending.pop(0)
        parts = _split_once(current)
        if len(parts) == 1:
            simple.append(current)
        else:
            n_splits += 1
            pending = parts + pending
    if n_splits > 1:
        logger.warning(
            "Boundary loop with %d vertices touched itself %d times; "
            "split at the first repeated vertex each time", len(loop), n_splits)
    for part in simple:
        if len(part) < 3 or signed_area(part) == 0:
            raise NumericalDegeneracy(f"Degenerate boundary loop {part}")
    return simple


def split_cycles(polyline: Sequence[Segment]) -> List[Polyline]:
    """
    Split a closed polyline that revisits a vertex into simple closed polylines.

    Parameters:
        polyline: Closed chain of segments (x0, y0, x1, y1)

    Returns:
        Simple closed polylines, in the order they are cut off

    Raises:
        NumericalDegeneracy: the segments do not form a closed chain
    """
    polyline = [tuple(s) for s in polyline]
    for k, seg in enumerate(polyline):
        nxt = polyline[(k + 1) % len(polyline)]
        if seg[2:] != nxt[:2]:
            raise NumericalDegeneracy(
                f"Polyline is not closed: segment {k} ends at {seg[2:]}, "
                f"next starts at {nxt[:2]}"
            )
    vertices = [(s[0], s[1]) for s in polyline]
    return [_to_segments(part, simplify=False)
            for part in split_vertex_loop(vertices)]


def signed_area(loop: Sequence[Vertex]) -> float:
    """Shoelace area, positive for counter-clockwise loops."""
    xs = np.array([v[0] for v in loop], dtype=float)
    ys = np.array([v[1] for v in loop], dtype=float)
    return 0.5 * float(np.sum(xs * np.roll(ys, -1) - np.roll(xs, -1) * ys))


def _to_segments(loop: List[Vertex], simplify: bool = True) -> Polyline:
    """Segments of a loop starting at its smallest vertex, collinear edges merged."""
    k = loop.index(min(loop))
    loop = loop[k:] + loop[:k]
    if simplify:
        corners = []
        n = len(loop)
        for idx, v in enumerate(loop):
            prev, nxt = loop[idx - 1], loop[(idx + 1) % n]
            d1 = (v[0] - prev[0], v[1] - prev[1])
            d2 = (nxt[0] - v[0], nxt[1] - v[1])
            if d1[0] * d2[1] - d1[1] * d2[0] != 0:
                corners.append(v)
        loop = corners
    return [(a[0], a[1], b[0], b[1]) for a, b in zip(loop, loop[1:] + loop[:1])]


def region_polylines(mask: np.ndarray) -> List[Polyline]:
    """
    Outer polyline and holes of one connected cell mask.

    Raises:
        NumericalDegeneracy: the boundary does not yield exactly one
            counter-clockwise outer loop
    """
    loops = []
    for loop in trace_loops(mask):
        loops.extend(split_vertex_loop(loop))
    outer = [loop for loop in loops if signed_area(loop) > 0]
    holes = [loop for loop in loops if signed_area(loop) < 0]
    if len(outer) != 1 or len(outer) + len(holes) != len(loops):
        raise NumericalDegeneracy(
            f"Region boundary gave {len(outer)} outer loop(s) and "
            f"{len(loops) - len(outer)} other loop(s)"
        )
    holes.sort(key=min)
    return [_to_segments(loop) for loop in outer + holes]


def decompose_level_map(level_map: np.ndarray, n_levels: Optional[int] = None) -> DomainDecomposition:
    """
    Split a 2D level map into maximal connected single-level regions.

    Parameters:
        level_map: Leaf level per finest element, negative for uncovered cells
        n_levels: Number of levels to report (defaults to max level + 1)

    Returns:
        DomainDecomposition with one entry list per level

    Raises:
        StructuralError: some cell is not covered by any level
        ValueError: the map is not two-dimensional
    """
    level_map = np.asarray(level_map)
    if level_map.ndim != 2:
        raise ValueError(
            f"Domain decomposition needs a 2D level map, got {level_map.ndim}D"
        )
    if level_map.size == 0 or level_map.min() < 0:
        raise StructuralError(
            f"{int(np.sum(level_map < 0))} cell(s) are not covered by any level"
        )
    if n_levels is None:
        n_levels = int(level_map.max()) + 1

    result = DomainDecomposition()
    for level in range(n_levels):
        labels, n_regions = ndimage.label(level_map == level)
        boxes, curves = [], []
        for label in range(1, n_regions + 1):
            mask = labels == label
            xs, ys = np.nonzero(mask)
            boxes.append((int(xs.min()), int(ys.min()),
                          int(xs.max()) + 1, int(ys.max()) + 1))
            curves.append(region_polylines(mask))
        result.boxes.append(boxes)
        result.trim_curves.append(curves)
    return result
