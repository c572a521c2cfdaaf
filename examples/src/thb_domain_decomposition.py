#!/usr/bin/env python3
"""
Decompose a refined 2D THB mesh into single-level regions.

Each region is drawn with its trimming curves: the outer polyline in a
solid line and the holes dashed, coloured by level.

Created: 2025-02-05
Author: Wataru Fukuda
"""

import sys
import os
import argparse
import logging

# Use Agg backend if --save is specified
if '--save' in sys.argv:
    import matplotlib
    matplotlib.use('Agg')

import matplotlib.pyplot as plt

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from watfTHB.discretization.knot_vector import make_open_knot_vector
from watfTHB.geometry.thb import THBSplineBasis


def plot_regions(decomposition, shape, save_path=None):
    """
    Plot the trimming curves of every region.

    Parameters:
        decomposition: DomainDecomposition
        shape: Number of finest elements per direction
        save_path: If provided, save figure to this path
    """
    fig, ax = plt.subplots(figsize=(8, 8))
    colors = plt.cm.viridis([0.1, 0.5, 0.9, 0.3, 0.7])

    for level, box, polylines in decomposition.regions():
        color = colors[level % len(colors)]
        for k, polyline in enumerate(polylines):
            for x0, y0, x1, y1 in polyline:
                ax.plot([x0, x1], [y0, y1], color=color,
                        linestyle='-' if k == 0 else '--', linewidth=2)
        cx, cy = 0.5 * (box[0] + box[2]), 0.5 * (box[1] + box[3])
        ax.annotate(f'L{level}', xy=(cx, cy), ha='center', color=color)

    ax.set_xlim(-0.5, shape[0] + 0.5)
    ax.set_ylim(-0.5, shape[1] + 0.5)
    ax.set_aspect('equal')
    ax.set_title('Single-level regions (finest element indices)')
    ax.grid(True, alpha=0.3)

    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"Saved: {save_path}")

    return fig


def main():
    parser = argparse.ArgumentParser(description="Domain decomposition of a THB mesh")
    parser.add_argument("--save", action="store_true",
                        help="Save figure to file")
    parser.add_argument("--verbose", action="store_true",
                        help="Show debug logging of the library")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    print("=" * 60)
    print("THB Domain Decomposition")
    print("=" * 60)

    kv = make_open_knot_vector(n_basis=6, degree=2, domain=(0.0, 1.0))
    thb = THBSplineBasis.from_knot_vectors(kv, kv, boxes=[
        (1, (2, 2), (6, 6)),
        (2, (6, 6), (10, 10)),
        (1, (0, 6), (2, 8)),
    ])

    decomposition = thb.decompose_domain()
    print(f"\nLevels: {thb.n_levels}, regions: {decomposition.n_regions}")
    for level, box, polylines in decomposition.regions():
        print(f"  L{level} box={box} holes={len(polylines) - 1}")
        for polyline in polylines:
            print(f"    {polyline}")

    save_path = "thb_domain_decomposition.png" if args.save else None
    plot_regions(decomposition, thb.level_map.shape, save_path=save_path)

    print("\n" + "=" * 60)

    if not args.save:
        plt.show()


if __name__ == "__main__":
    main()
