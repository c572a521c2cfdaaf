#!/usr/bin/env python3
"""
Visualize THB basis functions as 1D slices.

This script cuts through a refined 2D parametric domain at a fixed eta
value and plots the restricted basis, split into native and truncated
functions per level, together with their sum.

Created: 2025-02-05
Author: Wataru Fukuda
"""

import sys
import os
import argparse
import numpy as np

# Use Agg backend if --save is specified
if '--save' in sys.argv:
    import matplotlib
    matplotlib.use('Agg')

import matplotlib.pyplot as plt

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

from watfTHB.discretization.knot_vector import make_open_knot_vector
from watfTHB.geometry.thb import THBSplineBasis


def refined_intervals(thb):
    """Parametric intervals of a 1D basis covered by levels >= 1."""
    level_map = thb.level_map
    finest = thb.hierarchy.get_basis(thb.max_level()).knot_vectors[0]
    knots = finest.unique_knots
    intervals = []
    start = None
    for e, level in enumerate(level_map):
        if level > 0 and start is None:
            start = knots[e]
        if level == 0 and start is not None:
            intervals.append((start, knots[e]))
            start = None
    if start is not None:
        intervals.append((start, knots[-1]))
    return intervals


def plot_1d_slice(sliced, eta_value, n_points=200, save_path=None):
    """
    Plot the functions of a sliced basis, grouped by level and truncation.

    Parameters:
        sliced: Univariate THBSplineBasis
        eta_value: eta value the slice was taken at (for titles)
        n_points: Number of evaluation points in xi
        save_path: If provided, save figure to this path
    """
    xi_grid = np.linspace(0, 1, n_points)
    points = xi_grid[np.newaxis, :]

    groups = {}
    for idx in range(sliced.size()):
        level = sliced.level_of(idx)
        key = (level, sliced.is_truncated(idx))
        groups.setdefault(key, []).append((idx, sliced.eval_single(idx, points)[0]))

    basis_sum = sliced.evaluate(points).sum(axis=0)
    intervals = refined_intervals(sliced)

    fig, axes = plt.subplots(len(groups) + 1, 1, figsize=(14, 3 * (len(groups) + 1)),
                             sharex=True)

    for ax, key in zip(axes, sorted(groups)):
        level, truncated = key
        for idx, N in groups[key]:
            ax.plot(xi_grid, N, label=f'#{idx}', alpha=0.8,
                    linewidth=2 if truncated else 1)
        for a, b in intervals:
            ax.axvspan(a, b, alpha=0.1, color='red')
        kind = 'Truncated' if truncated else 'Native'
        ax.set_title(f'L{level} {kind} Basis Functions (eta={eta_value})')
        ax.set_ylabel('Basis value')
        ax.set_ylim(-0.1, 1.1)
        ax.legend(loc='upper right', fontsize=8, ncol=6)
        ax.grid(True, alpha=0.3)

    ax = axes[-1]
    ax.plot(xi_grid, basis_sum, 'k-', linewidth=2, label='Sum of all basis')
    ax.set_xlabel('xi')
    ax.set_ylabel('Sum')
    ax.set_title(f'Partition of Unity: sum = {basis_sum.min():.6f} to {basis_sum.max():.6f}')
    ax.set_ylim(0.9, 1.1)
    ax.legend(loc='upper right')
    ax.grid(True, alpha=0.3)

    plt.tight_layout()

    if save_path:
        fig.savefig(save_path, dpi=150, bbox_inches='tight')
        print(f"Saved: {save_path}")

    return fig


def main():
    parser = argparse.ArgumentParser(description="1D slice of THB basis functions")
    parser.add_argument("--eta", type=float, default=0.125,
                        help="Eta value for the slice (default: 0.125)")
    parser.add_argument("--n-points", type=int, default=200,
                        help="Number of evaluation points")
    parser.add_argument("--save", action="store_true",
                        help="Save figures to files")
    args = parser.parse_args()

    print("=" * 60)
    print("THB Basis Function 1D Slice Visualization")
    print("=" * 60)

    print("\n1. Creating THB basis (4x4 elements, p=2)...")
    kv = make_open_knot_vector(n_basis=6, degree=2, domain=(0.0, 1.0))
    thb = THBSplineBasis.from_knot_vectors(kv, kv)

    print("\n2. Refining the lower-left corner twice...")
    thb.refine_boxes([(1, (0, 0), (4, 4)), (2, (0, 0), (4, 4))])

    print(f"   Levels:        {thb.n_levels}")
    print(f"   Active basis:  {thb.size()}")
    print(f"   Truncated:     {thb.num_truncated()}")

    print(f"\n3. Slicing at eta={args.eta} and plotting...")
    sliced = thb.basis_slice(1, args.eta)
    print(f"   Slice basis:   {sliced}")
    save_path = "thb_basis_1d_slice.png" if args.save else None
    plot_1d_slice(sliced, args.eta, n_points=args.n_points, save_path=save_path)

    print("\n" + "=" * 60)

    if not args.save:
        plt.show()


if __name__ == "__main__":
    main()
