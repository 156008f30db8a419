"""Geometric algorithms used by the stereo front end."""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np

from stereoslam.lie import SE3

_QUALITY_RATIO = 1e-2


def triangulation(poses: Sequence[SE3], points: Sequence) -> np.ndarray | None:
    """Triangulate one point seen from several poses by linear SVD.

    ``points`` are the observations on each camera's normalised image plane.
    Returns the point in the world frame, or ``None`` when the solution is not
    well determined.
    """
    if len(poses) != len(points):
        raise ValueError("poses and points must have the same length")
    if len(poses) < 2:
        raise ValueError("at least two views are needed to triangulate")

    rows = []
    for pose, point in zip(poses, points):
        m = pose.matrix3x4()
        p = np.asarray(point, dtype=float)
        rows.append(p[0] * m[2] - m[0])
        rows.append(p[1] * m[2] - m[1])
    a = np.vstack(rows)

    _, singular, vt = np.linalg.svd(a, full_matrices=False)
    solution = vt[3]
    pt_world = solution[:3] / solution[3]
    if singular[3] / singular[2] < _QUALITY_RATIO:
        return pt_world
    return None


def to_vec2(point) -> np.ndarray:
    """Convert an object with ``x``/``y`` attributes, or a pair, to a 2-vector."""
    if hasattr(point, "x") and hasattr(point, "y"):
        return np.array([float(point.x), float(point.y)])
    x, y = point
    return np.array([float(x), float(y)])