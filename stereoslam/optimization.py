"""Vertices and reprojection edges for bundle adjustment.

Pose updates are applied by left multiplication with ``SE3.exp`` of a
``(upsilon, omega)`` twist. Edge errors are ``measurement - projection``, and
the Jacobians returned are those of that error.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field

import numpy as np

from stereoslam.lie import SE3

_DEPTH_EPS = 1e-18


def huber_weight(chi2: float, delta: float) -> float:
    """Return the Huber weight for a squared error ``chi2``.

    Errors with ``chi2 <= delta**2`` keep full weight; larger ones are scaled
    by ``delta / sqrt(chi2)``.
    """
    if delta <= 0:
        raise ValueError("delta must be positive")
    if chi2 < 0:
        raise ValueError("chi2 must not be negative")
    if chi2 <= delta * delta:
        return 1.0
    return delta / math.sqrt(chi2)


def _vector(value, n: int, name: str) -> np.ndarray:
    arr = np.array(value, dtype=float)
    if arr.shape != (n,):
        raise ValueError(f"{name} must have shape ({n},), got {arr.shape}")
    return arr


def _intrinsics(K) -> np.ndarray:
    mat = np.array(K, dtype=float)
    if mat.shape != (3, 3):
        raise ValueError(f"K must have shape (3, 3), got {mat.shape}")
    return mat


def _project(K: np.ndarray, pos_cam: np.ndarray) -> np.ndarray:
    pixel = K @ pos_cam
    return pixel[:2] / pixel[2]


def _pose_jacobian(K: np.ndarray, pos_cam: np.ndarray) -> np.ndarray:
    fx, fy = K[0, 0], K[1, 1]
    x, y, z = pos_cam
    zinv = 1.0 / (z + _DEPTH_EPS)
    zinv2 = zinv * zinv
    return np.array(
        [
            [-fx * zinv, 0.0, fx * x * zinv2, fx * x * y * zinv2, -fx - fx * x * x * zinv2, fx * y * zinv],
            [0.0, -fy * zinv, fy * y * zinv2, fy + fy * y * y * zinv2, -fy * x * y * zinv2, -fy * x * zinv],
        ]
    )


@dataclass
class VertexPose:
    """A camera pose T_cw under estimation."""

    estimate: SE3 = field(default_factory=SE3)
    id: int = 0

    def oplus(self, update) -> None:
        """Apply a left-multiplicative twist update."""
        self.estimate = SE3.exp(_vector(update, 6, "update")) @ self.estimate


@dataclass
class VertexXYZ:
    """A landmark position under estimation."""

    estimate: np.ndarray = field(default_factory=lambda: np.zeros(3))
    id: int = 0

    def __post_init__(self) -> None:
        self.estimate = _vector(self.estimate, 3, "estimate")

    def oplus(self, update) -> None:
        self.estimate = self.estimate + _vector(update, 3, "update")


class EdgeProjectionPoseOnly:
    """Reprojection of a fixed 3D point, constraining only the camera pose."""

    def __init__(self, pos, K, measurement=None) -> None:
        self.pos = _vector(pos, 3, "pos")
        self.K = _intrinsics(K)
        self.measurement = np.zeros(2) if measurement is None else _vector(measurement, 2, "measurement")
        self.information = np.eye(2)

    def compute_error(self, pose: SE3) -> np.ndarray:
        return self.measurement - _project(self.K, pose @ self.pos)

    def jacobian(self, pose: SE3) -> np.ndarray:
        """Return the 2x6 Jacobian of the error with respect to the pose."""
        return _pose_jacobian(self.K, pose @ self.pos)


class EdgeProjection:
    """Reprojection of a landmark into a camera of the rig, constraining both."""

    def __init__(self, K, cam_ext: SE3, measurement=None) -> None:
        self.K = _intrinsics(K)
        self.cam_ext = cam_ext
        self.measurement = np.zeros(2) if measurement is None else _vector(measurement, 2, "measurement")
        self.information = np.eye(2)

    def compute_error(self, pose: SE3, point) -> np.ndarray:
        pos_cam = self.cam_ext @ (pose @ _vector(point, 3, "point"))
        return self.measurement - _project(self.K, pos_cam)

    def jacobians(self, pose: SE3, point) -> tuple[np.ndarray, np.ndarray]:
        """Return the Jacobians of the error for the pose (2x6) and the point (2x3)."""
        pos_cam = self.cam_ext @ (pose @ _vector(point, 3, "point"))
        j_pose = _pose_jacobian(self.K, pos_cam)
        j_point = j_pose[:, :3] @ self.cam_ext.rotation_matrix @ pose.rotation_matrix
        return j_pose, j_point