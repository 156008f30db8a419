"""Rotation and rigid-body transform groups SO(3) and SE(3) with their Lie algebras.

Tangent vectors of SE(3) are ordered ``(upsilon, omega)``: translational part
first, rotational part second.
"""

from __future__ import annotations

import math

import numpy as np

_EPS = 1e-10
_ORTHO_TOL = 1e-6


def _as_vector(v, n: int, name: str) -> np.ndarray:
    arr = np.asarray(v, dtype=float)
    if arr.shape != (n,):
        raise ValueError(f"{name} must have shape ({n},), got {arr.shape}")
    return arr


def hat(v) -> np.ndarray:
    """Return the skew-symmetric matrix of a 3-vector."""
    x, y, z = _as_vector(v, 3, "v")
    return np.array(
        [[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]],
        dtype=float,
    )


def vee(m) -> np.ndarray:
    """Return the 3-vector of a skew-symmetric matrix."""
    mat = np.asarray(m, dtype=float)
    if mat.shape != (3, 3):
        raise ValueError(f"matrix must have shape (3, 3), got {mat.shape}")
    return np.array([mat[2, 1], mat[0, 2], mat[1, 0]])


def _matrix_from_quaternion(w: float, x: float, y: float, z: float) -> np.ndarray:
    norm = math.sqrt(w * w + x * x + y * y + z * z)
    if norm < _EPS:
        raise ValueError("quaternion must not be zero")
    w, x, y, z = w / norm, x / norm, y / norm, z / norm
    return np.array(
        [
            [1 - 2 * (y * y + z * z), 2 * (x * y - w * z), 2 * (x * z + w * y)],
            [2 * (x * y + w * z), 1 - 2 * (x * x + z * z), 2 * (y * z - w * x)],
            [2 * (x * z - w * y), 2 * (y * z + w * x), 1 - 2 * (x * x + y * y)],
        ]
    )


def _quaternion_from_matrix(r: np.ndarray) -> np.ndarray:
    diag_sum = float(r[0, 0] + r[1, 1] + r[2, 2])
    if diag_sum > 0:
        s = math.sqrt(diag_sum + 1.0) * 2
        q = [0.25 * s, (r[2, 1] - r[1, 2]) / s, (r[0, 2] - r[2, 0]) / s, (r[1, 0] - r[0, 1]) / s]
    elif r[0, 0] > r[1, 1] and r[0, 0] > r[2, 2]:
        s = math.sqrt(1.0 + r[0, 0] - r[1, 1] - r[2, 2]) * 2
        q = [(r[2, 1] - r[1, 2]) / s, 0.25 * s, (r[0, 1] + r[1, 0]) / s, (r[0, 2] + r[2, 0]) / s]
    elif r[1, 1] > r[2, 2]:
        s = math.sqrt(1.0 + r[1, 1] - r[0, 0] - r[2, 2]) * 2
        q = [(r[0, 2] - r[2, 0]) / s, (r[0, 1] + r[1, 0]) / s, 0.25 * s, (r[1, 2] + r[2, 1]) / s]
    else:
        s = math.sqrt(1.0 + r[2, 2] - r[0, 0] - r[1, 1]) * 2
        q = [(r[1, 0] - r[0, 1]) / s, (r[0, 2] + r[2, 0]) / s, (r[1, 2] + r[2, 1]) / s, 0.25 * s]
    quat = np.array(q)
    quat /= np.linalg.norm(quat)
    if quat[0] < 0:
        quat = -quat
    return quat


def _apply(rotation: np.ndarray, translation: np.ndarray, points) -> np.ndarray:
    p = np.asarray(points, dtype=float)
    if p.ndim == 1:
        if p.shape != (3,):
            raise ValueError(f"point must have shape (3,), got {p.shape}")
        return rotation @ p + translation
    if p.ndim == 2 and p.shape[1] == 3:
        return p @ rotation.T + translation
    raise ValueError(f"points must have shape (3,) or (N, 3), got {p.shape}")


class SO3:
    """A rotation in three dimensions."""

    __slots__ = ("_matrix",)

    def __init__(self, matrix=None):
        if matrix is None:
            self._matrix = np.eye(3)
            return
        mat = np.array(matrix, dtype=float)
        if mat.shape != (3, 3):
            raise ValueError(f"rotation matrix must have shape (3, 3), got {mat.shape}")
        if not np.allclose(mat @ mat.T, np.eye(3), atol=_ORTHO_TOL) or np.linalg.det(mat) < 0:
            raise ValueError("matrix is not a proper rotation")
        self._matrix = mat

    @classmethod
    def from_quaternion(cls, w, x, y, z) -> "SO3":
        """Build a rotation from quaternion coefficients; the quaternion is normalised."""
        return cls(_matrix_from_quaternion(float(w), float(x), float(y), float(z)))

    @classmethod
    def exp(cls, omega) -> "SO3":
        """Exponential map from a rotation vector."""
        w = _as_vector(omega, 3, "omega")
        theta = float(np.linalg.norm(w))
        k = hat(w)
        if theta < _EPS:
            return cls(_orthonormalize(np.eye(3) + k + 0.5 * k @ k))
        a = math.sin(theta) / theta
        b = (1.0 - math.cos(theta)) / (theta * theta)
        return cls(np.eye(3) + a * k + b * k @ k)

    def log(self) -> np.ndarray:
        """Logarithmic map to a rotation vector with angle in [0, pi]."""
        w, x, y, z = _quaternion_from_matrix(self._matrix)
        v = np.array([x, y, z])
        squared_n = float(v @ v)
        if squared_n < _EPS * _EPS:
            factor = 2.0 / w - 2.0 * squared_n / (w ** 3)
        else:
            n = math.sqrt(squared_n)
            if abs(w) < _EPS:
                factor = math.pi / n
            else:
                factor = 2.0 * math.atan(n / w) / n
        return factor * v

    def inverse(self) -> "SO3":
        return SO3(self._matrix.T)

    def unit_quaternion(self) -> np.ndarray:
        """Return the unit quaternion as ``(w, x, y, z)`` with ``w >= 0``."""
        return _quaternion_from_matrix(self._matrix)

    def matrix(self) -> np.ndarray:
        return self._matrix.copy()

    def __matmul__(self, other):
        if isinstance(other, SO3):
            return SO3(_orthonormalize(self._matrix @ other._matrix))
        return _apply(self._matrix, np.zeros(3), other)

    def __repr__(self) -> str:
        return f"SO3({self._matrix.tolist()!r})"


def _orthonormalize(mat: np.ndarray) -> np.ndarray:
    u, _, vt = np.linalg.svd(mat)
    r = u @ vt
    if np.linalg.det(r) < 0:
        u[:, -1] = -u[:, -1]
        r = u @ vt
    return r


class SE3:
    """A rigid-body transform: rotation followed by translation."""

    __slots__ = ("_so3", "_translation")

    def __init__(self, rotation=None, translation=None):
        if rotation is None:
            self._so3 = SO3()
        elif isinstance(rotation, SO3):
            self._so3 = rotation
        else:
            self._so3 = SO3(rotation)
        if translation is None:
            self._translation = np.zeros(3)
        else:
            self._translation = _as_vector(translation, 3, "translation").copy()

    @classmethod
    def from_quaternion(cls, quaternion, translation) -> "SE3":
        """Build a transform from a ``(w, x, y, z)`` quaternion and a translation."""
        q = _as_vector(quaternion, 4, "quaternion")
        return cls(SO3.from_quaternion(*q), translation)

    @property
    def so3(self) -> SO3:
        return self._so3

    @property
    def translation(self) -> np.ndarray:
        return self._translation.copy()

    @property
    def rotation_matrix(self) -> np.ndarray:
        return self._so3.matrix()

    @classmethod
    def exp(cls, xi) -> "SE3":
        """Exponential map from a twist ``(upsilon, omega)``."""
        x = _as_vector(xi, 6, "xi")
        upsilon, omega = x[:3], x[3:]
        rotation = SO3.exp(omega)
        theta = float(np.linalg.norm(omega))
        k = hat(omega)
        if theta < _EPS:
            v = np.eye(3) + 0.5 * k + k @ k / 6.0
        else:
            v = (
                np.eye(3)
                + (1.0 - math.cos(theta)) / theta ** 2 * k
                + (theta - math.sin(theta)) / theta ** 3 * k @ k
            )
        return cls(rotation, v @ upsilon)

    def log(self) -> np.ndarray:
        """Logarithmic map to a twist ``(upsilon, omega)``."""
        omega = self._so3.log()
        theta = float(np.linalg.norm(omega))
        k = hat(omega)
        if theta < _EPS:
            v_inv = np.eye(3) - 0.5 * k + k @ k / 12.0
        else:
            half = 0.5 * theta
            coeff = (1.0 - theta * math.cos(half) / (2.0 * math.sin(half))) / theta ** 2
            v_inv = np.eye(3) - 0.5 * k + coeff * k @ k
        return np.concatenate([v_inv @ self._translation, omega])

    def inverse(self) -> "SE3":
        r_inv = self._so3.inverse()
        return SE3(r_inv, -(r_inv.matrix() @ self._translation))

    def matrix(self) -> np.ndarray:
        """Return the homogeneous 4x4 matrix."""
        m = np.eye(4)
        m[:3, :3] = self._so3.matrix()
        m[:3, 3] = self._translation
        return m

    def matrix3x4(self) -> np.ndarray:
        return self.matrix()[:3, :]

    def adjoint(self) -> np.ndarray:
        """Return the 6x6 adjoint matrix acting on ``(upsilon, omega)`` twists."""
        r = self._so3.matrix()
        adj = np.zeros((6, 6))
        adj[:3, :3] = r
        adj[:3, 3:] = hat(self._translation) @ r
        adj[3:, 3:] = r
        return adj

    def __matmul__(self, other):
        if isinstance(other, SE3):
            r = self._so3.matrix()
            return SE3(self._so3 @ other._so3, r @ other._translation + self._translation)
        return _apply(self._so3.matrix(), self._translation, other)

    def __repr__(self) -> str:
        return f"SE3(rotation={self._so3.matrix().tolist()!r}, translation={self._translation.tolist()!r})"