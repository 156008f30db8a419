"""Pose-graph optimisation over SE(3) with poses kept on the Lie group.

Graphs are read from and written to the ``VERTEX_SE3:QUAT`` / ``EDGE_SE3:QUAT``
text format, and optimised by Levenberg-Marquardt with left-multiplicative
updates.
"""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import TextIO

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import spsolve

from stereoslam.lie import SE3

VERTEX_TAG = "VERTEX_SE3:QUAT"
EDGE_TAG = "EDGE_SE3:QUAT"
RESULT_FILE = "result_lie.g2o"
DEFAULT_ITERATIONS = 30

_TAU = 1e-5
_MAX_TRIALS = 10
_GOOD_STEP_LOWER = 1.0 / 3.0
_GOOD_STEP_UPPER = 2.0 / 3.0
_BLOCK_ROWS, _BLOCK_COLS = (idx.ravel() for idx in np.indices((6, 6)))
_UPPER = np.triu_indices(6)


def jr_inv(e: SE3) -> np.ndarray:
    """Approximate the inverse right Jacobian of SE(3) at ``e``.

    The approximation used is the identity, which is exact at zero error.
    """
    if not isinstance(e, SE3):
        raise TypeError("jr_inv expects an SE3 transform")
    return np.eye(6)


@dataclass
class PoseVertex:
    """A pose to be estimated; fixed vertices are held constant."""

    id: int
    estimate: SE3 = field(default_factory=SE3)
    fixed: bool = False

    def oplus(self, update) -> None:
        """Apply a left-multiplicative update."""
        self.estimate = SE3.exp(update) @ self.estimate


@dataclass
class PoseEdge:
    """A relative-pose measurement between two vertices."""

    id: int
    first: int
    second: int
    measurement: SE3 = field(default_factory=SE3)
    information: np.ndarray = field(default_factory=lambda: np.eye(6))

    def compute_error(self, v1: SE3, v2: SE3) -> np.ndarray:
        """Return ``log(Z^-1 * v1^-1 * v2)``."""
        return (self.measurement.inverse() @ v1.inverse() @ v2).log()

    def linearize(self, v1: SE3, v2: SE3) -> tuple[np.ndarray, np.ndarray]:
        """Return the Jacobians of the error with respect to both poses."""
        error = self.compute_error(v1, v2)
        j = jr_inv(SE3.exp(error))
        adj = v2.inverse().adjoint()
        return -j @ adj, j @ adj


def _floats(tokens: list[str], lineno: int) -> list[float]:
    try:
        return [float(t) for t in tokens]
    except ValueError as exc:
        raise ValueError(f"line {lineno}: {exc}") from None


def _int(token: str, lineno: int) -> int:
    try:
        return int(token)
    except ValueError:
        raise ValueError(f"line {lineno}: invalid vertex id {token!r}") from None


def _pose_from_fields(data: list[float]) -> SE3:
    tx, ty, tz, qx, qy, qz, qw = data
    return SE3.from_quaternion([qw, qx, qy, qz], [tx, ty, tz])


def _pose_fields(pose: SE3) -> list[float]:
    w, x, y, z = pose.so3.unit_quaternion()
    return [*pose.translation, x, y, z, w]


def _fmt(values) -> str:
    return " ".join(repr(float(v)) for v in values)


class PoseGraph:
    """A set of pose vertices joined by relative-pose edges."""

    def __init__(self) -> None:
        self.vertices: dict[int, PoseVertex] = {}
        self.edges: list[PoseEdge] = []

    def add_vertex(self, vertex: PoseVertex) -> None:
        if vertex.id in self.vertices:
            raise ValueError(f"duplicate vertex id {vertex.id}")
        self.vertices[vertex.id] = vertex

    def add_edge(self, edge: PoseEdge) -> None:
        for vid in (edge.first, edge.second):
            if vid not in self.vertices:
                raise KeyError(f"edge {edge.id} refers to unknown vertex {vid}")
        self.edges.append(edge)

    @classmethod
    def read(cls, stream: TextIO) -> "PoseGraph":
        """Parse a graph; vertex 0 is held fixed and unknown lines are skipped."""
        graph = cls()
        for lineno, line in enumerate(stream, 1):
            tokens = line.split()
            if not tokens:
                continue
            tag, *fields = tokens
            if tag == VERTEX_TAG:
                if len(fields) < 8:
                    raise ValueError(f"line {lineno}: vertex needs an id and 7 values")
                index = _int(fields[0], lineno)
                pose = _pose_from_fields(_floats(fields[1:8], lineno))
                try:
                    graph.add_vertex(PoseVertex(index, pose, fixed=index == 0))
                except ValueError as exc:
                    raise ValueError(f"line {lineno}: {exc}") from None
            elif tag == EDGE_TAG:
                if len(fields) < 9:
                    raise ValueError(f"line {lineno}: edge needs two ids and 7 values")
                first, second = _int(fields[0], lineno), _int(fields[1], lineno)
                measurement = _pose_from_fields(_floats(fields[2:9], lineno))
                values = _floats(fields[9:9 + len(_UPPER[0])], lineno)
                information = np.eye(6)
                n = len(values)
                rows, cols = _UPPER[0][:n], _UPPER[1][:n]
                information[rows, cols] = values
                information[cols, rows] = values
                edge = PoseEdge(len(graph.edges), first, second, measurement, information)
                try:
                    graph.add_edge(edge)
                except KeyError as exc:
                    raise ValueError(f"line {lineno}: {exc.args[0]}") from None
        return graph

    def write(self, stream: TextIO) -> None:
        """Write all vertices, then all edges, in the text format."""
        for vertex in self.vertices.values():
            stream.write(f"{VERTEX_TAG} {vertex.id} {_fmt(_pose_fields(vertex.estimate))}\n")
        for edge in self.edges:
            upper = edge.information[_UPPER]
            stream.write(
                f"{EDGE_TAG} {edge.first} {edge.second} "
                f"{_fmt(_pose_fields(edge.measurement))} {_fmt(upper)}\n"
            )

    def total_error(self) -> float:
        """Return the sum of ``e^T * Omega * e`` over all edges."""
        total = 0.0
        for edge in self.edges:
            e = edge.compute_error(
                self.vertices[edge.first].estimate, self.vertices[edge.second].estimate
            )
            total += float(e @ edge.information @ e)
        return total

    def _build_system(self, index: dict[int, int], dim: int):
        rows, cols, vals = [], [], []
        gradient = np.zeros(dim)
        for edge in self.edges:
            v1 = self.vertices[edge.first].estimate
            v2 = self.vertices[edge.second].estimate
            error = edge.compute_error(v1, v2)
            ji, jj = edge.linearize(v1, v2)
            omega = edge.information
            blocks = [
                (index[vid], jac)
                for vid, jac in ((edge.first, ji), (edge.second, jj))
                if vid in index
            ]
            for a, ja in blocks:
                gradient[6 * a:6 * a + 6] -= ja.T @ omega @ error
                for c, jc in blocks:
                    rows.append(_BLOCK_ROWS + 6 * a)
                    cols.append(_BLOCK_COLS + 6 * c)
                    vals.append((ja.T @ omega @ jc).ravel())
        if rows:
            hessian = sparse.coo_matrix(
                (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
                shape=(dim, dim),
            ).tocsc()
        else:
            hessian = sparse.csc_matrix((dim, dim))
        return hessian, gradient

    def optimize(self, iterations: int = DEFAULT_ITERATIONS, verbose: bool = False) -> float:
        """Run Levenberg-Marquardt and return the final total error."""
        index = {vid: k for k, vid in enumerate(v.id for v in self.vertices.values() if not v.fixed)}
        chi2 = self.total_error()
        if not index or not self.edges:
            return chi2
        dim = 6 * len(index)
        identity = sparse.identity(dim, format="csc")
        lam = None
        ni = 2.0
        for iteration in range(iterations):
            hessian, gradient = self._build_system(index, dim)
            if lam is None:
                lam = _TAU * max(float(hessian.diagonal().max()), 1e-12)
            accepted = False
            for _ in range(_MAX_TRIALS):
                dx = np.atleast_1d(spsolve((hessian + lam * identity).tocsc(), gradient))
                if not np.all(np.isfinite(dx)):
                    lam *= ni
                    ni *= 2.0
                    continue
                backup = {vid: self.vertices[vid].estimate for vid in index}
                for vid, k in index.items():
                    self.vertices[vid].oplus(dx[6 * k:6 * k + 6])
                new_chi2 = self.total_error()
                scale = float(dx @ (lam * dx + gradient)) + 1e-3
                rho = (chi2 - new_chi2) / scale
                if rho > 0 and np.isfinite(new_chi2):
                    alpha = min(1.0 - (2.0 * rho - 1.0) ** 3, _GOOD_STEP_UPPER)
                    lam *= max(_GOOD_STEP_LOWER, alpha)
                    ni = 2.0
                    chi2 = new_chi2
                    accepted = True
                    break
                for vid, pose in backup.items():
                    self.vertices[vid].estimate = pose
                lam *= ni
                ni *= 2.0
            if verbose:
                print(f"iteration= {iteration}\t chi2= {chi2:.6f}\t lambda= {lam:.6g}")
            if not accepted:
                break
        return chi2


def main(argv=None) -> int:
    """Optimise the pose graph in the file given and save the result."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 1:
        print("Usage: posegraph sphere.g2o")
        return 1
    path = Path(args[0])
    try:
        with path.open() as fin:
            graph = PoseGraph.read(fin)
    except OSError:
        print(f"file {path} does not exist.")
        return 1

    print(f"read total {len(graph.vertices)} vertices, {len(graph.edges)} edges.")
    print("optimizing ...")
    graph.optimize(DEFAULT_ITERATIONS, verbose=True)
    print("saving optimization results ...")
    with open(RESULT_FILE, "w") as fout:
        graph.write(fout)
    return 0


if __name__ == "__main__":
    sys.exit(main())