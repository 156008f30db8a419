"""Point-cloud mapping from RGB-D images with known camera poses.

Each image pair is back-projected into world coordinates and cleaned with a
statistical outlier filter. The clouds are merged, thinned with a voxel grid
and saved as a binary PCD file.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import TextIO

import numpy as np
from PIL import Image
from scipy.spatial import cKDTree

from stereoslam.lie import SE3

CX = 319.5
CY = 239.5
FX = 481.2
FY = -480.0
DEPTH_SCALE = 5000.0

IMAGE_COUNT = 5
MEAN_K = 50
STDDEV_MUL = 1.0
VOXEL_RESOLUTION = 0.03
RESULT_FILE = "map.pcd"

_POSE_FIELDS = 7
_PCD_DTYPE = np.dtype([("x", "<f4"), ("y", "<f4"), ("z", "<f4"), ("rgb", "<u4")])


def _check_cloud(points, colors) -> tuple[np.ndarray, np.ndarray]:
    pts = np.asarray(points, dtype=float).reshape(-1, 3) if np.size(points) == 0 else np.asarray(points, dtype=float)
    cols = np.asarray(colors, dtype=np.uint8)
    if cols.size == 0:
        cols = cols.reshape(0, 3)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise ValueError(f"points must have shape (N, 3), got {pts.shape}")
    if cols.shape != pts.shape:
        raise ValueError(f"colors must have shape {pts.shape}, got {cols.shape}")
    return pts, cols


def read_poses(stream: TextIO, count: int) -> list[SE3]:
    """Read ``count`` poses given as ``tx ty tz qx qy qz qw``."""
    tokens = stream.read().split()
    needed = count * _POSE_FIELDS
    if len(tokens) < needed:
        raise ValueError(f"expected {needed} pose values, got {len(tokens)}")
    try:
        values = [float(t) for t in tokens[:needed]]
    except ValueError as exc:
        raise ValueError(f"invalid pose value: {exc}") from None
    poses = []
    for start in range(0, needed, _POSE_FIELDS):
        tx, ty, tz, qx, qy, qz, qw = values[start:start + _POSE_FIELDS]
        poses.append(SE3.from_quaternion([qw, qx, qy, qz], [tx, ty, tz]))
    return poses


def back_project(color, depth, pose: SE3) -> tuple[np.ndarray, np.ndarray]:
    """Turn an RGB image and a depth image into world points and their colours.

    Pixels with zero depth carry no measurement and are skipped. Points come
    in row-major pixel order.
    """
    col = np.asarray(color)
    dep = np.asarray(depth)
    if dep.ndim != 2:
        raise ValueError(f"depth must be a 2D image, got shape {dep.shape}")
    if col.ndim != 3 or col.shape[:2] != dep.shape or col.shape[2] < 3:
        raise ValueError(f"color must have shape {dep.shape + (3,)}, got {col.shape}")
    v, u = np.nonzero(dep)
    z = dep[v, u].astype(float) / DEPTH_SCALE
    x = (u - CX) * z / FX
    y = (v - CY) * z / FY
    camera_points = np.column_stack([x, y, z])
    world = pose @ camera_points
    return np.asarray(world, dtype=float).reshape(-1, 3), col[v, u, :3].astype(np.uint8)


def statistical_outlier_removal(points, colors, mean_k: int = MEAN_K,
                                stddev_mul: float = STDDEV_MUL) -> tuple[np.ndarray, np.ndarray]:
    """Drop points whose mean distance to their neighbours is unusually large.

    A point is kept when its mean distance to its ``mean_k`` nearest
    neighbours is at most the global mean plus ``stddev_mul`` standard
    deviations.
    """
    if mean_k < 1:
        raise ValueError("mean_k must be at least 1")
    pts, cols = _check_cloud(points, colors)
    k = min(mean_k, len(pts) - 1)
    if k < 1:
        return pts.copy(), cols.copy()
    distances, _ = cKDTree(pts).query(pts, k=k + 1)
    mean_distances = distances[:, 1:].mean(axis=1)
    threshold = mean_distances.mean() + stddev_mul * mean_distances.std(ddof=1)
    keep = mean_distances <= threshold
    return pts[keep], cols[keep]


def voxel_filter(points, colors, leaf_size) -> tuple[np.ndarray, np.ndarray]:
    """Replace the points in each voxel by their centroid and mean colour."""
    leaf = np.broadcast_to(np.asarray(leaf_size, dtype=float), (3,))
    if np.any(leaf <= 0):
        raise ValueError("leaf size must be positive")
    pts, cols = _check_cloud(points, colors)
    if len(pts) == 0:
        return pts.copy(), cols.copy()
    cells = np.floor(pts / leaf).astype(np.int64)
    # Order voxels with x varying fastest, then y, then z.
    _, inverse, counts = np.unique(cells[:, ::-1], axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.ravel()
    n = len(counts)
    centroids = np.zeros((n, 3))
    color_sums = np.zeros((n, 3))
    np.add.at(centroids, inverse, pts)
    np.add.at(color_sums, inverse, cols.astype(float))
    centroids /= counts[:, None]
    mean_colors = np.rint(color_sums / counts[:, None]).astype(np.uint8)
    return centroids, mean_colors


def save_pcd_binary(path, points, colors) -> None:
    """Write an XYZRGB cloud as a binary PCD v0.7 file."""
    pts, cols = _check_cloud(points, colors)
    n = len(pts)
    header = (
        "# .PCD v0.7 - Point Cloud Data file format\n"
        "VERSION 0.7\n"
        "FIELDS x y z rgb\n"
        "SIZE 4 4 4 4\n"
        "TYPE F F F F\n"
        "COUNT 1 1 1 1\n"
        f"WIDTH {n}\n"
        "HEIGHT 1\n"
        "VIEWPOINT 0 0 0 1 0 0 0\n"
        f"POINTS {n}\n"
        "DATA binary\n"
    )
    records = np.zeros(n, dtype=_PCD_DTYPE)
    records["x"], records["y"], records["z"] = pts[:, 0], pts[:, 1], pts[:, 2]
    c = cols.astype(np.uint32)
    records["rgb"] = (np.uint32(255) << 24) | (c[:, 0] << 16) | (c[:, 1] << 8) | c[:, 2]
    with open(path, "wb") as fout:
        fout.write(header.encode("ascii"))
        fout.write(records.tobytes())


def _load_images(data_dir: Path, index: int) -> tuple[np.ndarray, np.ndarray]:
    with Image.open(data_dir / "color" / f"{index}.png") as img:
        color = np.array(img.convert("RGB"))
    with Image.open(data_dir / "depth" / f"{index}.png") as img:
        depth = np.array(img)
    return color, depth


def main(argv=None) -> int:
    """Build a point-cloud map from the RGB-D images in a data directory."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) > 1:
        print("Usage: pointcloud [data_dir]")
        return 1
    data_dir = Path(args[0] if args else "./data")
    try:
        with (data_dir / "pose.txt").open() as fin:
            poses = read_poses(fin, IMAGE_COUNT)
    except OSError:
        print("cannot find pose file", file=sys.stderr)
        return 1
    except ValueError as exc:
        print(f"cannot read pose file: {exc}", file=sys.stderr)
        return 1

    print("converting images to a point cloud ...")
    all_points, all_colors = [], []
    for i, pose in enumerate(poses):
        print(f"converting image: {i + 1}")
        try:
            color, depth = _load_images(data_dir, i + 1)
        except OSError as exc:
            print(f"cannot read image {i + 1}: {exc}", file=sys.stderr)
            return 1
        points, colors = back_project(color, depth, pose)
        points, colors = statistical_outlier_removal(points, colors, MEAN_K, STDDEV_MUL)
        all_points.append(points)
        all_colors.append(colors)

    points = np.concatenate(all_points) if all_points else np.zeros((0, 3))
    colors = np.concatenate(all_colors) if all_colors else np.zeros((0, 3), dtype=np.uint8)
    print(f"the point cloud has {len(points)} points.")

    points, colors = voxel_filter(points, colors, VOXEL_RESOLUTION)
    print(f"after filtering, the point cloud has {len(points)} points.")
    save_pcd_binary(RESULT_FILE, points, colors)
    return 0


if __name__ == "__main__":
    sys.exit(main())