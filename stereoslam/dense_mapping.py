"""Dense monocular depth estimation along a known camera trajectory.

Each pixel of the reference image carries a Gaussian depth estimate. For every
new image the match is searched along the epipolar line with zero-mean NCC,
triangulated, and fused into the estimate.
"""

from __future__ import annotations

import math
import sys
from pathlib import Path
from typing import NamedTuple

import numpy as np
from PIL import Image

from stereoslam.lie import SE3

BORDER = 20
WIDTH = 640
HEIGHT = 480
FX = 481.2
FY = -480.0
CX = 319.5
CY = 239.5
NCC_WINDOW_SIZE = 3
NCC_AREA = (2 * NCC_WINDOW_SIZE + 1) ** 2
MIN_COV = 0.1
MAX_COV = 10.0
INIT_DEPTH = 3.0
INIT_COV2 = 3.0
MIN_SEARCH_DEPTH = 0.1
MAX_HALF_LENGTH = 100.0
SEARCH_STEP = 0.7
NCC_THRESHOLD = 0.85

SEQUENCE_FILE = "first_200_frames_traj_over_table_input_sequence.txt"
DEPTH_FILE = Path("depthmaps") / "scene_000.depth"
RESULT_FILE = "depth.png"

_WINDOW = np.arange(-NCC_WINDOW_SIZE, NCC_WINDOW_SIZE + 1)
_DX, _DY = (a.ravel() for a in np.meshgrid(_WINDOW, _WINDOW, indexing="ij"))


class DepthError(NamedTuple):
    """Average squared and average signed error of a depth estimate."""

    average_squared_error: float
    average_error: float


def _normalized(v: np.ndarray) -> np.ndarray:
    n = float(np.linalg.norm(v))
    return v / n if n > 0 else v.copy()


def px2cam(px) -> np.ndarray:
    """Map a pixel to the normalised image plane (z = 1)."""
    x, y = np.asarray(px, dtype=float)
    return np.array([(x - CX) / FX, (y - CY) / FY, 1.0])


def cam2px(p_cam) -> np.ndarray:
    """Project a point in camera coordinates to a pixel."""
    x, y, z = np.asarray(p_cam, dtype=float)
    return np.array([x * FX / z + CX, y * FY / z + CY])


def inside(pt) -> bool:
    """Tell whether a pixel lies inside the image, away from the border."""
    x, y = np.asarray(pt, dtype=float)
    return bool(x >= BORDER and y >= BORDER and x + BORDER < WIDTH and y + BORDER <= HEIGHT)


def bilinear_value(img, pt):
    """Bilinearly interpolated grey value in [0, 1] at one or many points."""
    pts = np.asarray(pt, dtype=float)
    x, y = pts[..., 0], pts[..., 1]
    x0, y0 = x.astype(int), y.astype(int)
    xx = x - np.floor(x)
    yy = y - np.floor(y)
    image = np.asarray(img)
    value = (
        (1 - xx) * (1 - yy) * image[y0, x0]
        + xx * (1 - yy) * image[y0, x0 + 1]
        + (1 - xx) * yy * image[y0 + 1, x0]
        + xx * yy * image[y0 + 1, x0 + 1]
    ) / 255.0
    value = np.asarray(value, dtype=float)
    return float(value) if value.ndim == 0 else value


def ncc(ref, curr, pt_ref, pt_curr) -> float:
    """Zero-mean normalised cross-correlation between two image windows."""
    pr = np.asarray(pt_ref, dtype=float)
    pc = np.asarray(pt_curr, dtype=float)
    rows = (_DY + pr[1]).astype(int)
    cols = (_DX + pr[0]).astype(int)
    values_ref = np.asarray(ref)[rows, cols].astype(float) / 255.0
    values_curr = bilinear_value(curr, np.column_stack([pc[0] + _DX, pc[1] + _DY]))
    dr = values_ref - values_ref.sum() / NCC_AREA
    dc = values_curr - values_curr.sum() / NCC_AREA
    return float(dr @ dc / math.sqrt(float(dr @ dr) * float(dc @ dc) + 1e-10))


def epipolar_search(ref, curr, T_C_R: SE3, pt_ref, depth_mu: float, depth_cov: float):
    """Search the epipolar line in ``curr`` for the match of ``pt_ref``.

    Returns ``(pt_curr, epipolar_direction)``, or ``None`` when no match has a
    high enough NCC score.
    """
    f_ref = _normalized(px2cam(pt_ref))
    px_mean_curr = cam2px(T_C_R @ (f_ref * depth_mu))
    d_min = max(depth_mu - 3 * depth_cov, MIN_SEARCH_DEPTH)
    d_max = depth_mu + 3 * depth_cov
    px_min_curr = cam2px(T_C_R @ (f_ref * d_min))
    px_max_curr = cam2px(T_C_R @ (f_ref * d_max))

    epipolar_line = px_max_curr - px_min_curr
    direction = _normalized(epipolar_line)
    half_length = min(0.5 * float(np.linalg.norm(epipolar_line)), MAX_HALF_LENGTH)

    best_ncc = -1.0
    best_px_curr = None
    offset = -half_length
    while offset <= half_length:
        px_curr = px_mean_curr + offset * direction
        if inside(px_curr):
            score = ncc(ref, curr, pt_ref, px_curr)
            if score > best_ncc:
                best_ncc = score
                best_px_curr = px_curr
        offset += SEARCH_STEP

    if best_px_curr is None or best_ncc < NCC_THRESHOLD:
        return None
    return best_px_curr, direction


def _angle(cosine: float) -> float:
    return math.acos(min(1.0, max(-1.0, cosine)))


def update_depth_filter(pt_ref, pt_curr, T_C_R: SE3, epipolar_direction, depth, depth_cov2):
    """Triangulate a match and fuse it into ``depth`` and ``depth_cov2`` in place.

    Returns the fused ``(mean, variance)``, or ``None`` if the rays cannot be
    triangulated.
    """
    T_R_C = T_C_R.inverse()
    f_ref = _normalized(px2cam(pt_ref))
    f_curr = _normalized(px2cam(pt_curr))

    t = T_R_C.translation
    f2 = T_R_C.so3 @ f_curr
    b = np.array([t @ f_ref, t @ f2])
    a_mat = np.array(
        [[f_ref @ f_ref, -(f_ref @ f2)], [f_ref @ f2, -(f2 @ f2)]]
    )
    try:
        ans = np.linalg.solve(a_mat, b)
    except np.linalg.LinAlgError:
        return None
    xm = ans[0] * f_ref
    xn = t + ans[1] * f2
    p_esti = (xm + xn) / 2.0
    depth_estimation = float(np.linalg.norm(p_esti))

    t_norm = float(np.linalg.norm(t))
    alpha = _angle(float(f_ref @ t) / t_norm)
    f_curr_prime = _normalized(px2cam(np.asarray(pt_curr, float) + np.asarray(epipolar_direction, float)))
    beta_prime = _angle(float(f_curr_prime @ -t) / t_norm)
    gamma = math.pi - alpha - beta_prime
    p_prime = t_norm * math.sin(beta_prime) / math.sin(gamma)
    d_cov2 = (p_prime - depth_estimation) ** 2

    col, row = int(pt_ref[0]), int(pt_ref[1])
    mu = float(depth[row, col])
    sigma2 = float(depth_cov2[row, col])
    mu_fuse = (d_cov2 * mu + sigma2 * depth_estimation) / (sigma2 + d_cov2)
    sigma_fuse2 = (sigma2 * d_cov2) / (sigma2 + d_cov2)
    depth[row, col] = mu_fuse
    depth_cov2[row, col] = sigma_fuse2
    return mu_fuse, sigma_fuse2


def update(ref, curr, T_C_R: SE3, depth, depth_cov2) -> int:
    """Update every unconverged pixel's depth in place; return how many changed."""
    height, width = depth.shape
    region = depth_cov2[BORDER:height - BORDER, BORDER:width - BORDER]
    active = (region >= MIN_COV) & (region <= MAX_COV)
    updated = 0
    for dx, dy in np.argwhere(active.T):
        x, y = int(dx) + BORDER, int(dy) + BORDER
        pt_ref = np.array([x, y], dtype=float)
        match = epipolar_search(
            ref, curr, T_C_R, pt_ref, float(depth[y, x]), math.sqrt(float(depth_cov2[y, x]))
        )
        if match is None:
            continue
        pt_curr, direction = match
        if update_depth_filter(pt_ref, pt_curr, T_C_R, direction, depth, depth_cov2) is not None:
            updated += 1
    return updated


def evaluate_depth(depth_truth, depth_estimate) -> DepthError:
    """Compare two depth maps away from the image border."""
    truth = np.asarray(depth_truth, dtype=float)
    estimate = np.asarray(depth_estimate, dtype=float)
    if truth.shape != estimate.shape:
        raise ValueError("depth maps must have the same shape")
    rows, cols = truth.shape
    error = (truth - estimate)[BORDER:rows - BORDER, BORDER:cols - BORDER]
    if error.size == 0:
        raise ValueError("depth maps are too small to evaluate")
    return DepthError(float(np.mean(error * error)), float(np.mean(error)))


def read_dataset_files(path):
    """Read image file names, camera poses T_WC and the reference depth map.

    Returns ``(image_files, poses, ref_depth)``.
    """
    root = Path(path)
    sequence = root / SEQUENCE_FILE
    try:
        tokens = sequence.read_text().split()
    except FileNotFoundError:
        raise FileNotFoundError(f"cannot find {sequence}") from None
    if len(tokens) % 8:
        raise ValueError(f"{sequence}: each record needs a file name and 7 values")

    image_files: list[Path] = []
    poses: list[SE3] = []
    for start in range(0, len(tokens), 8):
        image, *fields = tokens[start:start + 8]
        try:
            tx, ty, tz, qx, qy, qz, qw = (float(f) for f in fields)
        except ValueError as exc:
            raise ValueError(f"{sequence}: {exc}") from None
        image_files.append(root / "images" / image)
        poses.append(SE3.from_quaternion([qw, qx, qy, qz], [tx, ty, tz]))

    depth_path = root / DEPTH_FILE
    try:
        values = np.array(depth_path.read_text().split(), dtype=float)
    except FileNotFoundError:
        raise FileNotFoundError(f"cannot find {depth_path}") from None
    if values.size < HEIGHT * WIDTH:
        raise ValueError(f"{depth_path}: expected {HEIGHT * WIDTH} values, got {values.size}")
    ref_depth = values[:HEIGHT * WIDTH].reshape(HEIGHT, WIDTH) / 100.0
    return image_files, poses, ref_depth


def _read_gray(path) -> np.ndarray | None:
    try:
        with Image.open(path) as img:
            return np.array(img.convert("L"))
    except OSError:
        return None


def main(argv=None) -> int:
    """Estimate the depth of the first image of a sequence and save it."""
    args = sys.argv[1:] if argv is None else list(argv)
    if len(args) != 1:
        print("Usage: dense_mapping path_to_test_dataset")
        return 1
    try:
        image_files, poses_twc, ref_depth = read_dataset_files(args[0])
    except (OSError, ValueError):
        print("Reading image files failed!")
        return 1
    print(f"read total {len(image_files)} files.")
    if not image_files:
        print("Reading image files failed!")
        return 1

    ref = _read_gray(image_files[0])
    if ref is None:
        print("Reading image files failed!")
        return 1
    pose_ref_twc = poses_twc[0]
    depth = np.full((HEIGHT, WIDTH), INIT_DEPTH)
    depth_cov2 = np.full((HEIGHT, WIDTH), INIT_COV2)

    for index in range(1, len(image_files)):
        print(f"*** loop {index} ***")
        curr = _read_gray(image_files[index])
        if curr is None:
            continue
        T_C_R = poses_twc[index].inverse() @ pose_ref_twc
        update(ref, curr, T_C_R, depth, depth_cov2)
        result = evaluate_depth(ref_depth, depth)
        print(
            f"Average squared error = {result.average_squared_error}, "
            f"average error: {result.average_error}"
        )

    print("estimation returns, saving depth map ...")
    Image.fromarray(np.clip(np.rint(depth), 0, 255).astype(np.uint8)).save(RESULT_FILE)
    print("done.")
    return 0


if __name__ == "__main__":
    sys.exit(main())