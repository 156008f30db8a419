import io

import numpy as np
import pytest
from PIL import Image

from stereoslam.dense_mapping import cam2px
from stereoslam.lie import SE3
from stereoslam.pointcloud import (
    back_project,
    main,
    read_poses,
    save_pcd_binary,
    statistical_outlier_removal,
    voxel_filter,
)

PCD_DTYPE = np.dtype([("x", "<f4"), ("y", "<f4"), ("z", "<f4"), ("rgb", "<u4")])


def _read_pcd(path):
    data = path.read_bytes()
    head, body = data.split(b"DATA binary\n", 1)
    lines = head.decode("ascii").splitlines()
    return lines, np.frombuffer(body, dtype=PCD_DTYPE)


def test_read_poses_identity_and_translation():
    stream = io.StringIO("0 0 0 0 0 0 1\n1 2 3 0 0 0 1\n")
    poses = read_poses(stream, 2)
    assert len(poses) == 2
    assert np.allclose(poses[0].matrix(), np.eye(4))
    assert np.allclose(poses[1].translation, [1, 2, 3])
    assert np.allclose(poses[1].rotation_matrix, np.eye(3))


def test_read_poses_ignores_extra_values():
    stream = io.StringIO("0 0 0 0 0 0 1 5 5 5 0 0 0 1")
    poses = read_poses(stream, 1)
    assert len(poses) == 1


def test_read_poses_too_few_values():
    with pytest.raises(ValueError):
        read_poses(io.StringIO("0 0 0 0 0 0"), 1)


def test_read_poses_invalid_value():
    with pytest.raises(ValueError):
        read_poses(io.StringIO("0 0 0 a 0 0 1"), 1)


def test_back_project_skips_zero_depth_and_keeps_colors():
    depth = np.array([[5000, 0, 10000], [0, 2500, 0]], dtype=np.uint16)
    color = np.arange(2 * 3 * 3, dtype=np.uint8).reshape(2, 3, 3)
    points, colors = back_project(color, depth, SE3())
    assert points.shape == (3, 3)
    assert np.allclose(points[:, 2], [1.0, 2.0, 0.5])
    assert np.array_equal(colors, color[[0, 0, 1], [0, 2, 1]])


def test_back_project_reprojects_to_pixels():
    depth = np.zeros((4, 5), dtype=np.uint16)
    depth[1, 3] = 7000
    depth[2, 0] = 3000
    color = np.zeros((4, 5, 3), dtype=np.uint8)
    points, _ = back_project(color, depth, SE3())
    assert np.allclose(cam2px(points[0]), [3, 1])
    assert np.allclose(cam2px(points[1]), [0, 2])


def test_back_project_applies_pose():
    depth = np.full((3, 3), 4000, dtype=np.uint16)
    color = np.zeros((3, 3, 3), dtype=np.uint8)
    base, _ = back_project(color, depth, SE3())
    moved, _ = back_project(color, depth, SE3(None, [1.0, -2.0, 0.5]))
    assert np.allclose(moved - base, [1.0, -2.0, 0.5])


def test_back_project_shape_mismatch():
    with pytest.raises(ValueError):
        back_project(np.zeros((2, 2, 3)), np.ones((3, 3)), SE3())


def test_statistical_outlier_removal_drops_far_point():
    rng = np.random.default_rng(0)
    cluster = rng.normal(scale=0.01, size=(60, 3))
    points = np.vstack([cluster, [[5.0, 5.0, 5.0]]])
    colors = np.zeros((61, 3), dtype=np.uint8)
    colors[-1] = [255, 0, 0]
    kept, kept_colors = statistical_outlier_removal(points, colors, 10, 1.0)
    assert not np.any(np.all(kept == [5.0, 5.0, 5.0], axis=1))
    assert len(kept) == len(kept_colors)
    assert not np.any(np.all(kept_colors == [255, 0, 0], axis=1))
    assert len(kept) > 40


def test_statistical_outlier_removal_empty():
    kept, colors = statistical_outlier_removal(np.zeros((0, 3)), np.zeros((0, 3), np.uint8))
    assert kept.shape == (0, 3)
    assert colors.shape == (0, 3)


def test_statistical_outlier_removal_bad_k():
    with pytest.raises(ValueError):
        statistical_outlier_removal(np.zeros((3, 3)), np.zeros((3, 3), np.uint8), 0)


def test_voxel_filter_merges_points_in_one_voxel():
    points = np.array([[0.01, 0.01, 0.01], [0.02, 0.02, 0.02]])
    colors = np.array([[10, 20, 30], [30, 40, 50]], dtype=np.uint8)
    out, out_colors = voxel_filter(points, colors, 0.03)
    assert out.shape == (1, 3)
    assert np.allclose(out[0], points.mean(axis=0))
    assert np.array_equal(out_colors[0], [20, 30, 40])


def test_voxel_filter_keeps_separate_voxels():
    points = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0], [0.0, 1.0, 0.0]])
    colors = np.zeros((3, 3), dtype=np.uint8)
    out, _ = voxel_filter(points, colors, 0.03)
    assert len(out) == 3
    assert sorted(map(tuple, out)) == sorted(map(tuple, points))


def test_voxel_filter_never_grows_cloud():
    rng = np.random.default_rng(1)
    points = rng.uniform(size=(200, 3))
    colors = rng.integers(0, 256, size=(200, 3), dtype=np.uint8)
    out, out_colors = voxel_filter(points, colors, 0.2)
    assert len(out) <= len(points)
    assert len(out) == len(out_colors)
    assert np.all(out >= points.min(axis=0)) and np.all(out <= points.max(axis=0))


def test_voxel_filter_rejects_bad_leaf():
    with pytest.raises(ValueError):
        voxel_filter(np.zeros((1, 3)), np.zeros((1, 3), np.uint8), 0.0)


def test_save_pcd_binary_round_trip(tmp_path):
    points = np.array([[0.5, -1.25, 2.0], [3.0, 4.0, 5.5]])
    colors = np.array([[255, 0, 0], [1, 2, 3]], dtype=np.uint8)
    path = tmp_path / "cloud.pcd"
    save_pcd_binary(path, points, colors)
    lines, records = _read_pcd(path)
    assert "VERSION 0.7" in lines
    assert "FIELDS x y z rgb" in lines
    assert "POINTS 2" in lines
    assert len(records) == 2
    assert np.allclose(np.column_stack([records["x"], records["y"], records["z"]]), points)
    rgb = records["rgb"]
    assert np.array_equal((rgb >> 16) & 0xFF, colors[:, 0])
    assert np.array_equal((rgb >> 8) & 0xFF, colors[:, 1])
    assert np.array_equal(rgb & 0xFF, colors[:, 2])


def test_save_pcd_binary_shape_mismatch(tmp_path):
    with pytest.raises(ValueError):
        save_pcd_binary(tmp_path / "x.pcd", np.zeros((2, 3)), np.zeros((3, 3), np.uint8))


def _make_dataset(root):
    (root / "color").mkdir(parents=True)
    (root / "depth").mkdir()
    (root / "pose.txt").write_text("\n".join(f"{0.1 * i} 0 0 0 0 0 1" for i in range(5)))
    for i in range(1, 6):
        color = np.full((20, 20, 3), 100, dtype=np.uint8)
        Image.fromarray(color).save(root / "color" / f"{i}.png")
        depth = np.full((20, 20), 5000, dtype=np.uint16)
        Image.fromarray(depth).save(root / "depth" / f"{i}.png")


def test_main_writes_map(tmp_path, monkeypatch):
    data = tmp_path / "data"
    _make_dataset(data)
    monkeypatch.chdir(tmp_path)
    assert main([str(data)]) == 0
    lines, records = _read_pcd(tmp_path / "map.pcd")
    assert len(records) > 0
    assert f"POINTS {len(records)}" in lines
    assert np.all(np.isclose(records["z"], 1.0, atol=1e-4))


def test_main_missing_pose_file(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert main([str(tmp_path / "nothing")]) == 1
    assert not (tmp_path / "map.pcd").exists()