# stereoslam

Building blocks for visual SLAM, written with NumPy and SciPy.

## Modules

- `stereoslam.lie`: the groups `SO3` and `SE3` with `exp`, `log`, `inverse`,
  quaternion conversion (`from_quaternion`, `unit_quaternion`) and
  composition through the `@` operator. `SE3` also gives `matrix`,
  `matrix3x4` and `adjoint`. Twists are ordered `(upsilon, omega)`:
  translation first, rotation second. `hat` and `vee` convert between
  3-vectors and skew-symmetric matrices. Applying a transform with `@` to an
  array of shape `(3,)` or `(N, 3)` moves the points.
- `stereoslam.geometry`: `triangulation(poses, points)` solves for a point
  seen from several poses by linear SVD, from its observations on the
  normalised image planes. It returns the world point, or `None` when the
  solution is poorly determined. `to_vec2` turns an object with `x`/`y`
  attributes, or a pair, into a 2-vector.
- `stereoslam.camera`: a pinhole `Camera` with intrinsics `fx`, `fy`, `cx`,
  `cy`, a `baseline` and an extrinsic `pose`. `K()` returns the intrinsic
  matrix. The methods `world2camera`, `camera2world`, `camera2pixel`,
  `pixel2camera`, `world2pixel` and `pixel2world` move points between the
  frames.
- `stereoslam.config`: `Config` is a read-only mapping loaded from a YAML
  file. It accepts a leading `%YAML` directive and turns `!!opencv-matrix`
  entries into NumPy arrays. A missing file raises `FileNotFoundError`, and a
  missing key raises `KeyError`.
- `stereoslam.optimization`: the `VertexPose` and `VertexXYZ` vertices, with
  left-multiplicative and additive `oplus` updates. Two reprojection edges,
  `EdgeProjectionPoseOnly` and `EdgeProjection`, compute their errors and
  analytic Jacobians. `huber_weight` gives the Huber kernel weight for a
  squared error.
- `stereoslam.posegraph`: `PoseGraph` reads and writes `VERTEX_SE3:QUAT` /
  `EDGE_SE3:QUAT` text files and reports `total_error`. `optimize` runs
  Levenberg-Marquardt with poses kept on the Lie group. Vertex 0 is held fixed
  when a file is read.
- `stereoslam.dense_mapping`: monocular depth estimation along a known
  trajectory. It searches each epipolar line (`epipolar_search`) with
  zero-mean NCC matching (`ncc`), then fuses the triangulated depth into a
  Gaussian per pixel (`update_depth_filter`, `update`). `evaluate_depth`
  compares a depth map against ground truth.
- `stereoslam.pointcloud`: RGB-D back-projection (`back_project`) of images
  with poses read by `read_poses`. Clouds are cleaned with
  `statistical_outlier_removal` and thinned with `voxel_filter`, and
  `save_pcd_binary` writes them as binary PCD v0.7.

## Installation

```
pip install .
```

To run the test suite:

```
pip install ".[test]"
pytest
```

## Library use

```python
import numpy as np
from stereoslam.lie import SE3, SO3
from stereoslam.geometry import triangulation

pose = SE3.exp(np.array([0.1, 0.0, 0.0, 0.0, 0.0, 0.2]))
assert np.allclose((pose @ pose.inverse()).matrix(), np.eye(4))

identity = SO3.from_quaternion(1.0, 0.0, 0.0, 0.0)
poses = [SE3(identity, np.zeros(3)), SE3(identity, np.array([-1.0, 0.0, 0.0]))]
world = np.array([0.5, 0.2, 4.0])
points = []
for p in poses:
    pc = p @ world
    points.append(pc / pc[2])
estimate = triangulation(poses, points)
```

Camera projections:

```python
from stereoslam.camera import Camera

cam = Camera(718.0, 718.0, 607.0, 185.0, 0.54, SE3(identity, np.zeros(3)))
pixel = cam.world2pixel(np.array([1.0, 2.0, 10.0]), SE3(identity, np.zeros(3)))
```

Pose graphs:

```python
from stereoslam.posegraph import PoseGraph

with open("sphere.g2o") as fin:
    graph = PoseGraph.read(fin)
final_error = graph.optimize(30)
with open("optimised.g2o", "w") as fout:
    graph.write(fout)
```

Configuration:

```python
from stereoslam.config import Config

config = Config("config/default.yaml")
dataset_dir = config["dataset_dir"]
num_features = config.get("num_features", 200)
```

## Commands

Optimise a pose graph stored in g2o text format. The result is written to
`result_lie.g2o` in the current directory:

```
stereoslam-posegraph sphere.g2o
```

Estimate a dense depth map for the first image of a monocular sequence with a
known trajectory. The argument is the dataset directory. It must hold
`first_200_frames_traj_over_table_input_sequence.txt`, the `images/`
directory and `depthmaps/scene_000.depth`. The estimate is saved as
`depth.png`:

```
stereoslam-dense-mapping path/to/test_dataset
```

Build a colour point cloud from five RGB-D image pairs and their poses. The
optional argument is the data directory, `./data` by default. It must hold
`pose.txt`, `color/1.png` to `color/5.png` and `depth/1.png` to
`depth/5.png`. The cloud is saved as `map.pcd`:

```
stereoslam-pointcloud [data_dir]
```

Each command prints its progress on standard output.

## What the package does not do

The package has no complete stereo visual odometry program. It offers no
feature detection or optical-flow tracking and no keyframe or landmark map
management. It has no stereo dataset reader and no bundle-adjustment solver
or background optimisation thread. The reprojection edges in
`stereoslam.optimization` provide errors and Jacobians only. There is no
viewer: the commands print their results and write files, and they display
nothing.