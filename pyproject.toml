[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "stereoslam"
version = "0.1.0"
description = "Lie groups, camera models, pose graph optimisation and dense mapping for visual SLAM with NumPy"
requires-python = ">=3.10"
keywords = [
    "slam",
    "lie-group",
    "se3",
    "pose-graph",
    "triangulation",
    "bundle-adjustment",
    "dense-mapping",
    "point-cloud",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Science/Research",
    "Intended Audience :: Education",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering",
    "Topic :: Scientific/Engineering :: Image Processing",
]
dependencies = [
    "numpy",
    "scipy",
    "pillow",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
stereoslam-posegraph = "stereoslam.posegraph:main"
stereoslam-dense-mapping = "stereoslam.dense_mapping:main"
stereoslam-pointcloud = "stereoslam.pointcloud:main"

[tool.hatch.build.targets.wheel]
packages = ["stereoslam"]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 88
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
ignore_missing_imports = true
