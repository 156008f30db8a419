"""SLAM building blocks: Lie groups, camera model, triangulation, pose graphs and dense mapping."""

__version__ = "0.1.0"