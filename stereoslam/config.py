"""Parameter file access for the visual odometry pipeline."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from pathlib import Path
from typing import Any

import numpy as np
import yaml

_INTEGER_TYPES = set("ucsiw")


class _Loader(yaml.SafeLoader):
    """YAML loader that understands matrices written by OpenCV."""


def _construct_opencv_matrix(loader: yaml.SafeLoader, node: yaml.Node) -> np.ndarray:
    spec = loader.construct_mapping(node, deep=True)
    try:
        rows, cols, data = int(spec["rows"]), int(spec["cols"]), spec["data"]
    except KeyError as exc:
        raise ValueError(f"matrix entry lacks {exc.args[0]!r}") from None
    dtype = int if str(spec.get("dt", "d"))[:1] in _INTEGER_TYPES else float
    return np.array(data, dtype=dtype).reshape(rows, cols)


_Loader.add_constructor("tag:yaml.org,2002:opencv-matrix", _construct_opencv_matrix)


def _strip_directive(text: str) -> str:
    return "\n".join(line for line in text.splitlines() if not line.startswith("%YAML"))


class Config(Mapping):
    """Read-only key/value parameters loaded from a YAML file."""

    def __init__(self, filename) -> None:
        self.filename = Path(filename)
        try:
            text = self.filename.read_text()
        except FileNotFoundError:
            raise FileNotFoundError(f"parameter file {filename} does not exist.") from None
        data = yaml.load(_strip_directive(text), Loader=_Loader)
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError(f"parameter file {filename} does not hold a mapping")
        self._values: dict[str, Any] = data

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def __getitem__(self, key: str) -> Any:
        try:
            return self._values[key]
        except KeyError:
            raise KeyError(f"parameter {key!r} is not set in {self.filename}") from None

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)