"""Physical layouts for N three-component vectors.

Two strategies, one logical view (N rows of x, y, z):

- Interleaved: 3N scalars, x0 y0 z0 x1 y1 z1 ... A work item reads its
  three components from one contiguous run, so the hardware fetches them in
  fewer memory transactions than three separate component arrays would need.
- Native vector: N hardware 3-vectors. A 3-vector occupies the footprint of
  a 4-vector, so each element carries one pad lane, which is kept at zero.

Byte size for either layout:

    [FORMULA] byte_size = N * components_per_element * element_nbytes
              interleaved:   components_per_element = 3, element = 1 scalar
              native vector: components_per_element = 1, element = 4 scalars

The layout used by a process is picked once (see `vec3buf.config`).
"""

from __future__ import annotations

from abc import ABC
from typing import ClassVar

import numpy as np
import torch

from vec3buf.config import LayoutMode

__all__ = [
    "Layout",
    "InterleavedLayout",
    "NativeVectorLayout",
    "LAYOUTS",
    "numpy_dtype",
]

_NUMPY_DTYPES: dict[torch.dtype, np.dtype] = {
    torch.float32: np.dtype(np.float32),
    torch.float64: np.dtype(np.float64),
}


def numpy_dtype(dtype: torch.dtype) -> np.dtype:
    """Host dtype matching a device scalar dtype."""
    try:
        return _NUMPY_DTYPES[dtype]
    except KeyError:
        raise ValueError(f"unsupported device scalar type {dtype}") from None


class Layout(ABC):
    """How one build stores its vectors on the device."""

    mode: ClassVar[LayoutMode]

    # Stored elements per logical vector (3 scalars, or 1 hardware vector).
    components_per_element: ClassVar[int]

    # Scalars inside one stored element.
    element_lanes: ClassVar[int]

    @property
    def scalars_per_vector(self) -> int:
        return self.components_per_element * self.element_lanes

    def element_nbytes(self, dtype: np.dtype) -> int:
        return self.element_lanes * np.dtype(dtype).itemsize

    def vector_nbytes(self, dtype: np.dtype) -> int:
        return self.components_per_element * self.element_nbytes(dtype)

    def nbytes(self, count: int, dtype: np.dtype) -> int:
        return int(count) * self.vector_nbytes(dtype)

    def staging(self, count: int, dtype: np.dtype) -> np.ndarray:
        """Uninitialised host array shaped like the device data."""
        return np.empty((int(count), self.scalars_per_vector), dtype=dtype)

    def zeros(self, count: int, dtype: np.dtype) -> np.ndarray:
        return np.zeros((int(count), self.scalars_per_vector), dtype=dtype)

    def zero_pattern(self, dtype: np.dtype) -> np.ndarray:
        """One zero-valued stored element, the unit a fill repeats."""
        return np.zeros(self.element_lanes, dtype=dtype)

    def pack(self, xs: np.ndarray, ys: np.ndarray, zs: np.ndarray, dtype: np.dtype) -> np.ndarray:
        """Build the staging array; each host scalar is cast to `dtype`.

        Narrowing (float64 -> float32) rounds once per value and is not an error.
        """
        out = self.staging(len(xs), dtype)
        out[:, 0] = xs
        out[:, 1] = ys
        out[:, 2] = zs
        return out

    def unpack(self, staging: np.ndarray) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Strided x, y, z views of a staging array (no copy)."""
        return staging[:, 0], staging[:, 1], staging[:, 2]

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class InterleavedLayout(Layout):
    mode = LayoutMode.INTERLEAVED
    components_per_element = 3
    element_lanes = 1


class NativeVectorLayout(Layout):
    mode = LayoutMode.NATIVE_VECTOR
    components_per_element = 1

    # [CHOICE] 3-vectors padded to 4 lanes
    # [REASON] hardware 3-vector types share size and alignment with 4-vectors
    element_lanes = 4

    def staging(self, count: int, dtype: np.dtype) -> np.ndarray:
        # Pad lane must not carry garbage to the device.
        return np.zeros((int(count), self.scalars_per_vector), dtype=dtype)


LAYOUTS: dict[LayoutMode, Layout] = {
    LayoutMode.INTERLEAVED: InterleavedLayout(),
    LayoutMode.NATIVE_VECTOR: NativeVectorLayout(),
}
