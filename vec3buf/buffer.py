"""Device-resident storage for N three-component vectors.

`Vector3Buffer` owns one block of device memory holding N (x, y, z)
vectors, in whichever layout the process was configured with. Callers see
N vectors either way:

    ctx = ExecutionContext("cuda")
    queue = CommandQueue(ctx)
    pos = Vector3Buffer.from_host(ctx, queue, MemFlags.READ_WRITE, xs, ys, zs)
    kernel(pos.buffer(), ...)
    pos.copy_to_host(queue, xs, ys, zs)
    pos.release()

Every operation is synchronous from the caller's side: it returns once the
device has finished the work it submitted.

Memory is reclaimed by `release()` (or on leaving a `with` block), never
implicitly when a phase of the simulation ends.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Any, ClassVar, MutableSequence, Optional, Sequence, Union

import numpy as np
import torch

from vec3buf.config import BUILD, LayoutMode
from vec3buf.console import console
from vec3buf.context import (
    CommandQueue,
    DeviceMemory,
    ExecutionContext,
    MemFlags,
    default_queue,
)
from vec3buf.errors import CapabilityUnavailable, PreconditionViolation
from vec3buf.layout import LAYOUTS, Layout, numpy_dtype

__all__ = [
    "Vector3Buffer",
    "buffer_class",
]

HostArray = Union[Sequence[float], np.ndarray, torch.Tensor]
HostOut = Union[MutableSequence[float], np.ndarray, torch.Tensor]

_NUMPY_FLOATS = (torch.float16, torch.float32, torch.float64)


def _as_host_vector(values: HostArray, name: str) -> np.ndarray:
    if isinstance(values, torch.Tensor):
        t = values.detach().cpu()
        if t.is_floating_point() and t.dtype not in _NUMPY_FLOATS:
            # bfloat16 and float8 have no numpy counterpart.
            t = t.to(torch.float64)
        arr = t.numpy()
    else:
        arr = np.asarray(values)
    if arr.ndim != 1:
        raise PreconditionViolation(f"{name} must be one-dimensional, got shape {arr.shape}")
    if arr.size and arr.dtype.kind not in "biuf":
        raise PreconditionViolation(f"{name} must hold real numbers, got dtype {arr.dtype}")
    return arr


def _capacity(out: HostOut, name: str) -> int:
    if isinstance(out, (np.ndarray, torch.Tensor)) and out.ndim != 1:
        raise PreconditionViolation(f"{name} must be one-dimensional, got shape {tuple(out.shape)}")
    try:
        return len(out)
    except TypeError:
        raise PreconditionViolation(f"{name} has no length: {type(out).__name__}") from None


def _store(out: HostOut, values: np.ndarray) -> None:
    """Write `values` into the head of `out`, in `out`'s own element type."""
    n = len(values)
    if isinstance(out, torch.Tensor):
        with torch.no_grad():
            out[:n].copy_(torch.from_numpy(np.ascontiguousarray(values)))
    elif isinstance(out, np.ndarray):
        out[:n] = values
    else:
        for i, v in enumerate(values.tolist()):
            out[i] = v


class Vector3Buffer:
    """N three-component vectors in device memory.

    The layout and device scalar type are class attributes; the class itself
    is bound to the process configuration, and `buffer_class()` hands out
    the other combinations.
    """

    layout: ClassVar[Layout] = LAYOUTS[BUILD.layout]
    device_dtype: ClassVar[torch.dtype] = BUILD.device_dtype

    __slots__ = ("_memory", "_count", "_nbytes")

    def __init__(
        self,
        context: Optional[ExecutionContext] = None,
        flags: MemFlags = MemFlags.READ_WRITE,
        count: int = 0,
    ) -> None:
        self._memory: Optional[DeviceMemory] = None
        self._count = 0
        self._nbytes = 0
        if context is not None:
            self.allocate(context, flags, count)

    # ------------------------------------------------------------------
    # construction

    @classmethod
    def from_host(
        cls,
        context: ExecutionContext,
        queue: CommandQueue,
        flags: MemFlags,
        xs: HostArray,
        ys: HostArray,
        zs: HostArray,
    ) -> "Vector3Buffer":
        buf = cls()
        buf.populate(context, queue, flags, xs, ys, zs)
        return buf

    def allocate(self, context: ExecutionContext, flags: MemFlags, count: int) -> None:
        """(Re)allocate storage for `count` vectors. Contents are undefined."""
        count = int(count)
        if count < 0:
            raise PreconditionViolation(f"count must be >= 0, got {count}")
        nbytes = self.layout.nbytes(count, self._host_dtype())
        memory = context.allocate(nbytes, flags)
        self.release()
        self._memory = memory
        self._count = count
        self._nbytes = nbytes

    def populate(
        self,
        context: ExecutionContext,
        queue: CommandQueue,
        flags: MemFlags,
        xs: HostArray,
        ys: HostArray,
        zs: HostArray,
    ) -> None:
        """(Re)allocate for `len(xs)` vectors and upload xs, ys, zs (blocking)."""
        x = _as_host_vector(xs, "xs")
        y = _as_host_vector(ys, "ys")
        z = _as_host_vector(zs, "zs")
        if not len(x) == len(y) == len(z):
            raise PreconditionViolation(
                f"coordinate arrays differ in length: xs={len(x)} ys={len(y)} zs={len(z)}"
            )
        staging = self.layout.pack(x, y, z, self._host_dtype())
        self.allocate(context, flags, len(x))
        try:
            queue.write_buffer(self._memory, staging, blocking=True)
        except Exception:
            self.release()
            raise

    # ------------------------------------------------------------------
    # properties

    @classmethod
    def _host_dtype(cls) -> np.dtype:
        return numpy_dtype(cls.device_dtype)

    @property
    def element_count(self) -> int:
        return self._count

    @property
    def byte_size(self) -> int:
        return self._nbytes

    @property
    def allocated(self) -> bool:
        return self._memory is not None

    def __len__(self) -> int:
        return self._count

    def _require_memory(self, op: str) -> DeviceMemory:
        if self._memory is None:
            raise PreconditionViolation(f"{op}() on a buffer with no device storage (released or never allocated)")
        return self._memory

    # ------------------------------------------------------------------
    # transfers

    def copy_to_host(self, queue: CommandQueue, xs: HostOut, ys: HostOut, zs: HostOut) -> None:
        """Blocking read into caller arrays of length >= `element_count`.

        Values are converted to each output's element type: the array or
        tensor dtype, or Python floats for lists and other mutable
        sequences such as `array.array`. Outputs are not resized.
        """
        memory = self._require_memory("copy_to_host")
        for name, out in (("xs", xs), ("ys", ys), ("zs", zs)):
            if _capacity(out, name) < self._count:
                raise PreconditionViolation(
                    f"{name} holds {len(out)} values, buffer has {self._count} vectors"
                )
        staging = self.layout.staging(self._count, self._host_dtype())
        queue.read_buffer(memory, staging)
        x, y, z = self.layout.unpack(staging)
        _store(xs, x)
        _store(ys, y)
        _store(zs, z)

    def to_host(
        self, queue: CommandQueue, dtype: Any = None
    ) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
        """Blocking read into three new arrays (device scalar dtype by default)."""
        memory = self._require_memory("to_host")
        staging = self.layout.staging(self._count, self._host_dtype())
        queue.read_buffer(memory, staging)
        dtype = self._host_dtype() if dtype is None else np.dtype(dtype)
        x, y, z = self.layout.unpack(staging)
        return (
            np.ascontiguousarray(x, dtype=dtype),
            np.ascontiguousarray(y, dtype=dtype),
            np.ascontiguousarray(z, dtype=dtype),
        )

    def copy_to_device(self, queue: CommandQueue, dst: "Vector3Buffer") -> None:
        """Copy every byte of this buffer to the start of `dst`, then drain `queue`."""
        src_mem = self._require_memory("copy_to_device")
        dst_mem = dst._require_memory("copy_to_device")
        if dst.layout.mode is not self.layout.mode or dst.device_dtype != self.device_dtype:
            raise PreconditionViolation(
                f"cannot copy {self.layout.mode.value}/{self.device_dtype} data into "
                f"{dst.layout.mode.value}/{dst.device_dtype} storage"
            )
        if dst.byte_size < self._nbytes:
            raise PreconditionViolation(
                f"destination holds {dst.byte_size} bytes, source needs {self._nbytes}"
            )
        if dst_mem is src_mem:
            return
        queue.copy_buffer(src_mem, dst_mem, nbytes=self._nbytes)
        queue.finish()

    def clone(self, context: ExecutionContext, queue: CommandQueue, flags: Optional[MemFlags] = None) -> "Vector3Buffer":
        """Independent copy in fresh device storage."""
        memory = self._require_memory("clone")
        twin = type(self)(context, memory.flags if flags is None else flags, self._count)
        self.copy_to_device(queue, twin)
        return twin

    def zero(self, queue: Optional[CommandQueue] = None) -> None:
        """Overwrite every vector with (0, 0, 0) and wait for it.

        Without a queue the session default queue is used.
        """
        memory = self._require_memory("zero")
        queue = default_queue() if queue is None else queue
        if self._count == 0:
            return
        dtype = self._host_dtype()
        try:
            queue.fill_buffer(memory, self.layout.zero_pattern(dtype), nbytes=self._nbytes)
        except CapabilityUnavailable:
            console.warn_once(
                "zero-fill-fallback",
                "Fill primitive unavailable",
                detail="zeroing buffers through host writes",
            )
            zeros = self.layout.zeros(self._count, dtype)
            queue.write_buffer(memory, zeros, blocking=False)
        queue.finish()

    # ------------------------------------------------------------------
    # kernel access and release

    def buffer(self) -> DeviceMemory:
        """Borrowed handle to the device storage, for kernel arguments."""
        return self._require_memory("buffer")

    def tensor(self) -> torch.Tensor:
        """Borrowed typed view, shape (N, 3) interleaved or (N, 4) native vector."""
        memory = self._require_memory("tensor")
        return memory.typed(self.device_dtype).view(self._count, self.layout.scalars_per_vector)

    def release(self) -> None:
        """Drop the device storage. Safe to call more than once."""
        if self._memory is not None:
            console.debug("release", detail=f"{self._nbytes} bytes on {self._memory.device}")
        self._memory = None
        self._count = 0
        self._nbytes = 0

    def __enter__(self) -> "Vector3Buffer":
        return self

    def __exit__(self, exc_type: Any, exc_value: Any, traceback: Any) -> None:
        self.release()

    def __repr__(self) -> str:
        device = self._memory.device if self._memory is not None else None
        return (
            f"{type(self).__name__}(count={self._count}, byte_size={self._nbytes}, "
            f"layout={self.layout.mode.value}, dtype={self.device_dtype}, device={device})"
        )


def buffer_class(layout: Union[LayoutMode, str], dtype: torch.dtype = torch.float32) -> type[Vector3Buffer]:
    """Buffer class for a layout / device scalar pair.

    Returns `Vector3Buffer` itself for the configured pair.
    """
    numpy_dtype(dtype)
    return _buffer_class(LayoutMode(layout), dtype)


@lru_cache(maxsize=None)
def _buffer_class(layout: LayoutMode, dtype: torch.dtype) -> type[Vector3Buffer]:
    if LAYOUTS[layout] is Vector3Buffer.layout and dtype == Vector3Buffer.device_dtype:
        return Vector3Buffer
    name = f"{layout.name.title().replace('_', '')}{str(dtype).rsplit('.', 1)[-1].title()}Vector3Buffer"
    return type(
        name,
        (Vector3Buffer,),
        {"layout": LAYOUTS[layout], "device_dtype": dtype, "__slots__": (), "__module__": __name__},
    )
