"""Execution context, command queue and raw device memory.

This is the thin boundary the buffer code talks to. Memory is a flat run of
bytes (a 1-D uint8 tensor) on a torch device; the queue is the ordered
channel commands go through. On CUDA the queue owns a stream, elsewhere the
device's implicit ordering is the queue.

A process-wide default queue exists for callers that do not carry one
around. It belongs to a session: `open_session()` installs it,
`close_session()` drains and removes it.
"""

from __future__ import annotations

from contextlib import contextmanager, nullcontext
import enum
from typing import Iterator, Optional, Union

import numpy as np
import torch

from vec3buf.console import console
from vec3buf.errors import (
    AllocationFailure,
    CapabilityUnavailable,
    PreconditionViolation,
    TransferFailure,
    Vector3BufferError,
)
from vec3buf.runtime import fill_supported, get_device, synchronize

__all__ = [
    "MemFlags",
    "DeviceMemory",
    "ExecutionContext",
    "CommandQueue",
    "open_session",
    "close_session",
    "default_queue",
    "session",
]

DeviceLike = Union[str, torch.device, None]


class MemFlags(enum.IntFlag):
    """Allocation hints, describing how kernels will access the memory."""

    READ_WRITE = 1
    WRITE_ONLY = 2
    READ_ONLY = 4
    HOST_ACCESSIBLE = 8


def _check_flags(flags: MemFlags) -> MemFlags:
    flags = MemFlags(flags)
    access = flags & (MemFlags.READ_WRITE | MemFlags.WRITE_ONLY | MemFlags.READ_ONLY)
    if bin(int(access)).count("1") > 1:
        raise PreconditionViolation(f"conflicting access flags: {flags!r}")
    if not access:
        flags |= MemFlags.READ_WRITE
    return flags


def _same_device(a: torch.device, b: torch.device) -> bool:
    if a.type != b.type:
        return False
    return a.index is None or b.index is None or a.index == b.index


class DeviceMemory:
    """Opaque handle to one block of device memory.

    Handles given out by a buffer are borrowed: pass them to kernels, never
    release them yourself.
    """

    __slots__ = ("_storage", "flags")

    def __init__(self, storage: torch.Tensor, flags: MemFlags) -> None:
        self._storage = storage
        self.flags = flags

    @property
    def storage(self) -> torch.Tensor:
        """Raw bytes (1-D uint8 tensor)."""
        return self._storage

    @property
    def nbytes(self) -> int:
        return int(self._storage.numel())

    @property
    def device(self) -> torch.device:
        return self._storage.device

    def typed(self, dtype: torch.dtype, lanes: int = 1) -> torch.Tensor:
        """Reinterpret the bytes as `dtype`, grouped in rows of `lanes`."""
        flat = self._storage.view(dtype)
        if lanes == 1:
            return flat
        return flat.view(-1, lanes)

    def __repr__(self) -> str:
        return f"DeviceMemory(nbytes={self.nbytes}, device={self.device}, flags={self.flags!r})"


class ExecutionContext:
    """Associates a device with memory allocation."""

    def __init__(self, device: DeviceLike = None) -> None:
        self.device = torch.device(device) if device is not None else get_device()

    def allocate(self, nbytes: int, flags: MemFlags = MemFlags.READ_WRITE) -> DeviceMemory:
        nbytes = int(nbytes)
        if nbytes < 0:
            raise PreconditionViolation(f"allocation size must be >= 0, got {nbytes}")
        flags = _check_flags(flags)
        try:
            storage = torch.empty(nbytes, dtype=torch.uint8, device=self.device)
        except (RuntimeError, AssertionError, MemoryError) as err:
            # torch raises AssertionError when the build lacks the backend.
            raise AllocationFailure(f"cannot allocate {nbytes} bytes on {self.device}") from err
        console.debug("alloc", detail=f"{nbytes} bytes on {self.device} {flags!r}")
        return DeviceMemory(storage, flags)

    def __repr__(self) -> str:
        return f"ExecutionContext(device={self.device})"


def _host_bytes(host: np.ndarray) -> np.ndarray:
    if not isinstance(host, np.ndarray):
        raise PreconditionViolation(f"host staging must be a numpy array, got {type(host).__name__}")
    if not host.flags.c_contiguous:
        raise PreconditionViolation("host staging must be C-contiguous")
    return host.reshape(-1).view(np.uint8)


class CommandQueue:
    """Ordered channel for memory commands on one device."""

    def __init__(self, context: ExecutionContext, *, native_fill: Optional[bool] = None) -> None:
        self.context = context
        self.device = context.device
        self.supports_fill = fill_supported() if native_fill is None else bool(native_fill)
        self._stream = torch.cuda.Stream(device=self.device) if self.device.type == "cuda" else None

    @contextmanager
    def _submit(self, what: str) -> Iterator[None]:
        try:
            if self._stream is None:
                scope = nullcontext()
            else:
                # Storage may come from blocks last used on the current stream.
                self._stream.wait_stream(torch.cuda.current_stream(self.device))
                scope = torch.cuda.stream(self._stream)
            with scope:
                yield
        except Vector3BufferError:
            raise
        except RuntimeError as err:
            raise TransferFailure(f"{what} failed on {self.device}") from err

    def _check_range(self, mem: DeviceMemory, offset: int, nbytes: int) -> None:
        if not _same_device(mem.device, self.device):
            raise PreconditionViolation(f"memory on {mem.device} submitted to a queue on {self.device}")
        if offset < 0 or nbytes < 0 or offset + nbytes > mem.nbytes:
            raise PreconditionViolation(
                f"range [{offset}, {offset + nbytes}) outside memory of {mem.nbytes} bytes"
            )

    def write_buffer(
        self,
        mem: DeviceMemory,
        host: np.ndarray,
        *,
        blocking: bool = True,
        offset: int = 0,
    ) -> None:
        """Copy `host` into `mem` at `offset`.

        With `blocking=False` the host array must stay alive until `finish()`.
        """
        src = _host_bytes(host)
        if not src.flags.writeable:
            src = src.copy()
        n = int(src.size)
        self._check_range(mem, offset, n)
        if n == 0:
            return
        with self._submit("write"):
            staged = torch.from_numpy(src)
            if not blocking and self._stream is not None:
                staged = staged.pin_memory()
            mem.storage[offset : offset + n].copy_(staged, non_blocking=not blocking)
        if blocking:
            self.finish()

    def read_buffer(self, mem: DeviceMemory, host: np.ndarray, *, offset: int = 0) -> None:
        """Blocking copy of `host.nbytes` bytes from `mem` at `offset` into `host`."""
        dst = _host_bytes(host)
        if not dst.flags.writeable:
            raise PreconditionViolation("host destination is read-only")
        n = int(dst.size)
        self._check_range(mem, offset, n)
        if n == 0:
            return
        with self._submit("read"):
            torch.from_numpy(dst).copy_(mem.storage[offset : offset + n])
        self.finish()

    def copy_buffer(
        self,
        src: DeviceMemory,
        dst: DeviceMemory,
        *,
        src_offset: int = 0,
        dst_offset: int = 0,
        nbytes: Optional[int] = None,
    ) -> None:
        """Enqueue a device-to-device copy. Does not wait."""
        n = src.nbytes - src_offset if nbytes is None else int(nbytes)
        self._check_range(src, src_offset, n)
        self._check_range(dst, dst_offset, n)
        if src.storage.data_ptr() == dst.storage.data_ptr() and abs(src_offset - dst_offset) < n:
            raise PreconditionViolation("source and destination ranges overlap")
        if n == 0:
            return
        with self._submit("copy"):
            dst.storage[dst_offset : dst_offset + n].copy_(src.storage[src_offset : src_offset + n])

    def fill_buffer(
        self,
        mem: DeviceMemory,
        pattern: np.ndarray,
        *,
        offset: int = 0,
        nbytes: Optional[int] = None,
    ) -> None:
        """Enqueue a fill of `nbytes` at `offset` with `pattern` repeated. Does not wait."""
        if not self.supports_fill:
            raise CapabilityUnavailable(f"fill primitive unavailable on queue for {self.device}")
        pat = _host_bytes(np.ascontiguousarray(pattern))
        k = int(pat.size)
        if k == 0:
            raise PreconditionViolation("fill pattern is empty")
        n = mem.nbytes - offset if nbytes is None else int(nbytes)
        self._check_range(mem, offset, n)
        if offset % k or n % k:
            raise PreconditionViolation(f"offset {offset} and size {n} must be multiples of the pattern size {k}")
        if n == 0:
            return
        with self._submit("fill"):
            region = mem.storage[offset : offset + n]
            if (pat == pat[0]).all():
                region.fill_(int(pat[0]))
            else:
                tile = torch.from_numpy(pat.copy()).to(self.device)
                region.view(-1, k).copy_(tile)

    def finish(self) -> None:
        """Block until everything submitted to this queue has completed."""
        try:
            if self._stream is not None:
                self._stream.synchronize()
            else:
                synchronize(self.device)
        except RuntimeError as err:
            raise TransferFailure(f"queue on {self.device} reported an error") from err

    def __repr__(self) -> str:
        return f"CommandQueue(device={self.device}, supports_fill={self.supports_fill})"


_DEFAULT_QUEUE: CommandQueue | None = None


def open_session(device: DeviceLike = None, *, native_fill: Optional[bool] = None) -> CommandQueue:
    """Create a context and queue for `device` and make the queue the default."""
    global _DEFAULT_QUEUE
    if _DEFAULT_QUEUE is not None:
        raise PreconditionViolation("a device session is already open")
    _DEFAULT_QUEUE = CommandQueue(ExecutionContext(device), native_fill=native_fill)
    console.debug("session open", detail=repr(_DEFAULT_QUEUE))
    return _DEFAULT_QUEUE


def close_session() -> None:
    """Drain and drop the default queue. No-op when no session is open."""
    global _DEFAULT_QUEUE
    queue, _DEFAULT_QUEUE = _DEFAULT_QUEUE, None
    if queue is not None:
        queue.finish()
        console.debug("session closed", detail=repr(queue))


def default_queue() -> CommandQueue:
    if _DEFAULT_QUEUE is None:
        raise PreconditionViolation("no device session is open; call open_session() or pass a queue")
    return _DEFAULT_QUEUE


@contextmanager
def session(device: DeviceLike = None, *, native_fill: Optional[bool] = None) -> Iterator[CommandQueue]:
    queue = open_session(device, native_fill=native_fill)
    try:
        yield queue
    finally:
        close_session()
