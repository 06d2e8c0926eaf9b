"""Device storage for arrays of three-component vectors.

Per-particle positions, spins and fields are held on the accelerator as
N (x, y, z) vectors. The physical layout (interleaved scalars or padded
hardware vectors) and the device precision are chosen once per process;
code that moves data in and out of a `Vector3Buffer` does not depend on
either choice.
"""

from __future__ import annotations

from vec3buf.buffer import Vector3Buffer, buffer_class
from vec3buf.config import BUILD, BuildConfig, LayoutMode
from vec3buf.context import (
    CommandQueue,
    DeviceMemory,
    ExecutionContext,
    MemFlags,
    close_session,
    default_queue,
    open_session,
    session,
)
from vec3buf.errors import (
    AllocationFailure,
    CapabilityUnavailable,
    PreconditionViolation,
    TransferFailure,
    Vector3BufferError,
)
from vec3buf.layout import InterleavedLayout, Layout, NativeVectorLayout

__all__ = [
    "Vector3Buffer",
    "buffer_class",
    "BUILD",
    "BuildConfig",
    "LayoutMode",
    "CommandQueue",
    "DeviceMemory",
    "ExecutionContext",
    "MemFlags",
    "close_session",
    "default_queue",
    "open_session",
    "session",
    "AllocationFailure",
    "CapabilityUnavailable",
    "PreconditionViolation",
    "TransferFailure",
    "Vector3BufferError",
    "Layout",
    "InterleavedLayout",
    "NativeVectorLayout",
]
