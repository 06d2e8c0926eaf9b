"""Error kinds raised by device buffer operations.

Every failure is fatal to the operation that raised it. Nothing here is
retried; the only local recovery is the zero-fill fallback, which catches
`CapabilityUnavailable` and takes the host-write path instead.
"""

from __future__ import annotations

__all__ = [
    "Vector3BufferError",
    "AllocationFailure",
    "TransferFailure",
    "CapabilityUnavailable",
    "PreconditionViolation",
]


class Vector3BufferError(RuntimeError):
    """Base class for all device buffer errors."""


class AllocationFailure(Vector3BufferError):
    """Device memory could not be reserved (out of memory, bad device)."""


class TransferFailure(Vector3BufferError):
    """A host/device or device/device command failed on the queue."""


class CapabilityUnavailable(Vector3BufferError):
    """The runtime does not provide a requested primitive (e.g. buffer fill)."""


class PreconditionViolation(Vector3BufferError, ValueError):
    """Caller contract broken: mismatched lengths, short outputs, released buffer."""
