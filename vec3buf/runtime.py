"""Backend availability detection (CUDA + Metal/MPS)

Buffers live wherever torch can place raw storage: a CUDA device, the Apple
Silicon MPS device, or plain host memory when neither is present. The probes
here decide the default device and which primitives the runtime offers.
"""

from __future__ import annotations

import platform
from typing import TYPE_CHECKING

import torch

from vec3buf.config import BUILD

__all__ = [
    "cuda_supported",
    "metal_supported",
    "get_device",
    "fill_supported",
    "synchronize",
]


def cuda_supported() -> bool:
    try:
        return bool(torch.cuda.is_available())
    except Exception:
        return False


def metal_supported() -> bool:
    """Whether the current runtime can place storage on the MPS device."""
    if TYPE_CHECKING:
        return False

    if platform.system() != "Darwin":
        return False

    try:
        return bool(torch.backends.mps.is_available())
    except Exception:
        return False


def get_device() -> torch.device:
    """Get the device buffers are allocated on when none is given.

    `VEC3BUF_DEVICE` wins; otherwise CUDA, then MPS, then CPU.
    """
    if BUILD.device:
        return torch.device(BUILD.device)
    if cuda_supported():
        return torch.device("cuda")
    if metal_supported():
        return torch.device("mps")

    return torch.device("cpu")


def fill_supported() -> bool:
    """Whether the native fill primitive may be used."""
    # [CHOICE] capability is a build switch, not a device query
    # [NOTES] torch fills storage in place on every backend it ships
    return bool(BUILD.native_fill)


def synchronize(device: torch.device) -> None:
    """Block until all work submitted to `device` has completed."""
    if device.type == "cuda":
        torch.cuda.synchronize(device)
    elif device.type == "mps":
        torch.mps.synchronize()
