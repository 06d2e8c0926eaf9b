"""Build-time configuration.

The physical layout and the device scalar type are fixed once per process,
the same way a compiled build would fix them. Values come from the
environment at import time:

    VEC3BUF_LAYOUT       interleaved (default) | vector
    VEC3BUF_DOUBLE       1 -> float64 device scalars, else float32
    VEC3BUF_NATIVE_FILL  0 -> pretend the runtime has no fill primitive
    VEC3BUF_VERBOSE      1 -> debug output on the console
    VEC3BUF_DEVICE       cuda / mps / cpu, overrides auto-detection
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
import os
from typing import Mapping

import torch

__all__ = [
    "LayoutMode",
    "BuildConfig",
    "BUILD",
]

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


class LayoutMode(str, Enum):
    """Physical representation of the N x 3 data on the device."""

    INTERLEAVED = "interleaved"
    NATIVE_VECTOR = "vector"


def _flag(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean flag, got {raw!r}")


@dataclass(frozen=True)
class BuildConfig:
    """Process-wide layout/precision choice."""

    layout: LayoutMode = LayoutMode.INTERLEAVED
    double_precision: bool = False

    # [CHOICE] native fill primitive assumed present
    # [REASON] every torch backend can fill storage in place
    # [NOTES] disabling it routes zero-fill through the host-write fallback
    native_fill: bool = True

    verbose: bool = False
    device: str | None = field(default=None)

    @property
    def device_dtype(self) -> torch.dtype:
        return torch.float64 if self.double_precision else torch.float32

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "BuildConfig":
        env = os.environ if env is None else env
        raw_layout = env.get("VEC3BUF_LAYOUT", LayoutMode.INTERLEAVED.value).strip().lower()
        try:
            layout = LayoutMode(raw_layout)
        except ValueError as err:
            choices = ", ".join(m.value for m in LayoutMode)
            raise ValueError(f"VEC3BUF_LAYOUT must be one of {choices}, got {raw_layout!r}") from err
        return cls(
            layout=layout,
            double_precision=_flag(env, "VEC3BUF_DOUBLE", False),
            native_fill=_flag(env, "VEC3BUF_NATIVE_FILL", True),
            verbose=_flag(env, "VEC3BUF_VERBOSE", False),
            device=env.get("VEC3BUF_DEVICE") or None,
        )


BUILD = BuildConfig.from_env()
