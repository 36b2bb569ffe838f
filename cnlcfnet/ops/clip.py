"""Elementwise bound clamp."""

from __future__ import annotations

from typing import Optional

import numpy as np

from ..core.types import Array


def nn_clip(x: Array, lb: float, ub: float, dzdy: Optional[Array] = None) -> Array:
    if dzdy is None:
        return np.clip(x, lb, ub)
    return dzdy * ((x >= lb) & (x <= ub))


__all__ = ["nn_clip"]
