"""RGB <-> luminance/chrominance transforms over the channel axis."""

from __future__ import annotations

from typing import Optional

import numpy as np

from ..core.types import Array

# Orthonormal opponent colour basis: luminance first, two chrominance rows.
OPPONENT = np.array(
    [
        [1.0 / np.sqrt(3.0), 1.0 / np.sqrt(3.0), 1.0 / np.sqrt(3.0)],
        [1.0 / np.sqrt(2.0), 0.0, -1.0 / np.sqrt(2.0)],
        [1.0 / np.sqrt(6.0), -2.0 / np.sqrt(6.0), 1.0 / np.sqrt(6.0)],
    ]
)


def _apply(matrix: Array, x: Array) -> Array:
    if x.shape[2] != matrix.shape[1]:
        raise ValueError(
            f"Colour transform expects {matrix.shape[1]} channels, got {x.shape[2]}"
        )
    out = np.einsum("dc,hwc...->hwd...", matrix, x)
    return out.astype(x.dtype, copy=False)


def rgb2lumchrom(
    x: Optional[Array],
    dzdy: Optional[Array] = None,
    *,
    scale: float = 1.0,
    op: Optional[Array] = None,
) -> Array:
    """``y = scale * op @ x`` per pixel; the adjoint when ``dzdy`` is given."""

    matrix = OPPONENT if op is None else np.asarray(op, dtype=np.float64)
    if dzdy is None:
        return _apply(scale * matrix, x)
    return _apply(scale * matrix.T, dzdy)


def lumchrom2rgb(
    x: Optional[Array],
    dzdy: Optional[Array] = None,
    *,
    scale: float = 1.0,
    op: Optional[Array] = None,
) -> Array:
    """Inverse of :func:`rgb2lumchrom` for the same ``scale`` and ``op``."""

    matrix = OPPONENT if op is None else np.asarray(op, dtype=np.float64)
    inverse = np.linalg.inv(matrix) / scale
    if dzdy is None:
        return _apply(inverse, x)
    return _apply(inverse.T, dzdy)


__all__ = ["OPPONENT", "lumchrom2rgb", "rgb2lumchrom"]
