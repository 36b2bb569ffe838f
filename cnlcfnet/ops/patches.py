"""Patch extraction and folding for ``H x W x C x N`` images."""

from __future__ import annotations

from typing import Tuple

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from ..core.types import Array


def pad_symmetric(x: Array, pad: int) -> Array:
    if pad == 0:
        return x
    width = [(pad, pad), (pad, pad)] + [(0, 0)] * (x.ndim - 2)
    return np.pad(x, width, mode="symmetric")


def pad_symmetric_adjoint(g: Array, pad: int) -> Array:
    """Fold the gradient of a symmetrically padded image back onto the image."""

    if pad == 0:
        return g
    h = g.shape[0] - 2 * pad
    w = g.shape[1] - 2 * pad
    if pad > h or pad > w:
        raise ValueError(f"pad size {pad} exceeds image size {(h, w)}")
    # Rows over the full padded width first, so corner blocks fold twice.
    rows = g[pad : pad + h].copy()
    rows[:pad] += g[:pad][::-1]
    rows[h - pad :] += g[pad + h :][::-1]
    out = rows[:, pad : pad + w].copy()
    out[:, :pad] += rows[:, :pad][:, ::-1]
    out[:, w - pad :] += rows[:, pad + w :][:, ::-1]
    return out


def patch_grid(size: Tuple[int, int], patch: Tuple[int, int], stride: int) -> Tuple[int, int]:
    """Number of patch positions along each spatial axis."""

    return (
        (size[0] - patch[0]) // stride + 1,
        (size[1] - patch[1]) // stride + 1,
    )


def im2col(x: Array, patch: Tuple[int, int], stride: int) -> Array:
    """Return patches as ``(ph * pw * C, M, N)`` with ``M = Mh * Mw``."""

    ph, pw = patch
    windows = sliding_window_view(x, (ph, pw), axis=(0, 1))[::stride, ::stride]
    mh, mw, c, n = windows.shape[:4]
    cols = windows.transpose(4, 5, 2, 0, 1, 3)
    return cols.reshape(ph * pw * c, mh * mw, n)


def col2im(
    cols: Array,
    size: Tuple[int, int],
    patch: Tuple[int, int],
    stride: int,
    channels: int,
) -> Array:
    """Sum patches ``(ph * pw * C, M, N)`` back into an ``H x W x C x N`` image."""

    ph, pw = patch
    mh, mw = patch_grid(size, patch, stride)
    n = cols.shape[2]
    blocks = cols.reshape(ph, pw, channels, mh, mw, n)
    out = np.zeros((size[0], size[1], channels, n), dtype=cols.dtype)
    for a in range(ph):
        for b in range(pw):
            out[a : a + stride * (mh - 1) + 1 : stride, b : b + stride * (mw - 1) + 1 : stride] += (
                blocks[a, b].transpose(1, 2, 0, 3)
            )
    return out


def overlap_count(size: Tuple[int, int], patch: Tuple[int, int], stride: int) -> Array:
    """How many patches cover each pixel, shape ``(H, W, 1, 1)``."""

    mh, mw = patch_grid(size, patch, stride)
    ones = np.ones((patch[0] * patch[1], mh * mw, 1))
    return col2im(ones, size, patch, stride, 1)


__all__ = [
    "col2im",
    "im2col",
    "overlap_count",
    "pad_symmetric",
    "pad_symmetric_adjoint",
    "patch_grid",
]
