"""Per-channel batch normalisation for ``H x W x C x N`` tensors."""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np

from ..core.types import Array, as_batch

_AXES = (0, 1, 3)


def _channel(v: Array) -> Array:
    return np.reshape(v, (1, 1, -1, 1))


def _batch_moments(x: Array, epsilon: float) -> Tuple[Array, Array]:
    mu = np.mean(x, axis=_AXES)
    sigma = np.sqrt(np.var(x, axis=_AXES) + epsilon)
    return mu, sigma


def bnorm_forward(
    x: Array,
    gain: Array,
    bias: Array,
    *,
    moments: Optional[Array] = None,
    epsilon: float = 1e-4,
) -> Array:
    """Normalise ``x`` with batch statistics, or with ``moments`` ``(C, 2)``."""

    x, single = as_batch(x)
    if moments is None:
        mu, sigma = _batch_moments(x, epsilon)
    else:
        mu, sigma = moments[:, 0], moments[:, 1]
    xhat = (x - _channel(mu)) / _channel(sigma)
    y = (_channel(gain) * xhat + _channel(bias)).astype(x.dtype, copy=False)
    return y[..., 0] if single else y


def bnorm_backward(
    x: Array,
    gain: Array,
    bias: Array,
    dzdy: Array,
    *,
    epsilon: float = 1e-4,
) -> Tuple[Array, Array, Array, Array]:
    """Return ``dzdx, dgain, dbias, moments``.

    The third parameter "derivative" is the batch moments ``(C, 2)`` (mean,
    std), used to update running statistics.
    """

    x, single = as_batch(x)
    dzdy, _ = as_batch(dzdy)
    mu, sigma = _batch_moments(x, epsilon)
    xhat = (x - _channel(mu)) / _channel(sigma)
    count = x.shape[0] * x.shape[1] * x.shape[3]
    dgain = np.sum(dzdy * xhat, axis=_AXES)
    dbias = np.sum(dzdy, axis=_AXES)
    dzdx = (_channel(gain) / _channel(sigma)) * (
        dzdy - _channel(dbias) / count - xhat * _channel(dgain) / count
    )
    moments = np.stack([mu, sigma], axis=1)
    dzdx = dzdx.astype(x.dtype, copy=False)
    return (dzdx[..., 0] if single else dzdx), dgain, dbias, moments


__all__ = ["bnorm_backward", "bnorm_forward"]
