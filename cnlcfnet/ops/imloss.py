"""Image losses and the registry behind the ``imloss`` layer."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

import numpy as np

from ..core.types import Array

LossValueFn = Callable[[Array, Array, float], Array]
LossGradFn = Callable[[Array, Array, float], Array]


@dataclass(frozen=True)
class ImageLoss:
    """Per-image loss value and its derivative with respect to the estimate."""

    name: str
    value: LossValueFn
    grad: LossGradFn


class LossRegistry:
    """Central registry for image losses."""

    def __init__(self) -> None:
        self._registry: Dict[str, ImageLoss] = {}

    def register(self, name: str, value: LossValueFn, grad: LossGradFn) -> None:
        self._registry[name] = ImageLoss(name, value, grad)

    def names(self) -> Iterable[str]:
        return sorted(self._registry)

    def resolve(self, name: str) -> ImageLoss:
        key = name.lower()
        if key not in self._registry:
            available = ", ".join(sorted(self._registry))
            raise KeyError(f"Unknown loss {name!r}. Available losses: {available}")
        return self._registry[key]


REGISTRY = LossRegistry()


# floor for the squared error so a perfect estimate gives a finite PSNR and a
# zero gradient
_MIN_ERR = 1e-12


def _image_axes(x: Array) -> tuple:
    return tuple(range(min(x.ndim, 3)))


def _per_image(values: Array, x: Array) -> Array:
    return np.reshape(values, (-1,)) if x.ndim >= 4 else np.reshape(values, (1,))


def _psnr(x: Array, target: Array, peak_val: float) -> Array:
    axes = _image_axes(x)
    err = np.maximum(np.sum(np.square(x - target, dtype=np.float64), axis=axes), _MIN_ERR)
    pixels = np.prod([x.shape[a] for a in axes])
    return _per_image(10.0 * np.log10(peak_val**2 * pixels / err), x)


def _psnr_grad(x: Array, target: Array, peak_val: float) -> Array:
    axes = _image_axes(x)
    diff = x - target
    err = np.maximum(np.sum(np.square(diff, dtype=np.float64), axis=axes, keepdims=True), _MIN_ERR)
    return (-20.0 / np.log(10.0)) * diff / err


def _l1(x: Array, target: Array, peak_val: float) -> Array:
    return _per_image(np.sum(np.abs(x - target), axis=_image_axes(x)), x)


def _l1_grad(x: Array, target: Array, peak_val: float) -> Array:
    return np.sign(x - target)


REGISTRY.register("psnr", _psnr, _psnr_grad)
REGISTRY.register("l1", _l1, _l1_grad)


def nn_imloss(
    x: Array,
    target: Array,
    dzdy: Optional[Array] = None,
    *,
    peak_val: float = 255.0,
    loss_type: str = "psnr",
) -> Array:
    """Return the per-image loss, or ``dz/dx`` when ``dzdy`` is given.

    ``dzdy`` is a scalar or one value per image and scales each image's
    derivative.
    """

    if x.shape != target.shape:
        raise ValueError(f"imloss shape mismatch: {x.shape} vs {target.shape}")
    loss = REGISTRY.resolve(loss_type)
    if dzdy is None:
        return loss.value(x, target, peak_val)
    scale = np.asarray(dzdy, dtype=np.float64).reshape(-1)
    grad = loss.grad(x, target, peak_val)
    if x.ndim >= 4:
        grad = grad * scale.reshape((1,) * 3 + (-1,))
    else:
        grad = grad * scale[0]
    return grad.astype(x.dtype, copy=False)


__all__ = ["ImageLoss", "LossRegistry", "REGISTRY", "nn_imloss"]
