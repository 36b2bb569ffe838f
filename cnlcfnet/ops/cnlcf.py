"""Reference kernel of the non-local collaborative filtering (cnlcf) stage.

One stage computes, for an estimate ``x`` and observation ``y``::

    z = w1 * F^T P(pad(x))             patch transform coefficients
    a = sum_j w2_j c_mj z[idx_mj]      collaborative (non-local) aggregation
    s = clamp(sum_r w3_r phi_r(a))     RBF-mixture shrinkage
    r = crop(fold(F s) / count)        residual image
    v = x - w5 r - w4 (ATA x - AT y)   gradient step on the data term
    u = y + proj_eps(v - y)            projection, eps = exp(w6) sqrt(HWC)

Forward keeps ``(z, v, r)`` alongside ``u`` when derivatives are needed, and
returns the shrinkage derivative at ``a`` (the Jacobian) and the clamp mask.
Backward consumes exactly that state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..core.types import Array, Bundle, as_batch
from .patches import (
    col2im,
    im2col,
    overlap_count,
    pad_symmetric,
    pad_symmetric_adjoint,
    patch_grid,
)

LinearOp = Callable[[Array], Array]

SHRINK_TYPES = ("identity", "clip")


def identity_operator(x: Array) -> Array:
    return x


@dataclass(frozen=True, eq=False)
class LookupTable:
    """RBF basis sampled at ``origin + step * l`` (``values`` is ``L x R``)."""

    values: Array
    step: float
    origin: float


def build_lookup_table(
    rbf_means: Array, rbf_precision: float, *, origin: float, step: float, size: int
) -> LookupTable:
    grid = origin + step * np.arange(size, dtype=np.float64)
    diff = grid[:, None] - np.asarray(rbf_means, dtype=np.float64)[None, :]
    return LookupTable(np.exp(-0.5 * rbf_precision * diff**2), float(step), float(origin))


def rbf_basis(
    a: Array, rbf_means: Array, rbf_precision: float, lut: Optional[LookupTable] = None
) -> Tuple[Array, Array]:
    """Return the basis ``phi`` and its derivative, each ``a.shape + (R,)``."""

    if lut is None:
        diff = a[..., None] - np.asarray(rbf_means, dtype=np.float64)
        phi = np.exp(-0.5 * rbf_precision * diff**2)
        return phi, -rbf_precision * diff * phi

    values = np.asarray(lut.values, dtype=np.float64)
    size = values.shape[0]
    t = (a - lut.origin) / lut.step
    idx = np.clip(np.floor(t), 0, size - 2).astype(np.intp)
    frac = np.clip(t - idx, 0.0, 1.0)[..., None]
    lo, hi = values[idx], values[idx + 1]
    inside = ((t >= 0) & (t <= size - 1))[..., None]
    return lo + (hi - lo) * frac, (hi - lo) / lut.step * inside


def _scalar(w: Array) -> float:
    return float(np.reshape(np.asarray(w), -1)[0])


def _neighbours(
    n_patches: int, nbrs_idx: Optional[Array], nbrs_weights: Optional[Array], w2: Array
) -> Tuple[Array, Array, Array]:
    """Return ``idx (M, J)``, patch weights ``(M, J)`` and combined ``c (M, J)``."""

    if nbrs_idx is None:
        idx = np.arange(n_patches, dtype=np.intp)[:, None]
    else:
        idx = np.asarray(nbrs_idx, dtype=np.intp)
        if idx.ndim == 1:
            idx = idx[:, None]
    if idx.shape[0] != n_patches:
        raise ValueError(f"neighbour table has {idx.shape[0]} rows for {n_patches} patches")
    if nbrs_weights is None:
        pw = np.ones(idx.shape, dtype=np.float64)
    else:
        pw = np.asarray(nbrs_weights, dtype=np.float64).reshape(idx.shape)
    w2 = np.reshape(np.asarray(w2, dtype=np.float64), -1)
    if w2.shape[0] != idx.shape[1]:
        raise ValueError(f"expected {idx.shape[1]} neighbour-group weights, got {w2.shape[0]}")
    return idx, pw, pw * w2[None, :]


def _aggregate(z: Array, idx: Array, c: Array) -> Array:
    return np.einsum("kmjn,mj->kmn", z[:, idx, :], c)


def _shrink(s_raw: Array, shrink_type: str, lb: float, ub: float) -> Tuple[Array, Array]:
    if shrink_type == "identity":
        return s_raw, np.ones(s_raw.shape, dtype=bool)
    if shrink_type == "clip":
        mask = (s_raw >= lb) & (s_raw <= ub)
        return np.clip(s_raw, lb, ub), mask
    raise ValueError(f"Unknown shrink_type {shrink_type!r}; expected one of {SHRINK_TYPES}")


def _data_term(x: Array, obs: Array, ata: LinearOp, at: LinearOp, identity: bool) -> Array:
    if identity:
        return x - obs
    return ata(x) - at(obs)


def _projection(v: Array, obs: Array, w6: Array) -> Tuple[Array, Array, float]:
    e = v - obs
    axes = (0, 1, 2)
    norm = np.sqrt(np.sum(e**2, axis=axes, keepdims=True))
    eps = float(np.exp(_scalar(w6)) * np.sqrt(np.prod(v.shape[:3])))
    return e, norm, eps


class _Geometry:
    def __init__(self, x: Array, filters: Array, stride: int, pad_size: int) -> None:
        if x.ndim != 4:
            raise ValueError(f"cnlcf expects an H x W x C x N tensor, got shape {x.shape}")
        ph, pw, channels, k = filters.shape
        if channels != x.shape[2]:
            raise ValueError(f"filters expect {channels} channels, input has {x.shape[2]}")
        self.patch = (ph, pw)
        self.stride = int(stride)
        self.pad = int(pad_size)
        self.channels = channels
        self.image = x.shape[:2]
        self.padded = (x.shape[0] + 2 * self.pad, x.shape[1] + 2 * self.pad)
        self.n_patches = int(np.prod(patch_grid(self.padded, self.patch, self.stride)))
        self.fm = np.asarray(filters, dtype=np.float64).reshape(ph * pw * channels, k)
        self.count = overlap_count(self.padded, self.patch, self.stride)

    def transform(self, x: Array) -> Array:
        cols = im2col(pad_symmetric(x, self.pad), self.patch, self.stride)
        return np.einsum("pk,pmn->kmn", self.fm, cols)

    def transform_adjoint(self, g: Array) -> Array:
        cols = np.einsum("pk,kmn->pmn", self.fm, g)
        full = col2im(cols, self.padded, self.patch, self.stride, self.channels)
        return pad_symmetric_adjoint(full, self.pad)

    def synthesize(self, s: Array) -> Array:
        cols = np.einsum("pk,kmn->pmn", self.fm, s)
        full = col2im(cols, self.padded, self.patch, self.stride, self.channels)
        full = np.divide(full, self.count, out=np.zeros_like(full), where=self.count > 0)
        h, w = self.image
        return full[self.pad : self.pad + h, self.pad : self.pad + w]

    def synthesize_adjoint(self, g: Array) -> Array:
        h, w = self.image
        full = np.zeros(self.padded + g.shape[2:], dtype=np.float64)
        full[self.pad : self.pad + h, self.pad : self.pad + w] = g
        full = np.divide(full, self.count, out=np.zeros_like(full), where=self.count > 0)
        cols = im2col(full, self.patch, self.stride)
        return np.einsum("pk,pmn->kmn", self.fm, cols)


def cnlcf_forward(
    x: Array,
    obs: Array,
    filters: Array,
    weights: Sequence[Array],
    rbf_means: Array,
    rbf_precision: float,
    *,
    stride: int = 1,
    pad_size: int = 0,
    lut: Optional[LookupTable] = None,
    ata: LinearOp = identity_operator,
    at: LinearOp = identity_operator,
    identity: bool = False,
    shrink_type: str = "identity",
    lb: float = -np.inf,
    ub: float = np.inf,
    nbrs_idx: Optional[Array] = None,
    nbrs_weights: Optional[Array] = None,
    conserve_memory: bool = True,
) -> Tuple[object, Optional[Array], Optional[Array]]:
    """Run one stage.

    Returns ``(activation, jacobian, clip_mask)``.  With ``conserve_memory``
    the activation is the output image and the auxiliary tensors are ``None``;
    otherwise the activation is ``Bundle(z, v, r, u)`` and both auxiliary
    tensors are returned for the backward pass.  A single ``H x W x C`` image
    is processed as a batch of one and its image-shaped outputs keep three axes.
    """

    x, single = as_batch(x)
    obs, _ = as_batch(obs)
    w1, w2, w3, w4, w5, w6 = (np.asarray(w, dtype=np.float64) for w in weights)
    geo = _Geometry(x, filters, stride, pad_size)
    x64 = np.asarray(x, dtype=np.float64)
    obs64 = np.asarray(obs, dtype=np.float64)

    z = np.reshape(w1, (-1, 1, 1)) * geo.transform(x64)
    idx, _, c = _neighbours(geo.n_patches, nbrs_idx, nbrs_weights, w2)
    a = _aggregate(z, idx, c)
    phi, dphi = rbf_basis(a, rbf_means, rbf_precision, lut)
    s_raw = np.einsum("kmnr,kr->kmn", phi, w3)
    s, clip_mask = _shrink(s_raw, shrink_type, lb, ub)
    r = geo.synthesize(s)

    d = _data_term(x64, obs64, ata, at, identity)
    v = x64 - _scalar(w5) * r - _scalar(w4) * d
    e, norm, eps = _projection(v, obs64, w6)
    scale = np.minimum(1.0, np.divide(eps, norm, out=np.ones_like(norm), where=norm > 0))
    u = (obs64 + e * scale).astype(x.dtype, copy=False)

    def image(t: Array) -> Array:
        t = t.astype(x.dtype, copy=False)
        return t[..., 0] if single else t

    if conserve_memory:
        return image(u), None, None
    jacobian = np.einsum("kmnr,kr->kmn", dphi, w3)
    state = Bundle([z, image(v), image(r), image(u)])
    return state, jacobian, clip_mask


def cnlcf_backward(
    inputs: Tuple[Array, Tuple[Array, Array], Array],
    obs: Array,
    filters: Array,
    weights: Sequence[Array],
    rbf_means: Array,
    rbf_precision: float,
    dzdy: Array,
    *,
    jacobian: Array,
    clip_mask: Array,
    learning_rate: Sequence[float] = (1.0,) * 6,
    first_stage: bool = False,
    stride: int = 1,
    pad_size: int = 0,
    lut: Optional[LookupTable] = None,
    ata: LinearOp = identity_operator,
    at: LinearOp = identity_operator,
    a: LinearOp = identity_operator,
    identity: bool = False,
    nbrs_idx: Optional[Array] = None,
    nbrs_weights: Optional[Array] = None,
) -> Tuple[Array, List[Array]]:
    """Return ``dzdx`` and one gradient per weight group.

    ``inputs`` is ``(x, (r, v), z)`` as re-assembled from the forward bundle.
    Groups with a zero learning rate get a zero gradient.  ``a`` is the
    adjoint of ``at`` and only matters for ``first_stage`` with non-identity
    operators.
    """

    x, (r, v), z = inputs
    x, single = as_batch(x)
    w1, w2, w3, w4, w5, w6 = (np.asarray(w, dtype=np.float64) for w in weights)
    geo = _Geometry(x, filters, stride, pad_size)
    x64 = np.asarray(x, dtype=np.float64)
    obs64 = np.asarray(as_batch(obs)[0], dtype=np.float64)
    g_u = np.asarray(as_batch(dzdy)[0], dtype=np.float64)
    v = np.asarray(as_batch(v)[0], dtype=np.float64)
    r = np.asarray(as_batch(r)[0], dtype=np.float64)

    # projection
    e, norm, eps = _projection(v, obs64, w6)
    active = norm > eps
    ehat = np.divide(e, norm, out=np.zeros_like(e), where=norm > 0)
    inner = np.sum(ehat * g_u, axis=(0, 1, 2), keepdims=True)
    ratio = np.divide(eps, norm, out=np.ones_like(norm), where=norm > 0)
    g_v = np.where(active, ratio * (g_u - ehat * inner), g_u)
    g_w6 = np.sum(np.where(active, eps * inner, 0.0))
    g_obs = g_u - g_v

    # data term and residual weights
    d = _data_term(x64, obs64, ata, at, identity)
    g_w4 = -np.sum(g_v * d)
    g_w5 = -np.sum(g_v * r)
    w4s = _scalar(w4)
    g_x = g_v - w4s * (g_v if identity else ata(g_v))
    g_obs = g_obs + w4s * (g_v if identity else a(g_v))

    # shrinkage through the stored Jacobian and clip mask
    g_s = geo.synthesize_adjoint(-_scalar(w5) * g_v)
    g_sraw = g_s * clip_mask
    idx, pw, c = _neighbours(geo.n_patches, nbrs_idx, nbrs_weights, w2)
    agg = _aggregate(z, idx, c)
    phi, _ = rbf_basis(agg, rbf_means, rbf_precision, lut)
    g_w3 = np.einsum("kmn,kmnr->kr", g_sraw, phi)
    g_a = g_sraw * jacobian

    # aggregation and transform
    g_w2 = np.einsum("kmn,kmjn,mj->j", g_a, z[:, idx, :], pw)
    g_z = np.zeros_like(z, dtype=np.float64)
    np.add.at(g_z, (slice(None), idx), g_a[:, :, None, :] * c[None, :, :, None])
    t = geo.transform(x64)
    g_w1 = np.sum(g_z * t, axis=(1, 2))
    g_x = g_x + geo.transform_adjoint(np.reshape(w1, (-1, 1, 1)) * g_z)

    if first_stage:
        g_x = g_x + g_obs

    raw = [g_w1, g_w2, g_w3, g_w4, g_w5, g_w6]
    grads: List[Array] = []
    for weight, grad, rate in zip(weights, raw, learning_rate):
        shape = np.shape(weight)
        if rate == 0:
            grads.append(np.zeros(shape, dtype=np.float32))
        else:
            grads.append(np.reshape(grad, shape).astype(np.float32))
    g_x = g_x.astype(x.dtype, copy=False)
    return (g_x[..., 0] if single else g_x), grads


def init_cnlcf_params(
    channels: int = 3,
    patch_size: int = 3,
    num_filters: Optional[int] = None,
    num_rbf: int = 9,
    num_groups: int = 1,
    rbf_range: float = 100.0,
    seed: int = 0,
) -> Dict[str, object]:
    """Deterministic starting parameters for a cnlcf layer."""

    rng = np.random.default_rng(seed)
    p = patch_size * patch_size * channels
    k = num_filters or p
    basis = rng.standard_normal((p, p))
    q, _ = np.linalg.qr(basis)
    filters = q[:, :k].reshape(patch_size, patch_size, channels, k).astype(np.float32)
    means = np.linspace(-rbf_range, rbf_range, num_rbf).astype(np.float32)
    spacing = means[1] - means[0] if num_rbf > 1 else rbf_range
    precision = float(1.0 / spacing**2)
    mixture = np.tile(0.1 * means, (k, 1)).astype(np.float32)
    weights = [
        np.ones(k, dtype=np.float32),
        np.full(num_groups, 1.0 / num_groups, dtype=np.float32),
        mixture,
        np.array([0.1], dtype=np.float32),
        np.array([1.0], dtype=np.float32),
        np.array([0.0], dtype=np.float32),
    ]
    return {
        "filters": filters,
        "weights": weights,
        "rbf_means": means,
        "rbf_precision": precision,
    }


__all__ = [
    "LookupTable",
    "SHRINK_TYPES",
    "build_lookup_table",
    "cnlcf_backward",
    "cnlcf_forward",
    "identity_operator",
    "init_cnlcf_params",
    "rbf_basis",
]
