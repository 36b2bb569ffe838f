"""Forward sweep over the layer list."""

from __future__ import annotations

import time
from typing import Any

from ..core.errors import UnknownLayerType
from ..core.layers import CNLCF, BNorm, Clip, ImLoss, LumChrom2RGB, Network, RGB2LumChrom
from ..core.ledger import Ledger, LedgerEntry
from ..core.types import Array, Bundle, innermost
from ..ops.bnorm import bnorm_forward
from ..ops.clip import nn_clip
from ..ops.colorspace import lumchrom2rgb, rgb2lumchrom
from ..ops.imloss import nn_imloss
from .cnlcf_adapter import cnlcf_forward_step
from .config import PassPlan
from .retention import should_forget


def derive_observation(net: Network, x: Array) -> Array:
    """Observation seen by the non-local filters when none is supplied."""

    first = net.layers[0] if net.layers else None
    if isinstance(first, RGB2LumChrom):
        return rgb2lumchrom(innermost(x), scale=first.scale, op=first.op)
    return innermost(x)


def _drop_input(entry: LedgerEntry) -> None:
    if isinstance(entry.x, Bundle):
        entry.x[-1] = None
    else:
        entry.x = None


def forward_layer(
    layer: Any,
    entry_in: LedgerEntry,
    entry_out: LedgerEntry,
    obs: Array,
    plan: PassPlan,
) -> None:
    """Compute ``entry_out.x`` from ``entry_in.x`` for one layer."""

    if isinstance(layer, CNLCF):
        cnlcf_forward_step(
            layer, entry_in, entry_out, obs, plan.config.net_params, derivatives=plan.derivatives
        )
        return

    x = innermost(entry_in.x)
    if isinstance(layer, ImLoss):
        entry_out.x = nn_imloss(x, layer.target, peak_val=layer.peak_val, loss_type=layer.loss_type)
    elif isinstance(layer, BNorm):
        gain, bias, moments = layer.weights
        entry_out.x = bnorm_forward(
            x, gain, bias, moments=moments if plan.test_mode else None, epsilon=layer.epsilon
        )
    elif isinstance(layer, Clip):
        entry_out.x = nn_clip(x, layer.lb, layer.ub)
    elif isinstance(layer, RGB2LumChrom):
        entry_out.x = rgb2lumchrom(x, scale=layer.scale, op=layer.op)
    elif isinstance(layer, LumChrom2RGB):
        entry_out.x = lumchrom2rgb(x, scale=layer.scale, op=layer.op)
        if plan.derivatives:
            # linear: backward never reads the input
            _drop_input(entry_in)
    else:
        raise UnknownLayerType(getattr(layer, "type", type(layer).__name__))


def forward_pass(net: Network, ledger: Ledger, obs: Array, plan: PassPlan) -> None:
    """Run every layer in order, applying the retention policy as it goes."""

    config = plan.config
    layers = net.layers
    for i, layer in enumerate(layers):
        start = time.perf_counter()
        forward_layer(layer, ledger[i], ledger[i + 1], obs, plan)

        previous = layers[i - 1] if i > 0 else None
        if should_forget(config.conserve_memory, plan.needs_backward(i), previous):
            ledger[i].x = None

        if config.sync and config.barrier is not None:
            config.barrier()
        ledger[i].time = time.perf_counter() - start

    if config.conserve_memory and not plan.derivatives:
        for i in range(len(layers)):
            producer = layers[i - 1] if i > 0 else None
            if producer is None or not producer.precious:
                ledger[i].x = None


__all__ = ["derive_observation", "forward_layer", "forward_pass"]
