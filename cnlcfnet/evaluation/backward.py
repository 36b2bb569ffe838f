"""Reverse sweep: input gradients, parameter gradients and their dispatch."""

from __future__ import annotations

import time
from typing import Any, List, Optional, Tuple

from ..core.errors import UnknownLayerType
from ..core.layers import CNLCF, BNorm, Clip, ImLoss, LumChrom2RGB, Network, RGB2LumChrom, is_frozen
from ..core.ledger import Ledger, LedgerEntry
from ..core.types import Array, batch_size, innermost
from ..ops.bnorm import bnorm_backward
from ..ops.clip import nn_clip
from ..ops.colorspace import lumchrom2rgb, rgb2lumchrom
from ..ops.imloss import nn_imloss
from .cnlcf_adapter import cnlcf_backward_step
from .config import EvalConfig, PassPlan
from .retention import should_discard_backward, should_discard_boundary


def backward_layer(
    layer: Any,
    entry_in: LedgerEntry,
    entry_out: LedgerEntry,
    obs: Array,
    plan: PassPlan,
) -> Tuple[Array, Optional[List[Array]]]:
    """Return ``dz/dx`` of one layer and its parameter gradients (or ``None``)."""

    dzdy = entry_out.dzdx
    if isinstance(layer, CNLCF):
        return cnlcf_backward_step(layer, entry_in, entry_out, obs, plan.config.net_params)

    if isinstance(layer, ImLoss):
        x = innermost(entry_in.x)
        return nn_imloss(x, layer.target, dzdy, peak_val=layer.peak_val, loss_type=layer.loss_type), None
    if isinstance(layer, BNorm):
        x = innermost(entry_in.x)
        gain, bias, _ = layer.weights
        dzdx, dgain, dbias, moments = bnorm_backward(x, gain, bias, dzdy, epsilon=layer.epsilon)
        # scale the moments by the batch size so sub-batches add up; the
        # consumer normalises by the total count
        return dzdx, [dgain, dbias, moments * batch_size(x)]
    if isinstance(layer, Clip):
        return nn_clip(innermost(entry_in.x), layer.lb, layer.ub, dzdy), None
    if isinstance(layer, RGB2LumChrom):
        return rgb2lumchrom(None, dzdy, scale=layer.scale, op=layer.op), None
    if isinstance(layer, LumChrom2RGB):
        return lumchrom2rgb(None, dzdy, scale=layer.scale, op=layer.op), None
    raise UnknownLayerType(getattr(layer, "type", type(layer).__name__))


def store_parameter_gradients(
    entry: LedgerEntry, layer_index: int, dzdw: List[Array], config: EvalConfig
) -> None:
    """Overwrite or accumulate ``dzdw`` into ``entry``, then push if configured."""

    if not config.accumulate or entry.dzdw is None:
        entry.dzdw = list(dzdw)
    else:
        merged: List[Optional[Array]] = []
        for j, grad in enumerate(dzdw):
            previous = entry.dzdw[j] if j < len(entry.dzdw) else None
            merged.append(grad if previous is None else previous + grad)
        entry.dzdw = merged

    if config.parameter_server is not None and not config.hold_on:
        for j, grad in enumerate(entry.dzdw):
            config.parameter_server.push(f"l{layer_index + 1}_{j + 1}", grad)
            entry.dzdw[j] = None


def backward_pass(net: Network, ledger: Ledger, dzdy: Array, obs: Array, plan: PassPlan) -> None:
    config = plan.config
    layers = net.layers
    n = len(layers)
    ledger[n].dzdx = dzdy

    for i in range(n - 1, plan.back_prop_lim - 1, -1):
        layer = layers[i]
        start = time.perf_counter()
        dzdx, dzdw = backward_layer(layer, ledger[i], ledger[i + 1], obs, plan)
        ledger[i].dzdx = dzdx
        if dzdw is not None and not is_frozen(layer):
            store_parameter_gradients(ledger[i], i, dzdw, config)

        if should_discard_backward(config.conserve_memory, layer, i == n - 1):
            ledger[i + 1].dzdx = None
            ledger[i + 1].x = None
            if isinstance(layer, CNLCF):
                ledger[i + 1].aux = None

        if config.sync and config.barrier is not None:
            config.barrier()
        ledger[i].backward_time = time.perf_counter() - start

    lim = plan.back_prop_lim
    if lim < n and should_discard_boundary(config.conserve_memory, lim, layers[lim]):
        ledger[lim].dzdx = None
        ledger[lim].x = None


__all__ = ["backward_layer", "backward_pass", "store_parameter_gradients"]
