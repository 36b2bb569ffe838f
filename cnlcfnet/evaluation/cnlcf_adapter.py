"""Calling convention of the cnlcf layer inside the evaluator.

The forward call in derivative mode leaves ``Bundle(z, v, r, u)`` in the
layer's output slot and ``(jacobian, clip_mask)`` in its ``aux``.  The backward
call re-assembles the operator input from that bundle and consumes it: the
first three elements are removed, so a second backward over the same ledger
is not supported and fails with :class:`InvalidState`.
"""

from __future__ import annotations

from typing import List, Tuple

from ..core.errors import InvalidState
from ..core.layers import CNLCF
from ..core.ledger import LedgerEntry
from ..core.types import Array, Bundle, innermost
from ..ops.cnlcf import cnlcf_backward, cnlcf_forward
from .config import NetParams

_STATE_SIZE = 3


def _neighbour_weights(layer: CNLCF, params: NetParams):
    return params.nbrs_weights if layer.patch_weighting else None


def cnlcf_forward_step(
    layer: CNLCF,
    entry_in: LedgerEntry,
    entry_out: LedgerEntry,
    obs: Array,
    params: NetParams,
    *,
    derivatives: bool,
) -> None:
    x = innermost(entry_in.x)
    activation, jacobian, clip_mask = cnlcf_forward(
        x,
        obs,
        layer.filters,
        layer.weights,
        layer.rbf_means,
        layer.rbf_precision,
        stride=layer.stride,
        pad_size=layer.pad_size,
        lut=params.lut,
        ata=params.ata,
        at=params.at,
        identity=params.identity,
        shrink_type=layer.shrink_type,
        lb=layer.lb,
        ub=layer.ub,
        nbrs_idx=params.nbrs_idx,
        nbrs_weights=_neighbour_weights(layer, params),
        conserve_memory=not derivatives,
    )
    entry_out.x = activation
    if derivatives:
        entry_out.aux = (jacobian, clip_mask)


def cnlcf_backward_step(
    layer: CNLCF,
    entry_in: LedgerEntry,
    entry_out: LedgerEntry,
    obs: Array,
    params: NetParams,
) -> Tuple[Array, List[Array]]:
    state = entry_out.x
    if not isinstance(state, Bundle) or len(state) <= _STATE_SIZE or entry_out.aux is None:
        raise InvalidState(
            "cnlcf forward state is missing or already consumed; "
            "run the forward pass with derivatives before back-propagating"
        )
    inputs = (innermost(entry_in.x), (state[2], state[1]), state[0])
    state.truncate(_STATE_SIZE)
    jacobian, clip_mask = entry_out.aux
    return cnlcf_backward(
        inputs,
        obs,
        layer.filters,
        layer.weights,
        layer.rbf_means,
        layer.rbf_precision,
        entry_out.dzdx,
        jacobian=jacobian,
        clip_mask=clip_mask,
        learning_rate=layer.learning_rate,
        first_stage=layer.first_stage,
        stride=layer.stride,
        pad_size=layer.pad_size,
        lut=params.lut,
        ata=params.ata,
        at=params.at,
        a=params.a,
        identity=params.identity,
        nbrs_idx=params.nbrs_idx,
        nbrs_weights=_neighbour_weights(layer, params),
    )


__all__ = ["cnlcf_backward_step", "cnlcf_forward_step"]
