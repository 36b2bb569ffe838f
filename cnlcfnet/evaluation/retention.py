"""Decisions about which ledger tensors can be dropped."""

from __future__ import annotations

from typing import Any, Optional

from ..core.layers import ImLoss


def _keeps_output(layer: Optional[Any]) -> bool:
    return layer is not None and (isinstance(layer, ImLoss) or layer.precious)


def should_forget(conserve_memory: bool, needed_for_backward: bool, previous: Optional[Any]) -> bool:
    """Forward pass: drop the activation produced by ``previous``?

    ``previous`` is the layer whose output is being considered, ``None`` for
    the network input.
    """

    return conserve_memory and not needed_for_backward and not _keeps_output(previous)


def should_discard_backward(conserve_memory: bool, layer: Any, is_last: bool) -> bool:
    """Backward pass: drop the output and output-gradient of ``layer``?"""

    return conserve_memory and not is_last and not _keeps_output(layer)


def should_discard_boundary(conserve_memory: bool, back_prop_lim: int, layer: Any) -> bool:
    """After backward: drop the input of the first back-propagated layer?

    Only applies when the depth limit stopped the pass before the network
    input.
    """

    return conserve_memory and back_prop_lim > 0 and not layer.precious


__all__ = ["should_discard_backward", "should_discard_boundary", "should_forget"]
