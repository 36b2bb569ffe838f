"""Public entry point: evaluate a network and, optionally, its derivatives."""

from __future__ import annotations

import warnings
from dataclasses import replace
from typing import Any, Optional

from ..core.errors import InvalidState, UnknownLayerType
from ..core.layers import LAYER_TYPES, Network
from ..core.ledger import Ledger
from ..core.types import Array
from .backward import backward_pass
from .config import EvalConfig, plan_pass
from .forward import derive_observation, forward_pass


def _check_layers(net: Network) -> None:
    for layer in net.layers:
        cls = LAYER_TYPES.get(getattr(layer, "type", None))
        if cls is None or not isinstance(layer, cls):
            raise UnknownLayerType(getattr(layer, "type", type(layer).__name__))


def evaluate(
    net: Network,
    x: Optional[Array],
    dzdy: Optional[Array] = None,
    ledger: Optional[Ledger] = None,
    *,
    config: Optional[EvalConfig] = None,
    **options: Any,
) -> Ledger:
    """Evaluate ``net`` on ``x``; back-propagate ``dzdy`` when it is given.

    ``ledger`` is reused when supplied (required for ``skip_forward``, and the
    way to accumulate gradients over sub-batches).  Keyword ``options``
    override fields of ``config``.  Returns the populated ledger:
    ``ledger[0]`` is the input, ``ledger[i + 1]`` the output of layer ``i``.
    """

    if "cudnn" in options:
        options.pop("cudnn")
        warnings.warn(
            "`cudnn` has no effect with the NumPy kernels and will be removed",
            DeprecationWarning,
            stacklevel=2,
        )
    config = (config or EvalConfig()).with_options(**options)
    n = len(net.layers)
    derivatives = dzdy is not None
    plan = plan_pass(config, n, derivatives=derivatives, has_ledger=ledger is not None)
    _check_layers(net)

    if ledger is None:
        ledger = Ledger.allocate(n)
    elif len(ledger) != n + 1:
        raise InvalidState(f"ledger has {len(ledger)} entries for a {n}-layer network")

    if not config.skip_forward:
        ledger[0].x = x

    obs = config.net_params.obs
    if obs is None:
        source = x if x is not None else ledger[0].x
        if source is None:
            raise InvalidState("no input available to derive the observation from")
        obs = derive_observation(net, source)
    params = replace(config.net_params, obs=obs)
    plan = replace(plan, config=replace(config, net_params=params))

    if not config.skip_forward:
        forward_pass(net, ledger, obs, plan)
    if derivatives:
        backward_pass(net, ledger, dzdy, obs, plan)
    return ledger


__all__ = ["evaluate"]
