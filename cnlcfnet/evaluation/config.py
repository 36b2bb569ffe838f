"""Per-call evaluator options."""

from __future__ import annotations

import math
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional, Protocol

from ..core.errors import (
    InvalidArgument,
    InvalidMode,
    SkipForwardEmptyLedger,
    SkipForwardNoDerivative,
)
from ..core.types import Array
from ..ops.cnlcf import LookupTable, identity_operator


class ParameterServer(Protocol):
    """External aggregator that takes ownership of pushed gradients."""

    def push(self, key: str, tensor: Array) -> None:
        """Receive the gradient stored under ``key``."""


@dataclass(frozen=True, eq=False)
class NetParams:
    """Context shared by every cnlcf layer of one evaluation.

    ``obs`` is the observation fed to the non-local filters (derived from the
    input when ``None``).  ``ata`` / ``at`` are the normal-equations and
    adjoint operators of the degradation, ``a`` the degradation itself.
    """

    obs: Optional[Array] = None
    lut: Optional[LookupTable] = None
    nbrs_idx: Optional[Array] = None
    nbrs_weights: Optional[Array] = None
    ata: Callable[[Array], Array] = identity_operator
    at: Callable[[Array], Array] = identity_operator
    a: Callable[[Array], Array] = identity_operator
    identity: bool = False


@dataclass(frozen=True, eq=False)
class EvalConfig:
    """Options of one :func:`~cnlcfnet.evaluation.evaluator.evaluate` call."""

    conserve_memory: bool = False
    sync: bool = False
    barrier: Optional[Callable[[], Any]] = None
    mode: str = "normal"
    accumulate: bool = False
    back_prop_depth: float = math.inf
    skip_forward: bool = False
    parameter_server: Optional[ParameterServer] = None
    hold_on: bool = False
    net_params: NetParams = field(default_factory=NetParams)

    def with_options(self, **options: Any) -> "EvalConfig":
        return replace(self, **options) if options else self


@dataclass(frozen=True, eq=False)
class PassPlan:
    """Validated, resolved view of a config for one network."""

    n_layers: int
    derivatives: bool
    test_mode: bool
    back_prop_lim: int
    config: EvalConfig

    def needs_backward(self, layer_index: int) -> bool:
        return self.derivatives and layer_index >= self.back_prop_lim


def plan_pass(
    config: EvalConfig, n_layers: int, *, derivatives: bool, has_ledger: bool
) -> PassPlan:
    """Validate ``config`` and resolve the back-propagation limit.

    ``back_prop_lim`` is the 0-based index of the first layer that receives
    gradients.
    """

    depth = config.back_prop_depth
    if not depth > 0:
        raise InvalidArgument(f"Invalid `back_prop_depth` value {depth!r} (must be > 0)")
    if config.skip_forward and not derivatives:
        raise SkipForwardNoDerivative("`skip_forward` valid only when backward pass is computed")

    mode = str(config.mode).lower()
    if mode not in {"normal", "test"}:
        raise InvalidMode(f"Unknown mode {config.mode!r}")

    if config.skip_forward and not has_ledger:
        raise SkipForwardEmptyLedger("A ledger must be provided for `skip_forward`")

    if math.isinf(depth):
        lim = 0
    else:
        lim = max(n_layers - int(math.floor(depth)), 0)
    return PassPlan(
        n_layers=n_layers,
        derivatives=derivatives,
        test_mode=mode == "test",
        back_prop_lim=lim,
        config=config,
    )


__all__ = ["EvalConfig", "NetParams", "ParameterServer", "PassPlan", "plan_pass"]
