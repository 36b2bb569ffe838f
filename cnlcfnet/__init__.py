"""cnlcfnet public API."""

from .core import errors, layers, types  # noqa: F401
from .core.errors import (
    EvaluationError,
    InvalidArgument,
    InvalidMode,
    InvalidState,
    SkipForwardEmptyLedger,
    SkipForwardNoDerivative,
    UnknownLayerType,
)
from .core.layers import Network, layer_from_config, network_from_config
from .core.ledger import Ledger, LedgerEntry
from .core.types import Bundle, innermost
from .evaluation import EvalConfig, NetParams, evaluate
from . import presets  # noqa: F401
from .presets import load_preset

__all__ = [
    "Bundle",
    "EvalConfig",
    "EvaluationError",
    "InvalidArgument",
    "InvalidMode",
    "InvalidState",
    "Ledger",
    "LedgerEntry",
    "NetParams",
    "Network",
    "SkipForwardEmptyLedger",
    "SkipForwardNoDerivative",
    "UnknownLayerType",
    "errors",
    "evaluate",
    "innermost",
    "layer_from_config",
    "layers",
    "load_preset",
    "network_from_config",
    "presets",
    "types",
]
