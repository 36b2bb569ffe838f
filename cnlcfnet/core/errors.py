"""Typed failures raised by the evaluator."""

from __future__ import annotations


class EvaluationError(RuntimeError):
    """Base class for every failure of a network evaluation call."""


class InvalidArgument(EvaluationError, ValueError):
    """An option has a value outside its domain (e.g. ``back_prop_depth <= 0``)."""


class InvalidMode(EvaluationError, ValueError):
    """The evaluation mode is neither ``normal`` nor ``test``."""


class InvalidState(EvaluationError):
    """The ledger cannot support the requested pass."""


class SkipForwardNoDerivative(EvaluationError):
    """``skip_forward`` was requested without an output derivative."""


class SkipForwardEmptyLedger(InvalidState):
    """``skip_forward`` was requested without a pre-existing ledger."""


class UnknownLayerType(EvaluationError):
    """A layer tag outside the supported set."""

    def __init__(self, layer_type: object) -> None:
        super().__init__(f"Unknown layer type {layer_type!r}")
        self.layer_type = layer_type


__all__ = [
    "EvaluationError",
    "InvalidArgument",
    "InvalidMode",
    "InvalidState",
    "SkipForwardEmptyLedger",
    "SkipForwardNoDerivative",
    "UnknownLayerType",
]
