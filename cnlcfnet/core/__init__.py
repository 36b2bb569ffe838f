"""Core data model for cnlcfnet."""

from . import errors, layers, ledger, types

__all__ = ["errors", "layers", "ledger", "types"]
