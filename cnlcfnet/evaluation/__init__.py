"""Forward/backward evaluation of layered restoration networks."""

from .config import EvalConfig, NetParams, ParameterServer
from .evaluator import evaluate

__all__ = ["EvalConfig", "NetParams", "ParameterServer", "evaluate"]
