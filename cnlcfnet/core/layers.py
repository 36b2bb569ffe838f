"""Layer variants understood by the evaluator.

Every variant is a frozen dataclass that carries exactly the fields its
operator needs.  Optional fields are resolved when the network is loaded, so
the evaluator never has to test whether a field is present.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Mapping, Optional, Sequence, Tuple

import numpy as np

from .errors import UnknownLayerType
from .types import Array


def _array(value: Any, dtype=np.float32) -> Array:
    return np.asarray(value, dtype=dtype)


@dataclass(frozen=True, eq=False)
class ImLoss:
    """Image loss against ground-truth ``target`` (one value per image)."""

    type: ClassVar[str] = "imloss"

    target: Array
    peak_val: float = 255.0
    loss_type: str = "psnr"
    precious: bool = False


@dataclass(frozen=True, eq=False)
class BNorm:
    """Batch normalisation with ``weights = (gain, bias, moments)``."""

    type: ClassVar[str] = "bnorm"

    weights: Tuple[Array, Array, Array]
    epsilon: float = 1e-4
    learning_rate: Tuple[float, ...] = (1.0, 1.0, 0.0)
    precious: bool = False


@dataclass(frozen=True, eq=False)
class Clip:
    type: ClassVar[str] = "clip"

    lb: float = 0.0
    ub: float = 255.0
    precious: bool = False


@dataclass(frozen=True, eq=False)
class RGB2LumChrom:
    """Luminance/chrominance transform; ``op=None`` means the opponent basis."""

    type: ClassVar[str] = "rgb2LumChrom"

    scale: float = 1.0
    op: Optional[Array] = None
    precious: bool = False


@dataclass(frozen=True, eq=False)
class LumChrom2RGB:
    type: ClassVar[str] = "LumChrom2rgb"

    scale: float = 1.0
    op: Optional[Array] = None
    precious: bool = False


@dataclass(frozen=True, eq=False)
class CNLCF:
    """Non-local collaborative filtering stage.

    ``weights`` holds the six learnable groups: coefficient normalisation,
    neighbour-group weights, RBF mixture, data-term weight, residual weight and
    the log projection threshold.
    """

    type: ClassVar[str] = "cnlcf"

    filters: Array
    weights: Tuple[Array, Array, Array, Array, Array, Array]
    rbf_means: Array
    rbf_precision: float
    stride: int = 1
    pad_size: int = 0
    shrink_type: str = "identity"
    lb: float = -np.inf
    ub: float = np.inf
    first_stage: bool = False
    patch_weighting: bool = False
    learning_rate: Tuple[float, ...] = (1.0, 1.0, 1.0, 1.0, 1.0, 1.0)
    precious: bool = False


LAYER_TYPES: Dict[str, type] = {
    cls.type: cls for cls in (ImLoss, BNorm, Clip, RGB2LumChrom, LumChrom2RGB, CNLCF)
}


def is_frozen(layer: Any) -> bool:
    """True when every learning rate of a parameterised layer is zero."""

    rates = getattr(layer, "learning_rate", ())
    return not np.any(np.asarray(rates, dtype=np.float64))


@dataclass(frozen=True, eq=False)
class Network:
    """Ordered layer list plus metadata the evaluator ignores."""

    layers: Tuple[Any, ...]
    meta: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "layers", tuple(self.layers))

    def __len__(self) -> int:
        return len(self.layers)


def layer_from_config(config: Mapping[str, Any], **defaults: Any) -> Any:
    """Build a layer variant from a mapping with a ``type`` tag.

    ``defaults`` supplies values missing from ``config`` (for example the
    ground truth of an ``imloss`` layer that is only known at run time).
    """

    cfg: Dict[str, Any] = dict(defaults)
    cfg.update(config)
    tag = cfg.pop("type", None)
    if tag not in LAYER_TYPES:
        raise UnknownLayerType(tag)
    precious = bool(cfg.pop("precious", False))

    if tag == "imloss":
        if cfg.get("target") is None:
            raise KeyError("imloss layer requires a `target`")
        return ImLoss(
            target=_array(cfg["target"]),
            peak_val=float(cfg.get("peak_val", 255.0)),
            loss_type=str(cfg.get("loss_type", "psnr")),
            precious=precious,
        )
    if tag == "bnorm":
        if "weights" in cfg:
            gain, bias, moments = (_array(w) for w in cfg["weights"])
        else:
            channels = int(cfg["channels"])
            gain = np.ones(channels, dtype=np.float32)
            bias = np.zeros(channels, dtype=np.float32)
            moments = np.column_stack(
                [np.zeros(channels, dtype=np.float32), np.ones(channels, dtype=np.float32)]
            )
        return BNorm(
            weights=(gain, bias, moments),
            epsilon=float(cfg.get("epsilon", 1e-4)),
            learning_rate=_rates(cfg.get("learning_rate", (1.0, 1.0, 0.0)), 3),
            precious=precious,
        )
    if tag == "clip":
        return Clip(lb=float(cfg.get("lb", 0.0)), ub=float(cfg.get("ub", 255.0)), precious=precious)
    if tag in {"rgb2LumChrom", "LumChrom2rgb"}:
        op = cfg.get("op")
        cls = LAYER_TYPES[tag]
        return cls(
            scale=float(cfg.get("scale", 1.0)),
            op=_array(op, np.float64) if op is not None else None,
            precious=precious,
        )

    # cnlcf
    if "filters" not in cfg:
        from ..ops.cnlcf import init_cnlcf_params

        cfg.update(init_cnlcf_params(**dict(cfg.pop("init", {}))))
    weights = tuple(_array(w) for w in cfg["weights"])
    if len(weights) != 6:
        raise ValueError(f"cnlcf layer expects 6 weight groups, got {len(weights)}")
    return CNLCF(
        filters=_array(cfg["filters"]),
        weights=weights,  # type: ignore[arg-type]
        rbf_means=_array(cfg["rbf_means"]),
        rbf_precision=float(cfg["rbf_precision"]),
        stride=int(cfg.get("stride", 1)),
        pad_size=int(cfg.get("pad_size", 0)),
        shrink_type=str(cfg.get("shrink_type", "identity")),
        lb=float(cfg.get("lb", -np.inf)),
        ub=float(cfg.get("ub", np.inf)),
        first_stage=bool(cfg.get("first_stage", False)),
        patch_weighting=bool(cfg.get("patch_weighting", False)),
        learning_rate=_rates(cfg.get("learning_rate", (1.0,) * 6), 6),
        precious=precious,
    )


def _rates(value: Any, count: int) -> Tuple[float, ...]:
    rates = np.broadcast_to(np.asarray(value, dtype=np.float64).ravel(), (count,))
    return tuple(float(r) for r in rates)


def network_from_config(
    config: Mapping[str, Any],
    *,
    layer_defaults: Optional[Mapping[str, Mapping[str, Any]]] = None,
) -> Network:
    """Build a :class:`Network` from ``{"layers": [...], "meta": {...}}``.

    ``layer_defaults`` maps a layer tag to default fields, e.g.
    ``{"imloss": {"target": clean}}``.
    """

    layer_defaults = layer_defaults or {}
    layers: Sequence[Mapping[str, Any]] = config.get("layers", [])
    built = [
        layer_from_config(cfg, **dict(layer_defaults.get(cfg.get("type"), {})))
        for cfg in layers
    ]
    return Network(layers=tuple(built), meta=dict(config.get("meta", {})))


__all__ = [
    "BNorm",
    "CNLCF",
    "Clip",
    "ImLoss",
    "LAYER_TYPES",
    "LumChrom2RGB",
    "Network",
    "RGB2LumChrom",
    "is_frozen",
    "layer_from_config",
    "network_from_config",
]
