"""Network presets and config loading.

A config is a mapping with three sections::

    {
        "input": {"shape": [H, W, C, N], "sigma": 15.0, "seed": 0},
        "network": {"layers": [...], "meta": {...}},
        "evaluate": {"backward": true, "conserve_memory": false, ...},
    }

``network.layers`` entries follow :func:`cnlcfnet.core.layers.layer_from_config`.
The ``imloss`` ground truth is filled in with the clean synthetic image.
"""

from __future__ import annotations

import json
from copy import deepcopy
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple

import numpy as np

from .core.layers import Network, network_from_config
from .core.types import Array

_PRESETS: Dict[str, Mapping[str, Any]] = {
    "cnlcf-denoise-color": {
        "input": {"shape": [16, 16, 3, 2], "sigma": 15.0, "seed": 0},
        "network": {
            "layers": [
                {"type": "rgb2LumChrom"},
                {
                    "type": "cnlcf",
                    "init": {"channels": 3, "patch_size": 3, "num_rbf": 9, "seed": 1},
                    "pad_size": 1,
                    "first_stage": True,
                },
                {"type": "LumChrom2rgb"},
                {"type": "clip", "lb": 0.0, "ub": 255.0},
                {"type": "imloss", "peak_val": 255.0, "loss_type": "psnr"},
            ],
            "meta": {"task": "denoising"},
        },
        "evaluate": {"backward": True, "conserve_memory": False, "mode": "normal"},
    },
    "cnlcf-two-stage": {
        "input": {"shape": [12, 12, 3, 2], "sigma": 25.0, "seed": 3},
        "network": {
            "layers": [
                {"type": "rgb2LumChrom"},
                {
                    "type": "cnlcf",
                    "init": {"channels": 3, "patch_size": 3, "num_rbf": 7, "seed": 4},
                    "pad_size": 1,
                    "first_stage": True,
                },
                {
                    "type": "cnlcf",
                    "init": {"channels": 3, "patch_size": 3, "num_rbf": 7, "seed": 5},
                    "pad_size": 1,
                    "shrink_type": "clip",
                    "lb": -50.0,
                    "ub": 50.0,
                },
                {"type": "LumChrom2rgb"},
                {"type": "imloss", "peak_val": 255.0, "loss_type": "psnr"},
            ],
            "meta": {"task": "denoising"},
        },
        "evaluate": {"backward": True, "conserve_memory": True, "mode": "normal"},
    },
    "bnorm-clip-l1": {
        "input": {"shape": [8, 8, 3, 4], "sigma": 10.0, "seed": 7},
        "network": {
            "layers": [
                {"type": "bnorm", "channels": 3},
                {"type": "clip", "lb": -3.0, "ub": 3.0},
                {"type": "imloss", "loss_type": "l1"},
            ],
        },
        "evaluate": {"backward": True, "mode": "normal"},
    },
}

_PRESET_DIR = Path(__file__).resolve().parents[1] / "configs" / "presets"
_REQUIRED_SECTIONS = {"input", "network"}


def read_config_file(path: str | Path) -> Mapping[str, Any]:
    path = Path(path)
    text = path.read_text()
    suffix = path.suffix.lower()
    if suffix in {".yaml", ".yml"}:
        try:
            import yaml  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("PyYAML is required to load configs in YAML format") from exc
        data = yaml.safe_load(text) or {}
    elif suffix == ".json":
        data = json.loads(text or "{}")
    else:
        raise ValueError(f"Unsupported config file type: {path.suffix}")

    if not isinstance(data, Mapping):
        raise TypeError(f"Config {path.name} must decode to a mapping")
    return data


def _file_presets() -> Dict[str, Mapping[str, Any]]:
    found: Dict[str, Mapping[str, Any]] = {}
    if _PRESET_DIR.exists():
        for file in sorted(_PRESET_DIR.iterdir()):
            if file.suffix.lower() not in {".yaml", ".yml", ".json"}:
                continue
            data = read_config_file(file)
            missing = _REQUIRED_SECTIONS - set(data)
            if missing:
                raise KeyError(
                    f"Preset {file.name} is missing required sections: {', '.join(sorted(missing))}"
                )
            found[file.stem] = json.loads(json.dumps(data))
    return found


def presets() -> Mapping[str, Mapping[str, Any]]:
    combined: Dict[str, Mapping[str, Any]] = {name: deepcopy(cfg) for name, cfg in _PRESETS.items()}
    combined.update(_file_presets())
    return combined


def load_preset(name: str) -> Dict[str, Any]:
    file_overrides = _file_presets()
    if name in file_overrides:
        return dict(file_overrides[name])
    try:
        return deepcopy(dict(_PRESETS[name]))
    except KeyError as exc:
        raise KeyError(f"Unknown preset: {name}") from exc


def merge_config(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Recursively merge ``override`` into ``base`` (lists are replaced)."""

    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            base[key] = merge_config(dict(base[key]), value)
        else:
            base[key] = deepcopy(value)
    return base


def synthetic_images(input_cfg: Mapping[str, Any]) -> Tuple[Array, Array]:
    """Return a smooth clean batch in ``[0, 255]`` and its noisy observation."""

    h, w, c, n = (int(v) for v in input_cfg.get("shape", (16, 16, 3, 1)))
    rng = np.random.default_rng(int(input_cfg.get("seed", 0)))
    yy, xx = np.meshgrid(np.linspace(0, 1, h), np.linspace(0, 1, w), indexing="ij")
    clean = np.empty((h, w, c, n), dtype=np.float32)
    for img in range(n):
        for ch in range(c):
            fx, fy, phase = rng.uniform(0.5, 3.0, size=3)
            pattern = np.sin(2 * np.pi * (fx * xx + fy * yy) + phase)
            clean[:, :, ch, img] = 127.5 * (1.0 + pattern)
    sigma = float(input_cfg.get("sigma", 0.0))
    noisy = clean + sigma * rng.standard_normal(clean.shape).astype(np.float32)
    return clean, noisy


def build_network(config: Mapping[str, Any], *, target: Array) -> Network:
    """Instantiate the config's network; ``imloss`` layers compare to ``target``."""

    return network_from_config(config["network"], layer_defaults={"imloss": {"target": target}})


__all__ = [
    "build_network",
    "load_preset",
    "merge_config",
    "presets",
    "read_config_file",
    "synthetic_images",
]
