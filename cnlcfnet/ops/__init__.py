"""Reference NumPy kernels for every layer type the evaluator dispatches to."""

from . import bnorm, clip, cnlcf, colorspace, imloss, patches

__all__ = ["bnorm", "clip", "cnlcf", "colorspace", "imloss", "patches"]
