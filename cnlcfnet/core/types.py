"""Core typing contracts for cnlcfnet."""

from __future__ import annotations

from typing import Iterable, List, Tuple, Union

import numpy as np

Array = np.ndarray


class Bundle:
    """Ordered group of tensors travelling through the ledger as one activation.

    Some layers (``cnlcf`` in derivative mode) emit their intermediates next to
    the actual output.  The output is always the last element; operators only
    ever see it through :func:`innermost`.
    """

    def __init__(self, items: Iterable["Activation"] = ()) -> None:
        self.items: List[Activation] = list(items)

    def __len__(self) -> int:
        return len(self.items)

    def __getitem__(self, index):
        return self.items[index]

    def __setitem__(self, index, value) -> None:
        self.items[index] = value

    def __iter__(self):
        return iter(self.items)

    def truncate(self, count: int) -> None:
        """Drop the first ``count`` elements in place."""

        del self.items[:count]

    def __repr__(self) -> str:
        shapes = [getattr(item, "shape", type(item).__name__) for item in self.items]
        return f"Bundle({shapes})"


Activation = Union[Array, Bundle, None]


def innermost(value: Activation) -> Activation:
    """Unwrap nested bundles down to their last element."""

    while isinstance(value, Bundle):
        if not value.items:
            return None
        value = value.items[-1]
    return value


def as_batch(x: Array) -> Tuple[Array, bool]:
    """View a single ``H x W x C`` image as a batch of one.

    Returns the 4-D view and whether a trailing axis was added.
    """

    x = np.asarray(x)
    if x.ndim == 3:
        return x[..., None], True
    return x, False


def batch_size(x: Array) -> int:
    """Number of images in an ``H x W x C x N`` tensor (trailing dimension)."""

    x = innermost(x)
    if x is None or x.ndim < 4:
        return 1
    return int(x.shape[3])


__all__ = ["Activation", "Array", "Bundle", "as_batch", "batch_size", "innermost"]
