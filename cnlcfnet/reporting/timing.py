"""Per-layer timing extraction and deterministic summaries."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable, List, Mapping, Sequence

import numpy as np

from ..core.layers import Network
from ..core.ledger import Ledger


def ledger_timings(net: Network, ledger: Ledger) -> List[Mapping[str, object]]:
    """One row per layer: tag, forward/backward seconds, retained tensors."""

    rows: List[Mapping[str, object]] = []
    for i, layer in enumerate(net.layers):
        entry = ledger[i]
        rows.append(
            {
                "type": layer.type,
                "forward": float(entry.time),
                "backward": float(entry.backward_time),
                "has_output": ledger[i + 1].x is not None,
                "has_dzdw": entry.dzdw is not None and any(g is not None for g in entry.dzdw),
            }
        )
    return rows


def emit_timings(rows: Sequence[Mapping[str, object]], sinks: Iterable[object]) -> None:
    sinks = list(sinks)
    for index, row in enumerate(rows):
        for sink in sinks:
            if hasattr(sink, "on_layer"):
                sink.on_layer(index, row)  # type: ignore[attr-defined]
            elif callable(sink):
                sink(index, row)


def _build_summary(rows: Sequence[Mapping[str, object]]) -> Mapping[str, object]:
    phases: dict[str, Mapping[str, float]] = {}
    for phase in ("forward", "backward"):
        values = np.asarray([float(row[phase]) for row in rows], dtype=np.float64)
        if values.size == 0:
            continue
        phases[phase] = {
            "total": float(np.sum(values)),
            "max": float(np.max(values)),
            "mean": float(np.mean(values)),
            "slowest_layer": int(np.argmax(values)),
        }
    return {
        "version": 1,
        "layers": len(rows),
        "types": [str(row["type"]) for row in rows],
        "timings": phases,
    }


def write_timing_summary(rows: Sequence[Mapping[str, object]], out_summary_json: str | Path) -> str:
    """Write a summary of ``rows`` to ``out_summary_json``."""

    out_path = Path(out_summary_json)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(_build_summary(rows), sort_keys=True, indent=2))
    return str(out_path)


__all__ = ["emit_timings", "ledger_timings", "write_timing_summary"]
