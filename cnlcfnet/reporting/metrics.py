"""Sinks for per-layer evaluation records."""

from __future__ import annotations

import csv
import json
import subprocess
from pathlib import Path
from typing import Mapping


def _git_sha() -> str:
    try:
        out = subprocess.check_output(["git", "rev-parse", "HEAD"], stderr=subprocess.DEVNULL)
        return out.decode().strip()
    except Exception:  # pragma: no cover - git may be unavailable in tests
        return "unknown"


def _record(index: int, metrics: Mapping[str, object]) -> dict:
    record: dict = {"layer": int(index)}
    for key, value in metrics.items():
        if isinstance(value, bool):
            record[key] = value
        elif isinstance(value, (int, float)):
            record[key] = float(value)
        elif isinstance(value, str):
            record[key] = value
    return record


class JsonlSink:
    """Append-only JSONL writer, one line per layer."""

    def __init__(
        self,
        path: str | Path,
        *,
        phase: str = "evaluate",
        sha: str | None = None,
    ) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("")
        self.phase = phase
        self.sha = sha or _git_sha()

    def on_layer(self, index: int, metrics: Mapping[str, object]) -> None:
        record = {"phase": self.phase, "sha": self.sha}
        record.update(_record(index, metrics))
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record) + "\n")

    __call__ = on_layer


class CsvSink:
    """Write per-layer records to CSV with a stable schema."""

    def __init__(self, path: str | Path, *, phase: str = "evaluate") -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.phase = phase

    def on_layer(self, index: int, metrics: Mapping[str, object]) -> None:
        row = {"phase": self.phase}
        row.update(_record(index, metrics))
        with self.path.open("a", encoding="utf-8", newline="") as handle:
            fieldnames = sorted(row.keys())
            writer = csv.DictWriter(handle, fieldnames=fieldnames)
            if handle.tell() == 0:
                writer.writeheader()
            writer.writerow(row)

    __call__ = on_layer


__all__ = ["CsvSink", "JsonlSink"]
