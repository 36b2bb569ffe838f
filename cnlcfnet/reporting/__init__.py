"""Reporting utilities for cnlcfnet."""

from .artifacts import write_manifest
from .metrics import CsvSink, JsonlSink
from .timing import emit_timings, ledger_timings, write_timing_summary

__all__ = [
    "CsvSink",
    "JsonlSink",
    "emit_timings",
    "ledger_timings",
    "write_manifest",
    "write_timing_summary",
]
