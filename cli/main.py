"""Command line profiler for cnlcfnet preset networks."""

from __future__ import annotations

import argparse
import json
import math
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

import numpy as np

from cnlcfnet import EvalConfig, evaluate
from cnlcfnet import presets as net_presets
from cnlcfnet.reporting import (
    CsvSink,
    JsonlSink,
    emit_timings,
    ledger_timings,
    write_manifest,
    write_timing_summary,
)


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    preset_names = sorted(net_presets.presets().keys())
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--preset",
        choices=preset_names,
        default="cnlcf-denoise-color",
        help="Preset network to evaluate",
    )
    parser.add_argument("--config", type=Path, help="Optional JSON/YAML config override")
    parser.add_argument(
        "--backward",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Back-propagate a unit derivative from the network output",
    )
    parser.add_argument(
        "--conserve-memory",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Discard intermediate tensors that are no longer needed",
    )
    parser.add_argument("--mode", choices=["normal", "test"], help="Evaluation mode")
    parser.add_argument(
        "--back-prop-depth",
        type=int,
        help="Number of trailing layers that receive gradients",
    )
    parser.add_argument("--seed", type=int, help="Seed for the synthetic input batch")
    parser.add_argument("--run-dir", type=Path, help="Directory for timing artifacts")
    parser.add_argument(
        "--list-presets", action="store_true", help="List available presets and exit"
    )
    parser.add_argument(
        "--dump-config", type=Path, help="Dump the resolved config to a JSON file"
    )
    return parser.parse_args(argv)


def _eval_options(section: Mapping[str, Any]) -> dict:
    depth = section.get("back_prop_depth")
    return {
        "conserve_memory": bool(section.get("conserve_memory", False)),
        "mode": str(section.get("mode", "normal")),
        "back_prop_depth": math.inf if depth is None else int(depth),
    }


def _print_startup_summary(*, preset: str, types: Sequence[str], shape: Sequence[int], options: Mapping[str, Any], backward: bool) -> None:
    print("=== cnlcfnet evaluation ===")
    print(f"Preset        : {preset}")
    print(f"Layers        : {list(types)}")
    print(f"Input shape   : {list(shape)}")
    print(f"Backward      : {backward}")
    print(f"Options       : {dict(options)}")
    print("===========================")


def main(argv: Iterable[str] | None = None) -> None:
    args = parse_args(argv)

    if args.list_presets:
        for name in sorted(net_presets.presets().keys()):
            print(name)
        raise SystemExit(0)

    config = net_presets.load_preset(args.preset)
    if args.config:
        override = net_presets.read_config_file(args.config)
        if {"input", "network"} <= set(override.keys()):
            config = json.loads(json.dumps(override))
        else:
            config = net_presets.merge_config(config, override)

    section = config.setdefault("evaluate", {})
    if args.backward is not None:
        section["backward"] = bool(args.backward)
    if args.conserve_memory is not None:
        section["conserve_memory"] = bool(args.conserve_memory)
    if args.mode:
        section["mode"] = args.mode
    if args.back_prop_depth is not None:
        section["back_prop_depth"] = int(args.back_prop_depth)
    if args.seed is not None:
        config.setdefault("input", {})["seed"] = int(args.seed)

    if args.dump_config:
        args.dump_config.parent.mkdir(parents=True, exist_ok=True)
        args.dump_config.write_text(json.dumps(config, indent=2))

    clean, noisy = net_presets.synthetic_images(config["input"])
    net = net_presets.build_network(config, target=clean)
    options = _eval_options(section)
    backward = bool(section.get("backward", False))

    _print_startup_summary(
        preset=args.preset,
        types=[layer.type for layer in net.layers],
        shape=noisy.shape,
        options=options,
        backward=backward,
    )

    # every layer but imloss preserves the image shape
    ends_with_loss = bool(net.layers) and net.layers[-1].type == "imloss"
    output_shape = (noisy.shape[3],) if ends_with_loss else noisy.shape
    dzdy = np.ones(output_shape, dtype=np.float32) if backward else None
    ledger = evaluate(net, noisy, dzdy, config=EvalConfig(**options))

    run_dir = args.run_dir or Path("runs") / args.preset
    rows = ledger_timings(net, ledger)
    jsonl = JsonlSink(run_dir / "timings.jsonl", phase="backward" if backward else "forward")
    csv_sink = CsvSink(run_dir / "timings.csv", phase="backward" if backward else "forward")
    emit_timings(rows, [jsonl, csv_sink])
    summary_path = write_timing_summary(rows, run_dir / "summary.json")
    manifest_path = write_manifest(
        run_dir / "manifest.json",
        config=config,
        options={k: (None if v == math.inf else v) for k, v in options.items()},
    )

    output = np.asarray(ledger.output) if ledger.output is not None else np.zeros(0)
    payload = {
        "layers": len(net.layers),
        "loss": [float(v) for v in np.ravel(output)],
        "timings": str(jsonl.path),
        "summary": summary_path,
        "manifest": manifest_path,
    }
    if backward and ledger[0].dzdx is not None:
        payload["input_grad_norm"] = float(np.linalg.norm(ledger[0].dzdx))
    print(json.dumps(payload, sort_keys=True))


if __name__ == "__main__":
    main()
