import json
from pathlib import Path

import pytest

from cli import main as cli_main


def _payload(capsys):
    out = capsys.readouterr().out.strip().splitlines()
    return json.loads(out[-1])


def test_cli_writes_timing_artifacts(tmp_path, capsys):
    run_dir = tmp_path / "run"
    cli_main.main(["--preset", "cnlcf-denoise-color", "--run-dir", str(run_dir)])
    payload = _payload(capsys)

    assert payload["layers"] == 5
    assert len(payload["loss"]) == 2
    assert payload["input_grad_norm"] > 0

    records = [
        json.loads(line)
        for line in (run_dir / "timings.jsonl").read_text().splitlines()
        if line
    ]
    assert [r["type"] for r in records] == ["rgb2LumChrom", "cnlcf", "LumChrom2rgb", "clip", "imloss"]
    assert all(r["phase"] == "backward" for r in records)
    assert records[1]["has_dzdw"] is True

    summary = json.loads(Path(payload["summary"]).read_text())
    assert summary["layers"] == 5
    assert set(summary["timings"]) == {"forward", "backward"}
    manifest = json.loads(Path(payload["manifest"]).read_text())
    assert manifest["config"]["input"]["shape"] == [16, 16, 3, 2]
    assert manifest["options"]["back_prop_depth"] is None
    assert (run_dir / "timings.csv").read_text().startswith("backward,")


def test_cli_forward_only_with_config_override(tmp_path, capsys):
    override = tmp_path / "override.json"
    override.write_text(
        json.dumps({"input": {"shape": [8, 8, 3, 1]}, "evaluate": {"conserve_memory": True}})
    )
    dump = tmp_path / "resolved.json"
    cli_main.main(
        [
            "--preset",
            "bnorm-clip-l1",
            "--config",
            str(override),
            "--no-backward",
            "--run-dir",
            str(tmp_path / "fwd"),
            "--dump-config",
            str(dump),
        ]
    )
    payload = _payload(capsys)
    assert len(payload["loss"]) == 1
    assert "input_grad_norm" not in payload

    resolved = json.loads(dump.read_text())
    assert resolved["evaluate"]["backward"] is False
    assert resolved["evaluate"]["conserve_memory"] is True
    assert resolved["input"]["sigma"] == 10.0


def test_cli_losses_are_deterministic(tmp_path, capsys):
    args = ["--preset", "bnorm-clip-l1", "--seed", "5"]
    cli_main.main(args + ["--run-dir", str(tmp_path / "a")])
    first = _payload(capsys)
    cli_main.main(args + ["--run-dir", str(tmp_path / "b")])
    second = _payload(capsys)
    assert first["loss"] == second["loss"]
    assert first["input_grad_norm"] == second["input_grad_norm"]


def test_cli_lists_presets(capsys):
    with pytest.raises(SystemExit) as excinfo:
        cli_main.main(["--list-presets"])
    assert excinfo.value.code == 0
    names = capsys.readouterr().out.split()
    assert {"cnlcf-denoise-color", "cnlcf-two-stage", "bnorm-clip-l1"} <= set(names)
