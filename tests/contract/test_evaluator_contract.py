from types import SimpleNamespace

import numpy as np
import pytest

from cnlcfnet import (
    EvalConfig,
    InvalidArgument,
    InvalidMode,
    InvalidState,
    Ledger,
    NetParams,
    SkipForwardEmptyLedger,
    SkipForwardNoDerivative,
    UnknownLayerType,
    evaluate,
    network_from_config,
)
from cnlcfnet.core.layers import Network, RGB2LumChrom
from cnlcfnet.core.types import Bundle, innermost
from cnlcfnet.ops.bnorm import bnorm_backward


def _images(seed=0, shape=(6, 6, 3, 2)):
    rng = np.random.default_rng(seed)
    clean = rng.uniform(0, 255, size=shape).astype(np.float32)
    noisy = clean + rng.normal(0, 10, size=shape).astype(np.float32)
    return clean, noisy


def _cnlcf_cfg(**overrides):
    cfg = {
        "type": "cnlcf",
        "init": {"channels": 3, "patch_size": 2, "num_rbf": 5, "seed": 0},
        "pad_size": 1,
        "first_stage": True,
    }
    cfg.update(overrides)
    return cfg


def _restoration_net(target, *, cnlcf=None, loss="l1"):
    layers = [
        {"type": "rgb2LumChrom"},
        _cnlcf_cfg(**(cnlcf or {})),
        {"type": "bnorm", "channels": 3},
        {"type": "LumChrom2rgb"},
        {"type": "imloss", "loss_type": loss},
    ]
    return network_from_config(
        {"layers": layers}, layer_defaults={"imloss": {"target": target}}
    )


def _bnorm_net(target):
    layers = [
        {"type": "bnorm", "channels": 3},
        {"type": "clip", "lb": -2.0, "ub": 2.0},
        {"type": "imloss", "loss_type": "l1"},
    ]
    return network_from_config({"layers": layers}, layer_defaults={"imloss": {"target": target}})


def _dzdw_snapshot(ledger):
    return [None if e.dzdw is None else [np.array(g) for g in e.dzdw] for e in ledger]


class _RecordingServer:
    def __init__(self):
        self.pushed = {}

    def push(self, key, tensor):
        self.pushed[key] = tensor


def test_ledger_has_one_entry_per_boundary():
    clean, noisy = _images()
    net = _restoration_net(clean)
    forward_only = evaluate(net, noisy)
    assert len(forward_only) == len(net.layers) + 1
    assert forward_only[0].x is noisy
    assert forward_only.output.shape == (2,)
    assert all(entry.dzdx is None for entry in forward_only)

    full = evaluate(net, noisy, np.ones(2, dtype=np.float32))
    assert len(full) == len(net.layers) + 1
    assert full[0].dzdx.shape == noisy.shape
    assert all(entry.time >= 0.0 and entry.backward_time >= 0.0 for entry in full)


def test_parameter_gradients_only_for_trainable_layers():
    clean, noisy = _images()
    ledger = evaluate(_restoration_net(clean), noisy, np.ones(2, dtype=np.float32))
    assert ledger[0].dzdw is None
    assert len(ledger[1].dzdw) == 6
    assert all(g is not None for g in ledger[1].dzdw)
    assert len(ledger[2].dzdw) == 3
    assert ledger[3].dzdw is None and ledger[4].dzdw is None

    frozen = evaluate(
        _restoration_net(clean, cnlcf={"learning_rate": 0}), noisy, np.ones(2, dtype=np.float32)
    )
    assert frozen[1].dzdw is None
    assert frozen[2].dzdw is not None


def test_bnorm_moments_scaled_by_batch_size():
    clean, noisy = _images()
    net = _bnorm_net(clean)
    ledger = evaluate(net, noisy, np.ones(2, dtype=np.float32))
    gain, bias, _ = net.layers[0].weights
    dzdy = ledger[1].dzdx
    _, dgain, dbias, moments = bnorm_backward(noisy, gain, bias, dzdy, epsilon=1e-4)
    np.testing.assert_allclose(ledger[0].dzdw[0], dgain)
    np.testing.assert_allclose(ledger[0].dzdw[1], dbias)
    np.testing.assert_allclose(ledger[0].dzdw[2], moments * 2)


def test_accumulate_adds_to_existing_gradients():
    clean, noisy = _images()
    net = _restoration_net(clean)
    dzdy = np.ones(2, dtype=np.float32)
    ledger = evaluate(net, noisy, dzdy)
    first = _dzdw_snapshot(ledger)

    evaluate(net, noisy, dzdy, ledger, accumulate=True)
    for entry, before in zip(ledger, first):
        if before is None:
            assert entry.dzdw is None
            continue
        for grad, old in zip(entry.dzdw, before):
            np.testing.assert_allclose(grad, 2 * old, rtol=1e-6)

    evaluate(net, noisy, dzdy, ledger)
    for entry, before in zip(ledger, first):
        if before is not None:
            for grad, old in zip(entry.dzdw, before):
                np.testing.assert_allclose(grad, old, rtol=1e-6)


def test_accumulate_on_fresh_ledger_equals_overwrite():
    clean, noisy = _images()
    net = _bnorm_net(clean)
    dzdy = np.ones(2, dtype=np.float32)
    plain = evaluate(net, noisy, dzdy)
    accumulated = evaluate(net, noisy, dzdy, accumulate=True)
    for a, b in zip(plain[0].dzdw, accumulated[0].dzdw):
        np.testing.assert_array_equal(a, b)


def test_conserve_memory_full_depth_keeps_only_ends():
    clean, noisy = _images()
    net = _restoration_net(clean)
    ledger = evaluate(net, noisy, np.ones(2, dtype=np.float32), conserve_memory=True)
    n = len(net.layers)
    assert ledger[0].x is not None
    assert ledger[n].x is not None
    for i in range(1, n):
        assert ledger[i].x is None, i
    assert ledger[0].dzdx is not None


def test_conserve_memory_keeps_precious_outputs():
    clean, noisy = _images()
    net = _restoration_net(clean, cnlcf={"precious": True})
    ledger = evaluate(net, noisy, np.ones(2, dtype=np.float32), conserve_memory=True)
    assert isinstance(ledger[2].x, Bundle)
    assert len(ledger[2].x) == 1
    assert innermost(ledger[2].x).shape == noisy.shape
    assert ledger[2].dzdx is not None
    assert ledger[3].x is None


def test_conserve_memory_without_backward_keeps_only_output():
    clean, noisy = _images()
    net = _restoration_net(clean)
    ledger = evaluate(net, noisy, conserve_memory=True)
    for i in range(len(net.layers)):
        assert ledger[i].x is None, i
    assert ledger.output.shape == (2,)

    precious = _restoration_net(clean, cnlcf={"precious": True})
    kept = evaluate(precious, noisy, conserve_memory=True)
    assert kept[2].x is not None and kept[2].x.shape == noisy.shape
    assert kept[1].x is None


def test_limited_depth_stops_and_clears_boundary():
    clean, noisy = _images()
    net = _restoration_net(clean)
    ledger = evaluate(
        net, noisy, np.ones(2, dtype=np.float32), back_prop_depth=2, conserve_memory=True
    )
    assert ledger[1].dzdw is None
    assert ledger[2].dzdw is None
    assert ledger[3].dzdx is None and ledger[3].x is None
    assert ledger[2].dzdx is None
    assert ledger.output is not None

    kept = evaluate(net, noisy, np.ones(2, dtype=np.float32), back_prop_depth=2)
    assert kept[3].dzdx is not None
    assert kept[2].dzdx is None
    assert kept[1].x is not None


def test_skip_forward_reproduces_gradients():
    clean, noisy = _images()
    net = _restoration_net(clean)
    dzdy = np.ones(2, dtype=np.float32)
    reference = evaluate(net, noisy, dzdy)

    # a depth-1 pass leaves the cnlcf forward state untouched
    ledger = evaluate(net, noisy, dzdy, back_prop_depth=1)
    assert ledger[1].dzdw is None
    evaluate(net, None, dzdy, ledger, skip_forward=True)
    for entry, expected in zip(ledger, reference):
        if expected.dzdw is None:
            assert entry.dzdw is None
            continue
        for grad, want in zip(entry.dzdw, expected.dzdw):
            np.testing.assert_array_equal(grad, want)
    np.testing.assert_array_equal(ledger[0].dzdx, reference[0].dzdx)


def test_skip_forward_reuses_forward_only_ledger():
    clean, noisy = _images()
    net = _bnorm_net(clean)
    dzdy = np.ones(2, dtype=np.float32)
    reference = evaluate(net, noisy, dzdy)
    ledger = evaluate(net, noisy)
    evaluate(net, noisy, dzdy, ledger, skip_forward=True)
    for grad, want in zip(ledger[0].dzdw, reference[0].dzdw):
        np.testing.assert_array_equal(grad, want)


def test_second_cnlcf_backward_is_rejected():
    clean, noisy = _images()
    net = _restoration_net(clean)
    dzdy = np.ones(2, dtype=np.float32)
    ledger = evaluate(net, noisy, dzdy)
    with pytest.raises(InvalidState):
        evaluate(net, noisy, dzdy, ledger, skip_forward=True)


def test_cnlcf_round_trip_shapes():
    clean, noisy = _images()
    net = network_from_config(
        {
            "layers": [
                {"type": "rgb2LumChrom"},
                _cnlcf_cfg(),
                {"type": "imloss", "loss_type": "psnr", "peak_val": 255.0},
            ]
        },
        layer_defaults={"imloss": {"target": clean}},
    )
    forward_only = evaluate(net, noisy)
    assert forward_only.output.shape == (2,)
    assert forward_only[2].x.shape == noisy.shape
    assert forward_only[2].aux is None
    assert all(entry.dzdx is None for entry in forward_only)

    ledger = evaluate(net, noisy, np.ones(2, dtype=np.float32), forward_only)
    assert ledger is forward_only
    assert ledger[0].dzdx.shape == noisy.shape
    assert ledger[2].x[-1].shape == noisy.shape
    assert np.all(np.isfinite(ledger[0].dzdx))


def test_observation_override_is_used():
    clean, noisy = _images()
    net = _restoration_net(clean)
    derived = evaluate(net, noisy)
    same = evaluate(net, noisy, config=EvalConfig(net_params=NetParams(obs=derived[1].x)))
    np.testing.assert_allclose(same.output, derived.output)
    other = evaluate(net, noisy, config=EvalConfig(net_params=NetParams(obs=np.zeros_like(noisy))))
    assert not np.allclose(other.output, derived.output)


def test_parameter_server_takes_gradients():
    clean, noisy = _images()
    net = _restoration_net(clean)
    server = _RecordingServer()
    ledger = evaluate(net, noisy, np.ones(2, dtype=np.float32), parameter_server=server)
    expected = {f"l2_{j}" for j in range(1, 7)} | {f"l3_{j}" for j in range(1, 4)}
    assert set(server.pushed) == expected
    assert all(g is None for g in ledger[1].dzdw)
    assert all(g is None for g in ledger[2].dzdw)

    held = _RecordingServer()
    kept = evaluate(net, noisy, np.ones(2, dtype=np.float32), parameter_server=held, hold_on=True)
    assert held.pushed == {}
    assert all(g is not None for g in kept[1].dzdw)


def test_sync_calls_barrier_per_layer():
    clean, noisy = _images()
    net = _bnorm_net(clean)
    calls = []
    evaluate(net, noisy, np.ones(2, dtype=np.float32), sync=True, barrier=lambda: calls.append(1))
    assert len(calls) == 2 * len(net.layers)
    calls.clear()
    evaluate(net, noisy, np.ones(2, dtype=np.float32), barrier=lambda: calls.append(1))
    assert calls == []


def test_test_mode_uses_stored_moments():
    clean, noisy = _images()
    net = network_from_config({"layers": [{"type": "bnorm", "channels": 3}]})
    ledger = evaluate(net, noisy, mode="test")
    np.testing.assert_allclose(ledger.output, noisy)
    normal = evaluate(net, noisy)
    assert not np.allclose(normal.output, noisy)


def test_option_errors():
    clean, noisy = _images()
    net = _bnorm_net(clean)
    dzdy = np.ones(2, dtype=np.float32)
    with pytest.raises(InvalidArgument):
        evaluate(net, noisy, dzdy, back_prop_depth=0)
    with pytest.raises(SkipForwardNoDerivative):
        evaluate(net, noisy, None, Ledger.allocate(3), skip_forward=True)
    with pytest.raises(SkipForwardEmptyLedger):
        evaluate(net, noisy, dzdy, skip_forward=True)
    with pytest.raises(InvalidMode):
        evaluate(net, noisy, mode="train")
    with pytest.raises(InvalidState):
        evaluate(net, noisy, dzdy, Ledger.allocate(5))


def test_unknown_layer_rejected_before_any_work():
    clean, noisy = _images()
    net = Network(layers=(RGB2LumChrom(), SimpleNamespace(type="dropout", precious=False)))
    ledger = Ledger.allocate(2)
    with pytest.raises(UnknownLayerType) as excinfo:
        evaluate(net, noisy, ledger=ledger)
    assert excinfo.value.layer_type == "dropout"
    assert all(entry.x is None for entry in ledger)


def test_legacy_cudnn_option_is_ignored_with_warning():
    clean, noisy = _images()
    net = _bnorm_net(clean)
    with pytest.warns(DeprecationWarning):
        ledger = evaluate(net, noisy, cudnn=True)
    np.testing.assert_allclose(ledger.output, evaluate(net, noisy).output)


def test_single_image_restoration_round_trip():
    clean, noisy = _images(shape=(6, 6, 3))
    net = network_from_config(
        {
            "layers": [
                {"type": "rgb2LumChrom"},
                _cnlcf_cfg(),
                {"type": "imloss", "loss_type": "psnr", "peak_val": 255.0},
            ]
        },
        layer_defaults={"imloss": {"target": clean}},
    )
    ledger = evaluate(net, noisy)
    assert ledger[3].x.shape == (1,)
    assert ledger[2].x.shape == noisy.shape
    assert all(entry.dzdx is None for entry in ledger)

    evaluate(net, noisy, np.ones(1, dtype=np.float32), ledger)
    assert ledger[0].dzdx.shape == noisy.shape
    assert np.all(np.isfinite(ledger[0].dzdx))
    assert all(g.shape == w.shape for g, w in zip(ledger[1].dzdw, net.layers[1].weights))


def test_single_image_bnorm_network():
    clean, noisy = _images(shape=(6, 6, 3))
    net = _bnorm_net(clean)
    ledger = evaluate(net, noisy, np.ones(1, dtype=np.float32))
    assert ledger[1].x.shape == noisy.shape
    assert ledger[0].dzdx.shape == noisy.shape
    _, _, _, moments = bnorm_backward(noisy, *net.layers[0].weights[:2], ledger[1].dzdx)
    np.testing.assert_allclose(ledger[0].dzdw[2], moments)

    tested = evaluate(net, noisy, mode="test")
    np.testing.assert_allclose(tested[1].x, noisy)


def test_fractional_depth_counts_whole_layers():
    clean, noisy = _images()
    net = _restoration_net(clean)
    dzdy = np.ones(2, dtype=np.float32)
    fractional = evaluate(net, noisy, dzdy, back_prop_depth=2.5)
    whole = evaluate(net, noisy, dzdy, back_prop_depth=2)
    reached = [entry.dzdx is not None for entry in fractional]
    assert reached == [entry.dzdx is not None for entry in whole]
    assert reached == [False, False, False, True, True, True]
