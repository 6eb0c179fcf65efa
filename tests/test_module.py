"""
Tests for the module entry points

save/load for both formats: strict and non-strict reconciliation, skip keys,
the loaded-parameters report, and path/stream handling.
"""

import io

import pytest
import torch
import torch.nn as nn

from conftest import TwoLayer
import weightbridge
from weightbridge import (
    FileNotFound,
    ShapeMismatch,
    StateMismatch,
    load_pickle,
    load_safetensors,
    load_state_dict_pickle,
    load_state_dict_safetensors,
    save_pickle,
    save_safetensors,
)


class Params(nn.Module):
    """One parameter per name, all of the same size."""

    def __init__(self, names, size: int = 3, value: float = 0.0):
        super().__init__()
        for name in names:
            self.register_parameter(name, nn.Parameter(torch.full((size,), value)))


FORMATS = [
    pytest.param((save_pickle, load_pickle), id="pickle"),
    pytest.param((save_safetensors, load_safetensors), id="safetensors"),
]


def round_trip(fmt, source, target, **load_kwargs):
    save, load = fmt
    buffer = io.BytesIO()
    save(source, buffer, skip=load_kwargs.pop("save_skip", None), leave_open=True)
    buffer.seek(0)
    return load(target, buffer, **load_kwargs)


@pytest.mark.parametrize("fmt", FORMATS)
class TestRoundTrip:
    """Save then load with matching modules."""

    def test_two_layer_scenario(self, fmt, two_layer):
        """Weights of 2.0 through 5 -> 1 -> 2 give exactly 20.0 on ones."""
        restored = TwoLayer()
        round_trip(fmt, two_layer, restored)

        out = restored(torch.ones(5))
        assert out.tolist() == [20.0, 20.0]

    def test_two_layer_all_ones(self, fmt):
        source = TwoLayer()
        with torch.no_grad():
            for p in source.parameters():
                p.fill_(1.0)
        restored = TwoLayer()
        round_trip(fmt, source, restored)

        assert restored(torch.ones(5)).tolist() == [5.0, 5.0]

    def test_bit_identical(self, fmt, buffered_model):
        from conftest import WithBuffers
        restored = WithBuffers()
        round_trip(fmt, buffered_model, restored)

        for (name, a), (_, b) in zip(buffered_model.state_dict().items(), restored.state_dict().items()):
            assert a.dtype == b.dtype, name
            assert torch.equal(a, b), name

    def test_returns_module(self, fmt, two_layer):
        restored = TwoLayer()
        assert round_trip(fmt, two_layer, restored) is restored

    def test_parameters_updated_in_place(self, fmt, two_layer):
        restored = TwoLayer()
        weight = restored.lin1.weight
        round_trip(fmt, two_layer, restored)

        assert restored.lin1.weight is weight
        assert weight.requires_grad
        assert torch.all(weight == 2.0)


@pytest.mark.parametrize("fmt", FORMATS)
class TestReconcilePolicy:
    """Strict / non-strict behavior, skip keys and reports."""

    def test_strict_mismatch_mutates_nothing(self, fmt):
        source = Params("abd", value=1.0)
        target = Params("abc")

        with pytest.raises(StateMismatch) as exc_info:
            round_trip(fmt, source, target, strict=True)

        assert exc_info.value.missing == ["c"]
        assert exc_info.value.unexpected == ["d"]
        for p in target.parameters():
            assert torch.all(p == 0.0)

    def test_non_strict_partial_load(self, fmt):
        source = Params("abd", value=1.0)
        target = Params("abc")
        report = {}

        round_trip(fmt, source, target, strict=False, report=report)

        assert torch.all(target.a == 1.0)
        assert torch.all(target.b == 1.0)
        assert torch.all(target.c == 0.0)
        assert report == {"a": True, "b": True, "d": False}

    def test_shape_mismatch_non_strict(self, fmt):
        """ShapeMismatch still fails; earlier keys stay copied."""
        source = nn.Module()
        source.a = nn.Parameter(torch.ones(3))
        source.b = nn.Parameter(torch.ones(4))
        target = Params("ab")

        with pytest.raises(ShapeMismatch) as exc_info:
            round_trip(fmt, source, target, strict=False)

        assert exc_info.value.key == "b"
        assert exc_info.value.loaded_shape == (4,)
        assert exc_info.value.target_shape == (3,)
        assert torch.all(target.a == 1.0)
        assert torch.all(target.b == 0.0)

    def test_skip_round_trip(self, fmt):
        """Skipped keys are neither written nor loaded nor checked."""
        source = Params("ab", value=1.0)
        target = Params("ab", value=5.0)
        report = {}

        round_trip(fmt, source, target, save_skip=["b"], strict=True, skip=["b"], report=report)

        assert torch.all(target.a == 1.0)
        assert torch.all(target.b == 5.0)
        assert report == {"a": True}

    def test_skip_on_load_only(self, fmt):
        source = Params("ab", value=1.0)
        target = Params("ab", value=5.0)

        round_trip(fmt, source, target, strict=True, skip={"b"})

        assert torch.all(target.a == 1.0)
        assert torch.all(target.b == 5.0)

    def test_skip_missing_on_save_fails_strict(self, fmt):
        source = Params("ab", value=1.0)
        target = Params("ab")

        with pytest.raises(StateMismatch) as exc_info:
            round_trip(fmt, source, target, save_skip=["b"], strict=True)
        assert exc_info.value.missing == ["b"]


class TestPaths:
    """Path and stream handling."""

    def test_pickle_file(self, temp_model_dir, two_layer):
        path = temp_model_dir / "model.bin"
        save_pickle(two_layer, path)
        restored = load_pickle(TwoLayer(), str(path))

        assert torch.equal(restored.lin2.weight, two_layer.lin2.weight)

    def test_safetensors_file(self, temp_model_dir, two_layer):
        path = temp_model_dir / "model.safetensors"
        save_safetensors(two_layer, path, metadata={"format": "pt"})
        restored = load_safetensors(TwoLayer(), path)

        assert torch.equal(restored.lin1.weight, two_layer.lin1.weight)

    @pytest.mark.parametrize("load", [load_pickle, load_safetensors])
    def test_missing_file(self, temp_model_dir, load):
        with pytest.raises(FileNotFound):
            load(TwoLayer(), temp_model_dir / "missing.bin")

    def test_missing_file_is_file_not_found_error(self, temp_model_dir):
        with pytest.raises(FileNotFoundError):
            load_pickle(TwoLayer(), temp_model_dir / "missing.bin")

    @pytest.mark.parametrize("save", [save_pickle, save_safetensors])
    def test_stream_closed_by_default(self, save, two_layer):
        buffer = io.BytesIO()
        save(two_layer, buffer)
        assert buffer.closed

    @pytest.mark.parametrize("save", [save_pickle, save_safetensors])
    def test_leave_open(self, save, two_layer):
        buffer = io.BytesIO()
        save(two_layer, buffer, leave_open=True)
        assert not buffer.closed
        assert buffer.tell() > 0

    def test_load_closes_stream(self, two_layer):
        buffer = io.BytesIO()
        save_pickle(two_layer, buffer, leave_open=True)
        buffer.seek(0)
        load_pickle(TwoLayer(), buffer)
        assert buffer.closed

    def test_torch_load_reads_saved_file(self, temp_model_dir, buffered_model):
        path = temp_model_dir / "model.pt"
        save_pickle(buffered_model, path)
        loaded = torch.load(path, weights_only=True)

        for name, tensor in buffered_model.state_dict().items():
            assert torch.equal(loaded[name], tensor)

    def test_loads_torch_save_file(self, temp_model_dir, buffered_model):
        from conftest import WithBuffers
        path = temp_model_dir / "model.pt"
        torch.save(buffered_model.state_dict(), path)
        restored = load_pickle(WithBuffers(), path)

        assert torch.equal(restored.norm.running_var, buffered_model.norm.running_var)
        assert restored.steps.item() == 7


class TestStateDictHelpers:
    """Plain state dict loaders."""

    def test_load_state_dict_pickle(self, temp_model_dir, two_layer):
        path = temp_model_dir / "model.bin"
        save_pickle(two_layer, path, skip=["lin2.weight"])
        state_dict = load_state_dict_pickle(path)

        assert list(state_dict) == ["lin1.weight"]

    def test_load_state_dict_safetensors(self, temp_model_dir, two_layer):
        path = temp_model_dir / "model.safetensors"
        save_safetensors(two_layer, path)
        state_dict = load_state_dict_safetensors(path)

        assert sorted(state_dict) == ["lin1.weight", "lin2.weight"]
        assert torch.all(state_dict["lin2.weight"] == 2.0)

    def test_public_api(self):
        assert weightbridge.__version__ == "0.1.0"
        assert weightbridge.DEFAULT_CONFIG.storage_alignment == 64
