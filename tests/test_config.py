"""
Unit tests for hyperparameters, build options and dtype resolution.
"""

import sys
import os

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_step.config import BuildConfig, ConfigError, HyperParams
from llama_step.device import check_float_dtype, device_info, get_dtype, resolve_device
from llama_step.model import Transformer
from llama_step.weights import random_weights


def make_hparams(**overrides):
    fields = dict(
        n_layers=2, n_heads=4, n_kv_heads=2, head_dim=8,
        dims=32, vocab_size=64, max_seq_len=16,
    )
    fields.update(overrides)
    return HyperParams(**fields)


LLAMA2_7B_METADATA = {
    "general.architecture": "llama",
    "llama.block_count": 32,
    "llama.embedding_length": 4096,
    "llama.attention.head_count": 32,
    "llama.attention.layer_norm_rms_epsilon": 1e-6,
    "llama.context_length": 4096,
    "llama.vocab_size": 32000,
}


class TestHyperParams:

    def test_valid(self):
        make_hparams().validate()

    def test_n_rep(self):
        assert make_hparams().n_rep == 2
        assert make_hparams(n_kv_heads=4).n_rep == 1

    @pytest.mark.parametrize("overrides", [
        {"n_kv_heads": 3},                # 4 % 3 != 0
        {"n_kv_heads": 8},                # more kv heads than query heads
        {"head_dim": 7},                  # odd
        {"n_layers": 0},
        {"vocab_size": -1},
        {"norm_eps": 0.0},
        {"rope_theta": -1.0},
    ])
    def test_invalid(self, overrides):
        with pytest.raises(ConfigError):
            make_hparams(**overrides).validate()

    def test_config_error_is_value_error(self):
        with pytest.raises(ValueError):
            make_hparams(head_dim=7).validate()

    def test_invalid_rejected_at_build(self):
        good = make_hparams()
        weights = random_weights(good, hidden_dim=48)
        with pytest.raises(ConfigError):
            Transformer(make_hparams(n_kv_heads=3), weights)

    def test_frozen(self):
        hp = make_hparams()
        with pytest.raises(Exception):
            hp.n_layers = 3

    def test_json_round_trip(self, tmp_path):
        hp = make_hparams(rope_theta=500000.0)
        path = str(tmp_path / "cfg" / "hparams.json")
        hp.save(path)
        assert HyperParams.load(path) == hp


class TestFromMetadata:

    def test_llama2_7b(self):
        hp = HyperParams.from_metadata(LLAMA2_7B_METADATA)
        assert hp.n_layers == 32
        assert hp.n_heads == 32
        assert hp.n_kv_heads == 32      # absent → MHA
        assert hp.head_dim == 128       # 4096 / 32
        assert hp.vocab_size == 32000
        assert hp.norm_eps == 1e-6
        assert hp.rope_theta == 10000.0
        assert hp.max_seq_len == 4096
        hp.validate()

    def test_gqa_and_explicit_rope(self):
        meta = dict(LLAMA2_7B_METADATA)
        meta["llama.attention.head_count_kv"] = 8
        meta["llama.rope.freq_base"] = 500000.0
        meta["llama.rope.dimension_count"] = 128
        hp = HyperParams.from_metadata(meta)
        assert hp.n_kv_heads == 8
        assert hp.n_rep == 4
        assert hp.rope_theta == 500000.0

    def test_vocab_from_token_list(self):
        meta = dict(LLAMA2_7B_METADATA)
        del meta["llama.vocab_size"]
        meta["tokenizer.ggml.tokens"] = ["<unk>", "<s>", "</s>"]
        assert HyperParams.from_metadata(meta).vocab_size == 3

    def test_missing_vocab(self):
        meta = dict(LLAMA2_7B_METADATA)
        del meta["llama.vocab_size"]
        with pytest.raises(ConfigError, match="vocab_size"):
            HyperParams.from_metadata(meta)

    def test_missing_required_key(self):
        meta = dict(LLAMA2_7B_METADATA)
        del meta["llama.block_count"]
        with pytest.raises(ConfigError, match="llama.block_count"):
            HyperParams.from_metadata(meta)

    def test_other_arch_prefix(self):
        meta = {k.replace("llama.", "mistral."): v for k, v in LLAMA2_7B_METADATA.items()}
        assert HyperParams.from_metadata(meta, arch="mistral").n_layers == 32


class TestBuildConfig:

    def test_defaults(self):
        config = BuildConfig()
        assert config.dtype == "float32"
        assert config.rope_impl == "reference"
        assert config.device == "cpu"

    def test_round_trip(self):
        config = BuildConfig(dtype="bfloat16", rope_impl="complex")
        assert BuildConfig.from_dict(config.to_dict()) == config

    def test_unknown_dtype_at_build(self):
        hp = make_hparams()
        with pytest.raises(ConfigError):
            Transformer(hp, random_weights(hp, hidden_dim=48), BuildConfig(dtype="int8"))

    @pytest.mark.parametrize("dtype", [torch.int64, torch.bool, torch.complex64])
    def test_non_float_torch_dtype_at_build(self, dtype):
        hp = make_hparams()
        with pytest.raises(ConfigError, match="floating-point"):
            Transformer(hp, random_weights(hp, hidden_dim=48), BuildConfig(dtype=dtype))

    def test_torch_dtype_at_build(self):
        hp = make_hparams()
        model = Transformer(hp, random_weights(hp, hidden_dim=48), BuildConfig(dtype=torch.float16))
        assert model.dtype == torch.float16
        assert model.tok_embeddings.dtype == torch.float16

    def test_unknown_rope_impl_at_build(self):
        hp = make_hparams()
        with pytest.raises(ConfigError, match="rope_impl"):
            Transformer(hp, random_weights(hp, hidden_dim=48), BuildConfig(rope_impl="fused"))


class TestDevice:

    def test_cpu_auto_dtype(self):
        assert get_dtype("auto", torch.device("cpu")) == torch.float32

    def test_named_dtypes(self):
        cpu = torch.device("cpu")
        assert get_dtype("float16", cpu) == torch.float16
        assert get_dtype("bfloat16", cpu) == torch.bfloat16

    def test_torch_dtype_passes_through(self):
        assert get_dtype(torch.int64, torch.device("cpu")) == torch.int64

    def test_unknown_dtype(self):
        with pytest.raises(ConfigError):
            get_dtype("float8", torch.device("cpu"))

    @pytest.mark.parametrize("dtype", [torch.int32, torch.int64, torch.bool, torch.complex64])
    def test_non_float_rejected(self, dtype):
        with pytest.raises(ConfigError):
            check_float_dtype(dtype)

    def test_float_accepted(self):
        assert check_float_dtype(torch.float16) is torch.float16

    def test_resolve_cpu(self):
        assert resolve_device("cpu") == torch.device("cpu")

    def test_device_info(self):
        info = device_info(torch.device("cpu"))
        assert info.startswith("Device: cpu")
        assert "PyTorch Version" in info


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
