"""
Weight provider: named, per-layer constant tensors for the model.

The model never parses a model file. It asks a provider for a tensor by
(name, layer index, dtype) and gets back a read-only constant. Names follow a
fixed vocabulary:

  global:      token_embd, output_norm, output
  per layer:   attn_q, attn_k, attn_v, attn_output, attn_norm,
               ffn_gate, ffn_down, ffn_up, ffn_norm

Storage keys use the GGUF convention: "blk.{i}.{name}.weight" for per-layer
tensors and "{name}.weight" for global ones. Matrices are stored in
(out_features, in_features) layout, the same layout nn.Linear uses; the model
transposes them once at build time for right-multiplication.
"""

import os
from typing import Dict, Optional

import torch

from llama_step.config import HyperParams


GLOBAL_NAMES = ("token_embd", "output_norm", "output")
LAYER_NAMES = (
    "attn_q", "attn_k", "attn_v", "attn_output", "attn_norm",
    "ffn_gate", "ffn_down", "ffn_up", "ffn_norm",
)

# Meta's reference checkpoint naming → provider vocabulary.
_META_LAYER_NAMES = {
    "attention.wq": "attn_q",
    "attention.wk": "attn_k",
    "attention.wv": "attn_v",
    "attention.wo": "attn_output",
    "attention_norm": "attn_norm",
    "feed_forward.w1": "ffn_gate",
    "feed_forward.w2": "ffn_down",
    "feed_forward.w3": "ffn_up",
    "ffn_norm": "ffn_norm",
}
_META_GLOBAL_NAMES = {
    "tok_embeddings": "token_embd",
    "norm": "output_norm",
    "output": "output",
}


class WeightNotFoundError(KeyError):
    """The requested (name, layer) is absent from the weight source."""


def weight_key(name: str, layer_index: Optional[int] = None) -> str:
    """Storage key for a vocabulary name, e.g. ("attn_q", 3) → "blk.3.attn_q.weight"."""
    if layer_index is None:
        if name not in GLOBAL_NAMES:
            raise ValueError(f"'{name}' is not a global weight name {GLOBAL_NAMES}")
        return f"{name}.weight"
    if name not in LAYER_NAMES:
        raise ValueError(f"'{name}' is not a per-layer weight name {LAYER_NAMES}")
    return f"blk.{layer_index}.{name}.weight"


class WeightProvider:
    """
    Interface consumed by the model.

    get() must be deterministic and side-effect-free: asking twice for the
    same (name, layer_index, dtype) returns equal tensors.
    """

    def get(
        self,
        name: str,
        layer_index: Optional[int] = None,
        dtype: torch.dtype = torch.float32,
    ) -> torch.Tensor:
        raise NotImplementedError


class StateDictWeights(WeightProvider):
    """In-memory provider backed by a {storage key: tensor} dict."""

    def __init__(self, tensors: Dict[str, torch.Tensor]):
        self._tensors = dict(tensors)

    def get(
        self,
        name: str,
        layer_index: Optional[int] = None,
        dtype: torch.dtype = torch.float32,
    ) -> torch.Tensor:
        key = weight_key(name, layer_index)
        if key not in self._tensors:
            raise WeightNotFoundError(f"weight '{key}' not found in weight source")
        # detach().clone() so callers can never alias the provider's storage
        return self._tensors[key].detach().to(dtype=dtype).clone()

    def keys(self):
        return self._tensors.keys()

    def __contains__(self, key: str) -> bool:
        return key in self._tensors

    def state_dict(self) -> Dict[str, torch.Tensor]:
        return dict(self._tensors)


def save_weights(weights: StateDictWeights, path: str) -> None:
    """Save a provider's tensors with torch.save."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    torch.save(weights.state_dict(), path)
    print(f"Weights saved: {path} ({len(weights.state_dict())} tensors)")


def load_weights(path: str, device: Optional[torch.device] = None) -> StateDictWeights:
    """Load tensors saved by save_weights (or any {key: tensor} torch file)."""
    map_location = device if device else "cpu"
    tensors = torch.load(path, map_location=map_location, weights_only=True)
    print(f"Weights loaded: {path} ({len(tensors)} tensors)")
    return StateDictWeights(tensors)


def from_meta_state_dict(state_dict: Dict[str, torch.Tensor]) -> StateDictWeights:
    """
    Rename a Meta-layout Llama state dict into the provider vocabulary.

    "layers.3.feed_forward.w1.weight" → "blk.3.ffn_gate.weight"
    "tok_embeddings.weight"           → "token_embd.weight"

    Entries that are not weights of the architecture (e.g. "rope.freqs") are
    skipped.
    """
    tensors = {}
    for key, tensor in state_dict.items():
        if not key.endswith(".weight"):
            continue
        stem = key[: -len(".weight")]
        if stem.startswith("layers."):
            _, index, rest = stem.split(".", 2)
            if rest in _META_LAYER_NAMES:
                tensors[weight_key(_META_LAYER_NAMES[rest], int(index))] = tensor
        elif stem in _META_GLOBAL_NAMES:
            tensors[weight_key(_META_GLOBAL_NAMES[stem])] = tensor
    return StateDictWeights(tensors)


def random_weights(
    hparams: HyperParams,
    hidden_dim: int,
    seed: int = 0,
    std: float = 0.02,
) -> StateDictWeights:
    """
    Build a complete random weight set for the given architecture.

    Follows the GPT-2 / nanoGPT initialization: every matrix drawn from
    Normal(0, std), every RMSNorm weight set to 1.0. Useful for tests,
    benchmarks and the demo script; the outputs are meaningless text but the
    computation is exactly the one real weights go through.

    Args:
        hparams: Architecture to build weights for.
        hidden_dim: SwiGLU intermediate dimension.
        seed: Seed for a private torch.Generator (global RNG untouched).
        std: Standard deviation of the matrix entries.
    """
    gen = torch.Generator().manual_seed(seed)

    def normal(*shape):
        return torch.randn(*shape, generator=gen) * std

    q_out = hparams.n_heads * hparams.head_dim
    kv_out = hparams.n_kv_heads * hparams.head_dim

    tensors = {
        weight_key("token_embd"): normal(hparams.vocab_size, hparams.dims),
        weight_key("output_norm"): torch.ones(hparams.dims),
        weight_key("output"): normal(hparams.vocab_size, hparams.dims),
    }
    for i in range(hparams.n_layers):
        tensors[weight_key("attn_q", i)] = normal(q_out, hparams.dims)
        tensors[weight_key("attn_k", i)] = normal(kv_out, hparams.dims)
        tensors[weight_key("attn_v", i)] = normal(kv_out, hparams.dims)
        tensors[weight_key("attn_output", i)] = normal(hparams.dims, q_out)
        tensors[weight_key("attn_norm", i)] = torch.ones(hparams.dims)
        tensors[weight_key("ffn_gate", i)] = normal(hidden_dim, hparams.dims)
        tensors[weight_key("ffn_up", i)] = normal(hidden_dim, hparams.dims)
        tensors[weight_key("ffn_down", i)] = normal(hparams.dims, hidden_dim)
        tensors[weight_key("ffn_norm", i)] = torch.ones(hparams.dims)
    return StateDictWeights(tensors)
