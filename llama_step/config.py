"""
Configuration for the decode-step core.

Two dataclasses live here:
  - HyperParams: the architecture of the model being run. Fixed at model
    construction and never mutated (frozen dataclass). Either written by hand,
    loaded from JSON, or derived from model-file metadata.
  - BuildConfig: HOW the model is materialised (numeric dtype, which RoPE
    backend to use, which device). Changing these never changes the maths,
    only precision and speed.

Invalid combinations raise ConfigError at build time, long before a decode
call would fail with a cryptic shape mismatch deep inside attention.
"""

from dataclasses import dataclass, asdict
from typing import Union
import json
import os

import torch


class ConfigError(ValueError):
    """Unsupported or inconsistent hyperparameters / build options."""


@dataclass(frozen=True)
class HyperParams:
    """
    Architecture hyperparameters of a Llama2-style decoder.

    SHAPES DERIVED FROM THESE FIELDS:
    ─────────────────────────────────────────────
      token_embd            (vocab_size, dims)
      attn_q                (n_heads * head_dim, dims)
      attn_k / attn_v       (n_kv_heads * head_dim, dims)
      attn_output           (dims, n_heads * head_dim)
      attn_norm / ffn_norm  (dims,)
      output                (vocab_size, dims)
      KV cache              (cache_len, n_layers, 1, n_kv_heads, head_dim)
      RoPE table            (max_seq_len, head_dim // 2, 2)
    """

    n_layers: int
    n_heads: int
    n_kv_heads: int
    head_dim: int
    dims: int
    vocab_size: int
    norm_eps: float = 1e-5
    rope_theta: float = 10000.0
    max_seq_len: int = 2048

    @property
    def n_rep(self) -> int:
        """
        How many query heads share one key/value head.

        1 for plain multi-head attention, >1 for grouped-query attention.
        """
        return self.n_heads // self.n_kv_heads

    def validate(self) -> None:
        """Raise ConfigError on any combination the core cannot run."""
        for name in ("n_layers", "n_heads", "n_kv_heads", "head_dim",
                     "dims", "vocab_size", "max_seq_len"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} must be a positive int, got {value!r}")
        if self.n_kv_heads > self.n_heads:
            raise ConfigError(
                f"n_kv_heads ({self.n_kv_heads}) cannot exceed n_heads ({self.n_heads})"
            )
        if self.n_heads % self.n_kv_heads != 0:
            raise ConfigError(
                f"n_heads ({self.n_heads}) must be divisible by "
                f"n_kv_heads ({self.n_kv_heads})"
            )
        if self.head_dim % 2 != 0:
            raise ConfigError(
                f"head_dim ({self.head_dim}) must be even for RoPE rotation pairs"
            )
        if self.norm_eps <= 0:
            raise ConfigError(f"norm_eps must be positive, got {self.norm_eps}")
        if self.rope_theta <= 0:
            raise ConfigError(f"rope_theta must be positive, got {self.rope_theta}")

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "HyperParams":
        """Reconstruct from dictionary."""
        return cls(**d)

    def save(self, path: str) -> None:
        """Save hyperparameters to a JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "HyperParams":
        """Load hyperparameters from a JSON file."""
        with open(path, "r") as f:
            return cls.from_dict(json.load(f))

    @classmethod
    def from_metadata(cls, metadata: dict, arch: str = "llama") -> "HyperParams":
        """
        Derive hyperparameters from model-file metadata.

        Keys follow the GGUF convention ("llama.block_count",
        "llama.attention.head_count", ...). head_count_kv falls back to
        head_count (plain MHA checkpoints omit it), and the vocabulary size
        falls back to the length of the tokenizer token list.

        Args:
            metadata: Flat key → value mapping read from the model file.
            arch: Architecture prefix of the keys.

        Returns:
            HyperParams built from the metadata (not yet validated).
        """
        def required(key):
            full = f"{arch}.{key}"
            if full not in metadata:
                raise ConfigError(f"model metadata is missing '{full}'")
            return metadata[full]

        dims = int(required("embedding_length"))
        n_heads = int(required("attention.head_count"))
        n_kv_heads = int(metadata.get(f"{arch}.attention.head_count_kv", n_heads))

        if f"{arch}.vocab_size" in metadata:
            vocab_size = int(metadata[f"{arch}.vocab_size"])
        elif "tokenizer.ggml.tokens" in metadata:
            vocab_size = len(metadata["tokenizer.ggml.tokens"])
        else:
            raise ConfigError(
                f"model metadata has neither '{arch}.vocab_size' "
                f"nor 'tokenizer.ggml.tokens'"
            )

        head_dim = int(metadata.get(f"{arch}.rope.dimension_count", dims // n_heads))

        return cls(
            n_layers=int(required("block_count")),
            n_heads=n_heads,
            n_kv_heads=n_kv_heads,
            head_dim=head_dim,
            dims=dims,
            vocab_size=vocab_size,
            norm_eps=float(metadata.get(f"{arch}.attention.layer_norm_rms_epsilon", 1e-5)),
            rope_theta=float(metadata.get(f"{arch}.rope.freq_base", 10000.0)),
            max_seq_len=int(metadata.get(f"{arch}.context_length", 2048)),
        )


@dataclass
class BuildConfig:
    """
    Options that control how a model is materialised.

    dtype:
      "float32", "float16", "bfloat16" or "auto" (best for the device, see
      device.get_dtype), or a torch.dtype directly. Anything that is not a
      floating-point kind (torch.int64, torch.bool, ...) is rejected with
      ConfigError when the model is built.

    rope_impl:
      "reference" — explicit real-valued rotation arithmetic.
      "complex"   — the same rotation through torch complex multiplication.
      Both produce the same numbers up to float tolerance.

    device:
      "auto" picks CUDA → MPS → CPU.
    """

    dtype: Union[str, torch.dtype] = "float32"
    rope_impl: str = "reference"
    device: str = "cpu"

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "BuildConfig":
        """Reconstruct from dictionary."""
        return cls(**d)
