"""
Rotary Positional Embeddings (RoPE).

RoPE encodes the position of a token by ROTATING pairs of query/key
dimensions by an angle proportional to the position. For the i-th pair at
position t:

    freq_i  = 1 / theta^(2i / head_dim)
    angle   = t * freq_i

    re' = re * cos(angle) - im * sin(angle)
    im' = re * sin(angle) + im * cos(angle)

which is complex multiplication of (re + i·im) by e^(i·angle). Because
rotations compose, dot(R_m q, R_n k) depends only on n - m: attention scores
see relative positions without any learned position parameters.

THE TABLE:
  cos/sin values depend only on (position, pair index), never on data, so the
  model computes them once for max_seq_len positions and slices the rows it
  needs on every call:

    table[t, i] = (cos(t * freq_i), sin(t * freq_i))     shape (max_len, head_dim/2, 2)

  The table is always computed in float32. In float16, t * freq_i loses
  most of its precision for large t and the rotation drifts.

TWO BACKENDS, ONE INTERFACE:
  ReferenceRotary — the rotation written out with real arithmetic.
  ComplexRotary   — torch.view_as_complex and one complex multiply, the
                    formulation of Meta's reference implementation.
  get_rotary("reference" | "complex") picks one; both give the same result
  within floating-point tolerance.
"""

from typing import Dict, Type

import torch

from llama_step.config import ConfigError


def compute_table(max_len: int, head_dim: int, theta: float = 10000.0) -> torch.Tensor:
    """
    Precompute the (cos, sin) table.

    Args:
        max_len: Number of positions to precompute.
        head_dim: Attention head dimension (must be even).
        theta: Base frequency. 10000.0 for Llama 1/2, 500000.0 for Llama 3.

    Returns:
        float32 tensor of shape (max_len, head_dim // 2, 2); [..., 0] is cos,
        [..., 1] is sin.
    """
    if head_dim % 2 != 0:
        raise ConfigError(f"head_dim must be even for RoPE, got {head_dim}")

    # freqs[i] = 1 / theta^(2i/head_dim), i = 0 .. head_dim/2 - 1
    dim_indices = torch.arange(0, head_dim, 2, dtype=torch.float32)
    freqs = 1.0 / (theta ** (dim_indices / head_dim))

    positions = torch.arange(max_len, dtype=torch.float32)
    angles = torch.outer(positions, freqs)  # (max_len, head_dim // 2)

    return torch.stack([angles.cos(), angles.sin()], dim=-1)


def slice_table(table: torch.Tensor, start_pos: int, seq_len: int) -> torch.Tensor:
    """
    Rows [start_pos, start_pos + seq_len) of the table.

    No wraparound: asking for positions past the precomputed length is an
    error, not a silent reuse of early rotations.
    """
    max_len = table.shape[0]
    if start_pos < 0 or seq_len < 0 or start_pos + seq_len > max_len:
        raise IndexError(
            f"RoPE positions [{start_pos}, {start_pos + seq_len}) out of range "
            f"for a table of {max_len} positions (start_pos={start_pos}, "
            f"seq_len={seq_len}, max_len={max_len})"
        )
    return table[start_pos: start_pos + seq_len]


def invert_table(table: torch.Tensor) -> torch.Tensor:
    """Table of the inverse rotation: same cos, negated sin."""
    return torch.stack([table[..., 0], -table[..., 1]], dim=-1)


class RotaryEmbedding:
    """
    Applies a (seq_len, head_dim/2, 2) slice of the table to q or k.

    x has shape (batch, seq_len, n_heads, head_dim); the last dimension is
    read as head_dim/2 interleaved (re, im) pairs. The slice is broadcast
    across batch and heads. Output has x's shape and dtype.
    """

    name = "base"

    def apply(self, x: torch.Tensor, freqs: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def __call__(self, x: torch.Tensor, freqs: torch.Tensor) -> torch.Tensor:
        return self.apply(x, freqs)

    @staticmethod
    def _check(x: torch.Tensor, freqs: torch.Tensor) -> None:
        if freqs.shape != (x.shape[1], x.shape[-1] // 2, 2):
            raise ValueError(
                f"RoPE slice of shape {tuple(freqs.shape)} does not match input "
                f"of shape {tuple(x.shape)}; expected "
                f"{(x.shape[1], x.shape[-1] // 2, 2)}"
            )


class ReferenceRotary(RotaryEmbedding):
    """The rotation with explicit real arithmetic."""

    name = "reference"

    def apply(self, x: torch.Tensor, freqs: torch.Tensor) -> torch.Tensor:
        self._check(x, freqs)

        # (..., head_dim) → (..., head_dim//2, 2)
        pairs = x.float().reshape(*x.shape[:-1], -1, 2)
        re = pairs[..., 0]
        im = pairs[..., 1]

        # (seq, head_dim//2) → (1, seq, 1, head_dim//2)
        freqs = freqs.float()
        cos = freqs[..., 0].unsqueeze(0).unsqueeze(2)
        sin = freqs[..., 1].unsqueeze(0).unsqueeze(2)

        re_rot = re * cos - im * sin
        im_rot = re * sin + im * cos

        return torch.stack([re_rot, im_rot], dim=-1).flatten(-2).type_as(x)


class ComplexRotary(RotaryEmbedding):
    """The rotation as a single complex multiplication."""

    name = "complex"

    def apply(self, x: torch.Tensor, freqs: torch.Tensor) -> torch.Tensor:
        self._check(x, freqs)

        x_complex = torch.view_as_complex(
            x.float().reshape(*x.shape[:-1], -1, 2).contiguous()
        )
        # (seq, head_dim//2, 2) → complex (1, seq, 1, head_dim//2)
        freqs_cis = torch.view_as_complex(freqs.float().contiguous())
        freqs_cis = freqs_cis.unsqueeze(0).unsqueeze(2)

        return torch.view_as_real(x_complex * freqs_cis).flatten(-2).type_as(x)


_BACKENDS: Dict[str, Type[RotaryEmbedding]] = {
    ReferenceRotary.name: ReferenceRotary,
    ComplexRotary.name: ComplexRotary,
}


def get_rotary(name: str) -> RotaryEmbedding:
    """Instantiate the RoPE backend selected by BuildConfig.rope_impl."""
    if name not in _BACKENDS:
        raise ConfigError(
            f"Unknown rope_impl '{name}'. Choose from: {sorted(_BACKENDS)}"
        )
    return _BACKENDS[name]()
