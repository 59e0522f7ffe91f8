"""
Llama2-style forward computation with an incremental KV cache.

Given token ids and the key/value cache accumulated by earlier calls, the
model produces next-token logits plus the key/value projections of the new
tokens. All weights come from a WeightProvider (see weights.py) and are held
as read-only buffers; nothing here trains.

COMPONENTS (bottom-up reading order):
  1. build_causal_mask — additive attention bias for cache_len + seq_len
  2. RMSNorm           — root-mean-square normalization, float32 weight
  3. FeedForward       — SwiGLU MLP
  4. Attention         — Q/K/V projection, RoPE, cache concat, GQA, SDPA
  5. TransformerBlock  — pre-norm attention + FFN with residuals
  6. Transformer       — embedding, shared RoPE slice, layer fold, LM head

CACHE LAYOUT:
  Caches cross the model boundary as (cache_len, n_layers, batch,
  n_kv_heads, head_dim). The time axis comes first so appending a decode
  step is a concat along dim 0, and start_pos is simply k_cache.shape[0].
  Inside a layer the slice is re-laid out to (batch, cache_len, n_kv_heads,
  head_dim) to line up with the freshly projected keys.
"""

from typing import Optional, Tuple

import torch
import torch.nn as nn
import torch.nn.functional as F

from llama_step.config import BuildConfig, ConfigError, HyperParams
from llama_step.device import check_float_dtype, get_dtype, resolve_device
from llama_step.rope import RotaryEmbedding, compute_table, get_rotary, slice_table
from llama_step.weights import WeightProvider


def _expect_shape(name: str, tensor: torch.Tensor, expected: Tuple[int, ...]) -> None:
    if tuple(tensor.shape) != tuple(expected):
        raise ConfigError(
            f"weight '{name}' has shape {tuple(tensor.shape)}, "
            f"expected {tuple(expected)} from hyperparameters"
        )


# ═══════════════════════════════════════════════════════════════════════════
# 1. Causal mask
# ═══════════════════════════════════════════════════════════════════════════

def build_causal_mask(
    start_pos: int,
    seq_len: int,
    dtype: torch.dtype = torch.float32,
    device: Optional[torch.device] = None,
) -> torch.Tensor:
    """
    Additive attention bias for seq_len new tokens on top of start_pos cached ones.

    Entry (i, j) is 0 when new token i (absolute position start_pos + i) may
    attend to position j, i.e. j <= start_pos + i, and the most negative
    finite value of dtype otherwise. Added to the scores before softmax, the
    masked logits end up with ~0 probability.

      start_pos=2, seq_len=3:

              cached   new
              j=0 j=1  j=2 j=3 j=4
        i=0 [  0   0    0  min min ]
        i=1 [  0   0    0   0  min ]
        i=2 [  0   0    0   0   0  ]

    Left block (width start_pos): all zeros, every new token sees the whole
    cache. Right block (width seq_len): strict upper triangle of min.

    Returns:
        Tensor of shape (seq_len, start_pos + seq_len).
    """
    min_value = torch.finfo(dtype).min
    future = torch.full((seq_len, seq_len), min_value, dtype=dtype, device=device)
    future = torch.triu(future, diagonal=1)
    past = torch.zeros((seq_len, start_pos), dtype=dtype, device=device)
    return torch.cat([past, future], dim=1)


# ═══════════════════════════════════════════════════════════════════════════
# 2. RMSNorm
# ═══════════════════════════════════════════════════════════════════════════

class RMSNorm(nn.Module):
    """
    Root Mean Square Layer Normalization (Zhang & Sennrich, 2019).

      RMSNorm(x) = x * rsqrt(mean(x²) + eps) * weight

    The weight is always held in float32 and cast to the activation's dtype
    right before the multiply. Multiplying a float16 activation by a float32
    weight would silently promote the whole residual stream to float32.
    """

    def __init__(self, weight: torch.Tensor, eps: float = 1e-5):
        """
        Args:
            weight: Scale vector of shape (dim,).
            eps: Added to the mean square before rsqrt.
        """
        super().__init__()
        self.eps = eps
        self.register_buffer("weight", weight.detach().float())

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        # reduction in float32, result back in x's dtype
        rms_inv = torch.rsqrt(x.float().pow(2).mean(-1, keepdim=True) + self.eps)
        return (x.float() * rms_inv).type_as(x) * self.weight.to(x.dtype)


# ═══════════════════════════════════════════════════════════════════════════
# 3. SwiGLU Feed-Forward Network
# ═══════════════════════════════════════════════════════════════════════════

class FeedForward(nn.Module):
    """
    SwiGLU feed-forward block (Shazeer, 2020).

      FFN(x) = (silu(x @ w1) * (x @ w3)) @ w2

    w1 is the gate projection, w3 the up projection, w2 the down projection.
    Weights arrive in (out_features, in_features) layout and are stored
    transposed so the forward pass is three right-multiplications.
    """

    def __init__(
        self,
        dims: int,
        w1: torch.Tensor,
        w2: torch.Tensor,
        w3: torch.Tensor,
    ):
        super().__init__()
        hidden_dim = w1.shape[0]
        _expect_shape("ffn_gate", w1, (hidden_dim, dims))
        _expect_shape("ffn_up", w3, (hidden_dim, dims))
        _expect_shape("ffn_down", w2, (dims, hidden_dim))
        self.hidden_dim = hidden_dim

        self.register_buffer("w1", w1.detach().t().contiguous())
        self.register_buffer("w2", w2.detach().t().contiguous())
        self.register_buffer("w3", w3.detach().t().contiguous())

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return (F.silu(x @ self.w1) * (x @ self.w3)) @ self.w2


# ═══════════════════════════════════════════════════════════════════════════
# 4. Attention with KV cache and grouped-query head sharing
# ═══════════════════════════════════════════════════════════════════════════

def repeat_kv(x: torch.Tensor, n_rep: int) -> torch.Tensor:
    """
    Repeat each key/value head n_rep times along the head axis.

    (batch, seq, n_kv_heads, head_dim) → (batch, seq, n_kv_heads * n_rep, head_dim)
    Pattern for n_kv_heads=2, n_rep=3: [KV0, KV0, KV0, KV1, KV1, KV1], so kv
    head j serves query heads j*n_rep .. (j+1)*n_rep - 1.
    """
    if n_rep == 1:
        return x
    return x.repeat_interleave(n_rep, dim=2)


class Attention(nn.Module):
    """
    Causal multi-head self-attention over cached + new positions.

    DATA FLOW for seq_len new tokens, cache_len cached ones:
      x (batch, seq, dims)
        ├─→ @wq → (batch, seq, n_heads, hd)    → RoPE → q
        ├─→ @wk → (batch, seq, n_kv_heads, hd) → RoPE → xk ─┐
        └─→ @wv → (batch, seq, n_kv_heads, hd)         xv ─┤
                                                           ▼
               keys/values = cat(cache, xk/xv) over time: (batch, cache+seq, ...)
               repeat kv heads n_rep times (GQA)
               F.scaled_dot_product_attention: softmax(q·keysᵀ/√hd + mask) · values
        → (batch, seq, n_heads*hd) → @wo → (batch, seq, dims)

    The returned new_k/new_v are exactly xk/xv (post-RoPE keys, raw values).
    The layer never stores them; whoever owns the cache appends them.

    GROUPED-QUERY ATTENTION:
      With n_kv_heads < n_heads, several query heads share one kv head. The
      kv heads are repeated before the dot product (repeat_kv); without that
      step query head h would be scored against the wrong keys, or the
      shapes would not broadcast at all.
    """

    def __init__(
        self,
        hparams: HyperParams,
        wq: torch.Tensor,
        wk: torch.Tensor,
        wv: torch.Tensor,
        wo: torch.Tensor,
        rotary: RotaryEmbedding,
    ):
        super().__init__()
        self.n_heads = hparams.n_heads
        self.n_kv_heads = hparams.n_kv_heads
        self.head_dim = hparams.head_dim
        self.n_rep = hparams.n_rep
        self.rotary = rotary

        q_out = self.n_heads * self.head_dim
        kv_out = self.n_kv_heads * self.head_dim
        _expect_shape("attn_q", wq, (q_out, hparams.dims))
        _expect_shape("attn_k", wk, (kv_out, hparams.dims))
        _expect_shape("attn_v", wv, (kv_out, hparams.dims))
        _expect_shape("attn_output", wo, (hparams.dims, q_out))

        # Pre-transposed for right-multiplication: x @ w
        self.register_buffer("wq", wq.detach().t().contiguous())
        self.register_buffer("wk", wk.detach().t().contiguous())
        self.register_buffer("wv", wv.detach().t().contiguous())
        self.register_buffer("wo", wo.detach().t().contiguous())

    def forward(
        self,
        x: torch.Tensor,
        start_pos: int,
        freqs: torch.Tensor,
        k_cache: torch.Tensor,
        v_cache: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Args:
            x: Normalized input of shape (batch, seq_len, dims).
            start_pos: Number of cached positions.
            freqs: RoPE slice for positions [start_pos, start_pos + seq_len).
            k_cache, v_cache: This layer's cache, (batch, start_pos, n_kv_heads, head_dim).

        Returns:
            (output (batch, seq_len, dims), new_k, new_v), new_k/new_v of
            shape (batch, seq_len, n_kv_heads, head_dim).
        """
        batch_size, seq_len, _ = x.shape
        if k_cache.shape[1] != start_pos or v_cache.shape[1] != start_pos:
            raise ValueError(
                f"cache lengths k={tuple(k_cache.shape)} v={tuple(v_cache.shape)} "
                f"do not match start_pos={start_pos}"
            )

        xq = (x @ self.wq).view(batch_size, seq_len, self.n_heads, self.head_dim)
        xk = (x @ self.wk).view(batch_size, seq_len, self.n_kv_heads, self.head_dim)
        xv = (x @ self.wv).view(batch_size, seq_len, self.n_kv_heads, self.head_dim)

        # RoPE on queries and keys only
        xq = self.rotary(xq, freqs)
        xk = self.rotary(xk, freqs)

        keys = torch.cat([k_cache.to(xk.dtype), xk], dim=1)
        values = torch.cat([v_cache.to(xv.dtype), xv], dim=1)

        keys = repeat_kv(keys, self.n_rep)
        values = repeat_kv(values, self.n_rep)

        # (batch, heads, time, head_dim)
        q = xq.transpose(1, 2)
        keys = keys.transpose(1, 2)
        values = values.transpose(1, 2)

        # additive mask passed explicitly: is_causal assumes no cached prefix
        mask = build_causal_mask(start_pos, seq_len, q.dtype, q.device)
        output = F.scaled_dot_product_attention(q, keys, values, attn_mask=mask)

        output = output.transpose(1, 2).contiguous().view(batch_size, seq_len, -1)
        return output @ self.wo, xk, xv


# ═══════════════════════════════════════════════════════════════════════════
# 5. Transformer Block
# ═══════════════════════════════════════════════════════════════════════════

class TransformerBlock(nn.Module):
    """
    One pre-norm decoder layer.

        h   = x + Attention(RMSNorm_attn(x))
        out = h + FeedForward(RMSNorm_ffn(h))

    Both residual additions are unconditional: with zeroed projections the
    block is the identity.
    """

    def __init__(
        self,
        layer_id: int,
        hparams: HyperParams,
        weights: WeightProvider,
        dtype: torch.dtype,
        rotary: RotaryEmbedding,
    ):
        super().__init__()
        self.layer_id = layer_id

        def get(name):
            return weights.get(name, layer_id, dtype)

        self.attention_norm = RMSNorm(weights.get("attn_norm", layer_id, torch.float32), hparams.norm_eps)
        _expect_shape(f"blk.{layer_id}.attn_norm", self.attention_norm.weight, (hparams.dims,))
        self.attention = Attention(
            hparams, get("attn_q"), get("attn_k"), get("attn_v"), get("attn_output"), rotary,
        )
        self.ffn_norm = RMSNorm(weights.get("ffn_norm", layer_id, torch.float32), hparams.norm_eps)
        _expect_shape(f"blk.{layer_id}.ffn_norm", self.ffn_norm.weight, (hparams.dims,))
        self.feed_forward = FeedForward(
            hparams.dims, get("ffn_gate"), get("ffn_down"), get("ffn_up"),
        )

    def forward(
        self,
        x: torch.Tensor,
        start_pos: int,
        freqs: torch.Tensor,
        k_cache: torch.Tensor,
        v_cache: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        attn_output, new_k, new_v = self.attention(
            self.attention_norm(x), start_pos, freqs, k_cache, v_cache
        )
        h = x + attn_output
        out = h + self.feed_forward(self.ffn_norm(h))
        return out, new_k, new_v


# ═══════════════════════════════════════════════════════════════════════════
# 6. Complete model
# ═══════════════════════════════════════════════════════════════════════════

class Transformer(nn.Module):
    """
    The full decoder: embedding → n_layers blocks → final RMSNorm → LM head.

    BUILD:
      All weights are fetched from the provider once, checked against the
      hyperparameters (ConfigError on any mismatch) and kept as buffers. The
      RoPE table for max_seq_len positions is computed here in float32 and
      shared by every call and every layer.

    CALL:
      forward(tokens, k_cache, v_cache) → (logits, k_update, v_update)

      start_pos is read off the cache (k_cache.shape[0]); there is no
      separate position counter to fall out of sync with it. Layers run as
      a strict fold in definition order, each consuming the previous layer's
      output and its own cache slice. The per-layer key/value projections of
      the new tokens are stacked back along the layer axis:
        k_update, v_update: (seq_len, n_layers, batch, n_kv_heads, head_dim)
    """

    def __init__(
        self,
        hparams: HyperParams,
        weights: WeightProvider,
        config: Optional[BuildConfig] = None,
    ):
        super().__init__()
        config = config or BuildConfig()
        hparams.validate()
        self.hparams = hparams
        self.config = config

        device = resolve_device(config.device)
        self.dtype = check_float_dtype(get_dtype(config.dtype, device))
        self.rotary = get_rotary(config.rope_impl)

        embedding = weights.get("token_embd", None, self.dtype)
        _expect_shape("token_embd", embedding, (hparams.vocab_size, hparams.dims))
        self.register_buffer("tok_embeddings", embedding)

        self.layers = nn.ModuleList([
            TransformerBlock(i, hparams, weights, self.dtype, self.rotary)
            for i in range(hparams.n_layers)
        ])

        self.norm = RMSNorm(weights.get("output_norm", None, torch.float32), hparams.norm_eps)
        _expect_shape("output_norm", self.norm.weight, (hparams.dims,))

        output = weights.get("output", None, self.dtype)
        _expect_shape("output", output, (hparams.vocab_size, hparams.dims))
        self.register_buffer("output", output.t().contiguous())

        self.register_buffer(
            "rope_table",
            compute_table(hparams.max_seq_len, hparams.head_dim, hparams.rope_theta),
            persistent=False,
        )

        self.to(device)

    @property
    def device(self) -> torch.device:
        return self.tok_embeddings.device

    def _check_inputs(self, tokens: torch.Tensor, k_cache: torch.Tensor, v_cache: torch.Tensor) -> None:
        hp = self.hparams
        if tokens.dim() != 2 or tokens.dtype not in (torch.int32, torch.int64):
            raise ValueError(
                f"tokens must be an integer tensor of shape (batch, seq_len), "
                f"got {tuple(tokens.shape)} {tokens.dtype}"
            )
        if tokens.shape[1] == 0:
            raise ValueError(f"tokens has no positions: shape {tuple(tokens.shape)}")
        expected_tail = (hp.n_layers, tokens.shape[0], hp.n_kv_heads, hp.head_dim)
        for name, cache in (("k_cache", k_cache), ("v_cache", v_cache)):
            if cache.dim() != 5 or tuple(cache.shape[1:]) != expected_tail:
                raise ValueError(
                    f"{name} has shape {tuple(cache.shape)}, expected "
                    f"(cache_len, {', '.join(str(d) for d in expected_tail)})"
                )
        if k_cache.shape[0] != v_cache.shape[0]:
            raise ValueError(
                f"k_cache length {k_cache.shape[0]} != v_cache length {v_cache.shape[0]}"
            )

    def forward(
        self,
        tokens: torch.Tensor,
        k_cache: torch.Tensor,
        v_cache: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        """
        Args:
            tokens: (batch, seq_len) token ids.
            k_cache, v_cache: (cache_len, n_layers, batch, n_kv_heads, head_dim).

        Returns:
            logits (batch, seq_len, vocab_size) in float32, and the key/value
            updates for the new positions.
        """
        self._check_inputs(tokens, k_cache, v_cache)
        seq_len = tokens.shape[1]
        start_pos = k_cache.shape[0]

        h = F.embedding(tokens, self.tok_embeddings)
        freqs = slice_table(self.rope_table, start_pos, seq_len)

        layer_keys, layer_values = [], []
        for i, layer in enumerate(self.layers):
            # (cache_len, batch, n_kv, hd) → (batch, cache_len, n_kv, hd)
            layer_k = k_cache[:, i].transpose(0, 1)
            layer_v = v_cache[:, i].transpose(0, 1)
            h, new_k, new_v = layer(h, start_pos, freqs, layer_k, layer_v)
            layer_keys.append(new_k.transpose(0, 1))
            layer_values.append(new_v.transpose(0, 1))

        logits = (self.norm(h) @ self.output).float()

        k_update = torch.stack(layer_keys, dim=1)
        v_update = torch.stack(layer_values, dim=1)
        return logits, k_update, v_update
