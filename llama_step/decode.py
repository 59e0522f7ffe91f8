"""
One decode call, and the caller-side bookkeeping around it.

DecodeStep is the externally observable contract of the model:

    next_token, new_k_cache, new_v_cache = step(tokens, k_cache, v_cache)

  tokens:   int64 (1, seq_len)
  caches:   (cache_len, n_layers, 1, n_kv_heads, head_dim)
  returns:  next_token int64 (1, 1) — argmax of the last position's logits
            new caches of length cache_len + seq_len

The cache is passed by value: the old tensors are read, never written, and
the step returns freshly concatenated ones. Two sessions can share one model
concurrently because nothing mutable is shared; one session must simply not
feed the same cache into two calls at once.

PREFILL vs DECODE:
  Prefill feeds the whole prompt in one call (seq_len = prompt length,
  start_pos = 0). Every later call feeds the single token just produced
  (seq_len = 1, start_pos = tokens so far). Both go through the same code;
  only the mask shape differs.

DecodeSession wraps the loop (greedy, one sequence) for tests, benchmarks
and the demo script. Sampling strategies, tokenization and stopping policy
beyond a stop token belong to whatever drives the model.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import torch

from llama_step.config import HyperParams
from llama_step.model import Transformer
from llama_step.utils import DecodeLogger, Timer


def empty_cache(
    hparams: HyperParams,
    dtype: torch.dtype = torch.float32,
    device: Optional[torch.device] = None,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """A (keys, values) pair with zero cached positions."""
    shape = (0, hparams.n_layers, 1, hparams.n_kv_heads, hparams.head_dim)
    return (
        torch.zeros(shape, dtype=dtype, device=device),
        torch.zeros(shape, dtype=dtype, device=device),
    )


@dataclass(frozen=True)
class KVCache:
    """Immutable (keys, values) pair for one sequence."""
    keys: torch.Tensor
    values: torch.Tensor

    @property
    def length(self) -> int:
        return self.keys.shape[0]

    @classmethod
    def empty(
        cls,
        hparams: HyperParams,
        dtype: torch.dtype = torch.float32,
        device: Optional[torch.device] = None,
    ) -> "KVCache":
        return cls(*empty_cache(hparams, dtype, device))

    def extend(self, k_update: torch.Tensor, v_update: torch.Tensor) -> "KVCache":
        """New cache with the update appended along the time axis."""
        return KVCache(
            torch.cat([self.keys, k_update.to(self.keys.dtype)], dim=0),
            torch.cat([self.values, v_update.to(self.values.dtype)], dim=0),
        )


class DecodeStep:
    """The model entry point: tokens + caches → next token + grown caches."""

    def __init__(self, model: Transformer):
        self.model = model

    @property
    def hparams(self) -> HyperParams:
        return self.model.hparams

    @torch.inference_mode()
    def __call__(
        self,
        tokens: torch.Tensor,
        k_cache: torch.Tensor,
        v_cache: torch.Tensor,
    ) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
        if tokens.dim() != 2 or tokens.shape[0] != 1:
            raise ValueError(
                f"tokens must have shape (1, seq_len), got {tuple(tokens.shape)}"
            )
        if tokens.shape[1] == 0:
            raise ValueError(
                f"tokens must hold at least one position, got {tuple(tokens.shape)}"
            )
        if tokens.dtype != torch.int64:
            raise ValueError(f"tokens must be int64, got {tokens.dtype}")

        logits, k_update, v_update = self.model(tokens, k_cache, v_cache)

        # Only the last position predicts the token that comes next.
        next_token = logits[:, -1, :].argmax(dim=-1, keepdim=True)

        cache = KVCache(k_cache, v_cache).extend(k_update, v_update)
        return next_token, cache.keys, cache.values


@dataclass
class DecodeResult:
    """Greedy generation output with inference metrics."""
    tokens: List[int] = field(default_factory=list)  # generated ids only
    prompt_tokens: int = 0
    prefill_ms: float = 0.0   # time to process the prompt
    decode_ms: float = 0.0    # time spent in single-token steps

    @property
    def generated_tokens(self) -> int:
        return len(self.tokens)

    @property
    def ttft_ms(self) -> float:
        """Time to first token, same as prefill time."""
        return self.prefill_ms

    @property
    def decode_tok_per_sec(self) -> float:
        # the first token comes out of prefill, every later one from a decode call
        steps = self.generated_tokens - 1
        if self.decode_ms <= 0 or steps <= 0:
            return 0.0
        return steps / (self.decode_ms / 1000)

    def stats_string(self) -> str:
        lines = [
            f"Prompt tokens  : {self.prompt_tokens}",
            f"Output tokens  : {self.generated_tokens}",
            f"TTFT           : {self.ttft_ms:.1f} ms",
            f"Decode speed   : {self.decode_tok_per_sec:.1f} tok/s",
            f"Total time     : {self.prefill_ms + self.decode_ms:.1f} ms",
        ]
        return "\n".join(lines)


class DecodeSession:
    """
    Owns the growing cache of one sequence and drives DecodeStep greedily.

    The session is the caller the core expects: it passes its current cache
    into every call and replaces it with the one that comes back.
    """

    def __init__(self, step: DecodeStep, logger: Optional[DecodeLogger] = None):
        self.step = step
        self.logger = logger
        self.reset()

    def reset(self) -> None:
        """Drop all cached positions and start a new sequence."""
        model = self.step.model
        self.cache = KVCache.empty(self.step.hparams, model.dtype, model.device)

    @property
    def position(self) -> int:
        return self.cache.length

    def feed(self, tokens: Sequence[int]) -> int:
        """
        Run one call over `tokens` and return the predicted next token id.

        Raises:
            IndexError: if the sequence would grow past max_seq_len.
        """
        tokens = list(tokens)
        max_seq_len = self.step.hparams.max_seq_len
        if not tokens:
            raise ValueError("feed() needs at least one token")
        if self.position + len(tokens) > max_seq_len:
            raise IndexError(
                f"feeding {len(tokens)} tokens at position {self.position} "
                f"exceeds max_seq_len={max_seq_len}"
            )

        token_tensor = torch.tensor([tokens], dtype=torch.long, device=self.step.model.device)
        next_token, keys, values = self.step(token_tensor, self.cache.keys, self.cache.values)
        self.cache = KVCache(keys, values)
        return next_token.item()

    def generate(
        self,
        prompt_tokens: Sequence[int],
        max_new_tokens: int = 32,
        stop_token: Optional[int] = None,
    ) -> DecodeResult:
        """
        Greedy prefill + decode from a fresh cache.

        Stops after max_new_tokens, after emitting stop_token, or when the
        cache reaches max_seq_len, whichever comes first.
        """
        self.reset()
        device = self.step.model.device
        max_seq_len = self.step.hparams.max_seq_len
        result = DecodeResult(prompt_tokens=len(prompt_tokens))
        if max_new_tokens <= 0:
            return result

        with Timer("prefill", device) as prefill:
            token = self.feed(prompt_tokens)
        result.prefill_ms = prefill.elapsed_ms
        result.tokens.append(token)
        if self.logger:
            self.logger.log_step(0, token, self.position, prefill.elapsed_ms)

        for i in range(1, max_new_tokens):
            if stop_token is not None and token == stop_token:
                break
            if self.position >= max_seq_len:
                if self.logger:
                    self.logger.log_info(f"cache full at {max_seq_len} positions, stopping")
                break
            with Timer("decode", device) as t:
                token = self.feed([token])
            result.decode_ms += t.elapsed_ms
            result.tokens.append(token)
            if self.logger:
                self.logger.log_step(i, token, self.position, t.elapsed_ms)

        return result
