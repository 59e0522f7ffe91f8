"""
llama-step: the forward-computation core of a Llama2-style language model.

Turns token ids plus a running key/value cache into next-token logits and an
updated cache, in pure PyTorch.

Key modules:
  - config:  HyperParams (architecture) and BuildConfig (dtype, RoPE backend, device)
  - weights: Weight provider (named per-layer tensors), save/load, name mapping
  - rope:    Rotary embedding table and the reference / complex backends
  - model:   Causal mask, RMSNorm, SwiGLU, Attention (GQA + KV cache), Transformer
  - decode:  DecodeStep entry point, KVCache, greedy DecodeSession
  - device:  Device and dtype resolution
  - utils:   Seeding, timing, logging
"""

from llama_step.config import BuildConfig, ConfigError, HyperParams
from llama_step.decode import DecodeResult, DecodeSession, DecodeStep, KVCache, empty_cache
from llama_step.model import Transformer, build_causal_mask
from llama_step.weights import StateDictWeights, WeightNotFoundError, WeightProvider

__version__ = "0.1.0"
