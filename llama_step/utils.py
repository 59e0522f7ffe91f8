"""
Utility functions for the decode pipeline.

Cross-cutting concerns that don't belong to any one component:
reproducibility (seeding), diagnostics (weight counting), timing, and
logging. Intentionally simple: PyTorch, NumPy and the standard library only.
"""

import os
import time
import random
from typing import Optional
from datetime import datetime

import numpy as np
import torch
import torch.nn as nn


# ═══════════════════════════════════════════════════════════════════════════
# REPRODUCIBILITY
# ═══════════════════════════════════════════════════════════════════════════

def set_seed(seed: int) -> None:
    """
    Seed Python, NumPy and PyTorch (CPU and CUDA) random number generators.

    The forward pass itself draws no random numbers; this only matters for
    code that builds random weights or random token streams (tests, demos).
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


# ═══════════════════════════════════════════════════════════════════════════
# MODEL DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════

def count_weights(model: nn.Module, include_rope: bool = False) -> int:
    """
    Count the scalar elements held by a model.

    Weights are stored as buffers (they are constants, not trainable
    parameters), so this sums buffer sizes. The RoPE table is derived from
    hyperparameters rather than loaded, and is excluded unless asked for.
    """
    total = 0
    for name, buf in model.named_buffers():
        if not include_rope and name.endswith("rope_table"):
            continue
        total += buf.numel()
    return total


# ═══════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Context manager for timing code blocks.

    Usage:
        with Timer("prefill", device) as t:
            session.feed(prompt)
        print(t)  # "prefill: 0.0234s"

    On CUDA, kernels run asynchronously; the device is synchronized on entry
    and exit so the elapsed time covers the actual GPU work.
    """

    def __init__(self, name: str = "Block", device: Optional[torch.device] = None):
        self.name = name
        self.device = device
        self.elapsed: float = 0.0

    def __enter__(self):
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
        self.elapsed = time.perf_counter() - self.start

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed * 1000

    def __str__(self):
        return f"{self.name}: {self.elapsed:.4f}s"


# ═══════════════════════════════════════════════════════════════════════════
# DECODE LOGGER
# ═══════════════════════════════════════════════════════════════════════════

class DecodeLogger:
    """
    Lightweight logger that writes to console and an optional log file.

    One line per decode step:
      step     3 | token   417 | cache   12 | 4.21 ms
    """

    def __init__(self, log_dir: Optional[str] = None, verbose: bool = True):
        """
        Args:
            log_dir: Directory for log files. If None, only console output.
            verbose: If False, nothing is printed (the file still receives lines).
        """
        self.verbose = verbose
        self.log_file = None
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = os.path.join(log_dir, f"decode_{timestamp}.log")
            self.log_file = open(log_path, "w")
            if verbose:
                print(f"Logging to: {log_path}")

    def _write(self, msg: str) -> None:
        if self.verbose:
            print(msg)
        if self.log_file:
            self.log_file.write(msg + "\n")
            self.log_file.flush()

    def log_step(self, step: int, token: int, cache_len: int, ms: float) -> None:
        self._write(
            f"step {step:>5d} | "
            f"token {token:>6d} | "
            f"cache {cache_len:>5d} | "
            f"{ms:.2f} ms"
        )

    def log_info(self, msg: str) -> None:
        self._write(f"[INFO] {msg}")

    def close(self) -> None:
        if self.log_file:
            self.log_file.close()
            self.log_file = None
