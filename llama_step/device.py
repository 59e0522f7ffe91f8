"""
Hardware and numeric-type resolution for model construction.

Every device- or dtype-specific decision is made here, once, when a model is
built. The model code itself never branches on hardware.

SUPPORTED DEVICES:
  1. CUDA (NVIDIA GPUs): bfloat16 on Ampere+, float16 otherwise.
  2. MPS (Apple Silicon): float32 storage.
  3. CPU: float32.

NUMERIC TYPES:
  The model is generic over a floating-point element type. Integer, boolean
  and complex dtypes are rejected at construction time with ConfigError; a
  decode step never discovers a bad dtype halfway through a layer.
"""

from typing import Union

import torch

from llama_step.config import ConfigError


_DTYPE_MAP = {
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
    "float32": torch.float32,
}


def get_device() -> torch.device:
    """
    Auto-detect the best available compute device.

    Priority order: CUDA → MPS → CPU
    """
    if torch.cuda.is_available():
        return torch.device("cuda")
    elif hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
        return torch.device("mps")
    else:
        return torch.device("cpu")


def resolve_device(requested: str) -> torch.device:
    """Turn "auto" / "cpu" / "cuda" / "mps" into a torch.device."""
    if requested == "auto":
        return get_device()
    return torch.device(requested)


def get_dtype(requested: Union[str, torch.dtype], device: torch.device) -> torch.dtype:
    """
    Resolve a dtype name to the torch.dtype the model will run in.

    A torch.dtype is passed through unchanged; check_float_dtype decides
    whether the model can run in it.

    "auto" selects by hardware:
      - CUDA with bf16 support: bfloat16 (same exponent range as float32,
        so the most negative mask value and large logits stay finite)
      - older CUDA: float16
      - MPS / CPU: float32

    Args:
        requested: One of "auto", "float16", "bfloat16", "float32", or a torch.dtype.
        device: The target device.

    Returns:
        torch.dtype: The resolved dtype.
    """
    if isinstance(requested, torch.dtype):
        return requested

    if requested == "auto":
        if device.type == "cuda":
            if torch.cuda.is_bf16_supported():
                return torch.bfloat16
            return torch.float16
        return torch.float32

    if requested not in _DTYPE_MAP:
        raise ConfigError(
            f"Unknown dtype '{requested}'. "
            f"Choose from: {list(_DTYPE_MAP.keys())} or 'auto'"
        )
    return _DTYPE_MAP[requested]


def check_float_dtype(dtype: torch.dtype) -> torch.dtype:
    """
    Reject non floating-point element types.

    torch.dtype.is_floating_point is False for integer, bool and complex
    types, which is exactly the set the model cannot compute in.
    """
    if not isinstance(dtype, torch.dtype) or not dtype.is_floating_point:
        raise ConfigError(f"model dtype must be a floating-point type, got {dtype}")
    return dtype


def device_info(device: torch.device) -> str:
    """Human-readable description of the device, printed by the demo script."""
    lines = [f"Device: {device}"]

    if device.type == "cuda":
        props = torch.cuda.get_device_properties(device)
        lines.append(f"  GPU: {props.name}")
        lines.append(f"  VRAM: {props.total_memory / 1024**3:.1f} GB")
        lines.append(f"  Compute Capability: {props.major}.{props.minor}")
        lines.append(f"  BF16 Support: {torch.cuda.is_bf16_supported()}")
    elif device.type == "mps":
        lines.append("  Backend: Metal Performance Shaders (Apple Silicon)")
    else:
        lines.append("  Backend: CPU (no GPU acceleration)")

    lines.append(f"  PyTorch Version: {torch.__version__}")

    return "\n".join(lines)
