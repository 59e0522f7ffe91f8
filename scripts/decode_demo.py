"""
Greedy decode demo.

USAGE:
    # Random tiny model (no files needed)
    python scripts/decode_demo.py --prompt-ids 1 15 27 --max-new-tokens 20

    # Saved weights + hyperparameters
    python scripts/decode_demo.py --weights weights/model.pt \
        --config weights/hparams.json --prompt-ids 1 450 4996

    # Complex-number RoPE backend in bfloat16, with a per-step log file
    python scripts/decode_demo.py --rope-impl complex --dtype bfloat16 \
        --log-dir logs

WHAT THIS SCRIPT DOES:
    1. Builds a model from saved weights, or from random weights for a tiny
       architecture
    2. Prefills the prompt ids in one call, then feeds each predicted token
       back in one at a time, growing the key/value cache
    3. Prints the generated ids with timing information

Token ids in, token ids out: there is no tokenizer here.
"""

import os
import sys
import argparse

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from llama_step.config import BuildConfig, HyperParams
from llama_step.decode import DecodeSession, DecodeStep
from llama_step.device import device_info
from llama_step.model import Transformer
from llama_step.utils import DecodeLogger, count_weights, set_seed
from llama_step.weights import load_weights, random_weights


def tiny_hparams(max_seq_len: int) -> HyperParams:
    """A small GQA architecture that builds instantly on CPU."""
    return HyperParams(
        n_layers=4,
        n_heads=8,
        n_kv_heads=2,
        head_dim=32,
        dims=256,
        vocab_size=512,
        max_seq_len=max_seq_len,
    )


def build_model(args: argparse.Namespace) -> Transformer:
    config = BuildConfig(dtype=args.dtype, rope_impl=args.rope_impl, device=args.device)

    if args.weights:
        if not args.config:
            raise SystemExit("--weights requires --config (hyperparameters JSON)")
        hparams = HyperParams.load(args.config)
        weights = load_weights(args.weights)
    else:
        hparams = tiny_hparams(args.max_seq_len)
        print(f"No --weights given: random weights (seed {args.seed})")
        weights = random_weights(hparams, hidden_dim=4 * hparams.dims, seed=args.seed)

    print(f"Model config: {hparams.dims}d, {hparams.n_layers}L, "
          f"{hparams.n_heads}H, {hparams.n_kv_heads}KV, "
          f"max_seq_len={hparams.max_seq_len}")

    model = Transformer(hparams, weights, config)
    print(f"Weights: {count_weights(model):,} elements, dtype {model.dtype}, "
          f"rope {model.rotary.name}")
    return model


def main():
    parser = argparse.ArgumentParser(
        description="Greedy decoding with the Llama2-style forward core",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--weights", type=str, default=None,
        help="Path to a weights file saved with save_weights (random if omitted)"
    )
    parser.add_argument(
        "--config", type=str, default=None,
        help="Path to hyperparameters JSON (required with --weights)"
    )
    parser.add_argument(
        "--prompt-ids", type=int, nargs="+", default=[1],
        help="Prompt token ids"
    )
    parser.add_argument(
        "--max-new-tokens", type=int, default=32,
        help="Maximum number of tokens to generate"
    )
    parser.add_argument(
        "--stop-token", type=int, default=None,
        help="Stop after emitting this token id"
    )
    parser.add_argument(
        "--max-seq-len", type=int, default=256,
        help="Context length of the random tiny model"
    )
    parser.add_argument(
        "--dtype", type=str, default="float32",
        choices=["auto", "float32", "float16", "bfloat16"],
        help="Model dtype"
    )
    parser.add_argument(
        "--rope-impl", type=str, default="reference",
        choices=["reference", "complex"],
        help="RoPE backend"
    )
    parser.add_argument(
        "--device", type=str, default="auto",
        help="cpu, cuda, mps or auto"
    )
    parser.add_argument("--seed", type=int, default=42, help="Random weight seed")
    parser.add_argument(
        "--log-dir", type=str, default=None,
        help="Write one line per decode step to a log file here"
    )

    args = parser.parse_args()
    set_seed(args.seed)

    model = build_model(args)
    print(device_info(model.device))

    logger = DecodeLogger(log_dir=args.log_dir, verbose=args.log_dir is not None)
    session = DecodeSession(DecodeStep(model), logger=logger)

    print(f"\nPrompt ids: {args.prompt_ids}")
    result = session.generate(
        args.prompt_ids,
        max_new_tokens=args.max_new_tokens,
        stop_token=args.stop_token,
    )
    logger.close()

    print(f"Generated ids: {result.tokens}")
    print("\n" + result.stats_string())


if __name__ == "__main__":
    main()
