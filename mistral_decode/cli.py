"""
mistral-decode :: CLI

Usage:
    mistral-decode generate <model_dir> --prompt "..." [--max-tokens 100]
        [--temperature 0.6] [--top-p 1.0] [--repetition-penalty 1.1]
        [--repetition-context-size 20] [--prefill-step-size 512]
        [--seed 0] [--dtype float16] [--device cpu]
    mistral-decode check <model_dir>

INL - 2025
"""

import argparse
import os
import sys


DTYPES = ("float16", "bfloat16", "float32")


def cmd_generate(args):
    """Load a model directory and generate a completion for one prompt."""
    import torch
    from mistral_decode.core.loader import load_model
    from mistral_decode.core.logging import get_logger
    from mistral_decode.core.sampling import GenerationParameters
    from mistral_decode.core.tokenizer import load_tokenizer
    from mistral_decode.engine.engine import GenerationEngine

    logger = get_logger("mistral_decode.cli")

    device = args.device or ("cuda" if torch.cuda.is_available() else "cpu")
    dtype = getattr(torch, args.dtype)

    # CPU half precision is slow and partially unsupported, force float32
    if device == "cpu" and dtype != torch.float32:
        logger.info(f"CPU detected, overriding dtype {args.dtype} → float32")
        dtype = torch.float32

    tokenizer = load_tokenizer(args.model_dir)
    if tokenizer is None:
        logger.error(f"No tokenizer.json in {args.model_dir}")
        sys.exit(1)

    parameters = GenerationParameters(
        prefill_step_size=args.prefill_step_size,
        temperature=args.temperature,
        top_p=args.top_p,
        repetition_penalty=args.repetition_penalty,
        repetition_context_size=args.repetition_context_size,
    )

    model = load_model(args.model_dir, dtype=dtype, device=device)
    engine = GenerationEngine(
        model=model,
        tokenizer=tokenizer,
        max_tokens=args.max_tokens,
        seed=args.seed,
    )

    result = engine.generate(args.prompt, parameters)
    print(result.text)
    logger.info(
        f"{len(result.output_tokens)} tokens in {result.elapsed_ms:.0f} ms "
        f"({result.tokens_per_second:.1f} tok/s, finish={result.finish_reason})"
    )


def cmd_check(args):
    """Check a model directory: config, weights, tokenizer."""
    from mistral_decode.core.loader import has_weights
    from mistral_decode.models.mistral.config import MistralConfig

    ok = True
    config_path = os.path.join(args.model_dir, "config.json")
    print(f"Model dir:   {args.model_dir}")

    if os.path.exists(config_path):
        config = MistralConfig.from_json(config_path)
        print(f"  config.json  OK ({config.model_type}, {config.num_hidden_layers} layers, "
              f"vocab={config.vocab_size}, rope={config.rope_type})")
        if config.quantization:
            print(f"  quantization {config.quantization} (unsupported)")
            ok = False
    else:
        print("  config.json  MISSING")
        ok = False

    if has_weights(args.model_dir):
        print("  weights      OK")
    else:
        print("  weights      MISSING")
        ok = False

    if os.path.exists(os.path.join(args.model_dir, "tokenizer.json")):
        print("  tokenizer    OK")
    else:
        print("  tokenizer    MISSING")
        ok = False

    if not ok:
        sys.exit(1)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mistral-decode",
        description="On-device text generation for Mistral-style models",
    )
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--log-file", default=None, help="Also write JSON logs to this file")
    sub = parser.add_subparsers(dest="command")

    # generate
    p_gen = sub.add_parser("generate", help="Generate text from a prompt")
    p_gen.add_argument("model_dir", help="Directory with config.json, weights, tokenizer.json")
    p_gen.add_argument("--prompt", required=True)
    p_gen.add_argument("--max-tokens", type=int, default=100)
    p_gen.add_argument("--temperature", type=float, default=0.6)
    p_gen.add_argument("--top-p", type=float, default=1.0)
    p_gen.add_argument("--repetition-penalty", type=float, default=None)
    p_gen.add_argument("--repetition-context-size", type=int, default=20)
    p_gen.add_argument("--prefill-step-size", type=int, default=512)
    p_gen.add_argument("--seed", type=int, default=0)
    p_gen.add_argument("--dtype", default="float16", choices=DTYPES)
    p_gen.add_argument("--device", default=None, help="cpu / cuda (default: auto)")
    p_gen.set_defaults(func=cmd_generate)

    # check
    p_check = sub.add_parser("check", help="Check a model directory")
    p_check.add_argument("model_dir")
    p_check.set_defaults(func=cmd_check)

    return parser


def main(argv=None):
    from mistral_decode.core.logging import setup_logging

    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        sys.exit(1)

    setup_logging(level=args.log_level, json_output=args.json_logs, log_file=args.log_file)
    args.func(args)


if __name__ == "__main__":
    main()
