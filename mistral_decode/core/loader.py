"""
mistral-decode :: Weight Loader

Load checkpoint weights into a MistralModel.

Handles:
  - safetensors (single file, sharded index, directory glob)
  - PyTorch files (.pt / .pth / .bin), nested state dicts unwrapped
  - "model." prefix of HuggingFace checkpoints
  - Tied embeddings (lm_head.weight absent or folded into embed_tokens)
  - Rotary inv_freq buffers (dropped, recomputed per call)
  - dtype conversion

Loading finishes (and the model is put in eval mode) before any
generation session starts; sessions treat the weights as read-only.

INL - 2025
"""

import json as _json
import os
import torch
import torch.nn as nn
from typing import Dict
from pathlib import Path

from mistral_decode.core.logging import get_logger

logger = get_logger("mistral_decode.loader")


# =========================================================================
# Multi-format state_dict loading (safetensors + PyTorch)
# =========================================================================

def _load_safetensors_file(filepath: str) -> Dict[str, torch.Tensor]:
    """Load a single .safetensors file."""
    from safetensors.torch import load_file
    return load_file(filepath)


def _load_pytorch_file(filepath: str) -> Dict[str, torch.Tensor]:
    """Load a PyTorch checkpoint file and unwrap nested state dicts."""
    state_dict = torch.load(filepath, map_location="cpu", weights_only=True)
    if isinstance(state_dict, dict):
        if "model" in state_dict and isinstance(state_dict["model"], dict):
            state_dict = state_dict["model"]
        if "state_dict" in state_dict:
            state_dict = state_dict["state_dict"]
    return state_dict


def _load_sharded_safetensors(directory: Path) -> Dict[str, torch.Tensor]:
    """Load sharded safetensors from a HuggingFace model directory."""
    index_path = directory / "model.safetensors.index.json"
    with open(index_path, "r") as f:
        index = _json.load(f)

    weight_map = index.get("weight_map", {})
    shard_files = sorted(set(weight_map.values()))

    state_dict = {}
    for shard_name in shard_files:
        shard_path = directory / shard_name
        if not shard_path.exists():
            raise FileNotFoundError(f"Shard not found: {shard_path}")
        state_dict.update(_load_safetensors_file(str(shard_path)))
    return state_dict


def _load_from_directory(dir_path: Path) -> Dict[str, torch.Tensor]:
    """
    Load from a model directory. Priority:
      1. model.safetensors.index.json (sharded)
      2. model.safetensors (single file)
      3. *.safetensors (glob)
      4. *.pt / *.pth / *.bin (PyTorch)
    """
    if (dir_path / "model.safetensors.index.json").exists():
        return _load_sharded_safetensors(dir_path)

    single_st = dir_path / "model.safetensors"
    if single_st.exists():
        return _load_safetensors_file(str(single_st))

    st_files = sorted(dir_path.glob("*.safetensors"))
    if st_files:
        state_dict = {}
        for f in st_files:
            state_dict.update(_load_safetensors_file(str(f)))
        return state_dict

    pt_files = sorted(dir_path.glob("*.pt")) + sorted(dir_path.glob("*.pth")) + sorted(dir_path.glob("*.bin"))
    if pt_files:
        state_dict = {}
        for f in pt_files:
            state_dict.update(_load_pytorch_file(str(f)))
        return state_dict

    raise FileNotFoundError(f"No checkpoint files found in {dir_path}")


def _load_state_dict(checkpoint_path: str) -> Dict[str, torch.Tensor]:
    """
    Auto-detect and load state dict from any supported format.

    Supports:
      - .pt / .pth / .bin (PyTorch)
      - .safetensors (single or sharded)
      - Directories (HuggingFace / MLX model dirs)
    """
    path = Path(checkpoint_path)

    if path.is_dir():
        return _load_from_directory(path)
    elif path.suffix == ".safetensors":
        return _load_safetensors_file(str(path))
    elif path.suffix in (".pt", ".pth", ".bin"):
        return _load_pytorch_file(str(path))
    raise ValueError(f"Unsupported checkpoint format: {checkpoint_path}")


def has_weights(checkpoint_path: str) -> bool:
    """True if the path is (or contains) a loadable weight file."""
    path = Path(checkpoint_path)
    if path.is_file():
        return path.suffix in (".safetensors", ".pt", ".pth", ".bin")
    if path.is_dir():
        return any(
            any(path.glob(pattern))
            for pattern in ("*.safetensors", "*.pt", "*.pth", "*.bin")
        )
    return False


# =========================================================================
# Checkpoint → model
# =========================================================================

def load_checkpoint(
    model: nn.Module,
    checkpoint_path: str,
    dtype: torch.dtype = torch.float16,
    device: str = "cpu",
    strict: bool = False,
) -> dict:
    """
    Copy checkpoint tensors into the model's parameters.

    Args:
        model: the model to load into
        checkpoint_path: path to a weight file or directory
        dtype: target dtype for weights
        device: target device
        strict: if True, raise when model parameters were left unloaded

    Returns:
        dict with loading stats
    """
    path = Path(checkpoint_path)
    if not path.exists():
        raise FileNotFoundError(f"Checkpoint not found: {checkpoint_path}")

    logger.info(f"Loading checkpoint: {checkpoint_path}")

    state_dict = _load_state_dict(checkpoint_path)
    if hasattr(model, "sanitize"):
        num_raw = len(state_dict)
        state_dict = model.sanitize(state_dict)
        skipped = num_raw - len(state_dict)
    else:
        skipped = 0

    params = dict(model.named_parameters())

    loaded = set()
    missing = set()

    for name, weight in state_dict.items():
        # Resolve actual param name (strip "model." prefix if needed)
        resolved_name = name
        if name not in params and name.startswith("model."):
            resolved_name = name[len("model."):]

        # Tied embeddings: a stray lm_head in the checkpoint feeds embed_tokens
        if resolved_name == "lm_head.weight" and resolved_name not in params:
            if "embed_tokens.weight" not in loaded and "embed_tokens.weight" in params:
                params["embed_tokens.weight"].data.copy_(weight.to(dtype))
                loaded.add("embed_tokens.weight")
            continue

        if resolved_name not in params:
            missing.add(name)
            continue

        param = params[resolved_name]
        if param.shape != weight.shape:
            raise ValueError(
                f"Shape mismatch for {resolved_name}: checkpoint {tuple(weight.shape)} "
                f"vs model {tuple(param.shape)}"
            )
        param.data.copy_(weight.to(dtype))
        loaded.add(resolved_name)

    unloaded = set(params.keys()) - loaded

    stats = {
        "loaded": len(loaded),
        "skipped": skipped,
        "missing_in_model": len(missing),
        "unloaded_params": len(unloaded),
    }

    logger.info(f"  Loaded: {stats['loaded']} tensors")
    if stats["skipped"]:
        logger.info(f"  Skipped: {stats['skipped']} (rotary inv_freq)")
    if stats["missing_in_model"]:
        logger.warning(f"  Not in model: {stats['missing_in_model']}")
    if stats["unloaded_params"]:
        logger.warning(f"  Unloaded params: {stats['unloaded_params']}")
        if strict:
            raise RuntimeError(f"Missing weights: {sorted(unloaded)}")

    model.to(device=device, dtype=dtype)
    return stats


def load_model(
    model_dir: str,
    dtype: torch.dtype = torch.float16,
    device: str = "cpu",
    strict: bool = True,
) -> nn.Module:
    """
    Build a MistralModel from a model directory (config.json + weights).

    Pre-quantized checkpoints are rejected: their packed format is not
    something this loader dequantizes.

    Returns:
        model on the target device, in eval mode
    """
    from mistral_decode.models.mistral import MistralConfig, MistralModel

    config_path = os.path.join(model_dir, "config.json")
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"config.json not found in {model_dir}")

    config = MistralConfig.from_json(config_path)
    if config.quantization:
        raise ValueError(
            f"Quantized checkpoint ({config.quantization}) is not supported; "
            f"use an unquantized export"
        )

    logger.info(
        f"Building {config.model_type}: {config.num_hidden_layers} layers, "
        f"hidden={config.hidden_size}, heads={config.num_attention_heads}/{config.num_key_value_heads}"
    )
    model = MistralModel(config)
    load_checkpoint(model, model_dir, dtype=dtype, device=device, strict=strict)
    model.eval()
    return model
