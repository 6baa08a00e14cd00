"""
mistral-decode :: Mistral Config

Mirrors the config.json shipped with Mistral / Llama style checkpoints
(HuggingFace and MLX community layouts).

INL - 2025
"""

import json
from typing import Any, Dict, Optional, Union
from dataclasses import dataclass, fields


@dataclass
class MistralConfig:
    """
    Mistral model config.
    Unknown keys in config.json are ignored.
    """
    model_type: str = "mistral"

    # Dimensions
    vocab_size: int = 32000
    hidden_size: int = 4096
    intermediate_size: int = 14336
    num_hidden_layers: int = 32
    num_attention_heads: int = 32
    num_key_value_heads: Optional[int] = 8   # GQA; None → num_attention_heads
    head_dim: Optional[int] = None           # None → hidden_size // num_attention_heads

    # Positions
    max_position_embeddings: Optional[int] = None
    rope_theta: float = 10000.0
    rope_traditional: bool = False
    rope_scaling: Optional[Dict[str, Union[str, float]]] = None

    # Norms & projections
    rms_norm_eps: float = 1e-5
    attention_bias: bool = False
    mlp_bias: bool = False

    # Embeddings
    tie_word_embeddings: bool = False

    # Present on pre-quantized checkpoints ({"group_size": .., "bits": ..})
    quantization: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if self.num_key_value_heads is None:
            self.num_key_value_heads = self.num_attention_heads

    @property
    def resolved_head_dim(self) -> int:
        if self.head_dim is not None:
            return self.head_dim
        return self.hidden_size // self.num_attention_heads

    @property
    def num_kv_groups(self) -> int:
        return self.num_attention_heads // self.num_key_value_heads

    @property
    def rope_type(self) -> str:
        """rope_scaling["type"] (or "rope_type") when it is a string, else "default"."""
        if not self.rope_scaling:
            return "default"
        value = self.rope_scaling.get("type", self.rope_scaling.get("rope_type"))
        return value if isinstance(value, str) else "default"

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "MistralConfig":
        known = {f.name for f in fields(MistralConfig)}
        return MistralConfig(**{k: v for k, v in data.items() if k in known})

    @staticmethod
    def from_json(path: str) -> "MistralConfig":
        """Load from a checkpoint config.json."""
        with open(path, "r") as f:
            data = json.load(f)
        return MistralConfig.from_dict(data)
