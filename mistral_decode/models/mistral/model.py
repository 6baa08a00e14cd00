"""
mistral-decode :: Mistral Model

Fixed Mistral-style decoder:
  - GQA attention with dynamic NTK RoPE and per-layer KV cache
  - SwiGLU MLP
  - Pre-norm residual blocks (RMSNorm)
  - Optional tied embeddings

Attention is a static pipeline of named stages:
    project → reshape → rope(offset) → cache.update → attend → project out

INL - 2025
"""

import torch
import torch.nn as nn
import torch.nn.functional as F
from typing import Dict, List, Optional

from mistral_decode.core.kv_cache import KVCache, make_kv_caches
from mistral_decode.layers.attention import cached_attention, create_causal_mask
from mistral_decode.layers.mlp import MLP
from mistral_decode.layers.rmsnorm import RMSNorm
from mistral_decode.layers.rotary import DynamicNTKScalingRoPE
from mistral_decode.models.mistral.config import MistralConfig


# =========================================================================
# Attention (GQA + dynamic NTK RoPE + KV cache)
# =========================================================================

class MistralAttention(nn.Module):
    """
    Multi-head attention with grouped key/value heads.

    With a cache, queries/keys are rotated at the cache's offset and the
    new keys/values are appended before attending over the full history.
    Without a cache, positions start at 0 and nothing persists.
    """

    def __init__(self, config: MistralConfig):
        super().__init__()
        self.num_heads = config.num_attention_heads
        self.num_kv_heads = config.num_key_value_heads
        self.head_dim = config.resolved_head_dim
        self.num_kv_groups = self.num_heads // self.num_kv_heads
        self.scale = self.head_dim ** -0.5

        bias = config.attention_bias
        self.q_proj = nn.Linear(config.hidden_size, self.num_heads * self.head_dim, bias=bias)
        self.k_proj = nn.Linear(config.hidden_size, self.num_kv_heads * self.head_dim, bias=bias)
        self.v_proj = nn.Linear(config.hidden_size, self.num_kv_heads * self.head_dim, bias=bias)
        self.o_proj = nn.Linear(self.num_heads * self.head_dim, config.hidden_size, bias=bias)

        self.rope = DynamicNTKScalingRoPE(
            dims=self.head_dim,
            max_position_embeddings=config.max_position_embeddings,
            traditional=config.rope_traditional,
            base=config.rope_theta,
            scale=1.0,
            rope_type=config.rope_type,
            rope_scaling=config.rope_scaling,
        )

    def forward(
        self,
        x: torch.Tensor,                      # (batch, L, hidden)
        mask: Optional[torch.Tensor] = None,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        bsz, seq_len, _ = x.shape

        q = self.q_proj(x)
        k = self.k_proj(x)
        v = self.v_proj(x)

        # (batch, heads, L, head_dim)
        q = q.view(bsz, seq_len, self.num_heads, self.head_dim).transpose(1, 2)
        k = k.view(bsz, seq_len, self.num_kv_heads, self.head_dim).transpose(1, 2)
        v = v.view(bsz, seq_len, self.num_kv_heads, self.head_dim).transpose(1, 2)

        if cache is not None:
            q = self.rope(q, offset=cache.offset)
            k = self.rope(k, offset=cache.offset)
            k, v = cache.update(k, v)
        else:
            q = self.rope(q)
            k = self.rope(k)

        out = cached_attention(q, k, v, self.scale, mask=mask, num_kv_groups=self.num_kv_groups)

        # (batch, heads, L, head_dim) → (batch, L, heads * head_dim)
        out = out.transpose(1, 2).reshape(bsz, seq_len, -1)
        return self.o_proj(out)


# =========================================================================
# Decoder Block
# =========================================================================

class TransformerBlock(nn.Module):
    """
    Single decoder layer:
      1. RMSNorm → Attention → residual
      2. RMSNorm → SwiGLU MLP → residual
    """

    def __init__(self, config: MistralConfig):
        super().__init__()
        self.self_attn = MistralAttention(config)
        self.mlp = MLP(config.hidden_size, config.intermediate_size, bias=config.mlp_bias)
        self.input_layernorm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)
        self.post_attention_layernorm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)

    def forward(
        self,
        x: torch.Tensor,
        mask: Optional[torch.Tensor] = None,
        cache: Optional[KVCache] = None,
    ) -> torch.Tensor:
        h = x + self.self_attn(self.input_layernorm(x), mask=mask, cache=cache)
        return h + self.mlp(self.post_attention_layernorm(h))


# =========================================================================
# Mistral Model
# =========================================================================

class MistralModel(nn.Module):
    """
    Decoder-only transformer with an LM head.

    forward(token_ids, cache) → logits (batch, L, vocab_size)
    make_cache() → one empty KVCache per layer, sized to the head config.
    """

    def __init__(self, config: MistralConfig):
        super().__init__()
        if config.vocab_size <= 0:
            raise ValueError(f"vocab_size must be positive, got {config.vocab_size}")
        if config.num_attention_heads % config.num_key_value_heads:
            raise ValueError(
                f"num_attention_heads ({config.num_attention_heads}) must be a multiple "
                f"of num_key_value_heads ({config.num_key_value_heads})"
            )
        self.config = config

        self.embed_tokens = nn.Embedding(config.vocab_size, config.hidden_size)
        self.layers = nn.ModuleList([
            TransformerBlock(config) for _ in range(config.num_hidden_layers)
        ])
        self.norm = RMSNorm(config.hidden_size, eps=config.rms_norm_eps)

        self.tie_word_embeddings = config.tie_word_embeddings
        if not config.tie_word_embeddings:
            self.lm_head = nn.Linear(config.hidden_size, config.vocab_size, bias=False)

    @property
    def vocab_size(self) -> int:
        return self.config.vocab_size

    @property
    def num_layers(self) -> int:
        return len(self.layers)

    @property
    def num_kv_heads(self) -> int:
        return self.config.num_key_value_heads

    @property
    def head_dim(self) -> int:
        return self.config.resolved_head_dim

    def make_cache(self) -> List[KVCache]:
        return make_kv_caches(self.num_layers, self.num_kv_heads, self.head_dim)

    def forward(
        self,
        token_ids: torch.Tensor,                 # (batch, L) or (L,)
        cache: Optional[List[KVCache]] = None,
    ) -> torch.Tensor:
        if token_ids.dim() == 1:
            token_ids = token_ids.unsqueeze(0)

        hidden = self.embed_tokens(token_ids.long())

        offset = cache[0].offset if cache else 0
        mask = create_causal_mask(
            token_ids.shape[1], offset, dtype=hidden.dtype, device=hidden.device,
        )

        for i, layer in enumerate(self.layers):
            hidden = layer(hidden, mask=mask, cache=cache[i] if cache else None)

        hidden = self.norm(hidden)

        if self.tie_word_embeddings:
            return F.linear(hidden, self.embed_tokens.weight)
        return self.lm_head(hidden)

    @staticmethod
    def sanitize(weights: Dict[str, torch.Tensor]) -> Dict[str, torch.Tensor]:
        """Drop precomputed rotary frequencies (recomputed per call)."""
        return {k: v for k, v in weights.items() if "self_attn.rotary_emb.inv_freq" not in k}

    def num_parameters(self) -> int:
        return sum(p.numel() for p in self.parameters())
