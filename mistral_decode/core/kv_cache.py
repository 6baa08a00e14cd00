"""
mistral-decode :: KV Cache

Per-layer append-only key/value store for one generation session.

Layout:
    keys:   (batch, num_kv_heads, seq_len, head_dim)
    values: (batch, num_kv_heads, seq_len, head_dim)
    offset: int, positions committed so far

No eviction and no capacity bound: the caller bounds the number of
generated tokens. `offset` is the position cursor read by RoPE.

INL - 2025
"""

import torch
from typing import List, Optional, Tuple


class KVCache:
    """
    Simple concatenating KV cache for one attention layer.

    update() appends along the sequence axis and returns the full history,
    so attention always sees every cached position plus the new ones.
    """

    def __init__(self, head_dim: int, num_kv_heads: int):
        self.head_dim = head_dim
        self.num_kv_heads = num_kv_heads
        self.keys: Optional[torch.Tensor] = None
        self.values: Optional[torch.Tensor] = None
        self.offset: int = 0

    def update(
        self, keys: torch.Tensor, values: torch.Tensor
    ) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Append new keys/values and return the full cached history.

        Args:
            keys:   (batch, num_kv_heads, L, head_dim)
            values: (batch, num_kv_heads, L, head_dim)

        Returns:
            (keys, values) each (batch, num_kv_heads, offset + L, head_dim)
        """
        if keys.shape != values.shape:
            raise ValueError(f"keys {tuple(keys.shape)} and values {tuple(values.shape)} differ")
        if keys.dim() != 4 or keys.shape[1] != self.num_kv_heads or keys.shape[3] != self.head_dim:
            raise ValueError(
                f"Expected (batch, {self.num_kv_heads}, seq, {self.head_dim}), "
                f"got {tuple(keys.shape)}"
            )

        if self.keys is None:
            self.keys = keys
            self.values = values
        else:
            self.keys = torch.cat([self.keys, keys], dim=2)
            self.values = torch.cat([self.values, values], dim=2)

        self.offset += keys.shape[2]
        return self.keys, self.values

    @property
    def state(self) -> Tuple[Optional[torch.Tensor], Optional[torch.Tensor]]:
        return self.keys, self.values

    @property
    def nbytes(self) -> int:
        """Memory held by cached keys + values."""
        if self.keys is None:
            return 0
        return (
            self.keys.numel() * self.keys.element_size()
            + self.values.numel() * self.values.element_size()
        )

    def reset(self):
        self.keys = None
        self.values = None
        self.offset = 0

    def __repr__(self) -> str:
        return (
            f"KVCache(num_kv_heads={self.num_kv_heads}, head_dim={self.head_dim}, "
            f"offset={self.offset})"
        )


def make_kv_caches(num_layers: int, num_kv_heads: int, head_dim: int) -> List[KVCache]:
    """One fresh cache per layer, never shared between layers or sessions."""
    return [KVCache(head_dim=head_dim, num_kv_heads=num_kv_heads) for _ in range(num_layers)]
