"""
mistral-decode :: Attention Helpers

Causal mask construction and scaled dot-product attention over the
cached key/value history.

  Prefill (L > 1):  additive causal mask, query i sees positions <= offset + i
  Decode  (L == 1): no mask, the single query sees the whole history

GQA: key/value heads are repeated up to the query head count.

INL - 2025
"""

import torch
import torch.nn.functional as F
from typing import Optional


def create_causal_mask(
    seq_len: int,
    offset: int = 0,
    dtype: torch.dtype = torch.float32,
    device: Optional[torch.device] = None,
) -> Optional[torch.Tensor]:
    """
    Additive causal mask for seq_len new queries after `offset` cached positions.

    Returns None for a single query (nothing to mask), else (seq_len, offset + seq_len)
    with 0 where attention is allowed and the dtype's minimum elsewhere.
    """
    if seq_len <= 1:
        return None

    q_pos = torch.arange(offset, offset + seq_len, device=device).unsqueeze(1)
    k_pos = torch.arange(offset + seq_len, device=device).unsqueeze(0)
    mask = torch.zeros(seq_len, offset + seq_len, dtype=dtype, device=device)
    return mask.masked_fill(k_pos > q_pos, torch.finfo(dtype).min)


def cached_attention(
    q: torch.Tensor,          # (batch, num_heads, L, head_dim)
    k: torch.Tensor,          # (batch, num_kv_heads, history, head_dim)
    v: torch.Tensor,          # (batch, num_kv_heads, history, head_dim)
    scale: float,
    mask: Optional[torch.Tensor] = None,
    num_kv_groups: int = 1,
) -> torch.Tensor:
    """
    Queries attend over the full cached history.

    Returns (batch, num_heads, L, head_dim).
    """
    # Align dtypes (cache may hold a different precision than fresh queries)
    if k.dtype != q.dtype:
        k = k.to(q.dtype)
    if v.dtype != q.dtype:
        v = v.to(q.dtype)

    # GQA expand
    if num_kv_groups > 1:
        k = k.repeat_interleave(num_kv_groups, dim=1)
        v = v.repeat_interleave(num_kv_groups, dim=1)

    if mask is not None:
        mask = mask.to(q.dtype)

    return F.scaled_dot_product_attention(q, k, v, attn_mask=mask, scale=scale)
