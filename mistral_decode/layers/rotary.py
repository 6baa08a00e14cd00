"""
mistral-decode :: Rotary Positional Embedding

Dynamic NTK-scaled RoPE.

  Base frequency:  computed once (llama3-style smoothing when configured)
  Per call:        base inflated when offset + seq_len passes the
                   trained context length
  Rotation:        float32 sin/cos, cast back to the input dtype

INL - 2025
"""

import math
import numbers
import torch
import torch.nn as nn
from typing import Dict, Optional, Union

from mistral_decode.core.logging import get_logger

logger = get_logger("mistral_decode.layers.rotary")

RopeScaling = Dict[str, Union[str, float]]


def _scaling_value(rope_scaling: RopeScaling, key: str, default: Optional[float]) -> Optional[float]:
    """Numeric value of a rope_scaling entry, or None if absent/non-numeric."""
    value = rope_scaling.get(key, default)
    if isinstance(value, bool) or not isinstance(value, numbers.Real):
        return None
    return float(value)


def compute_base_frequency(
    base: float,
    dims: int,
    rope_type: str,
    rope_scaling: Optional[RopeScaling],
) -> float:
    """
    Rescaled RoPE base for extended-context ("llama3") checkpoints.

    Each even dimension's frequency is interpolated between the original
    and the factor-scaled value, weighted by where its wavelength falls
    between the high- and low-frequency wavelengths. The result is the
    mean of the adjusted frequencies.

    Falls back to the unmodified base when the rope type does not ask for
    rescaling or the scaling parameters are missing or malformed.
    """
    if rope_type != "llama3" or rope_scaling is None:
        return base

    factor = _scaling_value(rope_scaling, "factor", None)
    low_freq_factor = _scaling_value(rope_scaling, "low_freq_factor", 1.0)
    high_freq_factor = _scaling_value(rope_scaling, "high_freq_factor", 4.0)
    old_context_len = _scaling_value(rope_scaling, "original_max_position_embeddings", 8192.0)

    if None in (factor, low_freq_factor, high_freq_factor, old_context_len):
        logger.warning(f"Incomplete rope_scaling {rope_scaling}, using base {base}")
        return base
    if low_freq_factor == high_freq_factor or low_freq_factor == 0 or high_freq_factor == 0:
        logger.warning(f"Degenerate rope_scaling {rope_scaling}, using base {base}")
        return base

    low_freq_wavelen = old_context_len / low_freq_factor
    high_freq_wavelen = old_context_len / high_freq_factor

    freqs = [base ** (i / dims) for i in range(0, dims, 2)]

    new_base_freqs = []
    for freq in freqs:
        wavelen = 2 * math.pi / freq
        smooth = (wavelen - high_freq_wavelen) / (low_freq_wavelen - high_freq_wavelen)
        smooth = max(0.0, min(1.0, smooth))
        new_base_freqs.append(freq * ((1 - smooth) * factor + smooth))

    return sum(new_base_freqs) / len(new_base_freqs)


def apply_rotary(
    x: torch.Tensor,
    dims: int,
    base: float,
    scale: float = 1.0,
    offset: int = 0,
    traditional: bool = False,
) -> torch.Tensor:
    """
    Rotate the first `dims` features of x as positions offset .. offset+L-1.

    x: (batch, heads, seq_len, head_dim)
    traditional=True rotates interleaved pairs, otherwise the two halves.
    """
    seq_len = x.shape[-2]
    device = x.device

    positions = torch.arange(offset, offset + seq_len, device=device, dtype=torch.float32) * scale
    inv_freq = 1.0 / (base ** (torch.arange(0, dims, 2, device=device, dtype=torch.float32) / dims))
    freqs = torch.outer(positions, inv_freq)  # (seq_len, dims / 2)
    cos, sin = freqs.cos(), freqs.sin()

    rot = x[..., :dims].float()
    if traditional:
        x1, x2 = rot[..., 0::2], rot[..., 1::2]
        rotated = torch.stack([x1 * cos - x2 * sin, x1 * sin + x2 * cos], dim=-1).flatten(-2)
    else:
        half = dims // 2
        x1, x2 = rot[..., :half], rot[..., half:]
        rotated = torch.cat([x1 * cos - x2 * sin, x2 * cos + x1 * sin], dim=-1)

    rotated = rotated.to(x.dtype)
    if dims < x.shape[-1]:
        rotated = torch.cat([rotated, x[..., dims:]], dim=-1)
    return rotated


class DynamicNTKScalingRoPE(nn.Module):
    """
    RoPE whose base grows once the sequence outgrows max_position_embeddings.

    Stateless apart from the base frequency computed at construction;
    the position comes in with every call (the KV cache offset).
    """

    def __init__(
        self,
        dims: int,
        max_position_embeddings: Optional[int] = None,
        traditional: bool = False,
        base: float = 10000.0,
        scale: float = 1.0,
        rope_type: str = "default",
        rope_scaling: Optional[RopeScaling] = None,
    ):
        super().__init__()
        if dims <= 0 or dims % 2:
            raise ValueError(f"RoPE dims must be a positive even number, got {dims}")
        if max_position_embeddings and dims <= 2:
            raise ValueError("Dynamic NTK scaling needs dims > 2")
        self.dims = dims
        self.max_position_embeddings = max_position_embeddings
        self.traditional = traditional
        self.base = compute_base_frequency(base, dims, rope_type, rope_scaling)
        self.scale = scale
        self.rope_type = rope_type
        self.rope_scaling = rope_scaling

    def effective_base(self, seq_len: int) -> float:
        """Base used for a call whose last position is seq_len - 1."""
        base = self.base
        if self.max_position_embeddings and seq_len > self.max_position_embeddings:
            factor_adjustment = seq_len / self.max_position_embeddings - 1
            dimension_ratio = self.dims / (self.dims - 2)
            adjusted_scale = self.scale * (1 + factor_adjustment) ** dimension_ratio
            base *= adjusted_scale
        return base

    def forward(self, x: torch.Tensor, offset: int = 0) -> torch.Tensor:
        """x: (batch, heads, seq_len, head_dim) → same shape, rotated."""
        seq_len = x.shape[-2] + offset
        return apply_rotary(
            x,
            dims=self.dims,
            base=self.effective_base(seq_len),
            scale=self.scale,
            offset=offset,
            traditional=self.traditional,
        )

    def extra_repr(self) -> str:
        return (
            f"dims={self.dims}, base={self.base:.1f}, scale={self.scale}, "
            f"max_position_embeddings={self.max_position_embeddings}, traditional={self.traditional}"
        )
