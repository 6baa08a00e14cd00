"""
mistral-decode: on-device autoregressive text generation for Mistral-style models.

  Positions:   dynamic NTK-scaled RoPE, offset from the KV cache
  KV cache:    one append-only store per layer, per session
  Penalty:     circular window of recent tokens
  Sampling:    greedy / temperature / nucleus (top-p)
  Generation:  pull-based TokenGenerator, caller owns the stop policy

INL - 2025
"""

__version__ = "0.1.0"
