"""
mistral-decode :: Generic layers for decoder-only transformers.
Model-agnostic: any Mistral/Llama-style block can use these.
"""

from mistral_decode.layers.rmsnorm import RMSNorm
from mistral_decode.layers.mlp import MLP
from mistral_decode.layers.rotary import DynamicNTKScalingRoPE, apply_rotary, compute_base_frequency
from mistral_decode.layers.attention import create_causal_mask, cached_attention
