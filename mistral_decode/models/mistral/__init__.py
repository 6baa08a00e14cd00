"""
Mistral-style decoder for mistral-decode.
"""

from mistral_decode.models.mistral.config import MistralConfig
from mistral_decode.models.mistral.model import (
    MistralModel,
    MistralAttention,
    TransformerBlock,
)
