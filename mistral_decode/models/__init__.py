"""
Model implementations for mistral-decode.
"""

from mistral_decode.models.mistral import MistralConfig, MistralModel
