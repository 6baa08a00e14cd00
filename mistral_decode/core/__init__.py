"""
mistral-decode :: Core

Generic decode infrastructure, not tied to a specific model.
  - sampling: generation parameters and sampling strategies
  - logits_processor: repetition penalty window
  - kv_cache: per-layer key/value cache
  - tokenizer: text ↔ token id conversion
  - loader: checkpoint weight loading (import directly, it pulls in models)
"""

from mistral_decode.core.sampling import (
    GenerationParameters, SampleStrategy, categorical_sampling, top_p_sampling,
)
from mistral_decode.core.logits_processor import LogitsProcessor, RepetitionContext
from mistral_decode.core.kv_cache import KVCache, make_kv_caches
from mistral_decode.core.tokenizer import Tokenizer, load_tokenizer
