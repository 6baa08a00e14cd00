"""
mistral-decode :: Engine

  - generator: TokenGenerator state machine (prefill → prime → decode)
  - engine: GenerationEngine, the caller-side stop policy
"""

from mistral_decode.engine.generator import TokenGenerator, GeneratorState
from mistral_decode.engine.engine import GenerationEngine, GenerationResult
