"""
mistral-decode :: Generation Engine

Caller-side driver around TokenGenerator:
  1. Tokenizer encodes the prompt
  2. TokenGenerator produces ids one at a time
  3. Engine stops on a stop id (unknown / eos) or the max_tokens budget
  4. Tokenizer decodes the collected ids

The engine is an explicit context object (model + tokenizer + budget +
seed) owned by the caller; nothing here is process-global. Each call
builds its own generator, caches and repetition window.

INL - 2025
"""

import itertools
import torch
import torch.nn as nn
from typing import Callable, List, Optional, Sequence
from dataclasses import dataclass

from mistral_decode.core.logging import SessionLogger, get_logger
from mistral_decode.core.sampling import GenerationParameters
from mistral_decode.engine.generator import TokenGenerator, model_device

logger = get_logger("mistral_decode.engine")

TokenCallback = Callable[[int, float], None]


@dataclass
class GenerationResult:
    """Result of one generation call."""
    prompt_tokens: List[int]
    output_tokens: List[int]
    text: Optional[str]
    prompt_chunks: int
    elapsed_ms: float
    finish_reason: str = "length"  # "length", "stop"

    @property
    def tokens_per_second(self) -> float:
        if self.elapsed_ms <= 0:
            return 0.0
        return len(self.output_tokens) / (self.elapsed_ms / 1000)


class GenerationEngine:
    """
    Runs prompts through a loaded model.

    The model must be fully loaded (weights set, eval mode) before the
    first call; sessions only read its parameters.
    """

    def __init__(
        self,
        model: nn.Module,
        tokenizer=None,
        max_tokens: int = 100,
        seed: int = 0,
        stop_token_ids: Optional[Sequence[int]] = None,
    ):
        if max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {max_tokens}")
        self.model = model
        self.tokenizer = tokenizer
        self.max_tokens = max_tokens
        self.seed = seed

        if stop_token_ids is None and tokenizer is not None:
            stop_token_ids = tokenizer.stop_token_ids
        self.stop_token_ids = set(stop_token_ids or ())

        self._session_counter = itertools.count(1)

    def _make_generator(self) -> torch.Generator:
        rng = torch.Generator(device=model_device(self.model))
        rng.manual_seed(self.seed)
        return rng

    def generate_ids(
        self,
        prompt_ids: Sequence[int],
        parameters: Optional[GenerationParameters] = None,
        max_tokens: Optional[int] = None,
        on_token: Optional[TokenCallback] = None,
    ) -> GenerationResult:
        """
        Generate until a stop id or max_tokens ids have been collected.

        The stop id itself is not part of the output. on_token(token_id,
        progress) is called for every collected id, progress in [0, 1].
        """
        parameters = parameters or GenerationParameters()
        max_tokens = self.max_tokens if max_tokens is None else max_tokens
        if max_tokens <= 0:
            raise ValueError(f"max_tokens must be positive, got {max_tokens}")
        session = SessionLogger(next(self._session_counter), logger)

        session.debug(
            "Session start",
            prompt_tokens=len(prompt_ids),
            temperature=parameters.temperature,
            top_p=parameters.top_p,
            repetition_penalty=parameters.repetition_penalty,
        )

        tokens: List[int] = []
        finish_reason = "length"
        try:
            generator = TokenGenerator(
                prompt_ids, self.model, parameters, generator=self._make_generator(),
            )
        except Exception:
            session.error("Session setup failed", exc_info=True)
            raise

        try:
            for token in generator:
                if token in self.stop_token_ids:
                    finish_reason = "stop"
                    break
                tokens.append(token)
                if on_token is not None:
                    on_token(token, len(tokens) / max_tokens)
                if len(tokens) >= max_tokens:
                    break
        except Exception:
            session.error("Generation failed", exc_info=True, generated=len(tokens))
            raise
        finally:
            generator.close()

        elapsed_ms = session.elapsed_ms()
        result = GenerationResult(
            prompt_tokens=[int(t) for t in prompt_ids],
            output_tokens=tokens,
            text=None,
            prompt_chunks=generator.prompt_chunks,
            elapsed_ms=elapsed_ms,
            finish_reason=finish_reason,
        )
        session.info(
            "Session finished",
            generated=len(tokens),
            finish_reason=finish_reason,
            tok_per_s=round(result.tokens_per_second, 2),
        )
        return result

    def generate(
        self,
        prompt: str,
        parameters: Optional[GenerationParameters] = None,
        max_tokens: Optional[int] = None,
        on_token: Optional[TokenCallback] = None,
    ) -> GenerationResult:
        """Text in, text out."""
        if self.tokenizer is None:
            raise ValueError("generate() needs a tokenizer; use generate_ids() for raw ids")

        prompt_ids = self.tokenizer.encode(prompt)
        result = self.generate_ids(prompt_ids, parameters, max_tokens=max_tokens, on_token=on_token)
        result.text = self.tokenizer.decode(result.output_tokens)
        return result
