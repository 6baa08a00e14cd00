"""
mistral-decode :: Token Generator

Pull-based decode session: one token id per next() call.

State machine:
    PREFILLING  prompt fed through the model in prefill_step_size chunks
    PRIMING     remaining prompt tail forwarded → first generated token
    DECODING    steady state, one forward per call
    EXHAUSTED   closed by the caller (or a back-end failure)

Step (shared by priming and decoding):
    logits = model(y, cache)[:, -1]
    logits = repetition_context(logits)
    y'     = sampler(logits)
    repetition_context.append(y')

next() returns the token computed by the *previous* step while the
current step's token stays an unsynchronised device tensor, so the
device can run ahead of the host. Stopping (max tokens, stop ids) is
the caller's policy; the generator never ends on its own.

INL - 2025
"""

import enum
import torch
import torch.nn as nn
from typing import List, Optional, Sequence, Union

from mistral_decode.core.kv_cache import KVCache
from mistral_decode.core.logits_processor import RepetitionContext
from mistral_decode.core.sampling import GenerationParameters, SampleStrategy
from mistral_decode.core.logging import get_logger

logger = get_logger("mistral_decode.engine.generator")


class GeneratorState(enum.Enum):
    PREFILLING = "prefilling"
    PRIMING = "priming"
    DECODING = "decoding"
    EXHAUSTED = "exhausted"


def model_device(model: nn.Module) -> torch.device:
    for param in model.parameters():
        return param.device
    return torch.device("cpu")


def _as_prompt(prompt: Union[torch.Tensor, Sequence[int]], device: torch.device) -> torch.Tensor:
    """Prompt ids → 1-D int64 tensor on the model's device."""
    if isinstance(prompt, torch.Tensor):
        if prompt.dim() == 2 and prompt.shape[0] == 1:
            prompt = prompt[0]
        if prompt.dim() != 1:
            raise ValueError(f"Prompt must be 1-D (or (1, L)), got shape {tuple(prompt.shape)}")
        prompt = prompt.to(device=device, dtype=torch.long)
    else:
        prompt = torch.tensor(list(prompt), dtype=torch.long, device=device)

    if prompt.numel() == 0:
        raise ValueError("Prompt must contain at least one token")
    return prompt


def _validate_session(model: nn.Module, cache: List[KVCache], prompt: torch.Tensor):
    """Structural compatibility between model, caches and prompt, checked once."""
    vocab_size = model.vocab_size
    if vocab_size <= 0:
        raise ValueError(f"Model has an empty vocabulary (vocab_size={vocab_size})")

    if len(cache) != model.num_layers:
        raise ValueError(f"Got {len(cache)} caches for a {model.num_layers}-layer model")

    for i, layer_cache in enumerate(cache):
        if layer_cache.num_kv_heads != model.num_kv_heads or layer_cache.head_dim != model.head_dim:
            raise ValueError(
                f"Cache {i} geometry (heads={layer_cache.num_kv_heads}, head_dim={layer_cache.head_dim}) "
                f"does not match model (heads={model.num_kv_heads}, head_dim={model.head_dim})"
            )
        if layer_cache.offset != 0:
            raise ValueError(f"Cache {i} is not empty (offset={layer_cache.offset})")

    lo, hi = int(prompt.min().item()), int(prompt.max().item())
    if lo < 0 or hi >= vocab_size:
        raise ValueError(f"Prompt token ids must be in [0, {vocab_size}), got range [{lo}, {hi}]")


class TokenGenerator:
    """
    Synchronous generator of token ids for one prompt.

    Construction runs prefill and priming, so the first next() call
    already has a token ready. Not reusable: build a new generator
    (and with it fresh caches) for every prompt.

    Usage:
        for token in TokenGenerator(prompt_ids, model, GenerationParameters(temperature=0)):
            if token == stop_id or len(out) == max_tokens:
                break
            out.append(token)
    """

    def __init__(
        self,
        prompt: Union[torch.Tensor, Sequence[int]],
        model: nn.Module,
        parameters: Optional[GenerationParameters] = None,
        generator: Optional[torch.Generator] = None,
    ):
        self.model = model
        self.parameters = parameters or GenerationParameters()
        self.state = GeneratorState.PREFILLING

        prompt = _as_prompt(prompt, model_device(model))
        self.cache: List[KVCache] = model.make_cache()
        _validate_session(model, self.cache, prompt)

        self.repetition_context = RepetitionContext.from_parameters(prompt, self.parameters)
        self.sampler = SampleStrategy.from_parameters(self.parameters, generator=generator)

        self.prompt_tokens: int = prompt.numel()
        self.prompt_chunks: int = 0
        self.tokens_generated: int = 0

        step_size = self.parameters.prefill_step_size
        with torch.no_grad():
            while prompt.numel() > step_size:
                self.model(prompt[:step_size].unsqueeze(0), cache=self.cache)
                prompt = prompt[step_size:]
                self.prompt_chunks += 1
                logger.debug(f"Prefill chunk {self.prompt_chunks}: offset={self.cache[0].offset}")

            # Remainder of the prompt primes the pump
            self.state = GeneratorState.PRIMING
            self._y = self._step(prompt)
            self.prompt_chunks += 1

        self.state = GeneratorState.DECODING

    @property
    def offset(self) -> int:
        """Positions committed to the caches so far."""
        return self.cache[0].offset if self.cache else 0

    def _step(self, previous: torch.Tensor) -> torch.Tensor:
        """Forward `previous` (1-D ids) under the caches and sample the next token: (1,) int64."""
        logits = self.model(previous.unsqueeze(0), cache=self.cache)
        logits = logits[:, -1, :]
        logits = self.repetition_context.apply_penalty(logits)

        token = self.sampler.sample(logits)
        self.repetition_context.append(token)
        return token

    def __iter__(self) -> "TokenGenerator":
        return self

    def __next__(self) -> int:
        if self.state is GeneratorState.EXHAUSTED:
            raise StopIteration

        # Returned value; the next one is computed before we sync on this
        previous = self._y
        try:
            with torch.no_grad():
                self._y = self._step(previous)
        except Exception:
            self.state = GeneratorState.EXHAUSTED
            raise

        self.tokens_generated += 1
        return int(previous.item())

    def close(self):
        """Stop the session; later next() calls raise StopIteration."""
        self.state = GeneratorState.EXHAUSTED

    def __repr__(self) -> str:
        return (
            f"TokenGenerator(state={self.state.value}, offset={self.offset}, "
            f"generated={self.tokens_generated}, sampler={self.sampler})"
        )
