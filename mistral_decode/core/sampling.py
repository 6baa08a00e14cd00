"""
mistral-decode :: Sampling

Turns a logits row into one token id per call.

Strategies (disjoint, checked in this order):
  - greedy (temperature == 0): argmax, first index on ties
  - nucleus (0 < top_p < 1): smallest top set covering top_p
  - categorical: softmax(logits / temperature), no filtering

Reduced-precision logits are upcast to float32 before softmax/cumsum.

INL - 2025
"""

import torch
from typing import Optional
from dataclasses import dataclass


@dataclass(frozen=True)
class GenerationParameters:
    """Parameters for one generation session, fixed once the session starts."""
    prefill_step_size: int = 512           # prompt chunk size
    temperature: float = 0.6               # 0 → greedy
    top_p: float = 1.0                     # 1 → no nucleus filtering
    repetition_penalty: Optional[float] = None  # None → feature off
    repetition_context_size: int = 20      # repetition window length

    def __post_init__(self):
        if self.prefill_step_size <= 0:
            raise ValueError(f"prefill_step_size must be positive, got {self.prefill_step_size}")
        if self.temperature < 0:
            raise ValueError(f"temperature must be >= 0, got {self.temperature}")
        if not 0.0 < self.top_p <= 1.0:
            raise ValueError(f"top_p must be in (0, 1], got {self.top_p}")
        if self.repetition_penalty is not None and self.repetition_penalty <= 0:
            raise ValueError(f"repetition_penalty must be positive, got {self.repetition_penalty}")
        if self.repetition_context_size <= 0:
            raise ValueError(
                f"repetition_context_size must be positive, got {self.repetition_context_size}"
            )


def _upcast(logits: torch.Tensor) -> torch.Tensor:
    if logits.dtype in (torch.float16, torch.bfloat16):
        return logits.float()
    return logits


def categorical_sampling(
    logits: torch.Tensor,
    temperature: float,
    generator: Optional[torch.Generator] = None,
) -> torch.Tensor:
    """
    Sample from softmax(logits / temperature).

    logits: (..., vocab_size) → token ids (...,)
    """
    logits = _upcast(logits)
    probs = torch.softmax(logits / temperature, dim=-1)
    flat = probs.reshape(-1, probs.shape[-1])
    tokens = torch.multinomial(flat, num_samples=1, generator=generator)
    return tokens.reshape(probs.shape[:-1])


def top_p_sampling(
    logits: torch.Tensor,
    top_p: float,
    temperature: float,
    generator: Optional[torch.Generator] = None,
) -> torch.Tensor:
    """
    Nucleus sampling.

    Tokens are sorted by ascending probability and accumulated from the
    low end; only tokens whose cumulative mass exceeds 1 - top_p survive.
    The most probable token always survives, so the filtered distribution
    is never empty.

    logits: (..., vocab_size) → token ids (...,)
    """
    logits = _upcast(logits)
    probs = torch.softmax(logits / temperature, dim=-1)

    sorted_probs, sorted_indices = probs.sort(dim=-1)  # ascending
    cumulative_probs = sorted_probs.cumsum(dim=-1)

    keep = cumulative_probs > (1 - top_p)
    keep[..., -1] = True
    top_probs = torch.where(keep, sorted_probs, torch.zeros_like(sorted_probs))

    flat = top_probs.reshape(-1, top_probs.shape[-1])
    sorted_token = torch.multinomial(flat, num_samples=1, generator=generator)
    sorted_token = sorted_token.reshape(*top_probs.shape[:-1], 1)

    return sorted_indices.gather(-1, sorted_token).squeeze(-1)


class SampleStrategy:
    """
    Per-session sampler.

    Holds temperature and top_p as fixed scalars; each sample() call is a
    pure function of the logits (plus the random generator state).
    """

    def __init__(
        self,
        temperature: float,
        top_p: float = 1.0,
        generator: Optional[torch.Generator] = None,
    ):
        self.temperature = temperature
        self.top_p = top_p
        self.generator = generator
        self.use_argmax = temperature == 0
        self.use_top_p = 0 < top_p < 1

    @classmethod
    def from_parameters(
        cls, parameters: GenerationParameters, generator: Optional[torch.Generator] = None,
    ) -> "SampleStrategy":
        return cls(parameters.temperature, parameters.top_p, generator=generator)

    @property
    def name(self) -> str:
        if self.use_argmax:
            return "greedy"
        return "top_p" if self.use_top_p else "categorical"

    def sample(self, logits: torch.Tensor) -> torch.Tensor:
        """
        Args:
            logits: (..., vocab_size) float tensor

        Returns:
            token ids: (...,) int64 tensor, still on the device, not synced
        """
        if self.use_argmax:
            return logits.argmax(dim=-1)
        if self.use_top_p:
            return top_p_sampling(logits, self.top_p, self.temperature, generator=self.generator)
        return categorical_sampling(logits, self.temperature, generator=self.generator)

    __call__ = sample

    def __repr__(self) -> str:
        return f"SampleStrategy({self.name}, temperature={self.temperature}, top_p={self.top_p})"
