"""
mistral-decode :: Logits Processors

Each processor takes a logits tensor and returns (possibly new) logits.

  - RepetitionContext: sliding-window repetition penalty over the most
    recent tokens (prompt tail + generated), stored as a circular buffer

Penalty rule (asymmetric, so a repeat always becomes less likely):
    logit >= 0  →  logit / penalty
    logit <  0  →  logit * penalty

INL - 2025
"""

import torch
from typing import List, Optional, Sequence, Union

from mistral_decode.core.sampling import GenerationParameters


class LogitsProcessor:
    """Base class for logits processors."""

    def __call__(self, logits: torch.Tensor) -> torch.Tensor:
        return logits


class RepetitionContext(LogitsProcessor):
    """
    Fixed-capacity window of recently emitted tokens.

    Below capacity tokens are appended; once full, the slot at `index` is
    overwritten and `index` advances modulo capacity (true circular buffer,
    no shifting). Without a configured penalty the context is inert:
    nothing is stored and logits pass through untouched.
    """

    def __init__(
        self,
        prompt_tokens: Sequence[int] = (),
        repetition_penalty: Optional[float] = None,
        repetition_context_size: int = 20,
    ):
        self.repetition_penalty = repetition_penalty
        self.repetition_context_size = repetition_context_size
        self.index: int = 0

        if repetition_penalty is not None:
            self.tokens: List[int] = [int(t) for t in prompt_tokens][-repetition_context_size:]
        else:
            self.tokens = []

    @classmethod
    def from_parameters(
        cls,
        prompt: Union[torch.Tensor, Sequence[int]],
        parameters: GenerationParameters,
    ) -> "RepetitionContext":
        if isinstance(prompt, torch.Tensor):
            prompt = prompt.reshape(-1).tolist()
        return cls(
            prompt,
            repetition_penalty=parameters.repetition_penalty,
            repetition_context_size=parameters.repetition_context_size,
        )

    @property
    def enabled(self) -> bool:
        return self.repetition_penalty is not None

    def __len__(self) -> int:
        return len(self.tokens)

    def apply_penalty(self, logits: torch.Tensor) -> torch.Tensor:
        """
        Penalize every token id in the window.

        logits: (vocab_size,) or (batch, vocab_size)
        Returns the same tensor when there is nothing to do, otherwise a
        penalized copy (the input is never modified).
        """
        if self.repetition_penalty is None or not self.tokens:
            return logits

        penalty = self.repetition_penalty
        indices = torch.tensor(self.tokens, dtype=torch.long, device=logits.device)

        selected = logits[..., indices]
        selected = torch.where(selected < 0, selected * penalty, selected / penalty)

        penalized = logits.clone()
        penalized[..., indices] = selected
        return penalized

    __call__ = apply_penalty

    def append(self, token: Union[int, torch.Tensor]):
        """Record an emitted token. No-op without a configured penalty."""
        if self.repetition_penalty is None:
            return
        token = int(token.item()) if isinstance(token, torch.Tensor) else int(token)

        if len(self.tokens) >= self.repetition_context_size:
            self.tokens[self.index] = token
            self.index = (self.index + 1) % self.repetition_context_size
        else:
            self.tokens.append(token)

    def __repr__(self) -> str:
        return (
            f"RepetitionContext(penalty={self.repetition_penalty}, "
            f"size={len(self.tokens)}/{self.repetition_context_size}, index={self.index})"
        )
