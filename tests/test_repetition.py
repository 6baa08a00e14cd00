"""
mistral-decode :: Test Repetition Context

Tests:
  - inert without a penalty
  - prompt tail seeding
  - circular window (last N tokens after M > N appends)
  - asymmetric penalty rule, input never mutated

INL - 2025
"""

import torch
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mistral_decode.core.logits_processor import LogitsProcessor, RepetitionContext
from mistral_decode.core.sampling import GenerationParameters


class TestDisabled:
    def test_no_penalty_is_identity(self):
        ctx = RepetitionContext([1, 2, 3], repetition_penalty=None)
        logits = torch.randn(10)
        assert ctx.apply_penalty(logits) is logits

    def test_no_penalty_stores_nothing(self):
        ctx = RepetitionContext([1, 2, 3], repetition_penalty=None)
        ctx.append(4)
        ctx.append(torch.tensor([5]))
        assert len(ctx) == 0
        assert not ctx.enabled

    def test_base_processor_passthrough(self):
        logits = torch.randn(4)
        assert LogitsProcessor()(logits) is logits


class TestWindow:
    def test_seeded_with_prompt_tail(self):
        ctx = RepetitionContext(list(range(30)), repetition_penalty=1.1, repetition_context_size=5)
        assert ctx.tokens == [25, 26, 27, 28, 29]

    def test_short_prompt_fully_kept(self):
        ctx = RepetitionContext([7, 8], repetition_penalty=1.1, repetition_context_size=5)
        assert ctx.tokens == [7, 8]

    def test_keeps_last_n_after_many_appends(self):
        ctx = RepetitionContext([], repetition_penalty=1.2, repetition_context_size=3)
        for token in range(1, 8):
            ctx.append(token)
        assert len(ctx) == 3
        assert sorted(ctx.tokens) == [5, 6, 7]

    def test_circular_overwrite_order(self):
        ctx = RepetitionContext([], repetition_penalty=1.2, repetition_context_size=3)
        for token in (1, 2, 3, 4, 5):
            ctx.append(token)
        # slots overwritten in place, oldest first
        assert ctx.tokens == [4, 5, 3]
        assert ctx.index == 2

    def test_overwrite_after_full_seed(self):
        ctx = RepetitionContext([1, 2, 3], repetition_penalty=1.2, repetition_context_size=3)
        ctx.append(9)
        assert ctx.tokens == [9, 2, 3]

    def test_append_tensor(self):
        ctx = RepetitionContext([], repetition_penalty=1.2)
        ctx.append(torch.tensor([11]))
        ctx.append(torch.tensor(12))
        assert ctx.tokens == [11, 12]

    def test_from_parameters(self):
        params = GenerationParameters(repetition_penalty=1.3, repetition_context_size=2)
        ctx = RepetitionContext.from_parameters(torch.tensor([4, 5, 6]), params)
        assert ctx.repetition_penalty == 1.3
        assert ctx.tokens == [5, 6]


class TestPenalty:
    def test_divides_positive_multiplies_negative(self):
        ctx = RepetitionContext([0, 1], repetition_penalty=1.3)
        out = ctx.apply_penalty(torch.tensor([-2.0, 4.0, 1.0]))
        assert out[0].item() == pytest.approx(-2.6)
        assert out[1].item() == pytest.approx(4.0 / 1.3)
        assert out[2].item() == pytest.approx(1.0)

    def test_only_window_tokens_penalized(self):
        ctx = RepetitionContext([1], repetition_penalty=1.3)
        out = ctx.apply_penalty(torch.tensor([-2.0, 4.0]))
        assert out[0].item() == pytest.approx(-2.0)
        assert out[1].item() == pytest.approx(3.0769, abs=1e-4)

    def test_repeated_ids_penalized_once(self):
        ctx = RepetitionContext([2, 2, 2], repetition_penalty=2.0)
        out = ctx.apply_penalty(torch.tensor([0.0, 0.0, 8.0]))
        assert out[2].item() == pytest.approx(4.0)

    def test_input_not_mutated(self):
        ctx = RepetitionContext([0, 1], repetition_penalty=1.5)
        logits = torch.tensor([3.0, -3.0, 1.0])
        before = logits.clone()
        out = ctx(logits)
        assert torch.equal(logits, before)
        assert out is not logits

    def test_batched_logits(self):
        ctx = RepetitionContext([1], repetition_penalty=2.0)
        logits = torch.tensor([[1.0, 2.0], [3.0, -4.0]])
        out = ctx.apply_penalty(logits)
        assert torch.allclose(out, torch.tensor([[1.0, 1.0], [3.0, -8.0]]))

    def test_repeat_becomes_less_likely(self):
        ctx = RepetitionContext([0], repetition_penalty=1.5)
        logits = torch.tensor([2.0, 1.0, -1.0])
        before = torch.softmax(logits, dim=-1)[0]
        after = torch.softmax(ctx.apply_penalty(logits), dim=-1)[0]
        assert after < before


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
