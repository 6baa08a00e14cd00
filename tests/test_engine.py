"""
mistral-decode :: Test Generation Engine

Tests:
  - max_tokens budget and stop ids
  - progress callback
  - text round trip through a tokenizer
  - seeded reproducibility across calls

INL - 2025
"""

import torch
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mistral_decode.core.sampling import GenerationParameters
from mistral_decode.engine import GenerationEngine, GenerationResult, GeneratorState, TokenGenerator
from mistral_decode.models.mistral import MistralConfig, MistralModel

from test_generator import RecordingModel


GREEDY = GenerationParameters(temperature=0.0)


class CharTokenizer:
    """Maps 'a'..'z' to ids 3..28; 0 = <unk>, 2 = </s>."""

    stop_token_ids = [0, 2]

    def encode(self, text):
        return [ord(c) - ord("a") + 3 for c in text]

    def decode(self, ids):
        return "".join(chr(i - 3 + ord("a")) for i in ids)


class TestBudget:
    def test_max_tokens(self):
        engine = GenerationEngine(RecordingModel(), max_tokens=3)
        result = engine.generate_ids([5, 9, 2], GREEDY)

        assert result.output_tokens == [3, 4, 5]
        assert result.finish_reason == "length"
        assert result.prompt_tokens == [5, 9, 2]
        assert result.text is None

    def test_per_call_max_tokens(self):
        engine = GenerationEngine(RecordingModel(), max_tokens=10)
        result = engine.generate_ids([1], GREEDY, max_tokens=2)
        assert result.output_tokens == [2, 3]

    def test_prompt_chunks_reported(self):
        engine = GenerationEngine(RecordingModel(), max_tokens=1)
        params = GenerationParameters(prefill_step_size=2, temperature=0.0)
        assert engine.generate_ids([5, 9, 2], params).prompt_chunks == 2

    def test_invalid_budget(self):
        with pytest.raises(ValueError):
            GenerationEngine(RecordingModel(), max_tokens=0)

    def test_per_call_budget_validated(self):
        engine = GenerationEngine(RecordingModel(vocab_size=256), max_tokens=50)
        for bad in (0, -3):
            with pytest.raises(ValueError):
                engine.generate_ids([1], GREEDY, max_tokens=bad)

    def test_per_call_budget_of_one(self):
        engine = GenerationEngine(RecordingModel(vocab_size=256), max_tokens=50)
        assert engine.generate_ids([1], GREEDY, max_tokens=1).output_tokens == [2]


class TestStopTokens:
    def test_stop_id_not_emitted(self):
        engine = GenerationEngine(RecordingModel(vocab_size=32), max_tokens=10, stop_token_ids=[7])
        result = engine.generate_ids([4], GREEDY)

        assert result.output_tokens == [5, 6]
        assert result.finish_reason == "stop"

    def test_stop_ids_from_tokenizer(self):
        engine = GenerationEngine(RecordingModel(vocab_size=3), tokenizer=CharTokenizer(), max_tokens=10)
        assert engine.stop_token_ids == {0, 2}
        # 1 → 2 (</s>)
        result = engine.generate_ids([0], GREEDY)
        assert result.output_tokens == [1]
        assert result.finish_reason == "stop"

    def test_stop_as_first_token(self):
        engine = GenerationEngine(RecordingModel(), max_tokens=5, stop_token_ids=[2])
        result = engine.generate_ids([1], GREEDY)
        assert result.output_tokens == []
        assert result.finish_reason == "stop"


class TestCallbacks:
    def test_progress(self):
        seen = []
        engine = GenerationEngine(RecordingModel(), max_tokens=4)
        engine.generate_ids([1], GREEDY, on_token=lambda tok, progress: seen.append((tok, progress)))

        assert [tok for tok, _ in seen] == [2, 3, 4, 5]
        assert [p for _, p in seen] == [0.25, 0.5, 0.75, 1.0]

    def test_callback_failure_closes_session(self, monkeypatch):
        import mistral_decode.engine.engine as engine_module

        sessions = []

        class TrackedGenerator(TokenGenerator):
            def __init__(self, *args, **kwargs):
                super().__init__(*args, **kwargs)
                sessions.append(self)

        monkeypatch.setattr(engine_module, "TokenGenerator", TrackedGenerator)

        def on_token(token, progress):
            raise RuntimeError("consumer gone")

        engine = GenerationEngine(RecordingModel(), max_tokens=4)
        with pytest.raises(RuntimeError, match="consumer gone"):
            engine.generate_ids([1], GREEDY, on_token=on_token)

        assert len(sessions) == 1
        assert sessions[0].state is GeneratorState.EXHAUSTED


class TestText:
    def test_generate_text(self):
        engine = GenerationEngine(RecordingModel(vocab_size=32), tokenizer=CharTokenizer(), max_tokens=3)
        result = engine.generate("abc", GREEDY)

        assert result.prompt_tokens == [3, 4, 5]
        assert result.text == "def"
        assert isinstance(result, GenerationResult)

    def test_generate_requires_tokenizer(self):
        engine = GenerationEngine(RecordingModel())
        with pytest.raises(ValueError):
            engine.generate("abc")

    def test_tokens_per_second(self):
        result = GenerationResult([1], [2, 3], None, 1, elapsed_ms=500.0)
        assert result.tokens_per_second == pytest.approx(4.0)
        assert GenerationResult([1], [], None, 1, elapsed_ms=0.0).tokens_per_second == 0.0


class TestErrors:
    def test_backend_failure_reraised(self):
        engine = GenerationEngine(RecordingModel(fail_on_call=4), max_tokens=10)
        with pytest.raises(RuntimeError, match="device lost"):
            engine.generate_ids([1, 2], GREEDY)

    def test_invalid_prompt_reraised(self):
        engine = GenerationEngine(RecordingModel(vocab_size=8))
        with pytest.raises(ValueError):
            engine.generate_ids([99], GREEDY)


class TestReproducibility:
    def test_same_seed_same_output(self):
        torch.manual_seed(0)
        config = MistralConfig(
            vocab_size=64, hidden_size=32, intermediate_size=64,
            num_hidden_layers=2, num_attention_heads=4, num_key_value_heads=2,
        )
        model = MistralModel(config).eval()
        params = GenerationParameters(temperature=1.0, top_p=0.9)

        engine = GenerationEngine(model, max_tokens=8, seed=42)
        first = engine.generate_ids([1, 2, 3], params).output_tokens
        second = engine.generate_ids([1, 2, 3], params).output_tokens

        assert len(first) == 8
        assert first == second


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
