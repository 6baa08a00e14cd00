"""
mistral-decode :: Test Mistral Model

Tests:
  - MistralConfig resolution (head_dim, kv heads, rope_type)
  - causal mask and cached attention helpers
  - forward shapes, GQA, tied embeddings
  - cached incremental forward == full uncached forward
  - sanitize drops rotary inv_freq

INL - 2025
"""

import torch
import pytest
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from mistral_decode.layers.attention import cached_attention, create_causal_mask
from mistral_decode.models.mistral import MistralAttention, MistralConfig, MistralModel


def tiny_config(**overrides):
    kwargs = dict(
        vocab_size=64,
        hidden_size=32,
        intermediate_size=64,
        num_hidden_layers=2,
        num_attention_heads=4,
        num_key_value_heads=2,
        max_position_embeddings=16,
    )
    kwargs.update(overrides)
    return MistralConfig(**kwargs)


@pytest.fixture
def model():
    torch.manual_seed(0)
    return MistralModel(tiny_config()).eval()


class TestConfig:
    def test_head_dim_default(self):
        assert tiny_config().resolved_head_dim == 8

    def test_head_dim_explicit(self):
        assert tiny_config(head_dim=16).resolved_head_dim == 16

    def test_kv_heads_default_to_heads(self):
        config = tiny_config(num_key_value_heads=None)
        assert config.num_key_value_heads == 4
        assert config.num_kv_groups == 1

    def test_rope_type(self):
        assert tiny_config().rope_type == "default"
        assert tiny_config(rope_scaling={"type": "llama3", "factor": 8.0}).rope_type == "llama3"
        assert tiny_config(rope_scaling={"rope_type": "llama3", "factor": 8.0}).rope_type == "llama3"
        assert tiny_config(rope_scaling={"factor": 8.0}).rope_type == "default"

    def test_from_dict_ignores_unknown(self):
        config = MistralConfig.from_dict({"vocab_size": 10, "architectures": ["MistralForCausalLM"]})
        assert config.vocab_size == 10


class TestAttentionHelpers:
    def test_single_query_has_no_mask(self):
        assert create_causal_mask(1, offset=7) is None

    def test_mask_shape_and_values(self):
        mask = create_causal_mask(2, offset=3)
        assert mask.shape == (2, 5)
        assert torch.all(mask[0, :4] == 0)
        assert mask[0, 4] < -1e30
        assert torch.all(mask[1] == 0)

    def test_prefill_mask_is_lower_triangular(self):
        mask = create_causal_mask(4)
        allowed = mask == 0
        assert torch.equal(allowed, torch.tril(torch.ones(4, 4, dtype=torch.bool)))

    def test_gqa_matches_explicit_repeat(self):
        q = torch.randn(1, 4, 3, 8)
        k = torch.randn(1, 2, 3, 8)
        v = torch.randn(1, 2, 3, 8)
        out = cached_attention(q, k, v, scale=8 ** -0.5, num_kv_groups=2)
        ref = cached_attention(
            q, k.repeat_interleave(2, dim=1), v.repeat_interleave(2, dim=1), scale=8 ** -0.5,
        )
        assert out.shape == (1, 4, 3, 8)
        assert torch.allclose(out, ref, atol=1e-6)

    def test_attention_layer_updates_cache(self):
        torch.manual_seed(0)
        attn = MistralAttention(tiny_config())
        cache = MistralModel(tiny_config()).make_cache()[0]
        out = attn(torch.randn(1, 3, 32), mask=create_causal_mask(3), cache=cache)
        assert out.shape == (1, 3, 32)
        assert cache.offset == 3
        attn(torch.randn(1, 1, 32), cache=cache)
        assert cache.offset == 4
        assert cache.keys.shape == (1, 2, 4, 8)


class TestMistralModel:
    def test_forward_shape(self, model):
        logits = model(torch.tensor([[1, 2, 3, 4]]))
        assert logits.shape == (1, 4, 64)

    def test_accepts_1d_ids(self, model):
        assert model(torch.tensor([1, 2, 3])).shape == (1, 3, 64)

    def test_geometry_properties(self, model):
        assert model.vocab_size == 64
        assert model.num_layers == 2
        assert model.num_kv_heads == 2
        assert model.head_dim == 8

    def test_make_cache(self, model):
        cache = model.make_cache()
        assert len(cache) == 2
        assert all(c.offset == 0 and c.num_kv_heads == 2 and c.head_dim == 8 for c in cache)

    def test_cache_offsets_advance(self, model):
        cache = model.make_cache()
        with torch.no_grad():
            model(torch.tensor([[1, 2, 3]]), cache=cache)
            model(torch.tensor([[4]]), cache=cache)
        assert [c.offset for c in cache] == [4, 4]

    def test_incremental_matches_full(self, model):
        ids = torch.tensor([[3, 14, 15, 9, 2, 6, 5, 35]])
        with torch.no_grad():
            full = model(ids)

            cache = model.make_cache()
            chunks = [model(ids[:, :3], cache=cache), model(ids[:, 3:5], cache=cache)]
            for i in range(5, ids.shape[1]):
                chunks.append(model(ids[:, i:i + 1], cache=cache))
            incremental = torch.cat(chunks, dim=1)

        assert torch.allclose(full, incremental, atol=1e-5)

    def test_past_max_positions(self, model):
        # max_position_embeddings=16; the dynamic base keeps going past it
        ids = torch.randint(0, 64, (1, 20))
        with torch.no_grad():
            logits = model(ids)
        assert torch.isfinite(logits).all()

    def test_tied_embeddings(self):
        torch.manual_seed(0)
        model = MistralModel(tiny_config(tie_word_embeddings=True))
        assert not hasattr(model, "lm_head")
        lm_head_params = [n for n, _ in model.named_parameters() if n.startswith("lm_head")]
        assert lm_head_params == []
        assert model(torch.tensor([[1, 2]])).shape == (1, 2, 64)

    def test_empty_vocab_rejected(self):
        with pytest.raises(ValueError):
            MistralModel(tiny_config(vocab_size=0))

    def test_heads_not_divisible_rejected(self):
        with pytest.raises(ValueError):
            MistralModel(tiny_config(num_key_value_heads=3))

    def test_sanitize(self):
        weights = {
            "model.layers.0.self_attn.rotary_emb.inv_freq": torch.zeros(4),
            "model.layers.0.self_attn.q_proj.weight": torch.zeros(2, 2),
        }
        assert list(MistralModel.sanitize(weights)) == ["model.layers.0.self_attn.q_proj.weight"]

    def test_num_parameters(self, model):
        assert model.num_parameters() == sum(p.numel() for p in model.parameters())


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
