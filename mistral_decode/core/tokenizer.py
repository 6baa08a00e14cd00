"""
mistral-decode :: Tokenizer

Load tokenizer.json from a model directory.
Wraps HuggingFace tokenizers for text ↔ token id conversion.

Special token names (unk / bos / eos) come from the tokenizer_config.json
shipped next to tokenizer.json, then from the tokenizer model itself,
then from the usual SentencePiece / tiktoken-style names. A name that is
not in the vocabulary resolves to None and is never used as a stop id.

INL - 2025
"""

import json
import os
from typing import Dict, List, Optional, Sequence

from mistral_decode.core.logging import get_logger

logger = get_logger("mistral_decode.tokenizer")

# Conventional names, tried in order when the config does not name the token
DEFAULT_UNK_TOKENS = ("<unk>",)
DEFAULT_BOS_TOKENS = ("<s>", "<|begin_of_text|>")
DEFAULT_EOS_TOKENS = ("</s>", "<|end_of_text|>", "<|endoftext|>")


def _read_special_tokens(tokenizer_path: str) -> Dict[str, str]:
    """unk/bos/eos names from tokenizer_config.json next to tokenizer.json."""
    config_path = os.path.join(os.path.dirname(os.path.abspath(tokenizer_path)), "tokenizer_config.json")
    if not os.path.exists(config_path):
        return {}

    with open(config_path, "r") as f:
        config = json.load(f)

    names = {}
    for key in ("unk_token", "bos_token", "eos_token"):
        value = config.get(key)
        # AddedToken serialization: {"content": "</s>", ...}
        if isinstance(value, dict):
            value = value.get("content")
        if isinstance(value, str):
            names[key] = value
    return names


class Tokenizer:
    """
    Tokenizer wrapper.

    Input:  text (str)
    Output: token IDs (List[int])

    Uses tokenizers library (HuggingFace fast tokenizer).
    """

    def __init__(self, tokenizer_path: str, special_tokens: Optional[Dict[str, str]] = None):
        from tokenizers import Tokenizer as _HFTokenizer

        self.path = tokenizer_path
        self.tokenizer = _HFTokenizer.from_file(tokenizer_path)
        if special_tokens is None:
            special_tokens = _read_special_tokens(tokenizer_path)
        self.special_tokens = special_tokens

    def encode(self, text: str, add_special_tokens: bool = True) -> List[int]:
        return self.tokenizer.encode(text, add_special_tokens=add_special_tokens).ids

    def decode(self, token_ids: List[int]) -> str:
        return self.tokenizer.decode(token_ids)

    @property
    def vocab_size(self) -> int:
        return self.tokenizer.get_vocab_size()

    def _special_token_id(self, key: str, defaults: Sequence[str]) -> Optional[int]:
        name = self.special_tokens.get(key)
        if name is not None:
            return self.tokenizer.token_to_id(name)
        for candidate in defaults:
            token_id = self.tokenizer.token_to_id(candidate)
            if token_id is not None:
                return token_id
        return None

    @property
    def unk_token_id(self) -> Optional[int]:
        if "unk_token" not in self.special_tokens:
            # WordLevel / WordPiece / BPE models carry their own unk token
            model_unk = getattr(self.tokenizer.model, "unk_token", None)
            if model_unk:
                return self.tokenizer.token_to_id(model_unk)
        return self._special_token_id("unk_token", DEFAULT_UNK_TOKENS)

    @property
    def bos_token_id(self) -> Optional[int]:
        return self._special_token_id("bos_token", DEFAULT_BOS_TOKENS)

    @property
    def eos_token_id(self) -> Optional[int]:
        return self._special_token_id("eos_token", DEFAULT_EOS_TOKENS)

    @property
    def stop_token_ids(self) -> List[int]:
        """Ids that end a generation: unknown and end-of-sequence, when present."""
        return sorted({t for t in (self.unk_token_id, self.eos_token_id) if t is not None})


def load_tokenizer(model_dir: str) -> Optional[Tokenizer]:
    """
    Load the tokenizer shipped with a model directory.

    Looks for tokenizer.json in the directory, then its parent.
    """
    for candidate in (model_dir, os.path.dirname(os.path.abspath(model_dir))):
        tokenizer_path = os.path.join(candidate, "tokenizer.json")
        if os.path.exists(tokenizer_path):
            logger.info(f"Tokenizer: {tokenizer_path}")
            return Tokenizer(tokenizer_path)

    logger.warning(f"No tokenizer.json found for {model_dir}")
    return None
