import json
import logging
from typing import List

logger = logging.getLogger(__name__)


class CharTokenizer:
    """Character-level tokenizer over a fixed vocabulary."""

    def __init__(self):
        self.char_to_int = {}
        self.int_to_char = {}

    @property
    def vocab_size(self):
        return len(self.char_to_int)

    @classmethod
    def from_text(cls, text: str):
        """Builds the vocabulary from the unique characters in the text."""
        tokenizer = cls()
        chars = sorted(set(text))
        tokenizer.char_to_int = {ch: i for i, ch in enumerate(chars)}
        tokenizer.int_to_char = {i: ch for i, ch in enumerate(chars)}
        logger.info("Character tokenizer created with %d unique characters", tokenizer.vocab_size)
        return tokenizer

    def tokenize(self, text: str) -> List[int]:
        """Encodes a string into character indices, dropping unknown characters."""
        return [self.char_to_int[ch] for ch in text if ch in self.char_to_int]

    def untokenize(self, ids: List[int]) -> str:
        return "".join(self.int_to_char.get(int(i), "") for i in ids)

    def save(self, filepath: str):
        """Saves the character-to-index map to a JSON file."""
        with open(filepath, "w", encoding="utf-8") as f:
            json.dump(self.char_to_int, f, ensure_ascii=False)
        logger.info("Character tokenizer vocabulary saved to '%s'", filepath)

    @classmethod
    def load(cls, filepath: str):
        """Loads a character tokenizer from a saved vocabulary file."""
        tokenizer = cls()
        with open(filepath, "r", encoding="utf-8") as f:
            tokenizer.char_to_int = json.load(f)
        tokenizer.int_to_char = {i: ch for ch, i in tokenizer.char_to_int.items()}
        logger.info("Character tokenizer loaded from '%s'", filepath)
        return tokenizer
