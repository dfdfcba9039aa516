"""
Vocabulary Tokenizer for MarianMT-style Models.

Provides:
- Greedy longest-match segmentation over an exported vocab.json
- Whole-token handling of bracketed special tokens (language tags like <2hi>)
- Detokenization with word-boundary markers and punctuation spacing

This is not a SentencePiece implementation. Segmentation reproduces a
single longest-match lookup scheme, and detokenization is an approximation:
spacing around punctuation does not always round-trip to natural text.
"""

import logging
import re
from typing import Any, List, Mapping, Optional, Sequence

from .assets import AssetSource, load_optional_json
from .config import EOS_TOKEN, UNK_TOKEN, ModelAssets, TokenIdSet, resolve_token_ids
from .exceptions import VocabularyError
from .vocabulary import WORD_BOUNDARY, Vocabulary

logger = logging.getLogger(__name__)

SPECIAL_TOKEN_PATTERN = re.compile(r"<[^<>]+>")
WHITESPACE_PATTERN = re.compile(r"\s+")

PUNCTUATION = frozenset(
    {".", ",", "!", "?", ":", ";", "-", "—", "(", ")", "[", "]", '"', "'"}
)


def is_punctuation(token: str) -> bool:
    """Check whether a token string is one of the fixed punctuation marks."""
    return token in PUNCTUATION


def normalize(text: str) -> str:
    """Collapse whitespace runs to single spaces and trim."""
    return WHITESPACE_PATTERN.sub(" ", text).strip()


class Tokenizer:
    """Longest-match tokenizer over a fixed vocabulary.

    The vocabulary and token ids are read-only after construction, so one
    instance can serve concurrent translations.

    Args:
        vocabulary: Loaded vocabulary.
        token_ids: Resolved special token ids.
    """

    def __init__(self, vocabulary: Vocabulary, token_ids: TokenIdSet):
        self.vocabulary = vocabulary
        self.token_ids = token_ids

    @property
    def eos_id(self) -> int:
        return self.token_ids.eos_id

    @property
    def pad_id(self) -> int:
        return self.token_ids.pad_id

    @property
    def unk_id(self) -> int:
        return self.token_ids.unk_id

    @property
    def vocab_size(self) -> int:
        return len(self.vocabulary)

    @classmethod
    def initialize(
        cls,
        vocabulary: Optional[Any],
        tokenizer_config: Optional[Mapping[str, Any]] = None,
        generation_config: Optional[Mapping[str, Any]] = None,
    ) -> "Tokenizer":
        """Build a tokenizer and resolve its special token ids.

        Args:
            vocabulary: A Vocabulary, or a plain token -> id mapping.
            tokenizer_config: Parsed tokenizer_config.json, if any.
            generation_config: Parsed generation_config.json, if any.

        Raises:
            VocabularyError: If the vocabulary is missing or malformed.
        """
        if vocabulary is None:
            raise VocabularyError("A vocabulary is required")
        if not isinstance(vocabulary, Vocabulary):
            vocabulary = Vocabulary(vocabulary)

        token_ids = resolve_token_ids(vocabulary, tokenizer_config, generation_config)
        logger.info(
            "Tokenizer loaded: vocab_size=%d, eos_id=%d, pad_id=%d, unk_id=%d",
            len(vocabulary), token_ids.eos_id, token_ids.pad_id, token_ids.unk_id,
        )
        return cls(vocabulary, token_ids)

    @classmethod
    def from_assets(cls, source: AssetSource, assets: ModelAssets) -> "Tokenizer":
        """Load the vocabulary and optional configs through an asset source."""
        try:
            vocab_text = source.load_text(assets.vocab)
        except (OSError, UnicodeDecodeError) as e:
            raise VocabularyError(f"Cannot load vocabulary {assets.vocab}: {e}") from e

        vocabulary = Vocabulary.from_json(vocab_text)
        tokenizer_config = load_optional_json(source, assets.tokenizer_config)
        generation_config = load_optional_json(source, assets.generation_config)

        return cls.initialize(vocabulary, tokenizer_config, generation_config)

    def tokenize(self, text: str) -> List[int]:
        """Convert text to token ids.

        Bracketed special tokens present in the vocabulary are taken whole.
        Everything else is segmented by greedy longest match; a character no
        vocabulary entry covers becomes the unknown id. The result always
        ends with the end-of-sequence id.

        Args:
            text: Input text.

        Returns:
            List of token ids terminated by eos.
        """
        normalized = normalize(text)
        if not normalized:
            return [self.eos_id]

        ids: List[int] = []
        length = len(normalized)
        pos = 0

        while pos < length:
            special = SPECIAL_TOKEN_PATTERN.match(normalized, pos)
            if special is not None:
                special_id = self.vocabulary.token_to_id(special.group(0))
                if special_id is not None:
                    ids.append(special_id)
                    pos = self._skip_spaces(normalized, special.end())
                    continue

            at_boundary = pos == 0 or normalized[pos - 1] == " "
            for candidate in self.vocabulary.candidates_at(normalized[pos]):
                if candidate.needs_boundary and not at_boundary:
                    continue
                if normalized.startswith(candidate.surface, pos):
                    ids.append(candidate.token_id)
                    pos = self._skip_spaces(normalized, pos + len(candidate.surface))
                    break
            else:
                # No match: one character per unknown id, spaces not skipped
                ids.append(self.unk_id)
                pos += 1

        ids.append(self.eos_id)
        return ids

    @staticmethod
    def _skip_spaces(text: str, pos: int) -> int:
        while pos < len(text) and text[pos] == " ":
            pos += 1
        return pos

    def detokenize(self, ids: Sequence[int]) -> str:
        """Convert token ids back to text.

        The end-of-sequence token is dropped. Word-boundary tokens and
        bracketed special tokens start a new word; punctuation and subword
        continuations attach to the previous piece.

        Args:
            ids: Token ids.

        Returns:
            Reconstructed text, trimmed.
        """
        unk_literal = self.vocabulary.id_to_token(self.unk_id) or UNK_TOKEN
        pieces: List[str] = []
        written = False

        for token_id in ids:
            token_id = int(token_id)
            if token_id == self.eos_id:
                continue

            token = self.vocabulary.id_to_token(token_id)
            if token is None:
                token = unk_literal
            if token == EOS_TOKEN:
                continue

            if token.startswith("<") and token.endswith(">"):
                piece, spaced = token, True
            elif token.startswith(WORD_BOUNDARY):
                piece, spaced = token[1:], True
            elif is_punctuation(token):
                piece, spaced = token, False
            else:
                piece, spaced = token, False

            if spaced and written:
                pieces.append(" ")
            if piece:
                pieces.append(piece)
            written = written or bool(piece)

        return "".join(pieces).strip()
