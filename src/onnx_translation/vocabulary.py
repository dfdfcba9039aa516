"""
Vocabulary Store.

Bidirectional token <-> id index for MarianMT-style exported vocabularies
(a flat ``vocab.json`` object mapping token strings to integer ids).

Both tables are built together when the vocabulary is loaded and never
mutated afterwards, so a Vocabulary can be shared across threads without
locking.
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, NamedTuple, Optional, Union

from .exceptions import VocabularyError

# Leading glyph meaning "a new word starts here" (SentencePiece U+2581)
WORD_BOUNDARY = "▁"


class MatchCandidate(NamedTuple):
    """A vocabulary entry as seen by the longest-match scan.

    ``surface`` is the text that must appear at the cursor. For the
    marker-stripped form of a boundary token, ``needs_boundary`` is set and
    the match is only valid at the start of the text or after a space.
    """
    surface: str
    token_id: int
    needs_boundary: bool


def _coerce_id(token: str, value: Any) -> int:
    # bool is a subclass of int but never a valid id
    if isinstance(value, bool):
        raise VocabularyError(f"Invalid id for token {token!r}: {value!r}")
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if not isinstance(value, int):
        raise VocabularyError(f"Invalid id for token {token!r}: {value!r}")
    if value < 0:
        raise VocabularyError(f"Negative id for token {token!r}: {value}")
    return value


class Vocabulary:
    """Token/id mapping with precomputed longest-match candidates.

    Candidates are ordered by descending token length; tokens of equal
    length are ordered lexicographically so that segmentation is identical
    across runs regardless of the vocabulary file's key order.

    Args:
        mapping: Token string to non-negative integer id.
    """

    def __init__(self, mapping: Mapping[str, Any]):
        if not isinstance(mapping, Mapping):
            raise VocabularyError(
                f"Vocabulary must be a mapping, got {type(mapping).__name__}"
            )

        self._token_to_id: Dict[str, int] = {}
        for token, value in mapping.items():
            if not isinstance(token, str):
                raise VocabularyError(f"Invalid token key: {token!r}")
            self._token_to_id[token] = _coerce_id(token, value)

        # Later entries own the inverse for shared ids
        self._id_to_token: Dict[int, str] = {
            token_id: token for token, token_id in self._token_to_id.items()
        }

        self._candidates = self._build_candidates()

    def _build_candidates(self) -> Dict[str, List[MatchCandidate]]:
        ordered = sorted(self._token_to_id, key=lambda tok: (-len(tok), tok))

        buckets: Dict[str, List[MatchCandidate]] = {}
        for token in ordered:
            token_id = self._token_to_id[token]
            entries = []
            if token and token != WORD_BOUNDARY:
                entries.append(MatchCandidate(token, token_id, False))
            if token.startswith(WORD_BOUNDARY) and len(token) > 1:
                entries.append(MatchCandidate(token[1:], token_id, True))

            for entry in entries:
                buckets.setdefault(entry.surface[0], []).append(entry)

        return buckets

    @classmethod
    def from_json(cls, text: str) -> "Vocabulary":
        """Parse a vocabulary from JSON text."""
        try:
            data = json.loads(text)
        except ValueError as e:
            raise VocabularyError(f"Vocabulary is not valid JSON: {e}") from e

        if not isinstance(data, dict):
            raise VocabularyError("Vocabulary JSON must be an object")

        return cls(data)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "Vocabulary":
        """Load a vocabulary from a JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                text = f.read()
        except OSError as e:
            raise VocabularyError(f"Cannot read vocabulary {path}: {e}") from e

        return cls.from_json(text)

    def token_to_id(self, token: str) -> Optional[int]:
        return self._token_to_id.get(token)

    def id_to_token(self, token_id: int) -> Optional[str]:
        return self._id_to_token.get(token_id)

    def candidates_at(self, char: str) -> List[MatchCandidate]:
        """Longest-first match candidates whose surface starts with ``char``."""
        return self._candidates.get(char, [])

    def tokens(self) -> Iterator[str]:
        return iter(self._token_to_id)

    def __contains__(self, token: object) -> bool:
        return token in self._token_to_id

    def __len__(self) -> int:
        return len(self._token_to_id)

    def __repr__(self) -> str:
        return f"Vocabulary(size={len(self)})"
