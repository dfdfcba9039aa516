"""Exceptions raised by the translation package."""


class TranslationError(Exception):
    """Base class for all translation errors."""


class VocabularyError(TranslationError):
    """Raised when the vocabulary is missing or cannot be parsed.

    Translation cannot proceed without a vocabulary, so this is always
    fatal for model initialization.
    """


class GenerationCancelled(TranslationError):
    """Raised when a caller aborts an in-flight generation between steps."""
