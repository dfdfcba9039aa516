"""
Offline translation for exported MarianMT-style ONNX models.

Modules:
    - vocabulary: token <-> id index with longest-match candidates
    - config: special token resolution, asset layout, runtime settings
    - tokenizer: longest-match tokenization and detokenization
    - inference: greedy decoding, inference engines, translator facade
"""

from .assets import AssetSource, FileAssetSource, MemoryAssetSource
from .config import ModelAssets, TokenIdSet, TranslatorConfig, resolve_token_ids
from .exceptions import GenerationCancelled, TranslationError, VocabularyError
from .tokenizer import Tokenizer
from .vocabulary import Vocabulary

__version__ = "1.0.0"
__all__ = [
    "AssetSource",
    "FileAssetSource",
    "MemoryAssetSource",
    "ModelAssets",
    "TokenIdSet",
    "TranslatorConfig",
    "resolve_token_ids",
    "GenerationCancelled",
    "TranslationError",
    "VocabularyError",
    "Tokenizer",
    "Vocabulary",
]
