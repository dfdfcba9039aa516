"""
High-Level Translation API.

Provides a simple interface for translation that handles:
- Loading the vocabulary, optional configs and ONNX graphs
- Tokenization
- Greedy decoding
- Detokenization
"""

import logging
import threading
from typing import List, Optional

from ..assets import AssetSource, FileAssetSource
from ..config import ModelAssets, TranslatorConfig
from ..tokenizer import Tokenizer
from .engine import InferenceEngine, OnnxInferenceEngine
from .greedy import greedy_generate, greedy_generate_async

logger = logging.getLogger(__name__)


class OnnxTranslator:
    """Translator for exported MarianMT-style encoder/decoder models.

    The tokenizer and engine are shared read-only between calls; every
    translation owns its own decoding state, so one instance can serve
    concurrent callers (set ``serialize_sessions`` for engines that are
    not reentrant).

    Args:
        tokenizer: Tokenizer with resolved special token ids.
        engine: Inference engine running the encoder and decoder.
        config: Runtime settings.

    Example:
        >>> with OnnxTranslator.from_pretrained("assets/opus-mt-en-hi") as model:
        ...     print(model.translate("Hello world"))
    """

    def __init__(
        self,
        tokenizer: Tokenizer,
        engine: InferenceEngine,
        config: Optional[TranslatorConfig] = None
    ):
        self.tokenizer = tokenizer
        self.engine = engine
        self.config = config or TranslatorConfig()

    @classmethod
    def from_pretrained(
        cls,
        model_base_path: Optional[str] = None,
        source: Optional[AssetSource] = None,
        config: Optional[TranslatorConfig] = None,
        **asset_overrides: Optional[str]
    ) -> "OnnxTranslator":
        """Load a translator from a folder of exported assets.

        Args:
            model_base_path: Folder holding encoder_model.onnx,
                             decoder_model.onnx, vocab.json and the optional
                             tokenizer_config.json / generation_config.json.
                             Defaults to ``config.assets`` when omitted.
            source: Where assets are read from (local files by default).
            config: Runtime settings.
            **asset_overrides: Explicit paths (``encoder``, ``decoder``,
                               ``vocab``, ``tokenizer_config``,
                               ``generation_config``).

        Returns:
            Initialized OnnxTranslator.

        Raises:
            VocabularyError: If the vocabulary is missing or malformed.
        """
        config = config or TranslatorConfig()
        source = source or FileAssetSource()

        if model_base_path is not None or asset_overrides:
            assets = ModelAssets.from_base_path(model_base_path, **asset_overrides)
        else:
            assets = config.assets

        tokenizer = Tokenizer.from_assets(source, assets)

        engine = OnnxInferenceEngine.from_models(
            source.load_bytes(assets.encoder),
            source.load_bytes(assets.decoder),
            providers=config.providers,
            intra_op_num_threads=config.intra_op_num_threads,
            serialize=config.serialize_sessions,
        )

        logger.info("Translator loaded (encoder=%s, decoder=%s)", assets.encoder, assets.decoder)
        return cls(tokenizer, engine, config=config)

    def _prepare(self, text: str, initial_lang_token: Optional[str]) -> List[int]:
        if initial_lang_token:
            text = f"{initial_lang_token} {text}"
        return self.tokenizer.tokenize(text)

    def _budget(self, max_new_tokens: Optional[int]) -> int:
        return self.config.max_new_tokens if max_new_tokens is None else max_new_tokens

    def generate_ids(
        self,
        text: str,
        initial_lang_token: Optional[str] = None,
        max_new_tokens: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> List[int]:
        """Tokenize ``text`` and return the raw generated ids."""
        input_ids = self._prepare(text, initial_lang_token)
        return greedy_generate(
            self.engine.encode,
            self.engine.decode,
            input_ids,
            eos_id=self.tokenizer.eos_id,
            pad_id=self.tokenizer.pad_id,
            max_new_tokens=self._budget(max_new_tokens),
            cancel_event=cancel_event,
        )

    def translate(
        self,
        text: str,
        initial_lang_token: Optional[str] = None,
        max_new_tokens: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> str:
        """Translate a single text.

        Args:
            text: Source text to translate.
            initial_lang_token: Language token to prefix (e.g. ``>>hin<<``
                                or ``<2hi>``), for multilingual models.
            max_new_tokens: Maximum tokens to generate (config default if None).
            cancel_event: Set from another thread to abort between steps.

        Returns:
            Translated text.

        Raises:
            GenerationCancelled: If ``cancel_event`` was set.
        """
        generated = self.generate_ids(
            text,
            initial_lang_token=initial_lang_token,
            max_new_tokens=max_new_tokens,
            cancel_event=cancel_event,
        )
        return self.tokenizer.detokenize(generated)

    async def translate_async(
        self,
        text: str,
        initial_lang_token: Optional[str] = None,
        max_new_tokens: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> str:
        """Translate without blocking the event loop.

        Cancelling the awaiting task aborts generation between steps.
        """
        input_ids = self._prepare(text, initial_lang_token)
        generated = await greedy_generate_async(
            self.engine.encode,
            self.engine.decode,
            input_ids,
            eos_id=self.tokenizer.eos_id,
            pad_id=self.tokenizer.pad_id,
            max_new_tokens=self._budget(max_new_tokens),
            cancel_event=cancel_event,
        )
        return self.tokenizer.detokenize(generated)

    def translate_batch(
        self,
        texts: List[str],
        initial_lang_token: Optional[str] = None,
        max_new_tokens: Optional[int] = None
    ) -> List[str]:
        """Translate texts one after another (each decoded on its own)."""
        return [
            self.translate(
                text,
                initial_lang_token=initial_lang_token,
                max_new_tokens=max_new_tokens,
            )
            for text in texts
        ]

    def release(self) -> None:
        """Release the inference engine. The translator is unusable afterwards."""
        self.engine.release()

    def __enter__(self) -> "OnnxTranslator":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()
