"""
Translation Configuration Module.

Defines the resolved special-token ids, the model asset layout and the
runtime settings of the translator. Uses dataclasses for type safety and
easy serialization.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, List, Mapping, Optional

from .vocabulary import Vocabulary

logger = logging.getLogger(__name__)

DEFAULT_MODEL_BASE_PATH = "assets/onnx_model"

EOS_TOKEN = "</s>"
UNK_TOKEN = "<unk>"
PAD_TOKEN = "<pad>"


@dataclass(frozen=True)
class TokenIdSet:
    """Special token ids resolved once per model load."""

    eos_id: int
    pad_id: int
    unk_id: int


@dataclass
class ModelAssets:
    """Locations of the exported model files.

    Paths are handed to an AssetSource as-is, so they may be relative to
    the source's root.
    """

    encoder: str = f"{DEFAULT_MODEL_BASE_PATH}/encoder_model.onnx"
    decoder: str = f"{DEFAULT_MODEL_BASE_PATH}/decoder_model.onnx"
    vocab: str = f"{DEFAULT_MODEL_BASE_PATH}/vocab.json"
    tokenizer_config: Optional[str] = f"{DEFAULT_MODEL_BASE_PATH}/tokenizer_config.json"
    generation_config: Optional[str] = f"{DEFAULT_MODEL_BASE_PATH}/generation_config.json"

    @classmethod
    def from_base_path(
        cls,
        base_path: Optional[str] = None,
        encoder: Optional[str] = None,
        decoder: Optional[str] = None,
        vocab: Optional[str] = None,
        tokenizer_config: Optional[str] = None,
        generation_config: Optional[str] = None,
    ) -> "ModelAssets":
        """Compose asset paths from a base folder.

        Explicit paths win over ``base_path``; without a base path the
        default ``assets/onnx_model`` folder is used.
        """
        base = (base_path or DEFAULT_MODEL_BASE_PATH).rstrip("/")

        return cls(
            encoder=encoder or f"{base}/encoder_model.onnx",
            decoder=decoder or f"{base}/decoder_model.onnx",
            vocab=vocab or f"{base}/vocab.json",
            tokenizer_config=tokenizer_config or f"{base}/tokenizer_config.json",
            generation_config=generation_config or f"{base}/generation_config.json",
        )


@dataclass
class TranslatorConfig:
    """Runtime settings for the translator."""

    # Step budget for greedy decoding; there is no unbounded mode
    max_new_tokens: int = 50

    # onnxruntime execution providers, in priority order
    providers: List[str] = field(default_factory=lambda: ["CPUExecutionProvider"])
    intra_op_num_threads: Optional[int] = None

    # Hold a lock around each session run (for non-reentrant engines)
    serialize_sessions: bool = False

    assets: ModelAssets = field(default_factory=ModelAssets)

    def __post_init__(self):
        """Validate configuration."""
        assert self.max_new_tokens > 0, \
            f"max_new_tokens ({self.max_new_tokens}) must be positive"
        assert self.providers, "at least one execution provider is required"

    def save(self, path: Path):
        """Save configuration to JSON file."""
        with open(path, "w", encoding="utf-8") as f:
            json.dump(asdict(self), f, indent=2, ensure_ascii=False)

    @classmethod
    def load(cls, path: Path) -> "TranslatorConfig":
        """Load configuration from JSON file."""
        with open(path, "r", encoding="utf-8") as f:
            config_dict = json.load(f)

        assets = ModelAssets(**config_dict.pop("assets", {}))
        return cls(assets=assets, **config_dict)


def _lookup_token(
    vocabulary: Vocabulary,
    config: Mapping[str, Any],
    key: str
) -> Optional[int]:
    value = config.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        logger.debug("Ignoring %s: expected a string, got %r", key, value)
        return None
    return vocabulary.token_to_id(value)


def resolve_token_ids(
    vocabulary: Vocabulary,
    tokenizer_config: Optional[Mapping[str, Any]] = None,
    generation_config: Optional[Mapping[str, Any]] = None,
) -> TokenIdSet:
    """Resolve eos/pad/unk ids from the vocabulary and optional configs.

    Later sources win: vocabulary defaults, then ``tokenizer_config``
    (``pad_token``, ``unk_token``), then ``generation_config``
    (``eos_token_id``, else ``eos_token``). Missing or malformed fields
    are skipped.

    Args:
        vocabulary: Loaded vocabulary.
        tokenizer_config: Parsed tokenizer_config.json, if any.
        generation_config: Parsed generation_config.json, if any.

    Returns:
        The resolved TokenIdSet.
    """
    eos_id = vocabulary.token_to_id(EOS_TOKEN)
    unk_id = vocabulary.token_to_id(UNK_TOKEN)
    pad_id = vocabulary.token_to_id(PAD_TOKEN)
    eos_id = 0 if eos_id is None else eos_id
    unk_id = 1 if unk_id is None else unk_id
    pad_id = 0 if pad_id is None else pad_id

    if isinstance(tokenizer_config, Mapping):
        tok_pad = _lookup_token(vocabulary, tokenizer_config, "pad_token")
        if tok_pad is not None:
            pad_id = tok_pad
        tok_unk = _lookup_token(vocabulary, tokenizer_config, "unk_token")
        if tok_unk is not None:
            unk_id = tok_unk

    if isinstance(generation_config, Mapping):
        raw_eos = generation_config.get("eos_token_id")
        if isinstance(raw_eos, float) and raw_eos.is_integer():
            raw_eos = int(raw_eos)

        if isinstance(raw_eos, int) and not isinstance(raw_eos, bool):
            # Trusted verbatim, not checked against the vocabulary
            eos_id = raw_eos
        else:
            if raw_eos is not None:
                logger.debug("Ignoring eos_token_id: expected an int, got %r", raw_eos)
            gen_eos = _lookup_token(vocabulary, generation_config, "eos_token")
            if gen_eos is not None:
                eos_id = gen_eos

    eos_id = eos_id if eos_id >= 0 else 0
    pad_id = pad_id if pad_id >= 0 else eos_id
    unk_id = unk_id if unk_id >= 0 else 1

    return TokenIdSet(eos_id=eos_id, pad_id=pad_id, unk_id=unk_id)
