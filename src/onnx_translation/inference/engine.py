"""
Inference Engines.

An engine exposes the two calls the greedy loop needs:

    encode(input_ids, attention_mask) -> encoder hidden states
    decode(input_ids, encoder_hidden_states, encoder_attention_mask) -> logits

Each returns the first output tensor of the underlying graph, or None if
the graph produced nothing.
"""

import contextlib
import logging
import threading
from typing import Any, Dict, List, Optional, Union

import numpy as np
import onnxruntime as ort

from ..exceptions import TranslationError

logger = logging.getLogger(__name__)


class InferenceEngine:
    """Encoder/decoder inference contract."""

    def encode(self, input_ids: np.ndarray, attention_mask: np.ndarray) -> Any:
        raise NotImplementedError

    def decode(
        self,
        input_ids: np.ndarray,
        encoder_hidden_states: Any,
        encoder_attention_mask: np.ndarray
    ) -> Any:
        raise NotImplementedError

    def release(self) -> None:
        """Free engine resources. The engine must not be used afterwards."""


class OnnxInferenceEngine(InferenceEngine):
    """Engine backed by exported ONNX encoder and decoder graphs.

    Args:
        encoder_session: onnxruntime session for the encoder graph.
        decoder_session: onnxruntime session for the decoder graph.
        serialize: Hold a per-session lock around every run.
    """

    def __init__(
        self,
        encoder_session: ort.InferenceSession,
        decoder_session: ort.InferenceSession,
        serialize: bool = False
    ):
        self._encoder = encoder_session
        self._decoder = decoder_session
        self._encoder_inputs = self._input_names(encoder_session)
        self._decoder_inputs = self._input_names(decoder_session)

        self._encoder_lock = threading.Lock() if serialize else None
        self._decoder_lock = threading.Lock() if serialize else None

    @staticmethod
    def _input_names(session: ort.InferenceSession) -> List[str]:
        return [node.name for node in session.get_inputs()]

    @classmethod
    def from_models(
        cls,
        encoder_model: Union[str, bytes],
        decoder_model: Union[str, bytes],
        providers: Optional[List[str]] = None,
        intra_op_num_threads: Optional[int] = None,
        serialize: bool = False
    ) -> "OnnxInferenceEngine":
        """Create sessions from model paths or serialized model bytes.

        Args:
            encoder_model: Path to, or bytes of, the encoder ONNX model.
            decoder_model: Path to, or bytes of, the decoder ONNX model.
            providers: Execution providers in priority order.
            intra_op_num_threads: Thread count per session (None = default).
            serialize: Hold a per-session lock around every run.
        """
        providers = providers or ["CPUExecutionProvider"]

        options = ort.SessionOptions()
        if intra_op_num_threads is not None:
            options.intra_op_num_threads = intra_op_num_threads

        encoder = ort.InferenceSession(encoder_model, options, providers=providers)
        decoder = ort.InferenceSession(decoder_model, options, providers=providers)

        logger.info("ONNX sessions created (providers=%s)", providers)
        return cls(encoder, decoder, serialize=serialize)

    def _run(
        self,
        session: Optional[ort.InferenceSession],
        accepted: List[str],
        feeds: Dict[str, Any],
        lock: Optional[threading.Lock]
    ) -> Any:
        if session is None:
            raise TranslationError("Inference engine has been released")

        # Only send what the graph declares
        inputs = {name: value for name, value in feeds.items() if name in accepted}

        with lock if lock is not None else contextlib.nullcontext():
            outputs = session.run(None, inputs)

        if not outputs:
            return None
        return outputs[0]

    def encode(self, input_ids: np.ndarray, attention_mask: np.ndarray) -> Any:
        feeds = {
            "input_ids": np.asarray(input_ids, dtype=np.int64),
            "attention_mask": np.asarray(attention_mask, dtype=np.int64),
        }
        return self._run(self._encoder, self._encoder_inputs, feeds, self._encoder_lock)

    def decode(
        self,
        input_ids: np.ndarray,
        encoder_hidden_states: Any,
        encoder_attention_mask: np.ndarray
    ) -> Any:
        input_ids = np.asarray(input_ids, dtype=np.int64)
        feeds = {
            "input_ids": input_ids,
            "attention_mask": np.ones_like(input_ids),
            "encoder_hidden_states": encoder_hidden_states,
            "encoder_attention_mask": np.asarray(encoder_attention_mask, dtype=np.int64),
        }
        return self._run(self._decoder, self._decoder_inputs, feeds, self._decoder_lock)

    def release(self) -> None:
        self._encoder = None
        self._decoder = None
        logger.debug("ONNX sessions released")
