"""
PyTorch Inference Engine.

Runs an encoder/decoder pair of ``nn.Module``s behind the same contract as
the ONNX engine, e.g. the modules a Marian checkpoint is exported from.
Useful for checking an export against its source model.
"""

import contextlib
import threading
from typing import Any, Optional, Union

import numpy as np
import torch
from torch import nn

from ..exceptions import TranslationError
from .engine import InferenceEngine


def _first_output(output: Any) -> Optional[torch.Tensor]:
    # Modules may return a tensor, a tuple/list, or a ModelOutput-like object
    if isinstance(output, (tuple, list)):
        return output[0] if output else None
    if hasattr(output, "to_tuple"):
        values = output.to_tuple()
        return values[0] if values else None
    return output


class TorchInferenceEngine(InferenceEngine):
    """Engine backed by PyTorch modules.

    The encoder is called as ``encoder(input_ids=..., attention_mask=...)``
    and the decoder as ``decoder(input_ids=..., encoder_hidden_states=...,
    encoder_attention_mask=...)``; the decoder must return logits.

    Args:
        encoder: Encoder module.
        decoder: Decoder module producing vocabulary logits.
        device: Device for inference ('cuda', 'cpu', or None for auto).
        serialize: Hold a lock around every forward call.
    """

    def __init__(
        self,
        encoder: nn.Module,
        decoder: nn.Module,
        device: Optional[Union[str, torch.device]] = None,
        serialize: bool = False
    ):
        if device:
            self.device = torch.device(device)
        else:
            self.device = torch.device('cuda' if torch.cuda.is_available() else 'cpu')

        self.encoder = encoder.to(self.device).eval()
        self.decoder = decoder.to(self.device).eval()
        self._lock = threading.Lock() if serialize else None

    def _tensor(self, value: Any, dtype: torch.dtype = torch.long) -> torch.Tensor:
        if isinstance(value, torch.Tensor):
            return value.to(self.device)
        return torch.as_tensor(np.asarray(value), dtype=dtype, device=self.device)

    def _guard(self):
        if self.encoder is None or self.decoder is None:
            raise TranslationError("Inference engine has been released")
        return self._lock if self._lock is not None else contextlib.nullcontext()

    @torch.no_grad()
    def encode(self, input_ids: np.ndarray, attention_mask: np.ndarray) -> Any:
        with self._guard():
            output = self.encoder(
                input_ids=self._tensor(input_ids),
                attention_mask=self._tensor(attention_mask),
            )
        # Hidden states stay on the device; the decoder consumes them as-is
        return _first_output(output)

    @torch.no_grad()
    def decode(
        self,
        input_ids: np.ndarray,
        encoder_hidden_states: Any,
        encoder_attention_mask: np.ndarray
    ) -> Any:
        with self._guard():
            output = self.decoder(
                input_ids=self._tensor(input_ids),
                encoder_hidden_states=self._tensor(encoder_hidden_states, torch.float32),
                encoder_attention_mask=self._tensor(encoder_attention_mask),
            )

        logits = _first_output(output)
        if logits is None:
            return None
        return logits.float().cpu().numpy()

    def release(self) -> None:
        self.encoder = None
        self.decoder = None
