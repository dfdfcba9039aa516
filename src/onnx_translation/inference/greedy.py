"""
Greedy Decoding for Encoder/Decoder Translation Models.

Always picks the most likely next token. The source is encoded once; the
decoder is re-run on the full growing target sequence every step (no
key/value cache), which is quadratic in output length but keeps the engine
contract down to two stateless calls.
"""

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

import numpy as np

from ..exceptions import GenerationCancelled

logger = logging.getLogger(__name__)

DEFAULT_MAX_NEW_TOKENS = 50

EncodeFn = Callable[[np.ndarray, np.ndarray], Any]
DecodeFn = Callable[[np.ndarray, Any, np.ndarray], Any]


@dataclass
class GenerationState:
    """Decoder state owned by a single generate call."""

    decoder_input_ids: List[int]
    generated_ids: List[int] = field(default_factory=list)
    step: int = 0


def softmax(logits: np.ndarray) -> np.ndarray:
    """Numerically stable softmax over a 1-D logits vector."""
    shifted = logits - np.max(logits)
    exps = np.exp(shifted)
    return exps / np.sum(exps)


def last_position_logits(output: Any) -> Optional[np.ndarray]:
    """Extract the logits vector for the final decoder position.

    Accepts ``(batch, seq, vocab)``, ``(seq, vocab)`` or ``(vocab,)``
    shaped outputs. Returns None when the output is absent or unusable.
    """
    if output is None:
        return None

    try:
        logits = np.asarray(output, dtype=np.float64)
    except (TypeError, ValueError):
        return None

    if logits.ndim == 3:
        if logits.shape[0] == 0 or logits.shape[1] == 0:
            return None
        logits = logits[0, -1]
    elif logits.ndim == 2:
        if logits.shape[0] == 0:
            return None
        logits = logits[-1]
    elif logits.ndim != 1:
        return None

    if logits.size == 0 or np.isnan(logits).any():
        return None
    return logits


def select_next_token(logits: np.ndarray) -> int:
    """Greedy selection; ties go to the lowest index.

    Compares raw logits: softmax is monotonic so the choice is the same,
    and an overflowed +inf logit still wins instead of turning into NaN.
    """
    return int(np.argmax(logits))


def _check_budget(max_new_tokens: Optional[int]) -> int:
    if max_new_tokens is None:
        return DEFAULT_MAX_NEW_TOKENS
    if max_new_tokens < 0:
        raise ValueError(f"max_new_tokens must be >= 0, got {max_new_tokens}")
    return int(max_new_tokens)


def _as_batch(ids: Sequence[int]) -> np.ndarray:
    return np.asarray([list(ids)], dtype=np.int64)


def _advance(state: GenerationState, output: Any, eos_id: int) -> bool:
    """Consume one decoder output. Returns False when decoding should stop."""
    logits = last_position_logits(output)
    if logits is None:
        logger.warning(
            "Decoder returned no usable logits at step %d, stopping early", state.step
        )
        return False

    next_token = select_next_token(logits)
    state.generated_ids.append(next_token)
    state.step += 1

    if next_token == eos_id:
        return False

    state.decoder_input_ids.append(next_token)
    return True


def greedy_generate(
    encode: EncodeFn,
    decode: DecodeFn,
    input_ids: Sequence[int],
    eos_id: int,
    pad_id: int,
    max_new_tokens: int = DEFAULT_MAX_NEW_TOKENS,
    cancel_event: Optional[threading.Event] = None,
) -> List[int]:
    """Greedy autoregressive generation.

    Args:
        encode: ``encode(input_ids, attention_mask) -> hidden_states``.
        decode: ``decode(input_ids, encoder_hidden_states,
                encoder_attention_mask) -> logits``.
        input_ids: Source token ids (already eos-terminated).
        eos_id: End of sequence token ID.
        pad_id: Padding token ID, used as the decoder start token.
        max_new_tokens: Maximum number of generated ids.
        cancel_event: Checked before every step; when set, generation
                      aborts with GenerationCancelled.

    Returns:
        Generated token ids. Includes eos if it was produced; the
        detokenizer drops it.

    Raises:
        GenerationCancelled: If ``cancel_event`` was set mid-generation.
    """
    budget = _check_budget(max_new_tokens)

    src = _as_batch(input_ids)
    attention_mask = np.ones_like(src)
    encoder_hidden_states = encode(src, attention_mask)

    state = GenerationState(decoder_input_ids=[pad_id])

    for _ in range(budget):
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelled(f"Generation cancelled at step {state.step}")

        output = decode(
            _as_batch(state.decoder_input_ids), encoder_hidden_states, attention_mask
        )
        if not _advance(state, output, eos_id):
            break

    return state.generated_ids


async def greedy_generate_async(
    encode: EncodeFn,
    decode: DecodeFn,
    input_ids: Sequence[int],
    eos_id: int,
    pad_id: int,
    max_new_tokens: int = DEFAULT_MAX_NEW_TOKENS,
    cancel_event: Optional[threading.Event] = None,
) -> List[int]:
    """Asyncio variant of :func:`greedy_generate`.

    Engine calls run in worker threads so the event loop stays responsive.
    Task cancellation takes effect between steps, like ``cancel_event``.
    """
    budget = _check_budget(max_new_tokens)

    src = _as_batch(input_ids)
    attention_mask = np.ones_like(src)
    encoder_hidden_states = await asyncio.to_thread(encode, src, attention_mask)

    state = GenerationState(decoder_input_ids=[pad_id])

    for _ in range(budget):
        # Yield so a pending task cancellation lands here, between steps
        await asyncio.sleep(0)
        if cancel_event is not None and cancel_event.is_set():
            raise GenerationCancelled(f"Generation cancelled at step {state.step}")

        output = await asyncio.to_thread(
            decode,
            _as_batch(state.decoder_input_ids),
            encoder_hidden_states,
            attention_mask,
        )
        if not _advance(state, output, eos_id):
            break

    return state.generated_ids
