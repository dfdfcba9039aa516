"""
Unit tests for greedy generation and inference engines.

Tests cover:
- Greedy loop termination (eos, step budget, unusable decoder output)
- Softmax and arg-max selection
- Cancellation (thread event and asyncio task)
- ONNX engine feeds against mocked onnxruntime sessions
- PyTorch engine with toy modules
"""

import asyncio
import sys
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from types import SimpleNamespace
from unittest import mock

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))
sys.path.insert(0, str(Path(__file__).parent))

import numpy as np
import torch
import torch.nn.functional as F
from torch import nn

from onnx_translation.exceptions import GenerationCancelled, TranslationError
from onnx_translation.inference.engine import OnnxInferenceEngine
from onnx_translation.inference.greedy import (
    greedy_generate,
    greedy_generate_async,
    last_position_logits,
    select_next_token,
    softmax,
)
from onnx_translation.inference.torch_engine import TorchInferenceEngine

from test_utils import ScriptedEngine, one_hot_logits

EOS_ID = 0
PAD_ID = 2


class CountingEngine:
    """Stateless fake engine: the next token is the last decoder id + 1.

    Emits eos once the count reaches ``limit``.
    """

    def __init__(self, vocab_size=16, limit=9, delay=0.0):
        self.vocab_size = vocab_size
        self.limit = limit
        self.delay = delay

    def encode(self, input_ids, attention_mask):
        return np.zeros((1, input_ids.shape[1], 4), dtype=np.float32)

    def decode(self, input_ids, encoder_hidden_states, encoder_attention_mask):
        if self.delay:
            time.sleep(self.delay)
        nxt = int(input_ids[0, -1]) + 1
        if nxt >= self.limit:
            nxt = EOS_ID
        return one_hot_logits(nxt, self.vocab_size, seq_len=input_ids.shape[1])


def generate(engine, input_ids=(5, 6, 0), max_new_tokens=10, **kwargs):
    return greedy_generate(
        engine.encode, engine.decode, list(input_ids),
        eos_id=EOS_ID, pad_id=PAD_ID, max_new_tokens=max_new_tokens, **kwargs
    )


class TestSoftmax(unittest.TestCase):
    """Test softmax and token selection."""

    def test_sums_to_one(self):
        """Test probabilities are normalized."""
        probs = softmax(np.array([1.0, 2.0, 3.0]))
        self.assertAlmostEqual(float(probs.sum()), 1.0, places=6)
        self.assertEqual(int(np.argmax(probs)), 2)

    def test_numerically_stable(self):
        """Test large logits do not overflow."""
        probs = softmax(np.array([1000.0, 1000.0, -1000.0]))
        self.assertTrue(np.all(np.isfinite(probs)))
        np.testing.assert_allclose(probs[:2], [0.5, 0.5])

    def test_tie_breaks_to_lowest_index(self):
        """Test equal scores select the first index."""
        self.assertEqual(select_next_token(np.array([1.0, 3.0, 3.0])), 1)

    def test_positive_infinity_selected(self):
        """Test an overflowed +inf logit is chosen, not index 0."""
        self.assertEqual(select_next_token(np.array([0.0, 1.0, np.inf, 3.0])), 2)

    def test_negative_infinity_masked(self):
        """Test -inf entries (masked tokens) are never chosen."""
        self.assertEqual(select_next_token(np.array([-np.inf, -1.0, -np.inf])), 1)

    def test_selection_matches_raw_argmax(self):
        """Test softmax does not change the selected token."""
        rng = np.random.default_rng(0)
        for _ in range(20):
            logits = rng.normal(size=32)
            self.assertEqual(select_next_token(logits), int(np.argmax(logits)))


class TestLastPositionLogits(unittest.TestCase):
    """Test logits extraction from decoder outputs."""

    def test_batch_sequence_vocab(self):
        """Test (batch, seq, vocab) uses the final position."""
        output = np.arange(12, dtype=np.float32).reshape(1, 3, 4)
        np.testing.assert_array_equal(last_position_logits(output), [8, 9, 10, 11])

    def test_sequence_vocab(self):
        """Test (seq, vocab) uses the final row."""
        output = [[0.0, 1.0], [2.0, 3.0]]
        np.testing.assert_array_equal(last_position_logits(output), [2.0, 3.0])

    def test_unusable_outputs(self):
        """Test absent, empty, ragged and NaN outputs are rejected."""
        self.assertIsNone(last_position_logits(None))
        self.assertIsNone(last_position_logits(np.zeros((1, 0, 4))))
        self.assertIsNone(last_position_logits(np.array([])))
        self.assertIsNone(last_position_logits([[1.0, 2.0], [3.0]]))
        self.assertIsNone(last_position_logits(np.array([1.0, np.nan])))
        self.assertIsNone(last_position_logits(np.zeros((1, 1, 1, 4))))


class TestGreedyGenerate(unittest.TestCase):
    """Test the greedy decoding loop."""

    def test_budget_exhausted(self):
        """Test a decoder that never emits eos stops at the budget."""
        engine = ScriptedEngine([], fallback=7)
        self.assertEqual(generate(engine, max_new_tokens=3), [7, 7, 7])

    def test_stops_at_eos(self):
        """Test eos ends generation and is included in the output."""
        engine = ScriptedEngine([5, 6, EOS_ID, 9])
        self.assertEqual(generate(engine), [5, 6, EOS_ID])
        self.assertEqual(len(engine.decoder_calls), 3)

    def test_decoder_context_grows(self):
        """Test the full decoder sequence is re-sent each step, seeded with pad."""
        engine = ScriptedEngine([5, 6, EOS_ID])
        generate(engine)

        sent = [ids.tolist() for ids, _ in engine.decoder_calls]
        self.assertEqual(sent, [[[PAD_ID]], [[PAD_ID, 5]], [[PAD_ID, 5, 6]]])

    def test_encoder_runs_once(self):
        """Test the encoder sees the input with an all-ones mask."""
        engine = ScriptedEngine([5, EOS_ID])
        generate(engine, input_ids=[10, 5, 6, 0])

        self.assertEqual(len(engine.encoder_calls), 1)
        ids, mask = engine.encoder_calls[0]
        self.assertEqual(ids.tolist(), [[10, 5, 6, 0]])
        self.assertEqual(mask.tolist(), [[1, 1, 1, 1]])
        self.assertEqual(ids.dtype, np.int64)

        # Every decoder step receives the encoder mask
        _, dec_mask = engine.decoder_calls[0]
        self.assertEqual(dec_mask.tolist(), [[1, 1, 1, 1]])

    def test_unusable_output_returns_partial(self):
        """Test missing logits stop decoding without failing."""
        engine = ScriptedEngine([5, None, 6])
        self.assertEqual(generate(engine), [5])

    def test_infinite_logit_in_loop(self):
        """Test the loop picks a +inf logit and keeps -inf masked logits usable."""
        logits = np.array([[[0.0, 1.0, np.inf, 3.0]]])
        result = greedy_generate(
            lambda ids, mask: np.zeros((1, 1, 4)),
            lambda ids, hidden, mask: logits,
            [5, 0], eos_id=3, pad_id=PAD_ID, max_new_tokens=1
        )
        self.assertEqual(result, [2])

        masked = np.array([[[-np.inf, -np.inf, -np.inf, 0.0]]])
        result = greedy_generate(
            lambda ids, mask: np.zeros((1, 1, 4)),
            lambda ids, hidden, mask: masked,
            [5, 0], eos_id=3, pad_id=PAD_ID, max_new_tokens=5
        )
        self.assertEqual(result, [3])

    def test_zero_budget(self):
        """Test a zero budget generates nothing."""
        engine = ScriptedEngine([5])
        self.assertEqual(generate(engine, max_new_tokens=0), [])
        self.assertEqual(len(engine.decoder_calls), 0)

    def test_negative_budget_rejected(self):
        """Test there is no unbounded mode."""
        with self.assertRaises(ValueError):
            generate(ScriptedEngine([5]), max_new_tokens=-1)

    def test_never_exceeds_budget(self):
        """Test the output length bound holds for several budgets."""
        for budget in range(6):
            out = generate(ScriptedEngine([], fallback=4), max_new_tokens=budget)
            self.assertEqual(len(out), budget)

    def test_cancel_before_start(self):
        """Test a pre-set event aborts before the first decoder call."""
        engine = ScriptedEngine([5, 6])
        event = threading.Event()
        event.set()

        with self.assertRaises(GenerationCancelled):
            generate(engine, cancel_event=event)
        self.assertEqual(len(engine.decoder_calls), 0)

    def test_cancel_between_steps(self):
        """Test cancellation is honored at the top of the next step."""
        event = threading.Event()
        engine = ScriptedEngine([], fallback=7)
        original = engine.decode

        def decode(*args):
            if len(engine.decoder_calls) == 1:
                event.set()
            return original(*args)

        with self.assertRaises(GenerationCancelled):
            greedy_generate(engine.encode, decode, [5, 0], eos_id=EOS_ID,
                            pad_id=PAD_ID, max_new_tokens=10, cancel_event=event)
        self.assertEqual(len(engine.decoder_calls), 2)

    def test_concurrent_calls_independent(self):
        """Test concurrent generations sharing one engine do not interfere."""
        engine = CountingEngine(limit=9)
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(lambda _: generate(engine), range(8)))

        for result in results:
            self.assertEqual(result, [3, 4, 5, 6, 7, 8, EOS_ID])


class TestGreedyGenerateAsync(unittest.IsolatedAsyncioTestCase):
    """Test the asyncio generation loop."""

    async def test_matches_sync(self):
        """Test async generation produces the same ids."""
        result = await greedy_generate_async(
            CountingEngine().encode, CountingEngine().decode, [5, 0],
            eos_id=EOS_ID, pad_id=PAD_ID, max_new_tokens=20
        )
        self.assertEqual(result, generate(CountingEngine(), input_ids=[5, 0], max_new_tokens=20))

    async def test_task_cancellation(self):
        """Test cancelling the task aborts generation."""
        engine = CountingEngine(limit=10 ** 6, vocab_size=2048, delay=0.01)
        task = asyncio.create_task(greedy_generate_async(
            engine.encode, engine.decode, [5, 0],
            eos_id=EOS_ID, pad_id=PAD_ID, max_new_tokens=1000
        ))
        await asyncio.sleep(0.05)
        task.cancel()

        with self.assertRaises(asyncio.CancelledError):
            await task

    async def test_cancel_event(self):
        """Test the thread event also cancels the async loop."""
        event = threading.Event()
        event.set()
        engine = ScriptedEngine([5])

        with self.assertRaises(GenerationCancelled):
            await greedy_generate_async(
                engine.encode, engine.decode, [5, 0],
                eos_id=EOS_ID, pad_id=PAD_ID, cancel_event=event
            )


def _fake_session(input_names, outputs):
    session = mock.MagicMock()
    session.get_inputs.return_value = [SimpleNamespace(name=n) for n in input_names]
    session.run.return_value = outputs
    return session


class TestOnnxInferenceEngine(unittest.TestCase):
    """Test the onnxruntime adapter with mocked sessions."""

    def setUp(self):
        self.hidden = np.ones((1, 3, 4), dtype=np.float32)
        self.logits = one_hot_logits(5, 16)
        self.encoder = _fake_session(["input_ids", "attention_mask"], [self.hidden])
        self.decoder = _fake_session(
            ["encoder_attention_mask", "input_ids", "encoder_hidden_states"],
            [self.logits, np.zeros(1)],
        )
        self.engine = OnnxInferenceEngine(self.encoder, self.decoder)

    def test_encode_feeds(self):
        """Test the encoder receives int64 ids and mask."""
        ids = np.array([[5, 6, 0]])
        result = self.engine.encode(ids, np.ones_like(ids))

        self.assertIs(result, self.hidden)
        output_names, feeds = self.encoder.run.call_args[0]
        self.assertIsNone(output_names)
        self.assertEqual(set(feeds), {"input_ids", "attention_mask"})
        self.assertEqual(feeds["input_ids"].dtype, np.int64)

    def test_decode_feeds_filtered(self):
        """Test the decoder only receives inputs its graph declares."""
        result = self.engine.decode(np.array([[2]]), self.hidden, np.ones((1, 3)))

        self.assertIs(result, self.logits)
        _, feeds = self.decoder.run.call_args[0]
        self.assertEqual(
            set(feeds), {"input_ids", "encoder_hidden_states", "encoder_attention_mask"}
        )
        self.assertIs(feeds["encoder_hidden_states"], self.hidden)

    def test_empty_outputs(self):
        """Test a run with no outputs yields None."""
        self.encoder.run.return_value = []
        self.assertIsNone(self.engine.encode(np.array([[1]]), np.array([[1]])))

    def test_serialized_engine(self):
        """Test locked sessions still run."""
        engine = OnnxInferenceEngine(self.encoder, self.decoder, serialize=True)
        self.assertIs(engine.encode(np.array([[1]]), np.array([[1]])), self.hidden)

    def test_released_engine_raises(self):
        """Test a released engine cannot be used."""
        self.engine.release()
        with self.assertRaises(TranslationError):
            self.engine.encode(np.array([[1]]), np.array([[1]]))

    def test_with_greedy_loop(self):
        """Test the adapter drives the greedy loop end to end."""
        self.decoder.run.return_value = [one_hot_logits(EOS_ID, 16)]
        result = generate(self.engine)
        self.assertEqual(result, [EOS_ID])

    @mock.patch("onnx_translation.inference.engine.ort")
    def test_from_models(self, mock_ort):
        """Test sessions are created with providers and thread settings."""
        mock_ort.InferenceSession.side_effect = [self.encoder, self.decoder]

        engine = OnnxInferenceEngine.from_models(
            b"encoder", b"decoder", providers=["CPUExecutionProvider"],
            intra_op_num_threads=2
        )

        self.assertIsInstance(engine, OnnxInferenceEngine)
        options = mock_ort.SessionOptions.return_value
        self.assertEqual(options.intra_op_num_threads, 2)
        mock_ort.InferenceSession.assert_any_call(
            b"encoder", options, providers=["CPUExecutionProvider"]
        )
        mock_ort.InferenceSession.assert_any_call(
            b"decoder", options, providers=["CPUExecutionProvider"]
        )


class ToyEncoder(nn.Module):
    """Encoder returning one-hot embeddings inside a tuple."""

    def __init__(self, vocab_size):
        super().__init__()
        self.vocab_size = vocab_size

    def forward(self, input_ids, attention_mask):
        return (F.one_hot(input_ids, self.vocab_size).float() * attention_mask.unsqueeze(-1),)


class ToyDecoder(nn.Module):
    """Decoder whose logits favor (previous id + 1) mod vocab at every position."""

    def __init__(self, vocab_size):
        super().__init__()
        self.vocab_size = vocab_size

    def forward(self, input_ids, encoder_hidden_states, encoder_attention_mask):
        nxt = (input_ids + 1) % self.vocab_size
        return F.one_hot(nxt, self.vocab_size).float() * 10.0


class TestTorchInferenceEngine(unittest.TestCase):
    """Test the PyTorch adapter."""

    def setUp(self):
        self.engine = TorchInferenceEngine(ToyEncoder(6), ToyDecoder(6), device="cpu")

    def test_encode_unwraps_tuple(self):
        """Test the first encoder output is returned."""
        hidden = self.engine.encode(np.array([[1, 2]]), np.array([[1, 1]]))
        self.assertIsInstance(hidden, torch.Tensor)
        self.assertEqual(tuple(hidden.shape), (1, 2, 6))

    def test_decode_returns_numpy(self):
        """Test logits come back as a numpy array."""
        hidden = self.engine.encode(np.array([[1]]), np.array([[1]]))
        logits = self.engine.decode(np.array([[2, 3]]), hidden, np.array([[1]]))
        self.assertIsInstance(logits, np.ndarray)
        self.assertEqual(logits.shape, (1, 2, 6))

    def test_greedy_generation(self):
        """Test the toy model counts up to eos."""
        result = generate(self.engine, input_ids=[3, 4, 0], max_new_tokens=10)
        self.assertEqual(result, [3, 4, 5, EOS_ID])

    def test_released_engine_raises(self):
        """Test a released engine cannot be used."""
        self.engine.release()
        with self.assertRaises(TranslationError):
            self.engine.encode(np.array([[1]]), np.array([[1]]))


if __name__ == '__main__':
    unittest.main()
