"""Translation Inference Module."""

from .engine import InferenceEngine, OnnxInferenceEngine
from .greedy import GenerationState, greedy_generate, greedy_generate_async, softmax
from .torch_engine import TorchInferenceEngine
from .translator import OnnxTranslator

__all__ = [
    "InferenceEngine",
    "OnnxInferenceEngine",
    "TorchInferenceEngine",
    "GenerationState",
    "greedy_generate",
    "greedy_generate_async",
    "softmax",
    "OnnxTranslator",
]
