from .client import ForensicEngine, LogicEngine, UnconfiguredEngine, VisionEngine
from .decoding import decode_engine_response

__all__ = [
    "ForensicEngine",
    "LogicEngine",
    "UnconfiguredEngine",
    "VisionEngine",
    "decode_engine_response",
]
