"""
Interfaces package exports.
"""

from .vector_store import VectorStore, PineconeVectorStore, InMemoryVectorStore
from .embedder import Embedder, OpenAIEmbedder
from .state_backend import StateBackend, RedisStateBackend, InMemoryStateBackend
from .ocr import OcrProvider, MistralOcrProvider
from .transcriber import Transcriber, TranscriptionResult, DeepgramTranscriber
from .callback_sink import (
    CallbackSink,
    HttpCallbackSink,
    RecordingCallbackSink,
    sign_body,
    verify_signature,
)

__all__ = [
    "VectorStore",
    "PineconeVectorStore",
    "InMemoryVectorStore",
    "Embedder",
    "OpenAIEmbedder",
    "StateBackend",
    "RedisStateBackend",
    "InMemoryStateBackend",
    "OcrProvider",
    "MistralOcrProvider",
    "Transcriber",
    "TranscriptionResult",
    "DeepgramTranscriber",
    "CallbackSink",
    "HttpCallbackSink",
    "RecordingCallbackSink",
    "sign_body",
    "verify_signature",
]
