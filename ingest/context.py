"""
Processing Context module.
This module defines the IngestContext class, which serves as a container
for all processing dependencies. It provides dependency injection for
cleaner, testable code: every backend is built lazily from the
configuration unless a test or caller injects its own.
"""
import logging
import random
import time
from typing import Any, Callable, Optional

import httpx
import tiktoken
from openai import OpenAI
from pinecone import Pinecone, ServerlessSpec
from redis import ConnectionPool, Redis

from config import (
    HTTP_CONNECT_TIMEOUT_S,
    REDIS_POOL_HEALTH_CHECK_INTERVAL_S,
    REDIS_POOL_MAX_CONNECTIONS,
    REDIS_POOL_SOCKET_CONNECT_TIMEOUT_S,
    REDIS_POOL_SOCKET_TIMEOUT_S,
    ProcessorConfig,
)
from docproc_exceptions import ConfigError
from interfaces import (
    CallbackSink,
    DeepgramTranscriber,
    Embedder,
    HttpCallbackSink,
    InMemoryStateBackend,
    InMemoryVectorStore,
    MistralOcrProvider,
    OcrProvider,
    OpenAIEmbedder,
    PineconeVectorStore,
    RecordingCallbackSink,
    RedisStateBackend,
    StateBackend,
    Transcriber,
    VectorStore,
)
from job_lease import LeaseManager, LocalLeaseManager, RedisLeaseManager
from .batching import BatchPolicy
from .extraction import ExtractionRouter
from .pdf_strategy import PdfOcrStrategy
from .stats import ThreadSafeStats
from .timeouts import ExternalCallGate, OperationGuard
from .transcription import TranscriptionStrategy


# ============================================================================
# PROCESSING CONTEXT
# ============================================================================


class IngestContext:
    """
    Container for all processing dependencies.

    Keyword overrides replace the lazily built backends, e.g.
    ``IngestContext(config, embedder=FakeEmbedder(), vector_store=store)``.
    """

    _OVERRIDABLE = frozenset({
        "http_client",
        "encoder",
        "embedder",
        "vector_store",
        "state_backend",
        "ocr",
        "transcriber",
        "callback_sink",
        "lease_manager",
        "external_gate",
        "guard",
    })

    def __init__(
        self,
        config: ProcessorConfig,
        *,
        sleep: Callable[[float], Any] = time.sleep,
        rng: Optional[random.Random] = None,
        **overrides: Any,
    ):
        """
        Initialise processing context.

        Args:
            config: Processor configuration
            sleep: Used for every backoff; tests pass a no-op
            rng: Jitter source for backoffs
        """
        unknown = set(overrides) - self._OVERRIDABLE
        if unknown:
            raise TypeError(f"Unknown IngestContext overrides: {sorted(unknown)}")
        self.config = config

        # Setup logging
        logging.basicConfig(
            level=config.log_level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )
        self.logger = logging.getLogger("docproc")

        self.sleep = sleep
        self.rng = rng or random.Random()

        # Clients (lazy loading)
        self._openai: Optional[OpenAI] = None
        self._pinecone: Optional[Pinecone] = None
        self._index = None
        self._redis: Optional[Redis] = None
        self._extraction_router: Optional[ExtractionRouter] = None
        self._overrides: dict[str, Any] = dict(overrides)

        # Thread-safe utilities
        self.stats = ThreadSafeStats()

    def _cached(self, name: str, factory: Callable[[], Any]) -> Any:
        if name not in self._overrides:
            self._overrides[name] = factory()
        return self._overrides[name]

    @property
    def dry_run(self) -> bool:
        return bool(getattr(self.config, "dry_run", False))

    # ------------------------------------------------------------------
    # Raw clients
    # ------------------------------------------------------------------

    @property
    def openai(self) -> OpenAI:
        """Get OpenAI client (lazy init)."""
        if self._openai is None:
            timeout = httpx.Timeout(
                timeout=self.config.openai_timeout,
                connect=self.config.openai_connect_timeout,
                read=self.config.openai_read_timeout,
                write=self.config.openai_write_timeout,
                pool=self.config.openai_pool_timeout,
            )
            self._openai = OpenAI(
                api_key=self.config.require("openai_api_key", "OPENAI_API_KEY"),
                timeout=timeout,
                # Batch retries are owned by the adaptive batcher.
                max_retries=0,
            )
        return self._openai

    @property
    def pinecone(self) -> Pinecone:
        """Get Pinecone client (lazy init)."""
        if self.dry_run:
            raise ConfigError("Dry-run enabled: Pinecone client must not be used")
        if self._pinecone is None:
            self._pinecone = Pinecone(
                api_key=self.config.require("pinecone_api_key", "PINECONE_API_KEY"))
        return self._pinecone

    @property
    def redis(self) -> Redis:
        """Get Redis client (lazy init)."""
        if self.dry_run:
            raise ConfigError("Dry-run enabled: Redis client must not be used")
        if self._redis is None:
            pool = ConnectionPool(
                host=self.config.redis_host,
                port=self.config.redis_port,
                username=self.config.redis_username or None,
                password=self.config.redis_password or None,
                max_connections=REDIS_POOL_MAX_CONNECTIONS,
                socket_timeout=REDIS_POOL_SOCKET_TIMEOUT_S,
                socket_connect_timeout=REDIS_POOL_SOCKET_CONNECT_TIMEOUT_S,
                health_check_interval=REDIS_POOL_HEALTH_CHECK_INTERVAL_S,
                decode_responses=True,
            )
            self._redis = Redis(connection_pool=pool)
        return self._redis

    @property
    def index(self):
        """Get Pinecone index (lazy init)."""
        if self._index is None:
            self._ensure_index_exists()
            self._index = self.pinecone.Index(self.config.index_name)
        return self._index

    @property
    def http_client(self) -> httpx.Client:
        return self._cached(
            "http_client",
            lambda: httpx.Client(
                timeout=httpx.Timeout(self.config.openai_timeout, connect=HTTP_CONNECT_TIMEOUT_S),
                follow_redirects=True,
            ),
        )

    @property
    def encoder(self):
        """Get tiktoken encoder (lazy init)."""

        def _build():
            try:
                return tiktoken.encoding_for_model(self.config.embed_model)
            except KeyError:
                return tiktoken.get_encoding("cl100k_base")

        return self._cached("encoder", _build)

    # ------------------------------------------------------------------
    # Ports
    # ------------------------------------------------------------------

    @property
    def embedder(self) -> Embedder:
        return self._cached("embedder", lambda: OpenAIEmbedder(client=self.openai))

    @property
    def vector_store(self) -> VectorStore:
        def _build() -> VectorStore:
            if self.dry_run:
                self.logger.info("Dry-run: vectors are kept in memory")
                return InMemoryVectorStore()
            return PineconeVectorStore(self.index, namespace=self.config.namespace)

        return self._cached("vector_store", _build)

    @property
    def state_backend(self) -> StateBackend:
        def _build() -> StateBackend:
            if self.dry_run or self.config.state_backend == "memory":
                return InMemoryStateBackend(ttl_seconds=self.config.state_ttl_seconds)
            return RedisStateBackend(self.redis, ttl_seconds=self.config.state_ttl_seconds)

        return self._cached("state_backend", _build)

    @property
    def ocr(self) -> Optional[OcrProvider]:
        def _build() -> Optional[OcrProvider]:
            if not self.config.mistral_api_key:
                self.logger.warning("MISTRAL_API_KEY not set; PDFs use the text layer only")
                return None
            return MistralOcrProvider(
                self.http_client,
                api_key=self.config.mistral_api_key,
                model=self.config.ocr_model,
                base_url=self.config.ocr_base_url,
            )

        return self._cached("ocr", _build)

    @property
    def transcriber(self) -> Optional[Transcriber]:
        def _build() -> Optional[Transcriber]:
            if not self.config.deepgram_api_key:
                return None
            return DeepgramTranscriber(
                self.http_client,
                api_key=self.config.deepgram_api_key,
                model=self.config.transcription_model,
                language=self.config.transcription_language,
                base_url=self.config.transcription_base_url,
            )

        return self._cached("transcriber", _build)

    @property
    def callback_sink(self) -> CallbackSink:
        def _build() -> CallbackSink:
            if self.dry_run:
                return RecordingCallbackSink()
            return HttpCallbackSink(self.http_client)

        return self._cached("callback_sink", _build)

    @property
    def lease_manager(self) -> LeaseManager:
        def _build() -> LeaseManager:
            if self.dry_run or self.config.state_backend == "memory":
                return LocalLeaseManager(
                    default_ttl_ms=self.config.lease_ttl_ms, logger=self.logger)
            return RedisLeaseManager(
                client=self.redis,
                default_ttl_ms=self.config.lease_ttl_ms,
                logger=self.logger,
                metrics=self.stats,
            )

        return self._cached("lease_manager", _build)

    # ------------------------------------------------------------------
    # Shared pipeline services
    # ------------------------------------------------------------------

    @property
    def external_gate(self) -> ExternalCallGate:
        """Process-wide gate for OCR and transcription calls."""
        return self._cached(
            "external_gate",
            lambda: ExternalCallGate(
                self.config.external_max_concurrent,
                max_queued=self.config.external_max_queued,
                queue_timeout_s=self.config.external_queue_timeout_s,
                logger=self.logger,
            ),
        )

    @property
    def guard(self) -> OperationGuard:
        return self._cached(
            "guard",
            lambda: OperationGuard(
                self.config.operation_timeouts,
                logger=self.logger,
                sleep=self.sleep,
                rng=self.rng,
            ),
        )

    def batch_policy(self) -> BatchPolicy:
        return BatchPolicy(max_retries=self.config.batch_max_retries, rng=self.rng)

    @property
    def extraction_router(self) -> ExtractionRouter:
        if self._extraction_router is None:
            pdf = PdfOcrStrategy(
                self.ocr,
                self.guard,
                gate=self.external_gate,
                max_pages=self.config.ocr_max_pages,
                hard_limit_mb=self.config.ocr_hard_limit_mb,
                safety_ratio=self.config.ocr_safety_ratio,
                logger=self.logger,
            )
            transcription = TranscriptionStrategy(
                self.transcriber,
                self.guard,
                gate=self.external_gate,
                min_chars=self.config.transcription_min_chars,
                min_confidence=self.config.transcription_min_confidence,
                segment_threshold_mb=self.config.transcription_segment_threshold_mb,
                segment_chars=self.config.transcript_segment_chars,
                logger=self.logger,
            )
            self._extraction_router = ExtractionRouter(
                pdf=pdf,
                transcription=transcription,
                guard=self.guard,
                logger=self.logger,
            )
        return self._extraction_router

    def close(self) -> None:
        client = self._overrides.get("http_client")
        if isinstance(client, httpx.Client):
            client.close()

    def _ensure_index_exists(self) -> None:
        """Ensure Pinecone index exists, create if needed."""
        existing = {i["name"] for i in self.pinecone.list_indexes()}

        if self.config.index_name not in existing:
            self.logger.info(
                "Creating Pinecone index '%s' (dim=%d)...",
                self.config.index_name,
                self.config.dimension
            )
            self.pinecone.create_index(
                name=self.config.index_name,
                dimension=self.config.dimension,
                metric="cosine",
                spec=ServerlessSpec(cloud="aws", region="us-east-1"),
            )
        else:
            index_info = self.pinecone.describe_index(self.config.index_name)
            if index_info.dimension != self.config.dimension:
                raise ConfigError(
                    f"Index dimension mismatch: {index_info.dimension} != {self.config.dimension}"
                )
            self.logger.info(
                "Using existing index '%s' (dim=%d)",
                self.config.index_name,
                self.config.dimension
            )
