"""
Embedding capability.

The pipeline depends on the ``EmbeddingClient`` protocol only;
``HttpEmbeddingClient`` talks to any OpenAI-compatible ``/embeddings``
endpoint.
"""

import logging
import time
from typing import Any, Dict, List, Optional, Protocol

import httpx

from ..core.http_errors import check_response, decode_json, translate_request_error
from ..models.config_models import EmbeddingProviderConfig
from ..models.errors import MalformedResponseError

logger = logging.getLogger(__name__)


class EmbeddingClient(Protocol):
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Return one vector per input text, in input order."""


class HttpEmbeddingClient:
    """Client for OpenAI-compatible embedding APIs."""

    SERVICE = "embedding provider"

    def __init__(
        self,
        config: EmbeddingProviderConfig,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 60.0,
    ):
        """
        Args:
            config: Endpoint, model and credentials
            client: Preconfigured httpx client, created on first use when omitted
            timeout: Transport timeout for a created client
        """
        self.config = config
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self.metrics = {
            "requests": 0,
            "failed_requests": 0,
            "texts_embedded": 0,
            "total_latency": 0.0,
        }

    async def initialize(self) -> None:
        if self._client is not None:
            return

        headers = {"Content-Type": "application/json", "User-Agent": "kbingest/1.0"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        self._client = httpx.AsyncClient(
            headers=headers,
            timeout=httpx.Timeout(self.timeout),
            limits=httpx.Limits(max_keepalive_connections=20, max_connections=100),
        )
        logger.info(f"Embedding client initialized for {self.config.base_url}")

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
            logger.info("Embedding client closed")

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def embed(self, texts: List[str]) -> List[List[float]]:
        """
        Embed texts with one request.

        Raises:
            TransientExternalError: Timeout, connection failure, 429 or 5xx
            ProviderError: Other 4xx responses
            MalformedResponseError: Response body is not a list of vectors
        """
        if not texts:
            return []
        await self.initialize()

        payload: Dict[str, Any] = {"input": texts, "model": self.config.model}
        if self.config.dimensions:
            payload["dimensions"] = self.config.dimensions

        start_time = time.time()
        self.metrics["requests"] += 1
        try:
            response = await self._client.post(f"{self.config.base_url}/embeddings", json=payload)
        except httpx.RequestError as e:
            self.metrics["failed_requests"] += 1
            raise translate_request_error(e, self.SERVICE) from e

        try:
            check_response(response, self.SERVICE)
            embeddings = self._parse_embeddings(decode_json(response, self.SERVICE), len(texts))
        except Exception:
            self.metrics["failed_requests"] += 1
            raise

        latency = time.time() - start_time
        self.metrics["texts_embedded"] += len(texts)
        self.metrics["total_latency"] += latency
        logger.debug(f"Embedded {len(texts)} texts in {latency:.2f}s")
        return embeddings

    def _parse_embeddings(self, data: Any, expected: int) -> List[List[float]]:
        try:
            items = sorted(data["data"], key=lambda item: item.get("index", 0))
            embeddings = [item["embedding"] for item in items]
        except (KeyError, TypeError, AttributeError) as e:
            raise MalformedResponseError(
                f"Unexpected embedding response shape: {e}", raw_content=str(data)[:500]
            ) from e

        if len(embeddings) != expected:
            raise MalformedResponseError(f"Expected {expected} embeddings, got {len(embeddings)}")
        for embedding in embeddings:
            if not isinstance(embedding, list) or not embedding:
                raise MalformedResponseError("Invalid embedding format")
        return embeddings

    def get_statistics(self) -> Dict[str, Any]:
        stats = dict(self.metrics)
        stats["model"] = self.config.model
        return stats
