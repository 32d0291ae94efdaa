"""
Graph extraction capability.

``HttpExtractionClient`` sends a segment plus the extraction schema to a
chat completion endpoint and returns the provider's reply untouched, tagged
with the provider id. Turning the reply into nodes and edges is the job of
``kbingest.graph.response_parser``.
"""

import json
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol

import httpx

from ..core.http_errors import check_response, decode_json, translate_request_error
from ..models.config_models import LLMProviderConfig
from ..models.graph_models import ProviderResponse

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You extract a knowledge graph from text. Reply with a single JSON object "
    'of the form {"nodes": [...], "edges": [...]} and nothing else. '
    "Every node has id, type, label and properties. Every edge has "
    "sourceNodeLabel, targetNodeLabel, type, weight between 0 and 1 and properties. "
    "Edges may only reference labels of nodes you return."
)


def build_messages(text: str, schema: Dict[str, Any]) -> List[Dict[str, str]]:
    """Chat messages for one extraction request."""
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {
            "role": "user",
            "content": (
                f"Schema:\n{json.dumps(schema, indent=2)}\n\n"
                f"Text:\n{text}"
            ),
        },
    ]


class ExtractionClient(Protocol):
    async def extract(self, text: str, schema: Dict[str, Any]) -> ProviderResponse:
        """Run one extraction call and return the raw provider reply."""

    def stream(self, text: str, schema: Dict[str, Any]) -> AsyncIterator[str]:
        """Yield completion tokens as they arrive."""


class HttpExtractionClient:
    """Chat completion client for openai, openrouter, ollama, dashscope and raw endpoints."""

    def __init__(
        self,
        config: LLMProviderConfig,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ):
        self.config = config
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self.metrics = {
            "requests": 0,
            "failed_requests": 0,
            "streamed_requests": 0,
            "total_latency": 0.0,
        }

    @property
    def provider(self) -> str:
        return self.config.provider

    @property
    def service(self) -> str:
        return f"{self.provider} extraction provider"

    async def initialize(self) -> None:
        if self._client is not None:
            return

        headers = {"Content-Type": "application/json", "User-Agent": "kbingest/1.0"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"

        self._client = httpx.AsyncClient(headers=headers, timeout=httpx.Timeout(self.timeout))
        logger.info(f"Extraction client initialized for {self.provider} at {self.config.base_url}")

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self):
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def endpoint(self) -> str:
        if self.provider == "ollama":
            return f"{self.config.base_url}/api/chat"
        if self.provider == "raw":
            return self.config.base_url
        return f"{self.config.base_url}/chat/completions"

    def build_request(self, text: str, schema: Dict[str, Any], stream: bool = False) -> Dict[str, Any]:
        """Request body in the provider's dialect."""
        if self.provider == "raw":
            return {"model": self.config.model, "text": text, "schema": schema}

        body: Dict[str, Any] = {
            "model": self.config.model,
            "messages": build_messages(text, schema),
            "stream": stream,
        }
        if self.provider == "ollama":
            body["format"] = "json"
            body["options"] = {"temperature": self.config.temperature}
            if self.config.max_tokens:
                body["options"]["num_predict"] = self.config.max_tokens
            return body

        body["temperature"] = self.config.temperature
        if self.config.max_tokens:
            body["max_tokens"] = self.config.max_tokens
        if self.provider in ("openai", "openrouter"):
            body["response_format"] = {"type": "json_object"}
        return body

    async def extract(self, text: str, schema: Dict[str, Any]) -> ProviderResponse:
        """
        Send one extraction request.

        Raises:
            TransientExternalError: Timeout, connection failure, 429 or 5xx
            ProviderError: Other 4xx responses
            MalformedResponseError: Body is not JSON
        """
        await self.initialize()

        start_time = time.time()
        self.metrics["requests"] += 1
        try:
            response = await self._client.post(self.endpoint(), json=self.build_request(text, schema))
        except httpx.RequestError as e:
            self.metrics["failed_requests"] += 1
            raise translate_request_error(e, self.service) from e

        try:
            check_response(response, self.service)
            payload = decode_json(response, self.service)
        except Exception:
            self.metrics["failed_requests"] += 1
            raise

        latency = time.time() - start_time
        self.metrics["total_latency"] += latency
        logger.debug(f"{self.service} replied in {latency:.2f}s")
        return ProviderResponse(provider=self.provider, payload=payload)

    async def stream(self, text: str, schema: Dict[str, Any]) -> AsyncIterator[str]:
        """
        Stream completion tokens.

        OpenAI-style providers send server-sent ``data:`` lines, Ollama sends
        one JSON object per line. The raw provider does not stream and yields
        its whole reply once.
        """
        if self.provider == "raw":
            response = await self.extract(text, schema)
            payload = response.payload
            yield payload if isinstance(payload, str) else json.dumps(payload)
            return

        await self.initialize()
        self.metrics["streamed_requests"] += 1

        try:
            async with self._client.stream(
                "POST", self.endpoint(), json=self.build_request(text, schema, stream=True)
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    check_response(response, self.service)

                async for line in response.aiter_lines():
                    token = self._parse_stream_line(line)
                    if token is None:
                        continue
                    if token == "":
                        return
                    yield token
        except httpx.RequestError as e:
            raise translate_request_error(e, self.service) from e

    def _parse_stream_line(self, line: str) -> Optional[str]:
        """Token carried by one stream line, "" at end of stream, None to skip."""
        line = line.strip()
        if not line:
            return None

        if self.provider == "ollama":
            data = self._load_line(line)
            if data is None:
                return None
            if data.get("done"):
                return ""
            return (data.get("message") or {}).get("content") or None

        if not line.startswith("data:"):
            return None
        body = line[len("data:"):].strip()
        if body == "[DONE]":
            return ""

        data = self._load_line(body)
        if data is None:
            return None
        choices = data.get("choices") or [{}]
        return (choices[0].get("delta") or {}).get("content") or None

    def _load_line(self, body: str) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(body)
        except json.JSONDecodeError:
            logger.debug(f"Skipping unparsable stream line: {body[:80]}")
            return None
        return data if isinstance(data, dict) else None

    def get_statistics(self) -> Dict[str, Any]:
        stats = dict(self.metrics)
        stats["provider"] = self.provider
        stats["model"] = self.config.model
        return stats
