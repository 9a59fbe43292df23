"""
External capabilities and their request/response contracts.

Capabilities are reached only through the CapabilityGateway. ``Capabilities``
gives workflow steps a typed view over the gateway; ``HttpCapabilityClient``
provides gateway handlers that talk to a capability host over HTTP.
"""

from __future__ import annotations

from collections.abc import Callable
from enum import Enum
from typing import Any

import httpx
from loguru import logger
from pydantic import BaseModel, Field

from studyloop.config import Settings, get_settings
from studyloop.errors import CapabilityFailure, CapabilityTimeout, InvalidInput
from studyloop.gateway.gateway import CapabilityCall, CapabilityGateway, CapabilityHandler


class Capability(str, Enum):
    GENERATE_TEXT = "generate_text"
    EXTRACT_TEXT = "extract_text"
    SEARCH_INDEX = "search_index"
    RENDER_JOB = "render_job"
    CLASSIFY_TOPIC = "classify_topic"

    def __str__(self) -> str:
        return self.value


# =============================================================================
# Response contracts
# =============================================================================


class GeneratedText(BaseModel):
    text: str


class ExtractedText(BaseModel):
    text: str
    per_block_confidence: list[float] = Field(default_factory=list)

    @property
    def average_confidence(self) -> float:
        """Mean block confidence; 0.0 when the extractor found no blocks."""
        if not self.per_block_confidence:
            return 0.0
        return sum(self.per_block_confidence) / len(self.per_block_confidence)


class SearchHit(BaseModel):
    title: str
    url: str | None = None
    snippet: str = ""
    score: float = 0.0


class SearchResults(BaseModel):
    results: list[SearchHit] = Field(default_factory=list)


class RenderJobAccepted(BaseModel):
    job_id: str


class TopicClassification(BaseModel):
    topic_id: str = Field(min_length=1)


# =============================================================================
# Typed view
# =============================================================================


class Capabilities:
    """Typed calls into the gateway, one method per capability."""

    def __init__(self, gateway: CapabilityGateway):
        self.gateway = gateway

    async def generate_text(
        self,
        prompt: str,
        max_tokens: int,
        deadline: float | None = None,
        parse: Callable[[str], Any] | None = None,
    ) -> Any:
        """
        Generate text for a prompt.

        ``parse`` turns the text into a structured result; its failures count
        as malformed output and are retried like any other capability failure.
        """

        def parse_response(response: Any) -> Any:
            text = GeneratedText.model_validate(response).text
            return parse(text) if parse is not None else text

        return await self.gateway.invoke(
            Capability.GENERATE_TEXT,
            {"prompt": prompt, "max_tokens": max_tokens},
            deadline=deadline,
            parse=parse_response,
        )

    async def extract_text(self, document: str, deadline: float | None = None) -> ExtractedText:
        return await self.gateway.invoke(
            Capability.EXTRACT_TEXT,
            {"document": document},
            deadline=deadline,
            parse=ExtractedText.model_validate,
        )

    async def search_index(
        self,
        query: str,
        filters: dict[str, Any] | None = None,
        deadline: float | None = None,
    ) -> list[SearchHit]:
        response = await self.gateway.invoke(
            Capability.SEARCH_INDEX,
            {"query": query, "filters": filters or {}},
            deadline=deadline,
            parse=SearchResults.model_validate,
        )
        return response.results

    async def render_job(self, spec: dict[str, Any], deadline: float | None = None) -> str:
        response = await self.gateway.invoke(
            Capability.RENDER_JOB,
            {"spec": spec},
            deadline=deadline,
            parse=RenderJobAccepted.model_validate,
        )
        return response.job_id

    async def classify_topic(self, text: str, deadline: float | None = None) -> str:
        response = await self.gateway.invoke(
            Capability.CLASSIFY_TOPIC,
            {"text": text},
            deadline=deadline,
            parse=TopicClassification.model_validate,
        )
        return response.topic_id


# =============================================================================
# HTTP transport
# =============================================================================


class HttpCapabilityClient:
    """
    HTTP client for a capability host.

    Every capability is a ``POST {base_url}/{capability}`` with the call
    payload as JSON. Retries are not done here; the gateway owns them, so
    this client only maps transport outcomes onto the error taxonomy.
    """

    def __init__(
        self,
        base_url: str | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize capability client.

        Args:
            base_url: Capability host (defaults to settings.capability_base_url)
            settings: Settings instance
            transport: Optional httpx transport (used by tests)
        """
        self.settings = settings or get_settings()
        self.base_url = (base_url or self.settings.capability_base_url).rstrip("/")
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(self.settings.capability_timeout_seconds),
            follow_redirects=True,
            transport=transport,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    def handlers(self) -> dict[str, CapabilityHandler]:
        """Gateway handlers for every known capability."""
        return {capability.value: self.call for capability in Capability}

    async def call(self, call: CapabilityCall) -> Any:
        name = call.capability
        try:
            response = await self.client.post(f"/{name}", json=dict(call.payload))
        except httpx.TimeoutException as e:
            raise CapabilityTimeout(name) from e
        except httpx.RequestError as e:
            raise CapabilityFailure(name, f"request error: {e}") from e

        status = response.status_code
        if status == 429:
            raise CapabilityFailure(name, "rate limited", kind=CapabilityFailure.RATE_LIMITED)
        if status >= 500:
            raise CapabilityFailure(name, f"server error {status}")
        if status >= 400:
            # Client errors are not retried
            logger.error("Capability {} rejected request: {}", name, status)
            raise InvalidInput(f"{name} rejected the request ({status})", ["payload"])

        try:
            return response.json()
        except ValueError as e:
            raise CapabilityFailure(
                name, "response is not JSON", kind=CapabilityFailure.MALFORMED
            ) from e
