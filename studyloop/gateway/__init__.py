"""
Capability Gateway package.

Resilient calling convention (deadline, retry, circuit breaker) around the
external capabilities: text generation, OCR, search, rendering and topic
classification.
"""

from studyloop.gateway.breaker import BreakerState, CircuitBreaker
from studyloop.gateway.capabilities import (
    Capabilities,
    Capability,
    ExtractedText,
    GeneratedText,
    HttpCapabilityClient,
    RenderJobAccepted,
    SearchHit,
    SearchResults,
    TopicClassification,
)
from studyloop.gateway.gateway import CapabilityCall, CapabilityGateway, CapabilityHandler
from studyloop.gateway.retry import RetryPolicy

__all__ = [
    "BreakerState",
    "Capabilities",
    "Capability",
    "CapabilityCall",
    "CapabilityGateway",
    "CapabilityHandler",
    "CircuitBreaker",
    "ExtractedText",
    "GeneratedText",
    "HttpCapabilityClient",
    "RenderJobAccepted",
    "RetryPolicy",
    "SearchHit",
    "SearchResults",
    "TopicClassification",
]
