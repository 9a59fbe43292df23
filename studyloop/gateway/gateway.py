"""
Capability Gateway.

Uniform calling convention around every external capability:
- Deadline for the whole invocation, retries included
- Exponential backoff with jitter between attempts
- Per-capability circuit breaker; retries only while the breaker is closed
- Optional response parsing inside the retry loop, so malformed output is
  retried like any other transient failure
"""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from loguru import logger

from studyloop.config import Settings, get_settings
from studyloop.errors import (
    CapabilityFailure,
    CapabilityTimeout,
    CircuitOpen,
    InvalidInput,
    StudyLoopError,
)
from studyloop.gateway.breaker import BreakerState, CircuitBreaker
from studyloop.gateway.retry import RetryPolicy


@dataclass(frozen=True)
class CapabilityCall:
    """One attempt at a capability. Ephemeral, never persisted."""

    capability: str
    payload: Mapping[str, Any]
    deadline: float  # gateway clock time after which the call is abandoned
    attempt: int


CapabilityHandler = Callable[[CapabilityCall], Awaitable[Any]]
ResponseParser = Callable[[Any], Any]


class CapabilityGateway:
    """Resilient front door for every external capability."""

    def __init__(
        self,
        handlers: Mapping[str, CapabilityHandler] | None = None,
        settings: Settings | None = None,
        retry: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: random.Random | None = None,
    ):
        self.settings = settings or get_settings()
        self.retry = retry or RetryPolicy.from_settings(self.settings)
        self._handlers: dict[str, CapabilityHandler] = dict(handlers or {})
        self._breakers: dict[str, CircuitBreaker] = {}
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

    def register(self, capability: str, handler: CapabilityHandler) -> None:
        self._handlers[str(capability)] = handler

    def breaker(self, capability: str) -> CircuitBreaker:
        """The breaker guarding ``capability`` (created on first use)."""
        name = str(capability)
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker.from_settings(name, self.settings, self._clock)
        return self._breakers[name]

    def status(self) -> dict[str, str]:
        """capability -> breaker state, for every capability seen so far."""
        return {name: breaker.state.value for name, breaker in sorted(self._breakers.items())}

    async def invoke(
        self,
        capability: str,
        payload: Mapping[str, Any],
        deadline: float | None = None,
        parse: ResponseParser | None = None,
    ) -> Any:
        """
        Call a capability with retries, breaker and deadline.

        Args:
            capability: Capability name
            payload: Request payload
            deadline: Seconds the whole invocation may take (defaults to the
                configured capability timeout)
            parse: Optional response validator; exceptions it raises count as
                malformed output

        Raises:
            InvalidInput: Unknown capability, or the capability rejected the request
            CircuitOpen: Breaker open, no network call was made
            CapabilityTimeout: Deadline elapsed
            CapabilityFailure: Retries exhausted
        """
        name = str(capability)
        handler = self._handlers.get(name)
        if handler is None:
            raise InvalidInput(f"no handler registered for capability {name}", ["capability"])

        breaker = self.breaker(name)
        budget = self.settings.capability_timeout_seconds if deadline is None else deadline
        expires = self._clock() + budget
        last_error: CapabilityFailure | None = None

        for attempt in range(1, self.retry.attempts + 1):
            if not breaker.allow():
                raise CircuitOpen(name, breaker.retry_after()) from last_error

            remaining = expires - self._clock()
            if remaining <= 0:
                breaker.release()
                raise CapabilityTimeout(name, "deadline exhausted") from last_error

            call = CapabilityCall(name, payload, expires, attempt)
            try:
                result = await self._attempt(handler, call, remaining, parse)
            except CapabilityFailure as exc:
                error = exc
            except (StudyLoopError, asyncio.CancelledError):
                breaker.release()
                raise
            else:
                breaker.record_success()
                return result

            breaker.record_failure()
            last_error = error
            logger.warning(
                "Capability {} attempt {}/{} failed ({})",
                name,
                attempt,
                self.retry.attempts,
                error.kind,
            )

            if attempt == self.retry.attempts:
                break
            if breaker.state != BreakerState.CLOSED:
                raise CircuitOpen(name, breaker.retry_after()) from error

            wait = min(self.retry.delay(attempt, self._rng), max(0.0, expires - self._clock()))
            await self._sleep(wait)

        logger.error("Capability {} failed after {} attempts", name, self.retry.attempts)
        raise last_error

    async def _attempt(
        self,
        handler: CapabilityHandler,
        call: CapabilityCall,
        remaining: float,
        parse: ResponseParser | None,
    ) -> Any:
        """One attempt, with every failure mode normalized to CapabilityFailure."""
        try:
            response = await asyncio.wait_for(handler(call), timeout=remaining)
        except asyncio.TimeoutError as exc:
            raise CapabilityTimeout(call.capability) from exc
        except StudyLoopError:
            raise
        except Exception as exc:  # Capability boundary - anything else is a failed call
            raise CapabilityFailure(call.capability, f"{type(exc).__name__}: {exc}") from exc

        if parse is None:
            return response
        try:
            return parse(response)
        except Exception as exc:  # Any validator error means the output is unusable
            raise CapabilityFailure(
                call.capability,
                f"malformed response: {exc}",
                kind=CapabilityFailure.MALFORMED,
            ) from exc
