"""Ordered resolver chain with per-resolver retry and capped exponential backoff."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Sequence

import anyio

from config.settings import RESOLVER_BACKOFF_BASE_MS, RESOLVER_BACKOFF_CAP_MS, RESOLVER_MAX_RETRIES
from engine.errors import AllProvidersExhausted, ResolverAttemptFailed

logger = logging.getLogger(__name__)


def _log_event(level, message, **fields):
    payload = {"message": message, **fields}
    try:
        logger.log(level, json.dumps(payload, sort_keys=True, default=str))
    except Exception as exc:
        logger.log(level, f"log_event_serialization_failed: {exc} message={message}")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = RESOLVER_MAX_RETRIES
    base_delay_ms: int = RESOLVER_BACKOFF_BASE_MS
    max_delay_ms: int = RESOLVER_BACKOFF_CAP_MS

    def delay_seconds(self, attempt: int) -> float:
        """Delay after failed ``attempt`` (1-based): ``min(base * 2^(attempt-1), cap)`` ms."""
        delay_ms = min(self.base_delay_ms * (2 ** (attempt - 1)), self.max_delay_ms)
        return max(0, delay_ms) / 1000.0


class ResolverChain:
    """Try resolvers strictly in declared order until one returns a valid payload.

    Each resolver gets ``policy.max_retries`` attempts with backoff between
    them. Moving on to the next resolver adds no delay. Every failure kind is
    retried the same way. The chain keeps no state between calls.
    """

    def __init__(
        self,
        resolvers: Sequence,
        *,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._resolvers = tuple(resolvers)
        self.policy = policy or RetryPolicy()
        self._sleep = sleep or anyio.sleep

    @property
    def resolvers(self):
        return self._resolvers

    async def resolve(self, reference):
        failures = []
        attempts = max(1, int(self.policy.max_retries))
        for resolver in self._resolvers:
            name = getattr(resolver, "name", None) or type(resolver).__name__
            last_error = None
            for attempt in range(1, attempts + 1):
                try:
                    payload = await anyio.to_thread.run_sync(resolver.fetch, reference)
                    if not resolver.is_valid(payload):
                        raise ResolverAttemptFailed(f"{name} returned a structurally invalid payload")
                except Exception as exc:
                    last_error = exc
                    _log_event(
                        logging.WARNING,
                        "resolver_attempt_failed",
                        resolver=name,
                        attempt=attempt,
                        max_attempts=attempts,
                        url=reference.url,
                        error=str(exc),
                    )
                    if attempt < attempts:
                        await self._sleep(self.policy.delay_seconds(attempt))
                    continue
                _log_event(
                    logging.INFO,
                    "resolver_attempt_succeeded",
                    resolver=name,
                    attempt=attempt,
                    url=reference.url,
                )
                return payload
            failures.append((name, last_error))
        _log_event(
            logging.ERROR,
            "resolver_chain_exhausted",
            url=reference.url,
            resolvers=[name for name, _ in failures],
        )
        raise AllProvidersExhausted(failures, reference_url=reference.url)
