# order_agent/messaging_gateway.py
"""
Messaging Gateway

Sends agent replies to the customer through the messaging gateway's
sendText endpoint, with bounded retries:

- up to DELIVERY_MAX_ATTEMPTS attempts, each with a hard timeout
- exponential backoff with additive jitter between attempts
- timeouts, connection failures, 5xx and 429 are retried
- any other 4xx fails immediately

Randomness and sleeping are injected so backoff is testable.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from .config import settings
from .errors import DeliveryError, PermanentDeliveryError, TransientDeliveryError
from .models import DeliveryResult

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

# typing pause between chunks: ~35ms per character, clamped
TYPING_MS_PER_CHAR = 35
TYPING_MIN_MS = 500
TYPING_MAX_MS = 3000


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    timeout_seconds: float = 15.0
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    jitter_ratio: float = 0.3

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            max_attempts=settings.DELIVERY_MAX_ATTEMPTS,
            timeout_seconds=settings.DELIVERY_TIMEOUT_SECONDS,
            base_delay_ms=settings.DELIVERY_BASE_DELAY_MS,
            max_delay_ms=settings.DELIVERY_MAX_DELAY_MS,
            jitter_ratio=settings.DELIVERY_JITTER_RATIO,
        )

    def backoff_ms(self, attempt: int, rng: random.Random) -> float:
        """
        Delay after failed attempt number `attempt` (0-based):
        min(base * 2^attempt + jitter, max), jitter in [0, ratio * base * 2^attempt).
        """
        exponential = self.base_delay_ms * (2 ** attempt)
        jitter = rng.random() * self.jitter_ratio * exponential
        return min(exponential + jitter, self.max_delay_ms)


def classify_error(exc: Exception) -> DeliveryError:
    if isinstance(exc, DeliveryError):
        return exc
    if isinstance(exc, asyncio.TimeoutError):
        return TransientDeliveryError("timeout: attempt exceeded its deadline")
    if isinstance(exc, httpx.TimeoutException):
        return TransientDeliveryError(f"timeout: {exc!r}")
    if isinstance(exc, httpx.NetworkError):
        return TransientDeliveryError(f"network error: {exc!r}")
    if isinstance(exc, httpx.HTTPStatusError):
        status = exc.response.status_code
        body = exc.response.text[:200]
        if status >= 500 or status == 429:
            return TransientDeliveryError(f"HTTP {status}: {body}", status_code=status)
        return PermanentDeliveryError(f"HTTP {status}: {body}", status_code=status)
    return PermanentDeliveryError(f"{exc.__class__.__name__}: {exc}")


def split_message(message: str, max_chars: int = 240) -> List[str]:
    """
    Split a long reply into chunks the way a person would type them:
    paragraph break first, then sentence end, then comma, then a space.
    A chunk never ends inside a URL.
    """
    message = message.strip()
    if len(message) <= max_chars:
        return [message] if message else []

    chunks: List[str] = []
    remaining = message
    while remaining:
        if len(remaining) <= max_chars:
            chunks.append(remaining.strip())
            break

        split_at = _split_index(remaining, max_chars)
        url_start = remaining.rfind("http", 0, split_at)
        if url_start > max_chars * 0.3 and " " not in remaining[url_start:split_at]:
            split_at = url_start

        chunk = remaining[:split_at].strip()
        if chunk:
            chunks.append(chunk)
        remaining = remaining[split_at:].strip()
    return chunks


def _split_index(text: str, max_chars: int) -> int:
    paragraph = text.rfind("\n\n", 0, max_chars)
    if paragraph > max_chars * 0.5:
        return paragraph + 2

    for endings, floor in (
        ((". ", "! ", "? ", ".\n", "!\n", "?\n"), 0.4),
        ((", ", "; ", ",\n", ";\n"), 0.3),
    ):
        best = -1
        for ending in endings:
            idx = text.rfind(ending, 0, max_chars)
            if idx > max_chars * floor:
                best = max(best, idx + len(ending))
        if best > -1:
            return best

    space = text.rfind(" ", 0, max_chars)
    if space > max_chars * 0.3:
        return space + 1
    return max_chars


def typing_delay_ms(chunk: str) -> int:
    return min(max(len(chunk) * TYPING_MS_PER_CHAR, TYPING_MIN_MS), TYPING_MAX_MS)


class MessagingGateway:
    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        instance: Optional[str] = None,
        token: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        rng: Optional[random.Random] = None,
        sleep: Optional[Sleep] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = (base_url if base_url is not None else settings.GATEWAY_BASE_URL).rstrip("/")
        self.instance = instance if instance is not None else settings.GATEWAY_INSTANCE
        self.token = token if token is not None else settings.GATEWAY_TOKEN
        self.policy = policy or RetryPolicy.from_settings()
        self.rng = rng or random.Random()
        self.sleep = sleep or asyncio.sleep
        self.transport = transport

    @property
    def send_url(self) -> str:
        return f"{self.base_url}/message/sendText/{self.instance}"

    async def _post(self, payload: Dict[str, Any]) -> None:
        async with httpx.AsyncClient(
            timeout=self.policy.timeout_seconds,
            transport=self.transport,
        ) as client:
            resp = await client.post(self.send_url, json=payload, headers={"apikey": self.token})
            resp.raise_for_status()

    async def send(self, recipient: str, text: str, *, turn_id: str = "-") -> DeliveryResult:
        """
        Deliver one message. Never raises; the outcome is in the result.
        """
        if not self.base_url or not self.instance:
            logger.warning("[%s] Messaging gateway not configured, reply to %s dropped", turn_id, recipient)
            return DeliveryResult(success=False, attempts=0, error="gateway_not_configured")

        payload = {"number": recipient, "text": text}
        last_error: Optional[DeliveryError] = None
        attempts = 0

        for attempt in range(self.policy.max_attempts):
            attempts = attempt + 1
            try:
                # httpx times each phase separately; the deadline covers the whole attempt
                await asyncio.wait_for(self._post(payload), timeout=self.policy.timeout_seconds)
                logger.info("[%s] Message sent to %s (attempt %s)", turn_id, recipient, attempts)
                return DeliveryResult(success=True, attempts=attempts)
            except Exception as e:
                last_error = classify_error(e)
                logger.warning(
                    "[%s] Attempt %s/%s to %s failed: %s",
                    turn_id,
                    attempts,
                    self.policy.max_attempts,
                    recipient,
                    last_error,
                )

            if isinstance(last_error, PermanentDeliveryError) or attempts == self.policy.max_attempts:
                break

            delay = self.policy.backoff_ms(attempt, self.rng)
            logger.info("[%s] Waiting %.0fms before retry", turn_id, delay)
            await self.sleep(delay / 1000)

        logger.error("[%s] Giving up on message to %s after %s attempt(s)", turn_id, recipient, attempts)
        return DeliveryResult(
            success=False,
            attempts=attempts,
            error=str(last_error) if last_error else "unknown delivery error",
            status_code=last_error.status_code if last_error else None,
        )

    async def send_reply(
        self,
        recipient: str,
        text: str,
        *,
        max_chars: Optional[int] = None,
        turn_id: str = "-",
    ) -> List[DeliveryResult]:
        """
        Split a reply into chunks and send them in order with a typing pause
        between them. Stops at the first chunk that cannot be delivered.
        """
        chunks = split_message(text, max_chars or settings.MESSAGE_CHUNK_MAX_CHARS)
        results: List[DeliveryResult] = []
        for i, chunk in enumerate(chunks):
            if i > 0:
                await self.sleep(typing_delay_ms(chunk) / 1000)
            result = await self.send(recipient, chunk, turn_id=turn_id)
            results.append(result)
            if not result.success:
                break
        return results
