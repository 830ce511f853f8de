"""
Fire-and-forget delivery of call-outcome webhooks.

``enqueue`` validates the URL synchronously and schedules delivery on the
event loop; the caller never waits on the sink. Delivery retries with linear
backoff and drops the payload (with a log entry) once the attempt budget is
spent.
"""

import asyncio
import base64
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set
from urllib.parse import urlparse

import aiohttp
from prometheus_client import Counter
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_incrementing

from ..errors import InvalidWebhookURLError
from ..logging_config import get_logger

logger = get_logger(__name__)

_WEBHOOK_DELIVERIES = Counter(
    "call_orchestrator_webhook_deliveries_total",
    "Webhook deliveries by final outcome",
    labelnames=("outcome",),  # success | failure
)
_WEBHOOK_ATTEMPTS = Counter(
    "call_orchestrator_webhook_attempts_total",
    "Individual webhook POST attempts",
)

DEFAULT_USER_AGENT = "Call-Orchestrator-Webhook/1.0"


def validate_webhook_url(url: Any) -> str:
    """Return url unchanged if it is an absolute http(s) URL, else raise InvalidWebhookURLError."""
    if not isinstance(url, str) or not url.strip():
        raise InvalidWebhookURLError(str(url))
    try:
        parsed = urlparse(url)
    except ValueError:
        raise InvalidWebhookURLError(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise InvalidWebhookURLError(url)
    return url


class _AttemptFailed(Exception):
    def __init__(self, error: str, status: Optional[int] = None):
        super().__init__(error)
        self.error = error
        self.status = status


@dataclass
class DeliveryResult:
    success: bool
    attempt: int
    status_code: Optional[int] = None
    error: Optional[str] = None


class WebhookDispatcher:
    def __init__(
        self,
        max_attempts: int = 3,
        base_delay_sec: float = 5.0,
        timeout_sec: float = 30.0,
        secret: Optional[str] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        *,
        session_factory: Optional[Callable[[], aiohttp.ClientSession]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.max_attempts = max(1, int(max_attempts))
        self.base_delay_sec = base_delay_sec
        self.timeout_sec = timeout_sec
        self._secret = secret
        self.user_agent = user_agent
        self._session_factory = session_factory
        self._session: Optional[aiohttp.ClientSession] = None
        self._sleep = sleep
        self._pending: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def sign(self, payload: Dict[str, Any]) -> str:
        data = f"{payload.get('callSid')}:{payload.get('timestamp')}"
        if self._secret:
            return hmac.new(self._secret.encode(), data.encode(), hashlib.sha256).hexdigest()
        return base64.b64encode(data.encode()).decode()

    def enqueue(self, url: str, payload: Dict[str, Any]) -> asyncio.Task:
        """
        Schedule delivery and return immediately.

        Raises InvalidWebhookURLError before anything is scheduled when the
        URL is not http(s).
        """
        validate_webhook_url(url)
        task = asyncio.get_running_loop().create_task(self.deliver(url, payload))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def deliver(self, url: str, payload: Dict[str, Any]) -> DeliveryResult:
        """
        POST the payload until the sink answers 2xx or the attempt budget is spent.

        Waits base_delay_sec * n before attempt n + 1. Never raises for sink
        failures; the outcome is reported in the returned DeliveryResult.
        """
        body = dict(payload)
        body.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        signature = self.sign(body)
        call_id = body.get("callSid")

        attempt = 0
        status = None
        try:
            async for attempt_state in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_incrementing(start=self.base_delay_sec, increment=self.base_delay_sec),
                retry=retry_if_exception_type(_AttemptFailed),
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt_state:
                    attempt = attempt_state.retry_state.attempt_number
                    status = await self._attempt(url, body, signature, attempt)
        except _AttemptFailed as exc:
            logger.error("All webhook attempts failed", call_id=call_id, url=url, attempts=attempt, error=exc.error)
            _WEBHOOK_DELIVERIES.labels("failure").inc()
            return DeliveryResult(success=False, attempt=attempt, status_code=exc.status, error=exc.error)

        logger.info("Webhook delivered", call_id=call_id, url=url, status=status, attempt=attempt)
        _WEBHOOK_DELIVERIES.labels("success").inc()
        return DeliveryResult(success=True, attempt=attempt, status_code=status)

    async def _attempt(self, url: str, body: Dict[str, Any], signature: str, attempt: int) -> int:
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            "X-Webhook-Signature": signature,
            "X-Attempt": str(attempt),
        }
        _WEBHOOK_ATTEMPTS.inc()
        try:
            status = await self._post(url, body, headers)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            failure = _AttemptFailed(str(exc) or exc.__class__.__name__)
        else:
            if 200 <= status < 300:
                return status
            failure = _AttemptFailed(f"HTTP {status}", status)
        logger.warning(
            "Webhook attempt failed",
            call_id=body.get("callSid"),
            url=url,
            attempt=attempt,
            max_attempts=self.max_attempts,
            error=failure.error,
        )
        raise failure

    async def _post(self, url: str, body: Dict[str, Any], headers: Dict[str, str]) -> int:
        await self._ensure_session()
        assert self._session
        timeout = aiohttp.ClientTimeout(total=self.timeout_sec)
        async with self._session.post(url, json=body, headers=headers, timeout=timeout) as response:
            await response.read()
            return response.status

    async def _ensure_session(self) -> None:
        if self._session and not self._session.closed:
            return
        factory = self._session_factory or aiohttp.ClientSession
        self._session = factory()

    async def drain(self) -> None:
        """Wait for every in-flight delivery."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
