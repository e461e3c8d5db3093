"""
Pagarme Core v5 API client
==========================
Creates marketplace orders with the configured split attached.

Environment Variables:
- PAGARME_API_KEY: Secret key (sk_test_* or sk_live_*)
- PAGARME_BASE_URL: API base URL (defaults to https://api.pagar.me/core/v5)

Usage:
    from likeme.clients.pagarme import PagarmeClient

    client = PagarmeClient()
    order = await client.create_order(payload)
"""
from __future__ import annotations

import copy
import json
import logging
from typing import Any

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from likeme.config import settings
from likeme.services.payment_split import SplitRule

logger = logging.getLogger(__name__)


class PaymentError(Exception):
    """Base exception for payment gateway errors."""

    def __init__(self, message: str, status_code: int | None = None, response_body: dict | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_body = response_body


class PagarmeTransientError(PaymentError):
    """Timeouts, connection failures, 429 and 5xx responses; retried."""
    pass


def mask_key(api_key: str) -> str:
    """Printable preview of a key that never reveals it in full."""
    if len(api_key) > 20:
        return f"{api_key[:15]}...{api_key[-4:]}"
    return f"{api_key[:min(len(api_key), 15)]}..."


class PagarmeClient:
    """
    Pagarme Core v5 client.

    Features:
    - HTTP basic auth with the secret key
    - Exponential-backoff retry of transient failures
    - Structured PaymentError with status code and body
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        max_retries: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        backoff_multiplier: float = 1.0,
    ):
        config = settings.pagarme
        self.api_key = (api_key or config.api_key or "").strip()
        self.base_url = (base_url or config.base_url).rstrip("/")
        self.timeout = timeout or config.timeout_seconds
        self.max_retries = max_retries or config.max_retries
        self.backoff_multiplier = backoff_multiplier
        self._transport = transport

        if not self.api_key:
            raise PaymentError("PAGARME_API_KEY not configured (a secret key sk_test_* or sk_live_* is required)")
        if not self.api_key.startswith("sk_"):
            raise PaymentError(
                f"Invalid Pagarme key: a secret key (sk_test_* or sk_live_*) is required, "
                f"got {mask_key(self.api_key)} (starts with {self.api_key[:3]!r})"
            )

        mode = "TEST" if self.api_key.startswith("sk_test_") else "LIVE" if self.api_key.startswith("sk_live_") else "UNKNOWN"
        logger.info(f"Pagarme client configured with key {mask_key(self.api_key)} ({mode})")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.api_key, ""),
            timeout=self.timeout,
            headers={"Accept": "application/json"},
            transport=self._transport,
        )

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        """Return the JSON body or raise the matching PaymentError."""
        if 200 <= response.status_code < 300:
            return response.json() if response.content else {}

        try:
            error_body = response.json() if response.content else {}
        except json.JSONDecodeError:
            error_body = {"raw": response.text}

        message = error_body.get("message", str(error_body)) if isinstance(error_body, dict) else str(error_body)

        if response.status_code == 429 or response.status_code >= 500:
            raise PagarmeTransientError(
                f"Pagarme unavailable ({response.status_code}): {message}",
                status_code=response.status_code,
                response_body=error_body,
            )

        raise PaymentError(
            f"Pagarme request failed ({response.status_code}): {message}",
            status_code=response.status_code,
            response_body=error_body,
        )

    async def _send(self, method: str, path: str, payload: dict | None) -> dict[str, Any]:
        async with self._client() as client:
            try:
                response = await client.request(method, path, json=payload)
            except httpx.TimeoutException as e:
                raise PagarmeTransientError(f"Pagarme request timed out: {e}") from e
            except httpx.TransportError as e:
                raise PagarmeTransientError(f"Pagarme connection failed: {e}") from e

        return self._handle_response(response)

    async def _request(self, method: str, path: str, payload: dict | None = None) -> dict[str, Any]:
        """Send a request, retrying transient failures with exponential backoff."""
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_retries),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=10),
            retry=retry_if_exception_type(PagarmeTransientError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning(f"Retrying Pagarme {method} {path} (attempt {attempt.retry_state.attempt_number})")
                return await self._send(method, path, payload)

    async def create_order(self, payload: dict) -> dict[str, Any]:
        """Create an order.

        Args:
            payload: Order body as accepted by ``POST /orders``

        Returns:
            The created order

        Raises:
            PaymentError: If Pagarme rejects the order or stays unavailable
        """
        order = await self._request("POST", "/orders", payload)
        logger.info(f"Pagarme order created: id={order.get('id')} status={order.get('status')}")
        return order

    async def get_recipient(self, recipient_id: str) -> dict[str, Any]:
        """Fetch a split recipient."""
        return await self._request("GET", f"/recipients/{recipient_id}")


def build_order_payload(order: dict, split: list[SplitRule] | None) -> dict:
    """Copy of ``order`` with the split rules attached to every payment."""
    payload = copy.deepcopy(order)
    if not split:
        return payload

    rules = [rule.to_payload() for rule in split]
    for payment in payload.get("payments", []):
        payment["split"] = copy.deepcopy(rules)
    return payload
