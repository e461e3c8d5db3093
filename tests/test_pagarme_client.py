"""
Pagarme client tests
====================
Key validation, auth, retry of transient failures and error mapping, all
against ``httpx.MockTransport``.
"""

import base64
import json

import httpx
import pytest

from likeme.clients.pagarme import (
    PagarmeClient,
    PagarmeTransientError,
    PaymentError,
    build_order_payload,
    mask_key,
)
from likeme.services.payment_split import SplitRule

API_KEY = "sk_test_abcdefghijklmnopqrstuvwxyz"


def make_client(handler, **kwargs) -> PagarmeClient:
    return PagarmeClient(
        api_key=API_KEY,
        base_url="https://api.test/core/v5",
        transport=httpx.MockTransport(handler),
        backoff_multiplier=0,
        **kwargs,
    )


class TestKeyValidation:
    def test_missing_key(self, monkeypatch):
        from likeme.config import settings

        monkeypatch.setattr(settings.pagarme, "api_key", None)
        with pytest.raises(PaymentError, match="not configured"):
            PagarmeClient()

    def test_public_key_rejected_without_leaking_it(self):
        public_key = "pk_test_0123456789abcdefghijXYZW"
        with pytest.raises(PaymentError) as exc_info:
            PagarmeClient(api_key=public_key)

        message = str(exc_info.value)
        assert "secret key" in message
        assert public_key not in message
        assert "XYZW" in message

    def test_mask_key(self):
        assert mask_key("sk_test_0123456789abcdef") == "sk_test_0123456...cdef"
        assert mask_key("sk_short") == "sk_short..."


class TestRequests:
    async def test_create_order_uses_basic_auth(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["url"] = str(request.url)
            seen["auth"] = request.headers["Authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "or_1", "status": "paid"})

        order = await make_client(handler).create_order({"items": [{"amount": 100}]})

        assert order == {"id": "or_1", "status": "paid"}
        assert seen["method"] == "POST"
        assert seen["url"] == "https://api.test/core/v5/orders"
        expected = base64.b64encode(f"{API_KEY}:".encode()).decode()
        assert seen["auth"] == f"Basic {expected}"
        assert seen["body"] == {"items": [{"amount": 100}]}

    async def test_get_recipient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/core/v5/recipients/rp_1"
            return httpx.Response(200, json={"id": "rp_1"})

        assert await make_client(handler).get_recipient("rp_1") == {"id": "rp_1"}

    async def test_retries_server_errors(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(503, json={"message": "unavailable"})
            return httpx.Response(200, json={"id": "or_2"})

        order = await make_client(handler, max_retries=3).create_order({})

        assert order["id"] == "or_2"
        assert len(calls) == 3

    async def test_retries_connection_errors_then_gives_up(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(PagarmeTransientError, match="connection failed"):
            await make_client(handler, max_retries=2).create_order({})
        assert len(calls) == 2

    async def test_client_errors_are_not_retried(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(1)
            return httpx.Response(422, json={"message": "The request is invalid.", "errors": {"items": ["required"]}})

        with pytest.raises(PaymentError) as exc_info:
            await make_client(handler).create_order({})

        assert len(calls) == 1
        assert exc_info.value.status_code == 422
        assert exc_info.value.response_body["errors"] == {"items": ["required"]}
        assert not isinstance(exc_info.value, PagarmeTransientError)

    async def test_non_json_error_body(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text="Unauthorized")

        with pytest.raises(PaymentError) as exc_info:
            await make_client(handler).create_order({})

        assert exc_info.value.response_body == {"raw": "Unauthorized"}


class TestBuildOrderPayload:
    def test_split_attached_to_every_payment(self):
        order = {"items": [], "payments": [{"payment_method": "pix"}, {"payment_method": "credit_card"}]}
        split = [SplitRule(amount=10.0, recipient_id="rp_1")]

        payload = build_order_payload(order, split)

        assert all(p["split"][0]["recipient_id"] == "rp_1" for p in payload["payments"])
        assert "split" not in order["payments"][0]

    def test_no_split(self):
        order = {"payments": [{"payment_method": "pix"}]}
        assert build_order_payload(order, None) == order
