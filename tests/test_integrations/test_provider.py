"""
Tests for the provider client's error classification, using httpx.MockTransport.
"""

import json
from decimal import Decimal

import httpx
import pytest

from app.errors import ProviderError
from app.integrations.provider import ProviderClient, is_retryable_status
from app.models.enums import RenditionFormat
from app.schemas.invoices import InvoiceDraft, LineItem, TaxRate


def draft() -> InvoiceDraft:
    return InvoiceDraft(
        tenant_id="tenant-1",
        customer_id="cus_sos",
        series="A",
        folio=800,
        lines=[LineItem(unit_price=Decimal("1000.00"), taxes=[TaxRate(rate=Decimal("0.16"))])],
    )


def client_for(handler) -> ProviderClient:
    return ProviderClient(
        "https://provider.test", api_key="sk_test", transport=httpx.MockTransport(handler)
    )


class TestRetryableStatus:

    @pytest.mark.parametrize("code", [408, 425, 429, 500, 502, 503, 504])
    def test_retryable(self, code):
        assert is_retryable_status(code)

    @pytest.mark.parametrize("code", [400, 401, 403, 404, 409, 422])
    def test_terminal(self, code):
        assert not is_retryable_status(code)


@pytest.mark.asyncio
class TestProviderClient:

    async def test_submit(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["auth"] = request.headers["Authorization"]
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"id": "inv_1", "series": "A", "folio_number": 800, "total": 1160})

        async with client_for(handler) as client:
            invoice = await client.submit(draft())

        assert invoice.provider_invoice_id == "inv_1"
        assert invoice.folio_number == 800
        assert invoice.total == Decimal("1160")
        assert seen["auth"] == "Bearer sk_test"
        assert seen["path"] == "/v2/invoices"
        assert seen["body"]["folio_number"] == 800
        assert seen["body"]["series"] == "A"

    async def test_server_error_is_retryable(self):
        async with client_for(lambda r: httpx.Response(503, json={"message": "down"})) as client:
            with pytest.raises(ProviderError) as exc_info:
                await client.submit(draft())
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 503
        assert "down" in exc_info.value.message

    async def test_rate_limit_is_retryable(self):
        async with client_for(lambda r: httpx.Response(429, text="slow down")) as client:
            with pytest.raises(ProviderError) as exc_info:
                await client.submit(draft())
        assert exc_info.value.retryable is True

    async def test_validation_error_is_terminal(self):
        body = {"message": "customer RFC is invalid"}
        async with client_for(lambda r: httpx.Response(422, json=body)) as client:
            with pytest.raises(ProviderError) as exc_info:
                await client.submit(draft())
        assert exc_info.value.retryable is False
        assert "customer RFC is invalid" in exc_info.value.message

    async def test_transport_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with client_for(handler) as client:
            with pytest.raises(ProviderError) as exc_info:
                await client.submit(draft())
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code is None

    async def test_timeout_is_retryable(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with client_for(handler) as client:
            with pytest.raises(ProviderError) as exc_info:
                await client.submit(draft())
        assert exc_info.value.retryable is True

    async def test_fetch_rendition(self):
        def handler(request):
            assert request.url.path == "/v2/invoices/inv_1/xml"
            return httpx.Response(200, content=b"<cfdi/>")

        async with client_for(handler) as client:
            assert await client.fetch_rendition("inv_1", RenditionFormat.XML) == b"<cfdi/>"
