"""
Async client for the external invoicing (stamping) provider.

Every failure leaves this module as a ProviderError whose `retryable` flag
drives the submission queue: timeouts, transport errors, 429 and 5xx are
worth another attempt; any other 4xx is a terminal rejection.
"""

import time
from typing import Any, Optional

import httpx
import structlog

from app.errors import ProviderError
from app.models.enums import RenditionFormat
from app.observability.metrics import provider_latency_seconds
from app.schemas.invoices import InvoiceDraft, ProviderInvoice

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS = {408, 425, 429}


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRYABLE_STATUS or status_code >= 500


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)[:200]
    return str(body)[:200]


class ProviderClient:
    """Thin wrapper over httpx.AsyncClient with error classification."""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str],
        timeout: float = 30.0,
        rendition_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout = timeout
        self._rendition_timeout = rendition_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"Accept": "application/json"}
            if self._api_key:
                headers["Authorization"] = f"Bearer {self._api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=httpx.Timeout(self._timeout),
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "ProviderClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    # ── Operations ───────────────────────────────────────────

    async def submit(self, draft: InvoiceDraft) -> ProviderInvoice:
        """Create and stamp an invoice. The draft's series/folio are sent as-is."""
        response = await self._request(
            "submit", "POST", "/v2/invoices", json=draft.to_provider_payload()
        )
        data = response.json()
        invoice = ProviderInvoice(
            provider_invoice_id=str(data["id"]),
            stamp=data.get("stamp"),
            series=data.get("series", draft.series),
            folio_number=data.get("folio_number", draft.folio),
            total=data.get("total"),
        )
        logger.info(
            "provider_invoice_created",
            provider_invoice_id=invoice.provider_invoice_id,
            series=invoice.series,
            folio=invoice.folio_number,
        )
        return invoice

    async def fetch_rendition(self, provider_invoice_id: str, fmt: RenditionFormat) -> bytes:
        response = await self._request(
            f"fetch_{fmt.value}",
            "GET",
            f"/v2/invoices/{provider_invoice_id}/{fmt.value}",
            timeout=self._rendition_timeout,
        )
        return response.content

    async def health_check(self) -> bool:
        try:
            response = await self._get_client().get("/v2/customers", params={"limit": 1})
        except httpx.HTTPError:
            return False
        return response.status_code < 500

    # ── Internals ────────────────────────────────────────────

    async def _request(self, operation: str, method: str, url: str, **kwargs) -> httpx.Response:
        client = self._get_client()
        start = time.perf_counter()
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderError(f"Provider timeout during {operation}: {e}", retryable=True) from e
        except httpx.TransportError as e:
            raise ProviderError(
                f"Provider unreachable during {operation}: {type(e).__name__}: {e}",
                retryable=True,
            ) from e
        finally:
            provider_latency_seconds.labels(operation=operation).observe(
                time.perf_counter() - start
            )

        if response.is_success:
            return response

        retryable = is_retryable_status(response.status_code)
        message = f"Provider returned {response.status_code} on {operation}: {_error_message(response)}"
        logger.warning(
            "provider_call_failed",
            operation=operation,
            status_code=response.status_code,
            retryable=retryable,
        )
        raise ProviderError(message, retryable=retryable, status_code=response.status_code)
