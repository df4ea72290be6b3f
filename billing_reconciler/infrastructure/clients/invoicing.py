"""Invoicing provider HTTP client (Stripe REST API) for hosted invoices"""

import logging
from typing import Any, Dict, Optional

import httpx

from billing_reconciler.config import settings
from billing_reconciler.domain.exceptions import ExternalDependencyError
from billing_reconciler.infrastructure.observability.metrics import external_call_latency_histogram

logger = logging.getLogger(__name__)


def _form_metadata(metadata: Dict[str, Any]) -> Dict[str, str]:
    """Flatten metadata into the provider's bracketed form encoding"""
    return {f"metadata[{key}]": str(value) for key, value in metadata.items() if value is not None}


class InvoicingClient:
    """Client for the external invoicing provider"""

    def __init__(
        self,
        base_url: str | None = None,
        secret_key: str | None = None,
        timeout: float | None = None,
        currency: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.invoicing_api_base).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else settings.invoicing_secret_key
        self.timeout = timeout or settings.http_timeout_seconds
        self.currency = currency or settings.invoicing_currency
        self.transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.secret_key)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers={"Authorization": f"Bearer {self.secret_key}"},
            transport=self.transport,
        )

    async def _post(self, client: httpx.AsyncClient, path: str, data: Dict[str, Any] | None = None) -> Dict[str, Any]:
        with external_call_latency_histogram.labels(provider="invoicing").time():
            response = await client.post(path, data=data)
        response.raise_for_status()
        return response.json()

    async def create_invoice(
        self,
        customer_ref: str,
        amount_cents: int,
        description: str,
        due_days: int,
        metadata: Dict[str, Any] | None = None,
    ) -> Optional[str]:
        """
        Create, finalize and send a hosted invoice for a single line item.

        Flow:
        1. Create a pending invoice item for the customer
        2. Create a send_invoice invoice that picks the item up
        3. Finalize and send it

        Returns:
            Invoice id, or None when the provider is not configured

        Raises:
            ExternalDependencyError: On timeout, HTTP errors, or invalid response
        """
        if not self.configured:
            logger.warning("Invoicing provider not configured - skipping invoice creation")
            return None

        meta = _form_metadata(metadata or {})
        async with self._client() as client:
            try:
                await self._post(
                    client,
                    "/invoiceitems",
                    {
                        "customer": customer_ref,
                        "amount": amount_cents,
                        "currency": self.currency,
                        "description": description,
                        **meta,
                    },
                )
                invoice = await self._post(
                    client,
                    "/invoices",
                    {
                        "customer": customer_ref,
                        "collection_method": "send_invoice",
                        "days_until_due": max(0, due_days),
                        "description": description,
                        "auto_advance": "false",
                        "pending_invoice_items_behavior": "include",
                        **meta,
                    },
                )
                invoice_id = invoice["id"]
                finalized = await self._post(client, f"/invoices/{invoice_id}/finalize")
                await self._post(client, f"/invoices/{finalized['id']}/send")
                return finalized["id"]

            except httpx.TimeoutException as e:
                raise ExternalDependencyError(f"Invoicing provider timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise ExternalDependencyError(f"Invoicing provider error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise ExternalDependencyError(f"Invoicing provider unreachable: {e}") from e
            except (KeyError, ValueError, TypeError) as e:
                raise ExternalDependencyError(f"Invalid invoice data from provider: {e}") from e

    async def get_hosted_payment_link(self, invoice_id: str) -> Optional[str]:
        """
        Fetch the hosted payment page URL for an invoice.

        Returns:
            URL, or None when not configured or the invoice has no hosted page
        """
        if not self.configured:
            return None

        async with self._client() as client:
            try:
                with external_call_latency_histogram.labels(provider="invoicing").time():
                    response = await client.get(f"/invoices/{invoice_id}")
                response.raise_for_status()
                return response.json().get("hosted_invoice_url") or None

            except httpx.TimeoutException as e:
                raise ExternalDependencyError(f"Invoicing provider timeout after {self.timeout}s") from e
            except httpx.HTTPStatusError as e:
                raise ExternalDependencyError(f"Invoicing provider error: {e.response.status_code}") from e
            except httpx.RequestError as e:
                raise ExternalDependencyError(f"Invoicing provider unreachable: {e}") from e
            except ValueError as e:
                raise ExternalDependencyError(f"Invalid invoice data from provider: {e}") from e
