"""HTTP clients for the services outbox handlers talk to."""

from typing import Any

import httpx

from salesops.config.settings import Settings

RETRYABLE_STATUS_CODES = {408, 425, 429}


class IntegrationError(Exception):
    """Base exception for collaborator API errors"""

    def __init__(self, message: str, retryable: bool = True, status_code: int | None = None):
        self.message = message
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(message)


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


class BaseHTTPClient:
    """Async HTTP client with uniform error classification"""

    service_name = "service"

    def __init__(
        self,
        base_url: str = "",
        timeout: float = 20.0,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.default_headers = headers or {}
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=self.default_headers,
            transport=transport,
        )

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self) -> None:
        await self.client.aclose()

    def _handle_response(self, response: httpx.Response) -> dict[str, Any]:
        """Raise IntegrationError on failure, return the decoded body otherwise"""
        if response.status_code >= 400:
            detail = response.text[:500]
            raise IntegrationError(
                f"{self.service_name} returned {response.status_code}: {detail}",
                retryable=is_retryable_status(response.status_code),
                status_code=response.status_code,
            )

        if not response.content:
            return {}

        try:
            return response.json()
        except ValueError:
            raise IntegrationError(
                f"{self.service_name} returned invalid JSON ({response.status_code})"
            ) from None

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self.client.request(
                method, path, params=params, json=json, headers=headers
            )
        except httpx.TimeoutException as e:
            raise IntegrationError(f"{self.service_name} timed out: {e}") from None
        except httpx.RequestError as e:
            raise IntegrationError(f"{self.service_name} connection failed: {e}") from None
        return self._handle_response(response)


class EmailClient(BaseHTTPClient):
    """Transactional email API (Resend-compatible)"""

    service_name = "email API"

    def __init__(
        self,
        api_url: str,
        api_key: str | None,
        sender: str,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        super().__init__("", timeout=timeout, headers=headers, transport=transport)
        self.api_url = api_url
        self.sender = sender

    @classmethod
    def from_settings(cls, settings: Settings) -> "EmailClient":
        return cls(
            api_url=settings.email_api_url,
            api_key=settings.email_api_key,
            sender=settings.email_from,
            timeout=settings.integration_timeout_s,
        )

    async def send(
        self,
        to: str,
        subject: str,
        html: str,
        idempotency_key: str,
        tags: dict[str, str] | None = None,
    ) -> str:
        """Send one message; the provider dedupes on idempotency_key."""
        body: dict[str, Any] = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if tags:
            body["tags"] = [{"name": k, "value": v} for k, v in tags.items()]

        data = await self.request(
            "POST",
            self.api_url,
            json=body,
            headers={"Idempotency-Key": idempotency_key},
        )
        return str(data.get("id", ""))


class ZohoBooksClient(BaseHTTPClient):
    """Zoho Books invoices, payments and estimates"""

    service_name = "Zoho Books"

    def __init__(
        self,
        api_base: str,
        access_token: str | None,
        organization_id: str | None,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = (
            {"Authorization": f"Zoho-oauthtoken {access_token}"} if access_token else {}
        )
        super().__init__(api_base, timeout=timeout, headers=headers, transport=transport)
        self.organization_id = organization_id

    @classmethod
    def from_settings(cls, settings: Settings) -> "ZohoBooksClient":
        return cls(
            api_base=settings.zoho_api_base,
            access_token=settings.zoho_access_token,
            organization_id=settings.zoho_organization_id,
            timeout=settings.integration_timeout_s,
        )

    def is_configured(self) -> bool:
        return bool(self.organization_id and "Authorization" in self.default_headers)

    def _params(self, **extra: Any) -> dict[str, Any]:
        return {"organization_id": self.organization_id, **extra}

    async def find_invoice(self, reference_number: str) -> dict[str, Any] | None:
        data = await self.request(
            "GET", "/invoices", params=self._params(reference_number=reference_number)
        )
        invoices = data.get("invoices") or []
        return invoices[0] if invoices else None

    async def create_invoice(
        self,
        customer_id: str,
        reference_number: str,
        line_items: list[dict[str, Any]],
        currency_code: str,
    ) -> dict[str, Any]:
        data = await self.request(
            "POST",
            "/invoices",
            params=self._params(),
            json={
                "customer_id": customer_id,
                "reference_number": reference_number,
                "currency_code": currency_code,
                "line_items": line_items,
            },
        )
        return data["invoice"]

    async def record_payment(
        self,
        customer_id: str,
        invoice_id: str,
        amount: float,
        payment_date: str,
        reference: str | None,
        payment_mode: str = "stripe",
    ) -> dict[str, Any]:
        data = await self.request(
            "POST",
            "/customerpayments",
            params=self._params(),
            json={
                "customer_id": customer_id,
                "payment_mode": payment_mode,
                "amount": amount,
                "date": payment_date,
                "reference_number": reference,
                "invoices": [{"invoice_id": invoice_id, "amount_applied": amount}],
            },
        )
        return data["payment"]

    async def find_estimate(self, reference_number: str) -> dict[str, Any] | None:
        data = await self.request(
            "GET", "/estimates", params=self._params(reference_number=reference_number)
        )
        estimates = data.get("estimates") or []
        return estimates[0] if estimates else None

    async def create_estimate(
        self,
        customer_id: str,
        reference_number: str,
        line_items: list[dict[str, Any]],
        currency_code: str,
        notes: str | None = None,
        expiry_date: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "customer_id": customer_id,
            "reference_number": reference_number,
            "currency_code": currency_code,
            "line_items": line_items,
        }
        if notes:
            body["notes"] = notes
        if expiry_date:
            body["expiry_date"] = expiry_date
        data = await self.request("POST", "/estimates", params=self._params(), json=body)
        return data["estimate"]


class WebhookClient(BaseHTTPClient):
    """Outbound webhook deliveries to arbitrary URLs"""

    service_name = "webhook target"

    def __init__(
        self, timeout: float = 20.0, transport: httpx.AsyncBaseTransport | None = None
    ):
        super().__init__(
            "",
            timeout=timeout,
            headers={"User-Agent": "salesops-outbox/1.0"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "WebhookClient":
        return cls(timeout=settings.integration_timeout_s)

    async def deliver(
        self, url: str, event: str, event_id: str, data: dict[str, Any]
    ) -> dict[str, Any]:
        return await self.request(
            "POST",
            url,
            json={"event": event, "event_id": event_id, "data": data},
            headers={"Idempotency-Key": event_id, "X-Event-Type": event},
        )


class ContactDirectoryClient(BaseHTTPClient):
    """CRM contact lookups for jobs enqueued with contact ids only"""

    service_name = "contact directory"

    def __init__(
        self,
        api_base: str | None,
        api_token: str | None = None,
        timeout: float = 20.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        headers = {"Authorization": f"Bearer {api_token}"} if api_token else {}
        super().__init__(
            api_base or "", timeout=timeout, headers=headers, transport=transport
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "ContactDirectoryClient":
        return cls(
            api_base=settings.crm_api_base,
            api_token=settings.crm_api_token,
            timeout=settings.integration_timeout_s,
        )

    def is_configured(self) -> bool:
        return bool(self.base_url)

    async def get_contact(self, contact_id: str) -> dict[str, Any]:
        """Fetch one contact; an unknown id raises a non-retryable 404."""
        data = await self.request("GET", f"/contacts/{contact_id}")
        return data.get("contact", data)
