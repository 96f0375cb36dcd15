"""
Outbox job handlers.

Each handler implements the JobHandler protocol: it declares the payload
schema it accepts and turns one payload into one side effect on an external
service. Delivery is at-least-once, so every handler is idempotent on a
natural key from its payload (campaign + contact, order id, quote id,
event id).
"""

import html
import logging
import re
from datetime import UTC, datetime

from salesops.infra.integrations import (
    ContactDirectoryClient,
    EmailClient,
    IntegrationError,
    WebhookClient,
    ZohoBooksClient,
)
from salesops.v1.outbox.schemas import (
    DeliverWebhookPayload,
    HandlerResult,
    OfferRecipient,
    OrderLineItem,
    SendOfferEmailPayload,
    ZohoCreateQuotePayload,
    ZohoSyncOrderPayload,
)

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _failure(error: IntegrationError) -> HandlerResult:
    if error.retryable:
        return HandlerResult.retry(error.message)
    return HandlerResult.permanent(error.message)


def _line_items(items: list[OrderLineItem]) -> list[dict]:
    return [
        {
            "item_id": item.product_code,
            "name": item.description,
            "description": item.description,
            "rate": item.unit_price,
            "quantity": item.quantity,
        }
        for item in items
    ]


class SendOfferEmailHandler:
    """
    Send an offer email to each recipient of the payload.

    Payload expected:
    {
        "recipients": [{"contact_id": "...", "email": "...", "full_name": "..."}],
        "contact_ids": ["..."],  # looked up in the contact directory
        "offer_key": "machine_solutions",
        "campaign_key": "website_lead_capture",
        "offer_url": "https://..."  # optional
    }

    The provider deduplicates on an Idempotency-Key built from the campaign
    and contact, so re-running a partially sent job only sends what is left.
    Contacts who have unsubscribed are skipped.
    """

    payload_model = SendOfferEmailPayload

    def __init__(
        self, client: EmailClient, contacts: ContactDirectoryClient | None = None
    ):
        self.client = client
        self.contacts = contacts

    def _render(self, payload: SendOfferEmailPayload, name: str | None) -> str:
        greeting = f"Hi {html.escape(name)}," if name else "Hello,"
        parts = [f"<p>{greeting}</p>"]
        if payload.custom_message:
            parts.append(f"<p>{html.escape(payload.custom_message)}</p>")
        if payload.offer_url:
            url = html.escape(payload.offer_url, quote=True)
            parts.append(f'<p><a href="{url}">View your offer</a></p>')
        return "\n".join(parts)

    async def _resolve(self, recipient: OfferRecipient) -> OfferRecipient | None:
        """Fill in address and name from the directory. None if unsubscribed."""
        if recipient.email:
            return recipient

        if self.contacts is None or not self.contacts.is_configured():
            raise IntegrationError(
                f"Contact directory is not configured; cannot resolve {recipient.contact_id}"
            )

        contact = await self.contacts.get_contact(recipient.contact_id)
        if contact.get("marketing_status") == "unsubscribed":
            return None
        return OfferRecipient(
            contact_id=recipient.contact_id,
            email=contact.get("email"),
            full_name=recipient.full_name or contact.get("full_name"),
        )

    async def handle(self, payload: SendOfferEmailPayload) -> HandlerResult:
        campaign = payload.campaign_key or payload.offer_key
        subject = payload.subject or "Your offer from our sales team"
        sent: list[str] = []
        unsubscribed: list[str] = []

        for listed in payload.all_recipients():
            try:
                recipient = await self._resolve(listed)
            except IntegrationError as e:
                logger.warning(
                    "Contact lookup failed",
                    extra={"contact_id": listed.contact_id, "error": e.message},
                )
                return _failure(e)

            if recipient is None:
                unsubscribed.append(listed.contact_id)
                continue

            if not recipient.email or not EMAIL_PATTERN.match(recipient.email):
                return HandlerResult.permanent(
                    f"Malformed recipient address for contact {recipient.contact_id}: "
                    f"{recipient.email!r}"
                )

            try:
                message_id = await self.client.send(
                    to=recipient.email,
                    subject=subject,
                    html=self._render(payload, recipient.full_name),
                    idempotency_key=f"offer:{campaign}:{recipient.contact_id}",
                    tags={"offer_key": payload.offer_key, "campaign_key": campaign},
                )
            except IntegrationError as e:
                logger.warning(
                    "Offer email send failed",
                    extra={
                        "contact_id": recipient.contact_id,
                        "campaign_key": campaign,
                        "error": e.message,
                    },
                )
                return _failure(e)

            sent.append(message_id)

        logger.info(
            "Offer emails sent",
            extra={
                "campaign_key": campaign,
                "sent_count": len(sent),
                "unsubscribed_count": len(unsubscribed),
            },
        )
        if unsubscribed:
            return HandlerResult.ok(message_ids=sent, unsubscribed=unsubscribed)
        return HandlerResult.ok(message_ids=sent)


class ZohoSyncOrderHandler:
    """
    Create the Zoho Books invoice for a paid order and record its payment.

    Looks the invoice up by reference_number (the order id) before creating
    one, and skips the payment when the invoice is already paid.
    """

    payload_model = ZohoSyncOrderPayload

    def __init__(self, client: ZohoBooksClient):
        self.client = client

    async def handle(self, payload: ZohoSyncOrderPayload) -> HandlerResult:
        if not self.client.is_configured():
            logger.info(
                "Zoho not configured, skipping order sync",
                extra={"order_id": payload.order_id},
            )
            return HandlerResult.ok(skipped="zoho_not_configured")

        try:
            invoice = await self.client.find_invoice(payload.order_id)
            if invoice is None:
                invoice = await self.client.create_invoice(
                    customer_id=payload.zoho_customer_id,
                    reference_number=payload.order_id,
                    line_items=_line_items(payload.items),
                    currency_code=payload.currency,
                )

            payment_id = None
            if invoice.get("status") != "paid":
                payment = await self.client.record_payment(
                    customer_id=payload.zoho_customer_id,
                    invoice_id=invoice["invoice_id"],
                    amount=payload.total,
                    payment_date=datetime.now(UTC).date().isoformat(),
                    reference=payload.payment_reference,
                )
                payment_id = payment.get("payment_id")
        except IntegrationError as e:
            logger.warning(
                "Zoho order sync failed",
                extra={"order_id": payload.order_id, "error": e.message},
            )
            return _failure(e)

        logger.info(
            "Order synced to Zoho",
            extra={"order_id": payload.order_id, "invoice_id": invoice["invoice_id"]},
        )
        return HandlerResult.ok(
            zoho_invoice_id=invoice["invoice_id"],
            zoho_invoice_number=invoice.get("invoice_number"),
            zoho_payment_id=payment_id,
        )


class ZohoCreateQuoteHandler:
    """Create the Zoho Books estimate for a quote, once per quote_id."""

    payload_model = ZohoCreateQuotePayload

    def __init__(self, client: ZohoBooksClient):
        self.client = client

    async def handle(self, payload: ZohoCreateQuotePayload) -> HandlerResult:
        if not self.client.is_configured():
            return HandlerResult.retry("Zoho Books is not configured")

        try:
            estimate = await self.client.find_estimate(payload.quote_id)
            if estimate is None:
                estimate = await self.client.create_estimate(
                    customer_id=payload.zoho_customer_id,
                    reference_number=payload.quote_id,
                    line_items=_line_items(payload.items),
                    currency_code=payload.currency,
                    notes=payload.notes,
                    expiry_date=payload.expiry_date,
                )
        except IntegrationError as e:
            return _failure(e)

        return HandlerResult.ok(
            zoho_estimate_id=estimate["estimate_id"],
            zoho_estimate_number=estimate.get("estimate_number"),
        )


class DeliverWebhookHandler:
    """POST an event to a webhook URL with its event_id as Idempotency-Key."""

    payload_model = DeliverWebhookPayload

    def __init__(self, client: WebhookClient):
        self.client = client

    async def handle(self, payload: DeliverWebhookPayload) -> HandlerResult:
        try:
            await self.client.deliver(
                payload.url, payload.event, payload.event_id, payload.data
            )
        except IntegrationError as e:
            return _failure(e)
        return HandlerResult.ok(event_id=payload.event_id)
