"""
Outbox Pydantic schemas: handler payloads, handler results and admin API models.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from salesops.v1.outbox.models import JobStatus

# Handler results


class HandlerResult(BaseModel):
    """Outcome of a single handler execution."""

    success: bool
    error: str | None = None
    retryable: bool = Field(
        default=True, description="False dead-letters the job immediately"
    )
    data: dict[str, Any] | None = Field(
        default=None, description="Handler output, logged but not persisted"
    )

    @classmethod
    def ok(cls, **data: Any) -> "HandlerResult":
        return cls(success=True, data=data or None)

    @classmethod
    def retry(cls, error: str) -> "HandlerResult":
        return cls(success=False, error=error, retryable=True)

    @classmethod
    def permanent(cls, error: str) -> "HandlerResult":
        return cls(success=False, error=error, retryable=False)


# Job payloads, one model per job type


class OfferRecipient(BaseModel):
    contact_id: str
    email: str | None = None
    full_name: str | None = None


class SendOfferEmailPayload(BaseModel):
    """
    Payload for ``send_offer_email``.

    Enqueued by offer requests, lead capture, reorder reminders and admin
    offer sends. ``contact_id`` is shorthand for a single recipient and
    ``contact_ids`` is what lead capture enqueues; recipients given by id
    only are looked up in the contact directory when the job runs.
    """

    contact_id: str | None = None
    contact_ids: list[str] = Field(default_factory=list)
    recipients: list[OfferRecipient] = Field(default_factory=list)
    company_id: str | None = None
    company_name: str | None = None
    offer_key: str = "default"
    campaign_key: str | None = None
    offer_url: str | None = None
    subject: str | None = None
    custom_message: str | None = None

    @model_validator(mode="after")
    def _require_recipient(self) -> "SendOfferEmailPayload":
        if not (self.contact_id or self.contact_ids or self.recipients):
            raise ValueError("contact_id, contact_ids or recipients is required")
        return self

    def all_recipients(self) -> list[OfferRecipient]:
        """Explicit recipients first, then bare ids, one entry per contact."""
        recipients: dict[str, OfferRecipient] = {}
        for recipient in self.recipients:
            recipients.setdefault(recipient.contact_id, recipient)
        for contact_id in [self.contact_id, *self.contact_ids]:
            if contact_id and contact_id not in recipients:
                recipients[contact_id] = OfferRecipient(contact_id=contact_id)
        return list(recipients.values())


class OrderLineItem(BaseModel):
    product_code: str
    description: str
    quantity: float = Field(gt=0)
    unit_price: float = Field(ge=0)


class ZohoSyncOrderPayload(BaseModel):
    """Payload for ``zoho_sync_order``; idempotent on ``order_id``."""

    order_id: str
    company_id: str
    zoho_customer_id: str
    items: list[OrderLineItem] = Field(min_length=1)
    total: float = Field(ge=0)
    currency: str = "GBP"
    payment_reference: str | None = None


class ZohoCreateQuotePayload(BaseModel):
    """Payload for ``zoho_create_quote``; idempotent on ``quote_id``."""

    quote_id: str
    company_id: str
    zoho_customer_id: str
    items: list[OrderLineItem] = Field(min_length=1)
    currency: str = "GBP"
    notes: str | None = None
    expiry_date: str | None = None


class DeliverWebhookPayload(BaseModel):
    """Payload for ``deliver_webhook``; idempotent on ``event_id``."""

    url: str
    event: str
    event_id: str
    data: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _require_http_url(self) -> "DeliverWebhookPayload":
        if not self.url.startswith(("http://", "https://")):
            raise ValueError(f"url must be http(s), got: {self.url}")
        return self


# Admin API


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    job_id: UUID
    job_type: str
    payload: dict[str, Any]
    status: str
    attempts: int
    max_attempts: int
    created_at: datetime
    scheduled_for: datetime
    locked_until: datetime | None = None
    locked_by: str | None = None
    last_error: str | None = None
    completed_at: datetime | None = None


class JobListFilters(BaseModel):
    """Schema for job listing filters."""

    status: list[JobStatus] | None = Field(
        default=None, description="Filter by job status"
    )
    job_type: str | None = Field(default=None, description="Filter by job type")
    page: int = Field(default=1, ge=1, description="1-based page number")
    page_size: int = Field(default=50, ge=1, le=500, description="Results per page")

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    page: int
    page_size: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # pending + processing
    due_now: int
    expired_leases: int
    failed_last_hour: int


class JobRetryRequest(BaseModel):
    """Schema for a single retry."""

    reset_attempts: bool = Field(
        default=False, description="Start the attempt count over from zero"
    )


class JobActionRequest(BaseModel):
    """Schema for batch job actions."""

    job_ids: list[UUID] = Field(..., min_length=1, description="Job IDs to act upon")
    reset_attempts: bool = False


class JobActionResponse(BaseModel):
    """Schema for job action responses."""

    success_ids: list[UUID]
    failed_ids: list[UUID]
    errors: dict[str, str]  # job_id -> error message


class OutboxRunResponse(BaseModel):
    """Counts reported by a cron-triggered drain."""

    processed: int
    completed: int
    retried: int
    dead_lettered: int
    skipped: int
    duration_ms: int
