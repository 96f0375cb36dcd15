"""
Outbox handler registration.

Registers every job handler with the global job registry.
"""

import logging

from salesops.config.settings import Settings, settings
from salesops.infra.integrations import (
    ContactDirectoryClient,
    EmailClient,
    WebhookClient,
    ZohoBooksClient,
)
from salesops.v1.core.registries import JobRegistry, job_registry
from salesops.v1.outbox.handlers import (
    DeliverWebhookHandler,
    SendOfferEmailHandler,
    ZohoCreateQuoteHandler,
    ZohoSyncOrderHandler,
)

logger = logging.getLogger(__name__)

SEND_OFFER_EMAIL = "send_offer_email"
ZOHO_SYNC_ORDER = "zoho_sync_order"
ZOHO_CREATE_QUOTE = "zoho_create_quote"
DELIVER_WEBHOOK = "deliver_webhook"


def register_job_handlers(
    registry: JobRegistry = job_registry, config: Settings = settings
) -> None:
    """Register all job handlers with the job registry."""

    logger.info("Registering job handlers")

    # Email handlers
    registry.register(
        SEND_OFFER_EMAIL,
        SendOfferEmailHandler(
            EmailClient.from_settings(config),
            ContactDirectoryClient.from_settings(config),
        ),
    )

    # Accounting sync handlers share one Zoho client
    zoho = ZohoBooksClient.from_settings(config)
    registry.register(ZOHO_SYNC_ORDER, ZohoSyncOrderHandler(zoho))
    registry.register(ZOHO_CREATE_QUOTE, ZohoCreateQuoteHandler(zoho))

    registry.register(
        DELIVER_WEBHOOK, DeliverWebhookHandler(WebhookClient.from_settings(config))
    )

    logger.info(
        "Job handlers registered", extra={"registered_handlers": registry.list()}
    )
