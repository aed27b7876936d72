"""
Stripe Webhook Endpoint - /webhooks/stripe

POST: verify the Stripe signature, parse the event, route it to its
reconciliation handler, log it and acknowledge.
GET: informational description of the endpoint.

Uses Stripe signature verification instead of API key auth.
"""

import base64
import logging
import time

from shared.billing_utils import get_price_to_tier, get_stripe_secrets
from shared.constants import PROVIDER_EVENT_TYPES
from shared.errors import ConfigurationError, MissingMetadata, RetryableError, SignatureInvalid
from shared.event_log import EventLog
from shared.events import parse_event
from shared.logging_utils import configure_structured_logging, log_api_request, set_event_id, set_request_id
from shared.notifications import SubscriptionNotifier
from shared.promotions import EarlyPurchaserPromotion
from shared.reconciliation import EventRouter
from shared.response_utils import acknowledged_response, error_response, json_response
from shared.stripe_client import StripeProvider
from shared.subscription_store import SubscriptionStore

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

WEBHOOK_PATH = "/webhooks/stripe"
SIGNATURE_HEADER = "stripe-signature"


def build_router(provider: StripeProvider) -> EventRouter:
    """Wire the router and its collaborators for one invocation."""
    return EventRouter(
        store=SubscriptionStore(),
        provider=provider,
        promotion=EarlyPurchaserPromotion(),
        notifier=SubscriptionNotifier(),
    )


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - checkout.session.completed: Upgrade user tier
    - invoice.payment_succeeded: Refresh period, mark active
    - invoice.payment_failed: Mark past_due
    - customer.subscription.updated: Tier/status/period changes
    - customer.subscription.deleted: Downgrade to free
    """
    configure_structured_logging()
    set_request_id(event)
    start = time.time()

    method = (event.get("httpMethod") or event.get("requestContext", {}).get("http", {}).get("method") or "POST").upper()
    path = event.get("path") or WEBHOOK_PATH

    event_type = None
    if method == "GET":
        response = _info_response(path)
    elif method == "POST":
        response, event_type = _process_webhook(event)
    else:
        response = error_response(405, "Method not allowed")

    log_api_request(logger, method, path, response["statusCode"], (time.time() - start) * 1000, event_type)
    return response


def _process_webhook(event: dict) -> tuple[dict, str | None]:
    """Returns the response and the provider event type, when one was parsed."""
    api_key, webhook_secret = get_stripe_secrets()
    provider = StripeProvider(api_key, webhook_secret, get_price_to_tier())

    # Verify against the body exactly as received, before any JSON decoding
    try:
        payload = _raw_body(event)
        raw_event = provider.verify_event(payload, _get_header(event, SIGNATURE_HEADER))
    except SignatureInvalid as e:
        logger.warning(f"Rejected webhook: {e.reason}")
        return e.to_response(), None
    except ConfigurationError as e:
        logger.error(f"Stripe webhook secret not configured: {e.message}")
        return e.to_response(), None

    try:
        billing_event = parse_event(raw_event)
    except ValueError as e:
        # Verified but malformed; re-delivery would not change it
        logger.error(f"Unparseable Stripe event: {e}")
        return acknowledged_response(), None

    set_event_id(billing_event.event_id)
    event_type = billing_event.provider_type
    logger.info(f"Processing Stripe event: {billing_event.provider_type} (id={billing_event.event_id})")

    try:
        result = build_router(provider).route(billing_event)
    except MissingMetadata as e:
        logger.warning(f"Event {billing_event.event_id} rejected: {e.message}")
        EventLog().record_event(billing_event, "rejected")
        return acknowledged_response(), event_type
    except (RetryableError, ConfigurationError) as e:
        logger.error(f"Failed handling {billing_event.provider_type}: {e.message}")
        return e.to_response(), event_type
    except Exception as e:
        logger.error(f"Unexpected error handling {billing_event.provider_type}: {e}", exc_info=True)
        return error_response(500, "Webhook processing failed"), event_type

    EventLog().record_event(billing_event, result.outcome.value)
    logger.info(
        f"Stripe event {billing_event.event_id} {result.outcome.value}",
        extra={"outcome": result.outcome.value, "user_id": result.user_id, "detail": result.detail},
    )
    return acknowledged_response(), event_type


def _info_response(path: str) -> dict:
    _, webhook_secret = get_stripe_secrets()
    return json_response(
        200,
        {
            "endpoint": path,
            "method": "POST only",
            "purpose": "Stripe webhook receiver",
            "status": "configured" if webhook_secret else "not configured",
            "events": sorted(PROVIDER_EVENT_TYPES),
        },
    )


def _raw_body(event: dict) -> str:
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        try:
            return base64.b64decode(body).decode("utf-8")
        except ValueError as e:
            raise SignatureInvalid("invalid payload") from e
    return body


def _get_header(event: dict, name: str) -> str | None:
    """Header lookup ignoring case (API Gateway preserves the sender's casing)."""
    for key, value in (event.get("headers") or {}).items():
        if key.lower() == name:
            return value
    return None
