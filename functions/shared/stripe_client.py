"""
Stripe provider client.

Constructed once by the entry point with explicit credentials and passed to
the router; nothing here touches the module-level ``stripe.api_key``.
"""

import json
import logging
import time

import stripe

from shared.constants import SUBSCRIPTION_EXPAND
from shared.errors import ConfigurationError, ProviderError, SignatureInvalid
from shared.logging_utils import log_external_call

logger = logging.getLogger(__name__)


class StripeProvider:
    """Verifies inbound events and re-fetches subscriptions from Stripe."""

    def __init__(self, api_key: str | None, webhook_secret: str | None, price_to_tier: dict[str, str] | None = None):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.price_to_tier = dict(price_to_tier or {})

    def verify_event(self, payload: str, signature: str | None) -> dict:
        """Authenticate a raw webhook body and return the decoded event.

        The payload must be the exact body as received. Signature comparison is
        done by the SDK in constant time.

        Raises:
            ConfigurationError: webhook secret is not configured
            SignatureInvalid: signature missing, mismatched, expired or body undecodable
        """
        if not self.webhook_secret:
            raise ConfigurationError("Webhook not configured")

        if not signature:
            raise SignatureInvalid("missing signature header")

        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Invalid Stripe signature: {e}")
            raise SignatureInvalid("signature mismatch") from e
        except ValueError as e:
            logger.warning(f"Undecodable webhook payload: {e}")
            raise SignatureInvalid("invalid payload") from e

        # Signature covers these exact bytes, so decoding them is safe
        return json.loads(payload)

    def retrieve_subscription(self, subscription_id: str) -> dict:
        """Re-fetch a subscription with its payment method and latest invoice.

        Raises:
            ProviderError: any Stripe failure, so the webhook is re-delivered
        """
        if not self.api_key:
            raise ConfigurationError("Stripe not configured")
        if not subscription_id:
            raise ProviderError("No subscription id to retrieve")

        start = time.time()
        try:
            subscription = stripe.Subscription.retrieve(
                subscription_id,
                expand=SUBSCRIPTION_EXPAND,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            log_external_call(
                logger, "stripe", "subscriptions.retrieve", False, (time.time() - start) * 1000, error=str(e)
            )
            raise ProviderError(f"Failed to retrieve subscription {subscription_id}: {e}") from e

        log_external_call(logger, "stripe", "subscriptions.retrieve", True, (time.time() - start) * 1000)
        # StripeObject is not a dict; handlers read plain nested dicts
        return subscription.to_dict()

    def tier_for_subscription(self, subscription) -> str | None:
        """Resolve the tier of a subscription.

        The price on the first item wins because metadata is written at checkout
        and does not follow plan switches. Falls back to the tierId metadata.
        """
        items = (subscription.get("items") or {}).get("data") or []
        if items:
            price = items[0].get("price") or {}
            tier = self.price_to_tier.get(price.get("id"))
            if tier:
                return tier

        metadata = subscription.get("metadata") or {}
        return metadata.get("tierId") or None
