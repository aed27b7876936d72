"""
Event Router and reconciliation handlers.

Each recognized event type has exactly one handler. A handler maps the event
(and, where the event is thin, a freshly re-fetched subscription) onto one
absolute write in the Subscription State Store. Handlers never call each
other.

Failure policy:
- MissingMetadata is absorbed here: retrying cannot add metadata.
- PersistenceError / ProviderError propagate so the webhook answers 500 and
  the provider re-delivers.
- Side effects (promotion grant, confirmation email) run after the primary
  write has committed and never fail the event.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum

from shared.billing_utils import epoch_to_iso, map_provider_status
from shared.constants import PAID_TIERS
from shared.errors import ConfigurationError, MissingMetadata, PersistenceError, SecondaryEffectFailure
from shared.events import (
    RECOGNIZED_EVENT_TYPES,
    BillingEvent,
    CheckoutCompleted,
    EventType,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionDeleted,
    SubscriptionUpdated,
    as_id,
    period_bounds,
)
from shared.promotions import GrantOutcome
from shared.subscription_store import SubscriptionState

logger = logging.getLogger(__name__)


class RouteOutcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    REJECTED = "rejected"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class RouteResult:
    outcome: RouteOutcome
    event_type: EventType
    user_id: str | None = None
    detail: str | None = None


class EventRouter:
    """Dispatches typed events to their reconciliation handler.

    Collaborators are passed in by the process entry point:
        store: SubscriptionStore
        provider: StripeProvider (re-fetch and tier resolution)
        promotion: EarlyPurchaserPromotion or None
        notifier: SubscriptionNotifier or None
    """

    def __init__(self, store, provider, promotion=None, notifier=None):
        self.store = store
        self.provider = provider
        self.promotion = promotion
        self.notifier = notifier

        self._handlers = self._handler_table()
        missing = RECOGNIZED_EVENT_TYPES - self._handlers.keys()
        if missing:
            names = ", ".join(sorted(t.value for t in missing))
            raise ConfigurationError(f"No handler registered for: {names}")

    def _handler_table(self) -> dict:
        return {
            EventType.CHECKOUT_COMPLETED: self._handle_checkout_completed,
            EventType.INVOICE_PAYMENT_SUCCEEDED: self._handle_invoice_payment_succeeded,
            EventType.INVOICE_PAYMENT_FAILED: self._handle_invoice_payment_failed,
            EventType.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            EventType.SUBSCRIPTION_DELETED: self._handle_subscription_deleted,
        }

    def route(self, event: BillingEvent) -> RouteResult:
        """Run the single handler for ``event``.

        Unrecognized event types are skipped without touching state.
        """
        handler = self._handlers.get(event.event_type)
        if handler is None:
            logger.info(
                f"Skipping unhandled event type: {event.provider_type}",
                extra={"provider_type": event.provider_type},
            )
            return RouteResult(RouteOutcome.SKIPPED, event.event_type, detail=event.provider_type)

        try:
            return handler(event)
        except MissingMetadata as e:
            logger.warning(
                e.message,
                extra={"event_type": event.event_type.value, "missing": e.missing},
            )
            return RouteResult(RouteOutcome.REJECTED, event.event_type, detail=e.message)

    # Handlers

    def _handle_checkout_completed(self, event: CheckoutCompleted) -> RouteResult:
        missing = [name for name, value in (("userId", event.user_id), ("tierId", event.tier_id)) if not value]
        if missing:
            raise MissingMetadata(event.event_id, missing)
        if event.tier_id not in PAID_TIERS:
            raise MissingMetadata(event.event_id, ["tierId"])
        if not event.subscription_id:
            raise MissingMetadata(event.event_id, ["subscription"])

        user_id = event.user_id
        tier = event.tier_id

        # The checkout session does not carry period data
        subscription = self.provider.retrieve_subscription(event.subscription_id)
        period_start, period_end = period_bounds(subscription)
        customer_id = event.customer_id or as_id(subscription.get("customer"))

        self.store.upsert_subscription_state(
            user_id,
            tier,
            "active",
            event.subscription_id,
            customer_id,
            epoch_to_iso(period_start),
            epoch_to_iso(period_end),
        )
        logger.info(
            f"Checkout completed: {user_id} upgraded to {tier}",
            extra={"user_id": user_id, "tier": tier, "status": "active", "subscription_id": event.subscription_id},
        )

        if tier == "medium" and self.promotion is not None:
            self._grant_early_purchaser(user_id)
        if event.customer_email and self.notifier is not None:
            self._send_confirmation(user_id, event.subscription_id, event.customer_email, tier)

        return RouteResult(RouteOutcome.APPLIED, event.event_type, user_id=user_id, detail=f"tier={tier}")

    def _handle_invoice_payment_succeeded(self, event: InvoicePaymentSucceeded) -> RouteResult:
        if not event.subscription_id:
            logger.info(f"Invoice {event.invoice_id} is not tied to a subscription, skipping")
            return RouteResult(RouteOutcome.SKIPPED, event.event_type, detail="no subscription")

        subscription = self.provider.retrieve_subscription(event.subscription_id)
        state = self._state_from_subscription(event.event_id, subscription, status="active")
        self._write(state)

        logger.info(
            f"Invoice paid: {state.user_id} active on {state.tier} until {state.current_period_end}",
            extra={"user_id": state.user_id, "tier": state.tier, "status": "active"},
        )
        return RouteResult(RouteOutcome.APPLIED, event.event_type, user_id=state.user_id, detail=f"tier={state.tier}")

    def _handle_invoice_payment_failed(self, event: InvoicePaymentFailed) -> RouteResult:
        if not event.subscription_id:
            logger.info(f"Invoice {event.invoice_id} is not tied to a subscription, skipping")
            return RouteResult(RouteOutcome.SKIPPED, event.event_type, detail="no subscription")

        user_id = self.store.get_user_for_subscription(event.subscription_id)
        if not user_id:
            subscription = self.provider.retrieve_subscription(event.subscription_id)
            user_id = (subscription.get("metadata") or {}).get("userId")
        if not user_id:
            raise MissingMetadata(event.event_id, ["userId"])

        # Access continues; only the status changes
        if not self.store.mark_past_due(user_id):
            return RouteResult(RouteOutcome.NOT_FOUND, event.event_type, user_id=user_id, detail="no stored state")

        logger.warning(
            f"Payment failed for {user_id} (attempt {event.attempt_count}), marked past_due",
            extra={"user_id": user_id, "status": "past_due", "attempt_count": event.attempt_count},
        )
        return RouteResult(RouteOutcome.APPLIED, event.event_type, user_id=user_id, detail="status=past_due")

    def _handle_subscription_updated(self, event: SubscriptionUpdated) -> RouteResult:
        user_id = event.user_id or self.store.get_user_for_subscription(event.subscription_id)
        state = self._state_from_subscription(
            event.event_id,
            event.payload,
            status=map_provider_status(event.provider_status),
            user_id=user_id,
        )
        self._write(state)

        logger.info(
            f"Subscription updated: {state.user_id} tier={state.tier} status={state.status}",
            extra={
                "user_id": state.user_id,
                "tier": state.tier,
                "status": state.status,
                "provider_status": event.provider_status,
            },
        )
        return RouteResult(
            RouteOutcome.APPLIED,
            event.event_type,
            user_id=state.user_id,
            detail=f"tier={state.tier} status={state.status}",
        )

    def _handle_subscription_deleted(self, event: SubscriptionDeleted) -> RouteResult:
        user_id = event.user_id or self.store.get_user_for_subscription(event.subscription_id)
        if not user_id:
            raise MissingMetadata(event.event_id, ["userId"])

        _, period_end = period_bounds(event.payload)
        if period_end and int(period_end) > time.time():
            logger.warning(
                f"Subscription {event.subscription_id} deleted before its period end, downgrading {user_id} now",
                extra={"user_id": user_id, "period_end": epoch_to_iso(period_end)},
            )

        # Customer id is kept for resubscription
        self.store.upsert_subscription_state(user_id, "free", "canceled", None, event.customer_id, None, None)

        logger.info(
            f"Subscription deleted: {user_id} downgraded to free",
            extra={"user_id": user_id, "tier": "free", "status": "canceled"},
        )
        return RouteResult(RouteOutcome.APPLIED, event.event_type, user_id=user_id, detail="tier=free status=canceled")

    # Manual repair

    def sync_subscription(self, subscription, dry_run: bool = False) -> SubscriptionState:
        """Apply a provider subscription snapshot as if it arrived in an update event.

        Raises:
            MissingMetadata: the snapshot has no resolvable user or tier
        """
        subscription_id = subscription.get("id")
        user_id = (subscription.get("metadata") or {}).get("userId")
        if not user_id and subscription_id:
            user_id = self.store.get_user_for_subscription(subscription_id)

        state = self._state_from_subscription(
            f"manual-sync:{subscription_id}",
            subscription,
            status=map_provider_status(subscription.get("status")),
            user_id=user_id,
        )
        if not dry_run:
            self._write(state)
        return state

    # Helpers

    def _state_from_subscription(
        self, event_id: str, subscription, status: str, user_id: str | None = None
    ) -> SubscriptionState:
        """Compute the state a subscription snapshot implies."""
        user_id = user_id or (subscription.get("metadata") or {}).get("userId")
        tier = self.provider.tier_for_subscription(subscription)

        missing = [name for name, value in (("userId", user_id), ("tierId", tier)) if not value]
        if missing:
            raise MissingMetadata(event_id, missing)
        if tier not in PAID_TIERS:
            raise MissingMetadata(event_id, ["tierId"])

        period_start, period_end = period_bounds(subscription)
        return SubscriptionState(
            user_id=user_id,
            tier=tier,
            status=status,
            stripe_subscription_id=subscription.get("id"),
            stripe_customer_id=as_id(subscription.get("customer")),
            current_period_start=epoch_to_iso(period_start),
            current_period_end=epoch_to_iso(period_end),
        )

    def _write(self, state: SubscriptionState) -> None:
        self.store.upsert_subscription_state(
            state.user_id,
            state.tier,
            state.status,
            state.stripe_subscription_id,
            state.stripe_customer_id,
            state.current_period_start,
            state.current_period_end,
        )

    def _grant_early_purchaser(self, user_id: str) -> None:
        try:
            result = self.promotion.grant(user_id)
        except Exception as e:
            logger.error(f"Early purchaser grant raised for {user_id}: {e}")
            return

        if result.outcome is GrantOutcome.GRANTED:
            logger.info(f"Early purchaser promotion granted to {user_id} (#{result.registration_number})")
        elif result.outcome is GrantOutcome.ERROR:
            logger.error(f"Early purchaser promotion failed for {user_id}: {result.detail}")
        else:
            # not_eligible / exhausted are routine
            logger.info(f"Early purchaser promotion not granted to {user_id}: {result.outcome.value}")

    def _send_confirmation(self, user_id: str, subscription_id: str, email: str, tier: str) -> None:
        # One email per subscription, however often the checkout is delivered
        try:
            if not self.store.claim_confirmation(user_id, subscription_id):
                logger.info(f"Confirmation for {subscription_id} already sent, skipping")
                return
        except PersistenceError as e:
            logger.warning(f"Subscription confirmation not sent: {e}")
            return

        try:
            self.notifier.send_subscription_confirmation(email, tier)
        except SecondaryEffectFailure as e:
            logger.warning(f"Subscription confirmation not sent: {e}")
