"""
Subscription State Store.

One SUBSCRIPTION item per user holds the current tier, status and billing
period. Every write sets absolute values, so applying the same event twice
leaves the same state as applying it once.

Writes go through a primary strategy (a transaction that also maintains the
SUB#<id> -> user reference item) and fall back to a plain UpdateItem on the
user's item if the transaction cannot be committed. Both strategies build
their attributes with ``_state_update`` so they cover the same fields.
"""

import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone

from boto3.dynamodb.types import TypeSerializer
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb, get_dynamodb_client
from shared.constants import (
    CONFIRMATION_SK_PREFIX,
    PAID_TIERS,
    SUBSCRIPTION_REF_PREFIX,
    SUBSCRIPTION_REF_SK,
    SUBSCRIPTION_SK,
    SUBSCRIPTION_STATUSES,
    TIER_NAMES,
)
from shared.errors import PersistenceError

logger = logging.getLogger(__name__)

USERS_TABLE = os.environ.get("USERS_TABLE") or "plantspack-users"

_serializer = TypeSerializer()


@dataclass
class SubscriptionState:
    """Current billing state of one user."""

    user_id: str
    tier: str = "free"
    status: str = "active"
    stripe_subscription_id: str | None = None
    stripe_customer_id: str | None = None
    current_period_start: str | None = None
    current_period_end: str | None = None
    updated_at: str | None = field(default=None, compare=False)
    subscription_started_at: str | None = field(default=None, compare=False)
    canceled_at: str | None = field(default=None, compare=False)

    @classmethod
    def from_item(cls, item: dict) -> "SubscriptionState":
        return cls(
            user_id=item["pk"],
            tier=item.get("subscription_tier", "free"),
            status=item.get("subscription_status", "active"),
            stripe_subscription_id=item.get("stripe_subscription_id"),
            stripe_customer_id=item.get("stripe_customer_id"),
            current_period_start=item.get("current_period_start"),
            current_period_end=item.get("current_period_end"),
            updated_at=item.get("updated_at"),
            subscription_started_at=item.get("subscription_started_at"),
            canceled_at=item.get("canceled_at"),
        )


def _state_update(state: SubscriptionState, now: str) -> tuple[str, dict]:
    """Build the UpdateExpression shared by both write strategies.

    Nullable fields are REMOVEd rather than stored as NULL.
    subscription_started_at is written once, on the first paid write;
    canceled_at keeps its first value while canceled.
    """
    set_parts = [
        "subscription_tier = :tier",
        "subscription_status = :status",
        "updated_at = :now",
    ]
    remove_parts = []
    values = {":tier": state.tier, ":status": state.status, ":now": now}

    optional = {
        "stripe_subscription_id": state.stripe_subscription_id,
        "stripe_customer_id": state.stripe_customer_id,
        "current_period_start": state.current_period_start,
        "current_period_end": state.current_period_end,
    }
    for name, value in optional.items():
        if value is None:
            remove_parts.append(name)
        else:
            placeholder = f":{name}"
            set_parts.append(f"{name} = {placeholder}")
            values[placeholder] = value

    if state.tier in PAID_TIERS:
        set_parts.append("subscription_started_at = if_not_exists(subscription_started_at, :now)")

    if state.status == "canceled":
        set_parts.append("canceled_at = if_not_exists(canceled_at, :now)")
    else:
        remove_parts.append("canceled_at")

    expression = "SET " + ", ".join(set_parts)
    if remove_parts:
        expression += " REMOVE " + ", ".join(remove_parts)
    return expression, values


class SubscriptionWriter:
    """A way of committing a SubscriptionState."""

    name = "writer"

    def write(self, state: SubscriptionState, now: str) -> None:
        raise NotImplementedError


class TransactionalWriter(SubscriptionWriter):
    """Primary strategy: user item and subscription reference in one transaction."""

    name = "transaction"

    def __init__(self, table_name: str = None):
        self.table_name = table_name or USERS_TABLE

    def write(self, state: SubscriptionState, now: str) -> None:
        expression, values = _state_update(state, now)
        transact_items = [
            {
                "Update": {
                    "TableName": self.table_name,
                    "Key": {
                        "pk": {"S": state.user_id},
                        "sk": {"S": SUBSCRIPTION_SK},
                    },
                    "UpdateExpression": expression,
                    "ExpressionAttributeValues": {k: _serializer.serialize(v) for k, v in values.items()},
                }
            }
        ]

        if state.stripe_subscription_id:
            reference = {
                "pk": f"{SUBSCRIPTION_REF_PREFIX}{state.stripe_subscription_id}",
                "sk": SUBSCRIPTION_REF_SK,
                "user_id": state.user_id,
                "subscription_tier": state.tier,
                "subscription_status": state.status,
                "updated_at": now,
            }
            if state.stripe_customer_id:
                reference["stripe_customer_id"] = state.stripe_customer_id
            transact_items.append(
                {
                    "Put": {
                        "TableName": self.table_name,
                        "Item": {k: _serializer.serialize(v) for k, v in reference.items()},
                    }
                }
            )

        try:
            get_dynamodb_client().transact_write_items(TransactItems=transact_items)
        except ClientError as e:
            raise PersistenceError(f"Subscription transaction failed for {state.user_id}: {e}") from e


class DirectUpdateWriter(SubscriptionWriter):
    """Fallback strategy: a single UpdateItem on the user's subscription item."""

    name = "direct_update"

    def __init__(self, table_name: str = None):
        self.table_name = table_name or USERS_TABLE

    def write(self, state: SubscriptionState, now: str) -> None:
        expression, values = _state_update(state, now)
        table = get_dynamodb().Table(self.table_name)
        try:
            table.update_item(
                Key={"pk": state.user_id, "sk": SUBSCRIPTION_SK},
                UpdateExpression=expression,
                ExpressionAttributeValues=values,
            )
        except ClientError as e:
            raise PersistenceError(f"Subscription update failed for {state.user_id}: {e}") from e


class SubscriptionStore:
    """Durable record of each user's tier, status and billing period."""

    def __init__(
        self,
        primary: SubscriptionWriter | None = None,
        fallback: SubscriptionWriter | None = None,
        table_name: str = None,
    ):
        self.table_name = table_name or USERS_TABLE
        self.primary = primary or TransactionalWriter(self.table_name)
        self.fallback = fallback if fallback is not None else DirectUpdateWriter(self.table_name)

    def upsert_subscription_state(
        self,
        user_id: str,
        tier: str,
        status: str,
        stripe_subscription_id: str | None,
        stripe_customer_id: str | None,
        period_start: str | None,
        period_end: str | None,
    ) -> SubscriptionState:
        """Atomically set the user's subscription state.

        Raises:
            ValueError: unknown tier/status, or a free tier carrying billing data
            PersistenceError: neither the primary nor the fallback write committed
        """
        if tier not in TIER_NAMES:
            raise ValueError(f"Unknown tier: {tier}")
        if status not in SUBSCRIPTION_STATUSES:
            raise ValueError(f"Unknown status: {status}")
        if tier == "free" and (stripe_subscription_id or period_start or period_end):
            raise ValueError("Free tier cannot carry a subscription or billing period")

        state = SubscriptionState(
            user_id=user_id,
            tier=tier,
            status=status,
            stripe_subscription_id=stripe_subscription_id,
            stripe_customer_id=stripe_customer_id,
            current_period_start=period_start,
            current_period_end=period_end,
        )
        now = datetime.now(timezone.utc).isoformat()

        try:
            self.primary.write(state, now)
            logger.info(
                f"Subscription state written for {user_id}: tier={tier}, status={status}",
                extra={"user_id": user_id, "tier": tier, "status": status, "strategy": self.primary.name},
            )
            return state
        except PersistenceError as primary_error:
            if self.fallback is None:
                raise
            logger.error(
                f"Primary subscription write failed for {user_id}, trying {self.fallback.name}: {primary_error}",
                extra={"user_id": user_id},
            )

        try:
            self.fallback.write(state, now)
        except PersistenceError as fallback_error:
            logger.error(f"Fallback subscription write failed for {user_id}: {fallback_error}")
            raise

        logger.warning(
            f"Subscription state written for {user_id} via fallback: tier={tier}, status={status}",
            extra={"user_id": user_id, "tier": tier, "status": status, "strategy": self.fallback.name},
        )
        return state

    def mark_past_due(self, user_id: str) -> bool:
        """Set status to past_due, leaving tier, provider ids and period untouched.

        Returns:
            True if updated, False if the user has no subscription state yet

        Raises:
            PersistenceError: the update could not be committed
        """
        table = get_dynamodb().Table(self.table_name)
        try:
            table.update_item(
                Key={"pk": user_id, "sk": SUBSCRIPTION_SK},
                UpdateExpression="SET subscription_status = :status, updated_at = :now",
                ConditionExpression="attribute_exists(pk)",
                ExpressionAttributeValues={
                    ":status": "past_due",
                    ":now": datetime.now(timezone.utc).isoformat(),
                },
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.warning(f"No subscription state for {user_id}, cannot mark past_due")
                return False
            raise PersistenceError(f"Failed to mark {user_id} past_due: {e}") from e

        logger.info(f"Marked {user_id} past_due", extra={"user_id": user_id, "status": "past_due"})
        return True

    def get_state(self, user_id: str) -> SubscriptionState | None:
        """Read the user's current state, or None if never subscribed."""
        table = get_dynamodb().Table(self.table_name)
        response = table.get_item(
            Key={"pk": user_id, "sk": SUBSCRIPTION_SK},
            ConsistentRead=True,
        )
        item = response.get("Item")
        if not item:
            return None
        return SubscriptionState.from_item(item)

    def get_user_for_subscription(self, stripe_subscription_id: str) -> str | None:
        """Look up the user owning a provider subscription via its reference item."""
        if not stripe_subscription_id:
            return None
        table = get_dynamodb().Table(self.table_name)
        response = table.get_item(
            Key={"pk": f"{SUBSCRIPTION_REF_PREFIX}{stripe_subscription_id}", "sk": SUBSCRIPTION_REF_SK},
        )
        item = response.get("Item")
        return item.get("user_id") if item else None

    def claim_confirmation(self, user_id: str, stripe_subscription_id: str) -> bool:
        """Claim the one confirmation email owed for a subscription.

        Returns:
            True on the first claim, False if already claimed by an earlier delivery

        Raises:
            PersistenceError: the marker could not be written
        """
        table = get_dynamodb().Table(self.table_name)
        try:
            table.put_item(
                Item={
                    "pk": user_id,
                    "sk": f"{CONFIRMATION_SK_PREFIX}{stripe_subscription_id}",
                    "claimed_at": datetime.now(timezone.utc).isoformat(),
                },
                ConditionExpression="attribute_not_exists(pk)",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise PersistenceError(f"Failed to claim confirmation for {user_id}: {e}") from e
        return True
