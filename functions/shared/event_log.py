"""
Event Log: audit trail of processed webhook events.

Best-effort. A lost entry is logged and otherwise ignored so that an audit
failure never makes the provider re-deliver an already-applied change.
"""

import json
import logging
import os
from datetime import datetime, timedelta, timezone

from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.constants import BILLING_EVENT_TTL_DAYS
from shared.events import BillingEvent
from shared.response_utils import decimal_default

logger = logging.getLogger(__name__)

BILLING_EVENTS_TABLE = os.environ.get("BILLING_EVENTS_TABLE") or "plantspack-billing-events"


class EventLog:
    """Append-only log keyed by provider event id."""

    def __init__(self, table_name: str = None, ttl_days: int = BILLING_EVENT_TTL_DAYS):
        self.table_name = table_name or BILLING_EVENTS_TABLE
        self.ttl_days = ttl_days

    def record(
        self,
        event_id: str,
        event_type: str,
        payload: dict,
        outcome: str = "applied",
        provider_type: str | None = None,
        subscription_id: str | None = None,
        customer_id: str | None = None,
        created: int | None = None,
        livemode: bool = False,
    ) -> bool:
        """Append one entry. First write for an event id wins.

        Returns:
            True if a new entry was written, False otherwise (duplicate or failure)
        """
        now = datetime.now(timezone.utc)
        item = {
            "pk": event_id,
            "sk": provider_type or event_type,
            "event_type": event_type,
            "outcome": outcome,
            "payload": json.dumps(payload, default=decimal_default),
            "processed_at": now.isoformat(),
            "livemode": bool(livemode),
            "ttl": int((now + timedelta(days=self.ttl_days)).timestamp()),
        }
        # Links the entry to the subscription it concerns; lookup only
        if subscription_id:
            item["subscription_id"] = subscription_id
        if customer_id:
            item["customer_id"] = customer_id
        if created is not None:
            item["event_created_at"] = int(created)

        try:
            get_dynamodb().Table(self.table_name).put_item(
                Item=item,
                ConditionExpression="attribute_not_exists(pk)",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.info(f"Event {event_id} already logged, keeping first entry")
            else:
                logger.error(f"Failed to record billing event {event_id}: {e}")
            return False
        except Exception as e:
            # Best-effort: never propagate to the webhook response
            logger.error(f"Failed to record billing event {event_id}: {e}")
            return False

        return True

    def record_event(self, event: BillingEvent, outcome: str) -> bool:
        """Append an entry for a parsed event."""
        return self.record(
            event.event_id,
            event.event_type.value,
            event.payload,
            outcome=outcome,
            provider_type=event.provider_type,
            subscription_id=event.subscription_id,
            customer_id=event.customer_id,
            created=event.created,
            livemode=event.livemode,
        )
