"""
Early-adopter promotion for the first supporters.

A grant claims a per-user marker item and then takes one slot from a capped
counter. Both steps are conditional writes, so concurrent checkouts can
never hand out more than ``limit`` grants or grant one user twice.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum

from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.constants import DEFAULT_EARLY_PURCHASER_LIMIT, EARLY_PURCHASER_PROMOTION

logger = logging.getLogger(__name__)

PROMOTIONS_TABLE = os.environ.get("PROMOTIONS_TABLE") or os.environ.get("USERS_TABLE") or "plantspack-users"
EARLY_PURCHASER_LIMIT = int(os.environ.get("EARLY_PURCHASER_LIMIT") or DEFAULT_EARLY_PURCHASER_LIMIT)

PROMOTION_SK_PREFIX = "PROMOTION#"
COUNTER_SK = "COUNTER"


class GrantOutcome(str, Enum):
    GRANTED = "granted"
    NOT_ELIGIBLE = "not_eligible"
    EXHAUSTED = "exhausted"
    ERROR = "error"


@dataclass(frozen=True)
class GrantResult:
    outcome: GrantOutcome
    registration_number: int | None = None
    detail: str | None = None

    @property
    def granted(self) -> bool:
        return self.outcome is GrantOutcome.GRANTED


class EarlyPurchaserPromotion:
    """One-time grant for the first ``limit`` medium-tier purchasers."""

    name = EARLY_PURCHASER_PROMOTION

    def __init__(self, limit: int = None, table_name: str = None):
        self.limit = EARLY_PURCHASER_LIMIT if limit is None else limit
        self.table_name = table_name or PROMOTIONS_TABLE

    @property
    def _marker_sk(self) -> str:
        return f"{PROMOTION_SK_PREFIX}{self.name}"

    @property
    def _counter_key(self) -> dict:
        return {"pk": f"{PROMOTION_SK_PREFIX}{self.name}", "sk": COUNTER_SK}

    def grant(self, user_id: str) -> GrantResult:
        """Try to grant the promotion to a user. Never raises."""
        if self.limit <= 0:
            return GrantResult(GrantOutcome.EXHAUSTED, detail="promotion has no slots")

        table = get_dynamodb().Table(self.table_name)
        now = datetime.now(timezone.utc).isoformat()

        try:
            table.put_item(
                Item={"pk": user_id, "sk": self._marker_sk, "promotion": self.name, "granted_at": now},
                ConditionExpression="attribute_not_exists(pk)",
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.info(f"User {user_id} already holds {self.name} promotion")
                return GrantResult(GrantOutcome.NOT_ELIGIBLE, detail="already granted")
            logger.error(f"Failed to claim {self.name} promotion for {user_id}: {e}")
            return GrantResult(GrantOutcome.ERROR, detail=str(e))

        try:
            # Atomic: condition is checked at write time
            response = table.update_item(
                Key=self._counter_key,
                UpdateExpression="SET granted_count = if_not_exists(granted_count, :zero) + :one",
                ConditionExpression="attribute_not_exists(granted_count) OR granted_count < :limit",
                ExpressionAttributeValues={":zero": 0, ":one": 1, ":limit": self.limit},
                ReturnValues="UPDATED_NEW",
            )
        except ClientError as e:
            exhausted = e.response["Error"]["Code"] == "ConditionalCheckFailedException"
            self._release_marker(table, user_id)
            if exhausted:
                logger.info(f"{self.name} promotion exhausted ({self.limit} granted)")
                return GrantResult(GrantOutcome.EXHAUSTED, detail="no longer available")
            logger.error(f"Failed to take {self.name} promotion slot for {user_id}: {e}")
            return GrantResult(GrantOutcome.ERROR, detail=str(e))

        registration_number = int(response["Attributes"]["granted_count"])
        try:
            table.update_item(
                Key={"pk": user_id, "sk": self._marker_sk},
                UpdateExpression="SET registration_number = :n",
                ExpressionAttributeValues={":n": registration_number},
            )
        except ClientError as e:
            logger.warning(f"Could not store registration number for {user_id}: {e}")

        logger.info(
            f"Granted {self.name} promotion to {user_id} (#{registration_number}/{self.limit})",
            extra={"user_id": user_id, "promotion": self.name, "registration_number": registration_number},
        )
        return GrantResult(GrantOutcome.GRANTED, registration_number=registration_number)

    def remaining(self) -> int:
        """Number of grants still available."""
        table = get_dynamodb().Table(self.table_name)
        response = table.get_item(Key=self._counter_key, ConsistentRead=True)
        granted = int(response.get("Item", {}).get("granted_count", 0))
        return max(0, self.limit - granted)

    def _release_marker(self, table, user_id: str) -> None:
        """Compensate a claimed marker when no slot could be taken."""
        try:
            table.delete_item(Key={"pk": user_id, "sk": self._marker_sk})
        except ClientError as e:
            logger.error(f"Failed to release {self.name} marker for {user_id}: {e}")
