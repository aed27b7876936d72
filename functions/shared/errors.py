"""
Error taxonomy for webhook processing.

Failures the provider can fix by re-delivering (transient storage or network
problems) surface as non-2xx responses. Failures in our own data (missing
metadata) are absorbed because a retry would not change the outcome.
"""

import json
from typing import Optional


class BillingError(Exception):
    """Base class for billing errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 500,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API Gateway response format."""
        return {
            "statusCode": self.status_code,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps({"error": self.message}),
        }


class SignatureInvalid(BillingError):
    """Raised when an inbound event fails signature verification."""

    def __init__(self, reason: str = "signature mismatch"):
        super().__init__(
            code="invalid_signature",
            message="Invalid signature",
            status_code=400,
            details={"reason": reason},
        )
        self.reason = reason


class ConfigurationError(BillingError):
    """Raised when the deployment is missing secrets or configuration."""

    def __init__(self, message: str = "Webhook not configured"):
        super().__init__(
            code="not_configured",
            message=message,
            status_code=500,
        )


class MissingMetadata(BillingError):
    """Raised when an event lacks the userId/tierId metadata we rely on."""

    def __init__(self, event_id: str, missing: list[str]):
        super().__init__(
            code="missing_metadata",
            message=f"Event {event_id} is missing metadata: {', '.join(missing)}",
            status_code=200,
            details={"missing": missing},
        )
        self.event_id = event_id
        self.missing = missing


class RetryableError(BillingError):
    """Failures the provider should resolve by re-delivering the event."""

    def __init__(self, code: str, message: str):
        super().__init__(code=code, message=message, status_code=500)

    def to_response(self) -> dict:
        # Internal details stay in the logs
        return {
            "statusCode": self.status_code,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps({"error": "Webhook processing failed"}),
        }


class PersistenceError(RetryableError):
    """Raised when the subscription state write could not be committed."""

    def __init__(self, message: str):
        super().__init__(code="persistence_error", message=message)


class ProviderError(RetryableError):
    """Raised when a re-fetch from the payment provider fails."""

    def __init__(self, message: str):
        super().__init__(code="provider_error", message=message)


class SecondaryEffectFailure(Exception):
    """Raised by best-effort side effects. Always caught, never escalated."""

    def __init__(self, effect: str, message: str):
        self.effect = effect
        self.message = message
        super().__init__(f"{effect}: {message}")
