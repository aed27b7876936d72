# Shared utilities package
from .errors import (
    BillingError,
    ConfigurationError,
    MissingMetadata,
    PersistenceError,
    SecondaryEffectFailure,
    SignatureInvalid,
)
from .response_utils import acknowledged_response, error_response

__all__ = [
    "BillingError",
    "ConfigurationError",
    "MissingMetadata",
    "PersistenceError",
    "SecondaryEffectFailure",
    "SignatureInvalid",
    "acknowledged_response",
    "error_response",
]
