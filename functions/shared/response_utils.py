"""
Response utilities for Lambda handlers.

Webhook callers are server-to-server, so no CORS handling is needed here.
"""

import json
from decimal import Decimal
from typing import Any, Dict, Optional


def decimal_default(obj: Any) -> Any:
    """JSON serializer for Decimal types from DynamoDB."""
    if isinstance(obj, Decimal):
        if obj % 1 == 0:
            return int(obj)
        return float(obj)
    raise TypeError(f"Object of type {type(obj)} is not JSON serializable")


def json_response(
    status_code: int, body: dict, headers: Optional[Dict[str, str]] = None
) -> dict:
    """
    Create standardized JSON response.

    Args:
        status_code: HTTP status code
        body: Response body dictionary
        headers: Optional additional headers

    Returns:
        Lambda response dictionary
    """
    response_headers = {"Content-Type": "application/json"}
    if headers:
        response_headers.update(headers)

    return {
        "statusCode": status_code,
        "headers": response_headers,
        "body": json.dumps(body, default=decimal_default),
    }


def error_response(status_code: int, message: str) -> dict:
    """Create an error response with body {"error": message}."""
    return json_response(status_code, {"error": message})


def acknowledged_response() -> dict:
    """Create the 200 acknowledgment the provider expects: {"received": true}."""
    return json_response(200, {"received": True})
